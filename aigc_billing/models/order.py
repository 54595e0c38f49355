"""
订单模型 - 购买订单与支付回调记录
"""

from enum import Enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, ForeignKey, DECIMAL
from sqlalchemy.sql import func

from aigc_billing.database import Base


class OrderStatus(str, Enum):
    """订单状态"""
    PENDING = "pending"          # 待支付
    PAID = "paid"                # 已支付
    CANCELLED = "cancelled"      # 已取消
    REFUNDED = "refunded"        # 已退款
    EXPIRED = "expired"          # 已过期（读取时推导，不落库）


class PayType(str, Enum):
    """支付方式"""
    WECHAT = "wechat"
    ALIPAY = "alipay"


class OrderType(str, Enum):
    """订单类型"""
    SUBSCRIBE = "subscribe"  # 首次订阅/续费
    UPGRADE = "upgrade"      # 升级


class PaymentOutcome(str, Enum):
    """回调对账结果"""
    SUCCESS = "success"
    FAILED = "failed"


class Order(Base):
    """购买订单"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_no = Column(String(40), nullable=False, unique=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    plan_id = Column(Integer, nullable=False)
    order_type = Column(String(20), default=OrderType.SUBSCRIBE.value)
    amount = Column(DECIMAL(10, 2), nullable=False)
    duration = Column(Integer, nullable=False, default=1)  # 购买周期数
    auto_renew = Column(Boolean, default=False)
    status = Column(String(20), default=OrderStatus.PENDING.value, index=True)
    pay_type = Column(String(20), nullable=False)
    remark = Column(String(200), nullable=True)

    expire_time = Column(DateTime, nullable=False, index=True)
    paid_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=True, onupdate=func.now())


class PaymentRecord(Base):
    """支付记录 - 每个订单一条，记录网关回调与对账结果"""
    __tablename__ = "payment_records"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    trade_no = Column(String(64), nullable=True, index=True)
    payload = Column(Text, nullable=True)          # 原始回调数据(JSON)
    outcome = Column(String(20), nullable=False)   # success, failed
    message = Column(String(255), nullable=True)
    callback_count = Column(Integer, default=0)
    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=True, onupdate=func.now())
