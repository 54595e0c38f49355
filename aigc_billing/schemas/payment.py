"""
订单与支付相关的数据模式
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class OrderPaymentInfo(BaseModel):
    """待支付订单及支付链接"""
    order_id: int
    order_no: str
    order_type: str
    amount: Decimal
    pay_url: str
    expire_time: datetime

    class Config:
        from_attributes = True


class OrderInfo(BaseModel):
    """订单信息"""
    id: int
    order_no: str
    user_id: str
    plan_id: int
    order_type: str
    amount: Decimal
    duration: int
    status: str
    pay_type: str
    remark: Optional[str] = None
    expire_time: datetime
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CancelOrderRequest(BaseModel):
    reason: str = Field("用户取消", max_length=200)


class CompletePaymentRequest(BaseModel):
    """手动完成支付请求"""
    order_no: str = Field(..., min_length=1, max_length=40)


class ReconciliationInfo(BaseModel):
    """对账结果"""
    order_no: str
    status: str
    success: bool
    trade_no: Optional[str] = None
    already_processed: bool = False
    message: Optional[str] = None


class PaymentStatusInfo(BaseModel):
    """支付状态"""
    order_no: str
    status: str
    message: Optional[str] = None
    paid_at: Optional[str] = None
