"""
会员模型 - 会员套餐目录与用户会员关系
"""

from enum import Enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, DECIMAL, Index, text
from sqlalchemy.sql import func

from aigc_billing.database import Base


class PeriodType(str, Enum):
    """套餐周期"""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class MemberStatus(str, Enum):
    """会员状态"""
    NORMAL = "normal"        # 生效中
    EXPIRED = "expired"      # 已过期
    CANCELLED = "cancelled"  # 已取消


class MemberPlan(Base):
    """会员套餐 (只读目录)"""
    __tablename__ = "member_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    level = Column(Integer, nullable=False)                    # 等级序数
    period_type = Column(String(20), nullable=False)           # monthly, yearly
    price = Column(DECIMAL(10, 2), nullable=False)
    detection_quota = Column(Integer, nullable=False, default=0)
    rewrite_quota = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Membership(Base):
    """用户会员关系，每个用户最多一条生效中记录"""
    __tablename__ = "memberships"
    __table_args__ = (
        Index(
            "uq_memberships_user_normal",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'normal'"),
            postgresql_where=text("status = 'normal'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    plan_id = Column(Integer, nullable=False)
    status = Column(String(20), default=MemberStatus.NORMAL.value, index=True)
    start_time = Column(DateTime, nullable=False)
    expire_time = Column(DateTime, nullable=False)
    auto_renew = Column(Boolean, default=False)
    last_order_id = Column(Integer, nullable=True)   # 最近一次生效的订单
    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=True, onupdate=func.now())
