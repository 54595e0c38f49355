"""
额度模型 - 用户额度余额与只追加的额度流水
"""

from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from sqlalchemy.sql import func

from aigc_billing.database import Base


class QuotaType(str, Enum):
    """额度类型"""
    DETECTION = "detection"  # 检测
    REWRITE = "rewrite"      # 改写/降重


class QuotaChangeType(str, Enum):
    """额度变更类型"""
    CONSUME = "consume"      # 消耗
    RECHARGE = "recharge"    # 充值
    EXPIRE = "expire"        # 过期
    REFUND = "refund"        # 退还


class UserQuota(Base):
    """用户额度余额，version 用于乐观锁"""
    __tablename__ = "user_quotas"
    __table_args__ = (
        UniqueConstraint("user_id", "quota_type", name="uq_user_quotas_user_type"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    quota_type = Column(String(20), nullable=False)
    total_quota = Column(Integer, nullable=False, default=0)
    used_quota = Column(Integer, nullable=False, default=0)
    expire_time = Column(DateTime, nullable=True)  # 为空表示不过期
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=True, onupdate=func.now())

    @property
    def remaining(self) -> int:
        return self.total_quota - self.used_quota


class QuotaRecord(Base):
    """额度流水 - 只追加，不修改不删除"""
    __tablename__ = "quota_records"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    quota_type = Column(String(20), nullable=False, index=True)
    change_type = Column(String(20), nullable=False, index=True)
    change_amount = Column(Integer, nullable=False)
    before_amount = Column(Integer, nullable=False)
    after_amount = Column(Integer, nullable=False)
    order_id = Column(Integer, nullable=True, index=True)
    remark = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=func.now())
