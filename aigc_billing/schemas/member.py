"""
会员、额度相关的数据模式
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, Field

from aigc_billing.models.order import PayType
from aigc_billing.models.quota import QuotaType


class PlanInfo(BaseModel):
    """会员套餐"""
    id: int
    name: str
    level: int
    period_type: str
    price: Decimal
    detection_quota: int
    rewrite_quota: int

    class Config:
        from_attributes = True


class QuotaInfo(BaseModel):
    """单类额度概况"""
    total: int
    used: int
    remaining: int
    expire_time: Optional[str] = None
    expired: bool = False


class MemberInfo(BaseModel):
    plan_id: Optional[int] = None
    plan_name: str
    level: int = 0
    period_type: Optional[str] = None
    status: Optional[str] = None
    start_time: Optional[str] = None
    expire_time: Optional[str] = None
    auto_renew: bool = False


class UserBenefits(BaseModel):
    """用户权益: 会员信息 + 额度"""
    membership: MemberInfo
    quotas: Dict[str, QuotaInfo]


class MembershipInfo(BaseModel):
    """会员记录"""
    user_id: str
    plan_id: int
    status: str
    start_time: datetime
    expire_time: datetime
    auto_renew: bool

    class Config:
        from_attributes = True


class ConsumeQuotaRequest(BaseModel):
    """消耗额度请求"""
    quota_type: QuotaType
    amount: int = Field(..., gt=0, le=100000, description="消耗数量")
    remark: Optional[str] = Field(None, max_length=255)


class ConsumeQuotaResponse(BaseModel):
    success: bool
    remaining: int


class SubscribeRequest(BaseModel):
    """订阅会员请求"""
    plan_id: int = Field(..., gt=0)
    duration: int = Field(1, ge=1, le=36, description="购买周期数")
    auto_renew: bool = False
    pay_type: PayType = PayType.WECHAT


class UpgradeRequest(BaseModel):
    """升级会员请求"""
    target_plan_id: int = Field(..., gt=0)
    pay_type: PayType = PayType.WECHAT


class AutoRenewRequest(BaseModel):
    auto_renew: bool
