"""
AIGC Billing Service - 数据模型

SQLAlchemy ORM模型定义
"""

from .membership import MemberPlan, Membership, MemberStatus, PeriodType
from .quota import UserQuota, QuotaRecord, QuotaType, QuotaChangeType
from .order import Order, PaymentRecord, OrderStatus, OrderType, PayType, PaymentOutcome

__all__ = [
    # 会员
    "MemberPlan",
    "Membership",
    "MemberStatus",
    "PeriodType",

    # 额度
    "UserQuota",
    "QuotaRecord",
    "QuotaType",
    "QuotaChangeType",

    # 订单与支付
    "Order",
    "PaymentRecord",
    "OrderStatus",
    "OrderType",
    "PayType",
    "PaymentOutcome",
]
