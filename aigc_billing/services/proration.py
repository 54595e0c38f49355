"""
升级差价计算 - 纯函数，无I/O

按当前套餐剩余天数折算退款，从目标套餐价格中扣除
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from aigc_billing.models.membership import PeriodType

DateLike = Union[date, datetime]

CENT = Decimal("0.01")


@dataclass(frozen=True)
class BillingPeriod:
    """当前会员周期"""
    start: DateLike
    expire: DateLike


@dataclass(frozen=True)
class ProrationBreakdown:
    """差价计算明细"""
    price: Decimal
    used_days: int = 0
    total_days: int = 0
    remaining_days: int = 0
    daily_rate: Decimal = Decimal("0")
    refund: Decimal = Decimal("0")


def _to_date(value: DateLike) -> date:
    # 只比较日期，忽略时分秒
    if isinstance(value, datetime):
        return value.date()
    return value


def _period_value(plan) -> str:
    period_type = plan.period_type
    return getattr(period_type, "value", period_type)


def round2(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class ProrationCalculator:
    """升级差价计算器"""

    @staticmethod
    def breakdown(
        current_plan,
        current_period: Optional[BillingPeriod],
        target_plan,
        today: Optional[DateLike] = None
    ) -> ProrationBreakdown:
        """计算套餐变更价格及明细"""
        target_price = Decimal(str(target_plan.price))

        if current_plan is None or current_period is None:
            return ProrationBreakdown(price=round2(target_price))

        today_date = _to_date(today or datetime.utcnow())
        start = _to_date(current_period.start)
        expire = _to_date(current_period.expire)

        used_days = (today_date - start).days
        total_days = (expire - start).days
        remaining_days = max(total_days - used_days, 0)

        if total_days <= 0:
            # 周期不足一天，没有可折算的剩余价值
            return ProrationBreakdown(
                price=round2(max(target_price, Decimal("0"))),
                used_days=used_days,
                total_days=total_days,
            )

        daily_rate = Decimal(str(current_plan.price)) / Decimal(total_days)
        refund = daily_rate * remaining_days
        price = max(Decimal("0"), round2(target_price - refund))

        return ProrationBreakdown(
            price=price,
            used_days=used_days,
            total_days=total_days,
            remaining_days=remaining_days,
            daily_rate=daily_rate,
            refund=refund,
        )

    @classmethod
    def price_for_change(
        cls,
        current_plan,
        current_period: Optional[BillingPeriod],
        target_plan,
        today: Optional[DateLike] = None
    ) -> Decimal:
        """计算套餐变更应付金额（保留两位小数，最低为0）"""
        return cls.breakdown(current_plan, current_period, target_plan, today).price

    @staticmethod
    def is_valid_upgrade(current_plan, target_plan) -> bool:
        """
        判断升级路径是否合法

        - 年付不能改为月付
        - 同周期必须升到更高等级
        - 月付改年付不比较等级
        """
        if current_plan is None:
            return True

        current_period = _period_value(current_plan)
        target_period = _period_value(target_plan)

        if current_period == PeriodType.YEARLY.value and target_period == PeriodType.MONTHLY.value:
            return False

        if current_period == target_period:
            return target_plan.level > current_plan.level

        return True
