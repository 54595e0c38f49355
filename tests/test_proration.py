"""
升级差价计算与升级路径校验测试
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from aigc_billing.models.membership import PeriodType
from aigc_billing.services.proration import BillingPeriod, ProrationCalculator


def plan(price, period_type=PeriodType.MONTHLY, level=1):
    return SimpleNamespace(price=Decimal(price), period_type=period_type, level=level, name=f"L{level}")


START = date(2024, 1, 1)


class TestPriceForChange:
    """差价计算"""

    @pytest.mark.parametrize(
        "current, period, target, today, expected",
        [
            # 无当前套餐: 目标价格
            (None, None, plan("200"), START, Decimal("200.00")),
            # 年付120元/360天，已用90天: 剩余270天 * 1/3 = 90，200 - 90 = 110
            (
                plan("120", PeriodType.YEARLY),
                BillingPeriod(START, START + timedelta(days=360)),
                plan("200", PeriodType.YEARLY, level=2),
                START + timedelta(days=90),
                Decimal("110.00"),
            ),
            # 退款超过目标价格时不为负
            (
                plan("300"),
                BillingPeriod(START, START + timedelta(days=30)),
                plan("100", level=2),
                START,
                Decimal("0.00"),
            ),
            # 已过期: 剩余天数为0，全价
            (
                plan("100"),
                BillingPeriod(START, START + timedelta(days=30)),
                plan("59.90", level=2),
                START + timedelta(days=45),
                Decimal("59.90"),
            ),
            # 四舍五入到分: 59.90 - 100/30*10 = 26.5666...
            (
                plan("100"),
                BillingPeriod(START, START + timedelta(days=30)),
                plan("59.90", level=2),
                START + timedelta(days=20),
                Decimal("26.57"),
            ),
            # 周期不足一天: 没有可折算的剩余价值
            (
                plan("100"),
                BillingPeriod(START, START),
                plan("59.90", level=2),
                START,
                Decimal("59.90"),
            ),
        ],
    )
    def test_price_table(self, current, period, target, today, expected):
        assert ProrationCalculator.price_for_change(current, period, target, today=today) == expected

    def test_breakdown_details(self):
        result = ProrationCalculator.breakdown(
            plan("120", PeriodType.YEARLY),
            BillingPeriod(START, START + timedelta(days=360)),
            plan("200", PeriodType.YEARLY, level=2),
            today=START + timedelta(days=90),
        )

        assert result.used_days == 90
        assert result.total_days == 360
        assert result.remaining_days == 270
        assert result.refund.quantize(Decimal("0.01")) == Decimal("90.00")
        assert result.price == Decimal("110.00")

    def test_time_of_day_is_ignored(self):
        """23:59 开始、次日 00:01 查询按已用1天计算"""
        period = BillingPeriod(
            datetime(2024, 1, 1, 23, 59),
            datetime(2024, 1, 31, 0, 1),
        )
        result = ProrationCalculator.breakdown(
            plan("30"), period, plan("60", level=2), today=datetime(2024, 1, 2, 0, 1)
        )

        assert result.used_days == 1
        assert result.total_days == 30
        assert result.remaining_days == 29
        assert result.price == Decimal("31.00")


class TestUpgradeLegality:
    """升级路径校验"""

    @pytest.mark.parametrize(
        "current, target, expected",
        [
            ((PeriodType.YEARLY, 2), (PeriodType.MONTHLY, 3), False),
            ((PeriodType.MONTHLY, 1), (PeriodType.MONTHLY, 2), True),
            ((PeriodType.MONTHLY, 2), (PeriodType.MONTHLY, 2), False),
            ((PeriodType.MONTHLY, 2), (PeriodType.MONTHLY, 1), False),
            ((PeriodType.YEARLY, 1), (PeriodType.YEARLY, 2), True),
            ((PeriodType.YEARLY, 2), (PeriodType.YEARLY, 1), False),
            # 月付改年付不比较等级
            ((PeriodType.MONTHLY, 3), (PeriodType.YEARLY, 1), True),
            # 数据库中的周期为字符串
            (("yearly", 1), ("monthly", 2), False),
            (("monthly", 1), ("yearly", 1), True),
        ],
    )
    def test_upgrade_table(self, current, target, expected):
        current_plan = plan("10", current[0], current[1])
        target_plan = plan("20", target[0], target[1])
        assert ProrationCalculator.is_valid_upgrade(current_plan, target_plan) is expected

    def test_no_current_plan_is_always_valid(self):
        assert ProrationCalculator.is_valid_upgrade(None, plan("10", PeriodType.MONTHLY, 1)) is True
