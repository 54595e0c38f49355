"""
时间工具
"""

import calendar
from datetime import datetime

from aigc_billing.models.membership import PeriodType


def add_months(moment: datetime, months: int) -> datetime:
    """按自然月增加，月末日期自动截断到目标月最后一天"""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def period_months(period_type) -> int:
    """套餐周期对应的月数"""
    value = getattr(period_type, "value", period_type)
    return 12 if value == PeriodType.YEARLY.value else 1
