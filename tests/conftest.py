"""
测试配置和共享fixtures
为所有测试提供临时数据库、模拟Redis、固定时钟和套餐数据
"""

import json
import os
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest

from aigc_billing.config import Settings
from aigc_billing.database import Database
from aigc_billing.models.membership import MemberPlan, PeriodType
from aigc_billing.services.container import build_services
from aigc_billing.utils import signature

TEST_SECRET = "test_secret_key"


class FrozenClock:
    """可手动推进的时钟"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 10, 8, 0, 0))


@pytest.fixture
def settings():
    """测试配置"""
    return Settings(
        _env_file=None,
        environment="testing",
        pay_app_secret=TEST_SECRET,
        pay_app_id="1072",
        pay_gateway_url="https://pay.example.com/pay/view/qrcode",
        api_base_url="http://billing.test",
        order_expire_minutes=30,
        quota_cas_max_retries=3,
        quota_cas_base_delay=0.001,
        allow_manual_complete=True,
    )


@pytest.fixture
async def database():
    """临时SQLite数据库，每个测试独立"""
    temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
    temp_db.close()

    db = Database(f"sqlite+aiosqlite:///{temp_db.name}")
    await db.init()

    yield db

    await db.close()
    os.unlink(temp_db.name)


@pytest.fixture
def fake_redis():
    """基于字典的Redis客户端替身"""
    store: Dict[str, Any] = {}

    async def set_json(key, value, ttl=None):
        store[key] = json.loads(json.dumps(value))
        return True

    async def get_json(key):
        return store.get(key)

    async def delete(key):
        return store.pop(key, None) is not None

    client = MagicMock()
    client.store = store
    client.set_json = AsyncMock(side_effect=set_json)
    client.get_json = AsyncMock(side_effect=get_json)
    client.delete = AsyncMock(side_effect=delete)
    return client


@pytest.fixture
def services(settings, database, fake_redis, clock):
    return build_services(settings, database, fake_redis, clock=clock)


@pytest.fixture
async def plans(database):
    """套餐目录"""
    catalog = {
        'basic_monthly': MemberPlan(
            id=1, name="基础月卡", level=1, period_type=PeriodType.MONTHLY.value,
            price=Decimal("29.90"), detection_quota=50, rewrite_quota=20, is_active=True
        ),
        'pro_monthly': MemberPlan(
            id=2, name="专业月卡", level=2, period_type=PeriodType.MONTHLY.value,
            price=Decimal("59.90"), detection_quota=150, rewrite_quota=60, is_active=True
        ),
        'basic_yearly': MemberPlan(
            id=3, name="基础年卡", level=1, period_type=PeriodType.YEARLY.value,
            price=Decimal("299.00"), detection_quota=600, rewrite_quota=240, is_active=True
        ),
        'pro_yearly': MemberPlan(
            id=4, name="专业年卡", level=2, period_type=PeriodType.YEARLY.value,
            price=Decimal("599.00"), detection_quota=1800, rewrite_quota=720, is_active=True
        ),
        'flagship_monthly': MemberPlan(
            id=5, name="旗舰月卡", level=3, period_type=PeriodType.MONTHLY.value,
            price=Decimal("99.00"), detection_quota=300, rewrite_quota=0, is_active=True
        ),
        'retired': MemberPlan(
            id=6, name="体验卡", level=1, period_type=PeriodType.MONTHLY.value,
            price=Decimal("9.90"), detection_quota=10, rewrite_quota=5, is_active=False
        ),
    }
    async with database.transaction() as session:
        session.add_all(catalog.values())
    return catalog


@pytest.fixture
def make_callback():
    """生成带签名的网关回调参数"""

    def _make(order_no: str, trade_status: str = "SUCCESS", trade_no: str = "T202401100001", **extra) -> Dict[str, str]:
        payload = {
            'order_id': order_no,
            'trade_no': trade_no,
            'trade_status': trade_status,
            'pay_amount': "29.90",
        }
        payload.update(extra)
        payload['sign'] = signature.generate(payload, TEST_SECRET)
        return payload

    return _make
