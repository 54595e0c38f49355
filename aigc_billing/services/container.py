"""
服务装配

所有服务在应用启动时按依赖顺序显式构造，挂在 app.state 上，
服务内部不持有模块级全局实例
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from aigc_billing.config import Settings
from aigc_billing.core.concurrency import RetryConfig
from aigc_billing.database import Database
from aigc_billing.redis_client import RedisClient
from aigc_billing.services.membership_service import MembershipManager
from aigc_billing.services.order_service import OrderStateMachine
from aigc_billing.services.payment_cache import PaymentResultCache
from aigc_billing.services.payment_gateway import PaymentGatewayClient
from aigc_billing.services.payment_reconciler import PaymentReconciler
from aigc_billing.services.plan_service import PlanService
from aigc_billing.services.quota_ledger import QuotaLedger


@dataclass
class BillingServices:
    database: Database
    plans: PlanService
    ledger: QuotaLedger
    orders: OrderStateMachine
    gateway: PaymentGatewayClient
    payment_cache: PaymentResultCache
    reconciler: PaymentReconciler
    membership: MembershipManager


def build_services(
    settings: Settings,
    database: Database,
    redis_client: RedisClient,
    gateway: PaymentGatewayClient = None,
    clock: Callable[[], datetime] = datetime.utcnow
) -> BillingServices:
    """按配置构造全部服务"""
    retry_config = RetryConfig(
        max_attempts=settings.quota_cas_max_retries,
        base_delay=settings.quota_cas_base_delay,
    )
    plans = PlanService(database)
    ledger = QuotaLedger(database, retry_config, clock=clock)
    orders = OrderStateMachine(database, settings.order_expire_minutes, clock=clock)
    gateway = gateway or PaymentGatewayClient(
        gateway_url=settings.pay_gateway_url,
        app_id=settings.pay_app_id,
        app_secret=settings.pay_app_secret,
        notify_url=settings.notify_url,
    )
    payment_cache = PaymentResultCache(
        redis_client,
        prefix=settings.payment_cache_prefix,
        ttl=settings.payment_cache_ttl,
    )
    reconciler = PaymentReconciler(
        database, orders, plans, ledger, gateway, payment_cache, clock=clock
    )
    membership = MembershipManager(database, plans, orders, ledger, gateway, clock=clock)

    return BillingServices(
        database=database,
        plans=plans,
        ledger=ledger,
        orders=orders,
        gateway=gateway,
        payment_cache=payment_cache,
        reconciler=reconciler,
        membership=membership,
    )
