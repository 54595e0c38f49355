"""
会员服务

订阅/升级只创建待支付订单并返回支付链接，
会员开通和额度充值在支付对账成功后完成
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aigc_billing.core.exceptions import (
    AlreadySubscribed,
    InvalidOrderTransition,
    InvalidUpgrade,
    MembershipNotFound,
    OrderAlreadyPaid,
    OrderExpired,
    OrderNotFound,
)
from aigc_billing.database import Database
from aigc_billing.models.membership import MemberStatus, Membership
from aigc_billing.models.order import Order, OrderStatus, OrderType, PayType
from aigc_billing.services.order_service import OrderStateMachine
from aigc_billing.services.payment_gateway import PaymentGatewayClient
from aigc_billing.services.plan_service import PlanService
from aigc_billing.services.proration import BillingPeriod, ProrationCalculator
from aigc_billing.services.quota_ledger import QuotaLedger


@dataclass
class OrderPayment:
    """待支付订单及支付链接"""
    order_id: int
    order_no: str
    order_type: str
    amount: Decimal
    pay_url: str
    expire_time: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['amount'] = str(self.amount)
        data['expire_time'] = self.expire_time.isoformat()
        return data


class MembershipManager:
    """会员订阅与升级"""

    def __init__(
        self,
        database: Database,
        plans: PlanService,
        orders: OrderStateMachine,
        ledger: QuotaLedger,
        gateway: PaymentGatewayClient,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.database = database
        self.plans = plans
        self.orders = orders
        self.ledger = ledger
        self.gateway = gateway
        self._clock = clock

    async def _load_active(self, session: AsyncSession, user_id: str) -> Optional[Membership]:
        """读取生效中的会员，已过期的记录顺带标记为 EXPIRED"""
        result = await session.execute(
            select(Membership).where(
                Membership.user_id == user_id,
                Membership.status == MemberStatus.NORMAL.value,
            )
        )
        membership = result.scalar_one_or_none()
        if membership is None:
            return None

        now = self._clock()
        if membership.expire_time < now:
            membership.status = MemberStatus.EXPIRED.value
            membership.updated_at = now
            await session.flush()
            logger.info(f"会员已过期: 用户={user_id}, 到期={membership.expire_time.isoformat()}")
            return None
        return membership

    async def get_current_membership(self, user_id: str) -> Optional[Membership]:
        async with self.database.transaction() as session:
            return await self._load_active(session, user_id)

    async def _payment_for(self, order: Order, subject: str) -> OrderPayment:
        payment = await self.gateway.request_payment(order.order_no, order.amount, subject)
        return OrderPayment(
            order_id=order.id,
            order_no=order.order_no,
            order_type=order.order_type,
            amount=order.amount,
            pay_url=payment.pay_url,
            expire_time=order.expire_time,
        )

    async def subscribe(
        self,
        user_id: str,
        plan_id: int,
        duration: int = 1,
        auto_renew: bool = False,
        pay_type: PayType = PayType.WECHAT
    ) -> OrderPayment:
        """首次订阅: 已有生效会员的用户需走升级流程"""
        if duration < 1:
            raise ValueError(f"购买周期数必须大于0: {duration}")

        plan = await self.plans.get_plan_by_id(plan_id)
        if await self.get_current_membership(user_id) is not None:
            raise AlreadySubscribed(user_id)

        amount = Decimal(str(plan.price)) * duration
        order = await self.orders.create(
            user_id,
            plan,
            amount,
            pay_type,
            duration=duration,
            auto_renew=auto_renew,
            order_type=OrderType.SUBSCRIBE,
        )
        logger.info(f"用户订阅会员: 用户={user_id}, 套餐={plan.name}, 周期数={duration}, 金额={order.amount}")
        return await self._payment_for(order, f"会员订阅-{plan.name}")

    async def create_upgrade_order(
        self,
        user_id: str,
        target_plan_id: int,
        pay_type: PayType = PayType.WECHAT
    ) -> OrderPayment:
        """升级订单: 校验升级路径，按剩余天数折算差价"""
        target_plan = await self.plans.get_plan_by_id(target_plan_id)

        membership = await self.get_current_membership(user_id)
        current_plan = None
        current_period = None
        if membership is not None:
            current_plan = await self.plans.get_plan_by_id(membership.plan_id, include_inactive=True)
            current_period = BillingPeriod(start=membership.start_time, expire=membership.expire_time)

        if not ProrationCalculator.is_valid_upgrade(current_plan, target_plan):
            raise InvalidUpgrade(
                f"不支持从 {current_plan.name} 升级到 {target_plan.name}",
                details={'current_plan_id': current_plan.id, 'target_plan_id': target_plan.id}
            )

        amount = ProrationCalculator.price_for_change(
            current_plan, current_period, target_plan, today=self._clock()
        )
        order = await self.orders.create(
            user_id,
            target_plan,
            amount,
            pay_type,
            duration=1,
            auto_renew=bool(membership.auto_renew) if membership else False,
            order_type=OrderType.UPGRADE,
        )
        logger.info(
            f"用户升级会员: 用户={user_id}, "
            f"{current_plan.name if current_plan else '无'} -> {target_plan.name}, 金额={order.amount}"
        )
        return await self._payment_for(order, f"会员升级-{target_plan.name}")

    async def refresh_payment_url(self, user_id: str, order_no: str) -> OrderPayment:
        """为仍可支付的订单重新生成支付链接"""
        order = await self.orders.get_by_order_no(order_no)
        if order.user_id != user_id:
            raise OrderNotFound(order_no)

        status = self.orders.effective_status(order, self._clock())
        if status == OrderStatus.PAID:
            raise OrderAlreadyPaid(order_no)
        if status == OrderStatus.EXPIRED:
            raise OrderExpired(order_no)
        if status != OrderStatus.PENDING:
            raise InvalidOrderTransition(order_no, status.value, OrderStatus.PENDING.value)

        plan = await self.plans.get_plan_by_id(order.plan_id, include_inactive=True)
        return await self._payment_for(order, f"会员订阅-{plan.name}")

    async def get_user_benefits(self, user_id: str) -> Dict[str, Any]:
        """会员信息 + 各类额度"""
        membership = await self.get_current_membership(user_id)
        quotas = await self.ledger.get_quota_status(user_id)

        if membership is None:
            member_info = {
                'plan_id': None,
                'plan_name': '未开通会员',
                'level': 0,
                'period_type': None,
                'status': None,
                'start_time': None,
                'expire_time': None,
                'auto_renew': False,
            }
        else:
            plan = await self.plans.get_plan_by_id(membership.plan_id, include_inactive=True)
            member_info = {
                'plan_id': plan.id,
                'plan_name': plan.name,
                'level': plan.level,
                'period_type': plan.period_type,
                'status': membership.status,
                'start_time': membership.start_time.isoformat(),
                'expire_time': membership.expire_time.isoformat(),
                'auto_renew': bool(membership.auto_renew),
            }

        return {'membership': member_info, 'quotas': quotas}

    async def cancel_membership(self, user_id: str) -> Membership:
        """取消会员（已充值的额度保留到到期）"""
        async with self.database.transaction() as session:
            membership = await self._load_active(session, user_id)
            if membership is None:
                raise MembershipNotFound(user_id)
            membership.status = MemberStatus.CANCELLED.value
            membership.auto_renew = False
            membership.updated_at = self._clock()

        logger.info(f"会员已取消: 用户={user_id}")
        return membership

    async def set_auto_renew(self, user_id: str, auto_renew: bool) -> Membership:
        async with self.database.transaction() as session:
            membership = await self._load_active(session, user_id)
            if membership is None:
                raise MembershipNotFound(user_id)
            membership.auto_renew = auto_renew
            membership.updated_at = self._clock()

        logger.info(f"会员自动续费设置: 用户={user_id}, auto_renew={auto_renew}")
        return membership
