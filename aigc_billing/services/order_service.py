"""
订单状态机

PENDING -> PAID / CANCELLED / REFUNDED；
EXPIRED 不落库，由 PENDING 且超过 expire_time 在读取时推导
"""

import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from aigc_billing.core.exceptions import (
    ConflictError,
    InvalidOrderTransition,
    OrderAlreadyPaid,
    OrderExpired,
    OrderNotFound,
)
from aigc_billing.database import Database
from aigc_billing.models.membership import MemberPlan
from aigc_billing.models.order import Order, OrderStatus, OrderType, PayType

ORDER_NO_PREFIX = "ORD"
ORDER_NO_MAX_ATTEMPTS = 3

# 只有待支付订单可以流转
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING.value: {
        OrderStatus.PAID.value,
        OrderStatus.CANCELLED.value,
        OrderStatus.REFUNDED.value,
    },
}


class OrderStateMachine:
    """订单生命周期管理"""

    def __init__(
        self,
        database: Database,
        expire_minutes: int = 30,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.database = database
        self.expire_minutes = expire_minutes
        self._clock = clock

    def _generate_order_no(self) -> str:
        """生成订单号: 前缀 + 时间戳 + 随机后缀"""
        timestamp = self._clock().strftime("%Y%m%d%H%M%S")
        random_suffix = secrets.token_hex(6).upper()
        return f"{ORDER_NO_PREFIX}{timestamp}{random_suffix}"

    def effective_status(self, order: Order, now: Optional[datetime] = None) -> OrderStatus:
        """订单当前状态（待支付且已超时视为过期）"""
        now = now or self._clock()
        status = OrderStatus(order.status)
        if status == OrderStatus.PENDING and order.expire_time < now:
            return OrderStatus.EXPIRED
        return status

    async def create(
        self,
        user_id: str,
        plan: MemberPlan,
        amount: Decimal,
        pay_type: PayType,
        duration: int = 1,
        auto_renew: bool = False,
        order_type: OrderType = OrderType.SUBSCRIBE,
        remark: Optional[str] = None
    ) -> Order:
        """创建待支付订单，订单号由唯一约束保证不重复"""
        pay_type = PayType(pay_type)
        order_type = OrderType(order_type)

        for attempt in range(1, ORDER_NO_MAX_ATTEMPTS + 1):
            now = self._clock()
            order = Order(
                order_no=self._generate_order_no(),
                user_id=user_id,
                plan_id=plan.id,
                order_type=order_type.value,
                amount=Decimal(str(amount)),
                duration=duration,
                auto_renew=auto_renew,
                status=OrderStatus.PENDING.value,
                pay_type=pay_type.value,
                remark=remark,
                expire_time=now + timedelta(minutes=self.expire_minutes),
                created_at=now,
            )
            try:
                async with self.database.transaction() as session:
                    session.add(order)
            except IntegrityError:
                logger.warning(f"订单号冲突，重新生成: {order.order_no} (第{attempt}次)")
                continue

            logger.info(
                f"创建订单成功: {order.order_no}, 用户: {user_id}, 套餐: {plan.id}, "
                f"金额: {order.amount}, 类型: {order_type.value}"
            )
            return order

        raise ConflictError("订单号生成冲突，请稍后重试")

    async def get_by_order_no(self, order_no: str, session: Optional[AsyncSession] = None) -> Order:
        if session is not None:
            return await self._get_one(session, Order.order_no == order_no, order_no)
        async with self.database.session() as own_session:
            return await self._get_one(own_session, Order.order_no == order_no, order_no)

    async def get_by_id(self, order_id: int, session: Optional[AsyncSession] = None) -> Order:
        if session is not None:
            return await self._get_one(session, Order.id == order_id, order_id)
        async with self.database.session() as own_session:
            return await self._get_one(own_session, Order.id == order_id, order_id)

    @staticmethod
    async def _get_one(session: AsyncSession, condition, order_ref) -> Order:
        result = await session.execute(
            select(Order).where(condition).execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_ref)
        return order

    async def list_user_orders(
        self,
        user_id: str,
        status: Optional[OrderStatus] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[Order]:
        """用户订单列表，按创建时间倒序"""
        query = select(Order).where(Order.user_id == user_id)
        if status is not None:
            status = OrderStatus(status)
            if status == OrderStatus.EXPIRED:
                query = query.where(
                    Order.status == OrderStatus.PENDING.value,
                    Order.expire_time < self._clock()
                )
            elif status == OrderStatus.PENDING:
                query = query.where(
                    Order.status == OrderStatus.PENDING.value,
                    Order.expire_time >= self._clock()
                )
            else:
                query = query.where(Order.status == status.value)
        query = query.order_by(Order.id.desc()).limit(limit).offset(offset)

        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # 状态流转
    # ------------------------------------------------------------------

    async def transition_to_paid(
        self,
        session: AsyncSession,
        order_id: int,
        now: Optional[datetime] = None
    ) -> Order:
        """
        待支付 -> 已支付，在调用方事务内执行

        条件更新 status='pending' 保证同一订单只会被置为已支付一次
        """
        now = now or self._clock()
        order = await self.get_by_id(order_id, session)
        status = self.effective_status(order, now)

        if status == OrderStatus.PAID:
            raise OrderAlreadyPaid(order.order_no)
        if status == OrderStatus.EXPIRED:
            raise OrderExpired(order.order_no)
        if status != OrderStatus.PENDING:
            raise InvalidOrderTransition(order.order_no, status.value, OrderStatus.PAID.value)

        result = await session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.PENDING.value)
            .values(status=OrderStatus.PAID.value, paid_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            order = await self.get_by_id(order_id, session)
            if order.status == OrderStatus.PAID.value:
                raise OrderAlreadyPaid(order.order_no)
            raise InvalidOrderTransition(order.order_no, order.status, OrderStatus.PAID.value)

        order = await self.get_by_id(order_id, session)
        logger.info(f"订单已支付: {order.order_no}")
        return order

    async def cancel(self, order_no: str, reason: str = "用户取消", user_id: Optional[str] = None) -> Order:
        """取消待支付订单"""
        return await self._terminate(order_no, OrderStatus.CANCELLED, reason, user_id)

    async def refund(self, order_no: str, reason: str = "管理员退款") -> Order:
        """退款（仅待支付订单可直接流转为已退款）"""
        return await self._terminate(order_no, OrderStatus.REFUNDED, reason)

    async def _terminate(
        self,
        order_no: str,
        target: OrderStatus,
        reason: str,
        user_id: Optional[str] = None
    ) -> Order:
        now = self._clock()
        async with self.database.transaction() as session:
            order = await self.get_by_order_no(order_no, session)
            if user_id is not None and order.user_id != user_id:
                raise OrderNotFound(order_no)

            current = order.status
            if target.value not in ALLOWED_TRANSITIONS.get(current, set()):
                raise InvalidOrderTransition(order_no, current, target.value)

            values = {'status': target.value, 'remark': reason, 'updated_at': now}
            if target == OrderStatus.CANCELLED:
                values['cancelled_at'] = now

            result = await session.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(f"订单状态已被并发修改: {order_no}")

            order = await self.get_by_id(order.id, session)

        logger.info(f"订单状态变更: {order_no} {current} -> {target.value}, 原因: {reason}")
        return order
