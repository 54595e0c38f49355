"""
支付对账服务

网关回调与手动完成支付共用同一个结算函数:
订单置为已支付、会员开通/续期、按套餐充值额度，三者在同一事务内完成。
已支付订单的重复回调直接返回之前的对账结果，不会重复充值
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from aigc_billing.core.exceptions import (
    InvalidOrderTransition,
    InvalidSignature,
    OrderAlreadyPaid,
    OrderExpired,
    OrderNotFound,
)
from aigc_billing.database import Database
from aigc_billing.models.membership import MemberPlan, MemberStatus, Membership
from aigc_billing.models.order import Order, OrderStatus, PaymentOutcome, PaymentRecord
from aigc_billing.models.quota import QuotaType
from aigc_billing.services.order_service import OrderStateMachine
from aigc_billing.services.payment_cache import PaymentResultCache
from aigc_billing.services.payment_gateway import PaymentGatewayClient
from aigc_billing.services.plan_service import PlanService
from aigc_billing.services.quota_ledger import QuotaLedger
from aigc_billing.utils.time_utils import add_months, period_months

TRADE_SUCCESS = "SUCCESS"
TRADE_FAILED = "FAILED"


class PaymentStatus(str, Enum):
    """支付状态（对外查询）"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


@dataclass
class PaymentCallback:
    """网关回调: 固定字段 + 原始参数（签名覆盖原始参数全部字段）"""
    order_id: str
    trade_no: Optional[str]
    trade_status: str
    sign: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'PaymentCallback':
        raw = dict(payload)
        status = str(raw.get('trade_status') or '').upper()
        # JSON 回调中的流水号可能是数字，raw 保留原值用于验签
        trade_no = raw.get('trade_no')
        return cls(
            order_id=str(raw.get('order_id') or ''),
            trade_no=str(trade_no) if trade_no is not None else None,
            trade_status=TRADE_SUCCESS if status == TRADE_SUCCESS else TRADE_FAILED,
            sign=str(raw.get('sign') or ''),
            raw=raw,
        )

    @property
    def succeeded(self) -> bool:
        return self.trade_status == TRADE_SUCCESS


@dataclass
class ReconciliationResult:
    """对账结果"""
    order_no: str
    status: str
    success: bool
    trade_no: Optional[str] = None
    already_processed: bool = False
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReconciliationResult':
        return cls(
            order_no=data['order_no'],
            status=data['status'],
            success=bool(data.get('success')),
            trade_no=data.get('trade_no'),
            already_processed=bool(data.get('already_processed')),
            message=data.get('message'),
        )


@dataclass
class PaymentStatusResult:
    """支付状态查询结果"""
    order_no: str
    status: str
    message: Optional[str] = None
    paid_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PaymentReconciler:
    """支付对账"""

    def __init__(
        self,
        database: Database,
        orders: OrderStateMachine,
        plans: PlanService,
        ledger: QuotaLedger,
        gateway: PaymentGatewayClient,
        cache: PaymentResultCache,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.database = database
        self.orders = orders
        self.plans = plans
        self.ledger = ledger
        self.gateway = gateway
        self.cache = cache
        self._clock = clock

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    async def handle_callback(self, payload: Mapping[str, Any]) -> ReconciliationResult:
        """处理网关异步回调"""
        callback = PaymentCallback.from_payload(payload)

        # 验签失败时不做任何修改
        if not self.gateway.verify(callback.raw, callback.sign):
            logger.warning(
                f"支付回调签名校验失败: {json.dumps(callback.raw, ensure_ascii=False, default=str)}"
            )
            raise InvalidSignature()

        logger.info(
            f"收到支付回调: 订单={callback.order_id}, 状态={callback.trade_status}, "
            f"交易号={callback.trade_no}"
        )
        order = await self.orders.get_by_order_no(callback.order_id)
        return await self._reconcile(order, callback)

    async def complete_payment(self, order_no: str, user_id: Optional[str] = None) -> ReconciliationResult:
        """同步完成支付（手动补单/测试），与回调走相同的结算流程"""
        order = await self.orders.get_by_order_no(order_no)
        if user_id is not None and order.user_id != user_id:
            raise OrderNotFound(order_no)
        logger.info(f"手动完成支付: {order_no}")
        return await self._reconcile(order, None)

    async def _reconcile(self, order: Order, callback: Optional[PaymentCallback]) -> ReconciliationResult:
        now = self._clock()
        status = self.orders.effective_status(order, now)

        if status == OrderStatus.PAID:
            return await self._replay(order)
        if status == OrderStatus.EXPIRED:
            logger.warning(f"订单已过期，拒绝支付结果: {order.order_no}")
            raise OrderExpired(order.order_no)
        if status != OrderStatus.PENDING:
            raise InvalidOrderTransition(order.order_no, status.value, OrderStatus.PAID.value)

        if callback is not None and not callback.succeeded:
            return await self._record_failure(order, callback, now)

        return await self._settle(order, callback, now)

    # ------------------------------------------------------------------
    # 结算
    # ------------------------------------------------------------------

    async def _settle(
        self,
        order: Order,
        callback: Optional[PaymentCallback],
        now: datetime
    ) -> ReconciliationResult:
        """订单置为已支付 + 会员开通 + 额度充值，任何一步失败整体回滚"""
        try:
            async with self.database.transaction() as session:
                paid_order = await self.orders.transition_to_paid(session, order.id, now)
                plan = await self.plans.get_plan_by_id(paid_order.plan_id, session, include_inactive=True)
                membership = await self._upsert_membership(session, paid_order, plan, now)

                duration = paid_order.duration or 1
                grants = (
                    (QuotaType.DETECTION, plan.detection_quota),
                    (QuotaType.REWRITE, plan.rewrite_quota),
                )
                for quota_type, per_period in grants:
                    amount = (per_period or 0) * duration
                    if amount <= 0:
                        continue
                    await self.ledger.grant(
                        paid_order.user_id,
                        quota_type,
                        amount,
                        order_id=paid_order.id,
                        remark=f"订单{paid_order.order_no}充值",
                        expire_time=membership.expire_time,
                        session=session,
                    )

                await self._upsert_payment_record(
                    session, paid_order.id, callback, PaymentOutcome.SUCCESS, "支付成功", now
                )
        except OrderAlreadyPaid:
            # 并发回调已完成结算
            return await self._replay(order)

        result = ReconciliationResult(
            order_no=order.order_no,
            status=PaymentStatus.SUCCESS.value,
            success=True,
            trade_no=callback.trade_no if callback else None,
            message="支付成功",
        )
        await self.cache.set(order.order_no, result.to_dict())
        logger.info(
            f"支付结算完成: 订单={order.order_no}, 用户={order.user_id}, "
            f"套餐={order.plan_id}, 会员到期={membership.expire_time}"
        )
        return result

    async def _upsert_membership(
        self,
        session: AsyncSession,
        order: Order,
        plan: MemberPlan,
        now: datetime
    ) -> Membership:
        """开通或更新用户会员（每个用户最多一条生效中记录）"""
        expire_time = add_months(now, period_months(plan.period_type) * (order.duration or 1))

        result = await session.execute(
            select(Membership).where(
                Membership.user_id == order.user_id,
                Membership.status == MemberStatus.NORMAL.value,
            )
        )
        membership = result.scalar_one_or_none()

        if membership is None:
            membership = Membership(
                user_id=order.user_id,
                status=MemberStatus.NORMAL.value,
                created_at=now,
            )
            session.add(membership)

        membership.plan_id = plan.id
        membership.start_time = now
        membership.expire_time = expire_time
        membership.auto_renew = bool(order.auto_renew)
        membership.last_order_id = order.id
        membership.updated_at = now
        await session.flush()

        logger.info(
            f"会员已更新: 用户={order.user_id}, 套餐={plan.id}, 到期={expire_time.isoformat()}"
        )
        return membership

    async def _upsert_payment_record(
        self,
        session: AsyncSession,
        order_id: int,
        callback: Optional[PaymentCallback],
        outcome: PaymentOutcome,
        message: str,
        now: datetime
    ) -> PaymentRecord:
        result = await session.execute(select(PaymentRecord).where(PaymentRecord.order_id == order_id))
        record = result.scalar_one_or_none()
        if record is None:
            record = PaymentRecord(order_id=order_id, callback_count=0, created_at=now)
            session.add(record)

        if callback is not None:
            record.trade_no = callback.trade_no
            record.payload = json.dumps(callback.raw, ensure_ascii=False, default=str)
            record.callback_count = (record.callback_count or 0) + 1
        record.outcome = outcome.value
        record.message = message
        record.updated_at = now
        await session.flush()
        return record

    async def _record_failure(
        self,
        order: Order,
        callback: PaymentCallback,
        now: datetime
    ) -> ReconciliationResult:
        """记录支付失败，订单保持待支付以便重新支付"""
        async with self.database.transaction() as session:
            current = await self.orders.get_by_id(order.id, session)
            if current.status == OrderStatus.PAID.value:
                paid = True
            else:
                paid = False
                await self._upsert_payment_record(
                    session, order.id, callback, PaymentOutcome.FAILED, "支付失败", now
                )

        if paid:
            return await self._replay(order)

        result = ReconciliationResult(
            order_no=order.order_no,
            status=PaymentStatus.FAILED.value,
            success=False,
            trade_no=callback.trade_no,
            message="支付失败",
        )
        await self.cache.set(order.order_no, result.to_dict())
        logger.warning(f"支付失败: 订单={order.order_no}, 交易号={callback.trade_no}")
        return result

    async def _replay(self, order: Order) -> ReconciliationResult:
        """已支付订单: 返回之前的对账结果，不重复执行结算"""
        cached = await self.cache.get(order.order_no)
        if cached and cached.get('status') == PaymentStatus.SUCCESS.value:
            result = ReconciliationResult.from_dict(cached)
            result.already_processed = True
            logger.info(f"订单已支付，返回缓存的对账结果: {order.order_no}")
            return result

        async with self.database.session() as session:
            record_result = await session.execute(
                select(PaymentRecord).where(PaymentRecord.order_id == order.id)
            )
            record = record_result.scalar_one_or_none()

        result = ReconciliationResult(
            order_no=order.order_no,
            status=PaymentStatus.SUCCESS.value,
            success=True,
            trade_no=record.trade_no if record else None,
            message="支付成功",
        )
        await self.cache.set(order.order_no, result.to_dict())
        result.already_processed = True
        logger.info(f"订单已支付，忽略重复处理: {order.order_no}")
        return result

    # ------------------------------------------------------------------
    # 查询与管理
    # ------------------------------------------------------------------

    async def get_payment_status(self, order_no: str, user_id: Optional[str] = None) -> PaymentStatusResult:
        """查询支付状态，已成功的结果优先读缓存"""
        if user_id is None:
            cached = await self.cache.get(order_no)
            if cached and cached.get('status') == PaymentStatus.SUCCESS.value:
                return PaymentStatusResult(order_no=order_no, status=cached['status'], message=cached.get('message'))

        order = await self.orders.get_by_order_no(order_no)
        if user_id is not None and order.user_id != user_id:
            raise OrderNotFound(order_no)

        status = self.orders.effective_status(order, self._clock())
        if status == OrderStatus.PAID:
            return PaymentStatusResult(
                order_no=order_no,
                status=PaymentStatus.SUCCESS.value,
                message="支付成功",
                paid_at=order.paid_at.isoformat() if order.paid_at else None,
            )
        if status == OrderStatus.EXPIRED:
            return PaymentStatusResult(order_no=order_no, status=PaymentStatus.EXPIRED.value, message="订单已过期")
        if status == OrderStatus.CANCELLED:
            return PaymentStatusResult(order_no=order_no, status=PaymentStatus.CANCELLED.value, message="订单已取消")
        if status == OrderStatus.REFUNDED:
            return PaymentStatusResult(order_no=order_no, status=PaymentStatus.REFUNDED.value, message="订单已退款")

        async with self.database.session() as session:
            record_result = await session.execute(
                select(PaymentRecord).where(PaymentRecord.order_id == order.id)
            )
            record = record_result.scalar_one_or_none()
        if record is not None and record.outcome == PaymentOutcome.FAILED.value:
            return PaymentStatusResult(order_no=order_no, status=PaymentStatus.FAILED.value, message=record.message)

        return PaymentStatusResult(order_no=order_no, status=PaymentStatus.PENDING.value, message="等待支付")

    async def refund_order(self, order_no: str, reason: str = "管理员退款") -> Order:
        """订单退款并清除缓存的对账结果"""
        order = await self.orders.refund(order_no, reason)
        await self.cache.invalidate(order_no)
        return order
