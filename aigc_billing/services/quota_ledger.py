"""
额度账本服务

按 (user_id, quota_type) 维护额度余额，每次余额变更都在同一事务内写入一条额度流水，
余额可以完全由流水重建。

并发控制:
- consume / expire: 进程内按键互斥 + version 乐观锁，冲突时退避重试
- grant / refund: 相对增量 UPDATE，可直接加入调用方事务（支付对账）
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from aigc_billing.core.concurrency import KeyedLock, RetryConfig, retry_on_conflict
from aigc_billing.core.exceptions import (
    ConflictError,
    InsufficientQuota,
    QuotaExpired,
    QuotaNotFound,
)
from aigc_billing.database import Database
from aigc_billing.models.quota import QuotaChangeType, QuotaRecord, QuotaType, UserQuota


@dataclass
class ConsumeResult:
    """额度消耗结果"""
    success: bool
    remaining: int


@dataclass
class QuotaChange:
    """一次余额变更（充值/退还/过期）"""
    user_id: str
    quota_type: str
    change_type: str
    amount: int
    before_amount: int
    after_amount: int
    applied: bool = True       # False 表示按订单幂等键跳过


@dataclass
class LedgerAudit:
    """流水重建对账结果"""
    user_id: str
    quota_type: str
    expected_total: int
    expected_used: int
    actual_total: Optional[int]
    actual_used: Optional[int]
    repaired: bool = False

    @property
    def drifted(self) -> bool:
        return (self.actual_total, self.actual_used) != (self.expected_total, self.expected_used)


class QuotaLedger:
    """用户额度账本"""

    def __init__(
        self,
        database: Database,
        retry_config: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.database = database
        self.retry_config = retry_config or RetryConfig()
        self._clock = clock
        self._locks = KeyedLock()

    @staticmethod
    def _check_amount(amount: int):
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValueError(f"额度变更数量必须为正整数: {amount}")

    @staticmethod
    async def _load(session: AsyncSession, user_id: str, quota_type: QuotaType) -> Optional[UserQuota]:
        result = await session.execute(
            select(UserQuota)
            .where(UserQuota.user_id == user_id, UserQuota.quota_type == quota_type.value)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _ensure_row(self, session: AsyncSession, user_id: str, quota_type: QuotaType):
        """首次触达时创建 total=0/used=0 的额度行，已存在则不做任何修改"""
        values = {
            'user_id': user_id,
            'quota_type': quota_type.value,
            'total_quota': 0,
            'used_quota': 0,
            'version': 0,
            'created_at': self._clock(),
        }
        dialect = self.database.engine.dialect.name

        if dialect in ("sqlite", "postgresql"):
            insert = sqlite_insert if dialect == "sqlite" else pg_insert
            stmt = insert(UserQuota).values(**values).on_conflict_do_nothing(
                index_elements=["user_id", "quota_type"]
            )
            await session.execute(stmt)
            return

        if await self._load(session, user_id, quota_type) is not None:
            return
        try:
            async with session.begin_nested():
                session.add(UserQuota(**values))
        except IntegrityError:
            # 并发首次创建，另一方已插入
            logger.debug(f"额度行已由并发请求创建: {user_id}/{quota_type.value}")

    # ------------------------------------------------------------------
    # 消耗
    # ------------------------------------------------------------------

    async def consume(
        self,
        user_id: str,
        quota_type: QuotaType,
        amount: int,
        remark: Optional[str] = None
    ) -> ConsumeResult:
        """
        消耗额度

        先校验再扣减: 额度不存在、已过期或余额不足时不做任何修改
        """
        self._check_amount(amount)
        quota_type = QuotaType(quota_type)

        async with self._locks.hold((user_id, quota_type.value)):
            return await retry_on_conflict(
                lambda: self._consume_once(user_id, quota_type, amount, remark),
                self.retry_config,
                f"额度消耗 {user_id}/{quota_type.value}"
            )

    async def _consume_once(
        self,
        user_id: str,
        quota_type: QuotaType,
        amount: int,
        remark: Optional[str]
    ) -> ConsumeResult:
        now = self._clock()
        async with self.database.transaction() as session:
            quota = await self._load(session, user_id, quota_type)
            if quota is None:
                raise QuotaNotFound(user_id, quota_type)
            if quota.expire_time is not None and quota.expire_time < now:
                raise QuotaExpired(user_id, quota_type)

            before = quota.used_quota
            after = before + amount
            if after > quota.total_quota:
                raise InsufficientQuota(user_id, quota_type, amount, quota.remaining)

            result = await session.execute(
                update(UserQuota)
                .where(
                    UserQuota.id == quota.id,
                    UserQuota.version == quota.version,
                    UserQuota.used_quota + amount <= UserQuota.total_quota,
                )
                .values(used_quota=after, version=UserQuota.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(f"额度版本冲突: {user_id}/{quota_type.value}")

            session.add(QuotaRecord(
                user_id=user_id,
                quota_type=quota_type.value,
                change_type=QuotaChangeType.CONSUME.value,
                change_amount=amount,
                before_amount=before,
                after_amount=after,
                remark=remark,
                created_at=now,
            ))
            remaining = quota.total_quota - after

        logger.info(f"额度消耗: user={user_id}, type={quota_type.value}, amount={amount}, 剩余={remaining}")
        return ConsumeResult(success=True, remaining=remaining)

    # ------------------------------------------------------------------
    # 充值 / 退还
    # ------------------------------------------------------------------

    async def grant(
        self,
        user_id: str,
        quota_type: QuotaType,
        amount: int,
        order_id: Optional[int] = None,
        remark: Optional[str] = None,
        expire_time: Optional[datetime] = None,
        session: Optional[AsyncSession] = None
    ) -> QuotaChange:
        """充值额度（增加 total_quota）；传入 session 时加入调用方事务"""
        return await self._increase_total(
            QuotaChangeType.RECHARGE, user_id, quota_type, amount,
            order_id, remark, expire_time, session
        )

    async def refund(
        self,
        user_id: str,
        quota_type: QuotaType,
        amount: int,
        order_id: Optional[int] = None,
        remark: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> QuotaChange:
        """退还额度（增加 total_quota）"""
        return await self._increase_total(
            QuotaChangeType.REFUND, user_id, quota_type, amount,
            order_id, remark, None, session
        )

    async def _increase_total(
        self,
        change_type: QuotaChangeType,
        user_id: str,
        quota_type: QuotaType,
        amount: int,
        order_id: Optional[int],
        remark: Optional[str],
        expire_time: Optional[datetime],
        session: Optional[AsyncSession]
    ) -> QuotaChange:
        self._check_amount(amount)
        quota_type = QuotaType(quota_type)

        if session is None:
            async with self.database.transaction() as own_session:
                return await self._apply_increase(
                    own_session, change_type, user_id, quota_type, amount, order_id, remark, expire_time
                )
        return await self._apply_increase(
            session, change_type, user_id, quota_type, amount, order_id, remark, expire_time
        )

    async def _apply_increase(
        self,
        session: AsyncSession,
        change_type: QuotaChangeType,
        user_id: str,
        quota_type: QuotaType,
        amount: int,
        order_id: Optional[int],
        remark: Optional[str],
        expire_time: Optional[datetime]
    ) -> QuotaChange:
        if order_id is not None:
            # 同一订单同一类型只入账一次
            existing = await session.execute(
                select(QuotaRecord).where(
                    QuotaRecord.user_id == user_id,
                    QuotaRecord.quota_type == quota_type.value,
                    QuotaRecord.change_type == change_type.value,
                    QuotaRecord.order_id == order_id,
                ).limit(1)
            )
            record = existing.scalar_one_or_none()
            if record is not None:
                logger.info(
                    f"额度已按订单入账，跳过: user={user_id}, type={quota_type.value}, order={order_id}"
                )
                return QuotaChange(
                    user_id=user_id,
                    quota_type=quota_type.value,
                    change_type=change_type.value,
                    amount=record.change_amount,
                    before_amount=record.before_amount,
                    after_amount=record.after_amount,
                    applied=False,
                )

        await self._ensure_row(session, user_id, quota_type)

        values: Dict[str, Any] = {
            'total_quota': UserQuota.total_quota + amount,
            'version': UserQuota.version + 1,
        }
        if expire_time is not None:
            values['expire_time'] = case(
                (UserQuota.expire_time.is_(None), expire_time),
                (UserQuota.expire_time < expire_time, expire_time),
                else_=UserQuota.expire_time,
            )

        await session.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id, UserQuota.quota_type == quota_type.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        quota = await self._load(session, user_id, quota_type)
        after = quota.total_quota
        before = after - amount

        session.add(QuotaRecord(
            user_id=user_id,
            quota_type=quota_type.value,
            change_type=change_type.value,
            change_amount=amount,
            before_amount=before,
            after_amount=after,
            order_id=order_id,
            remark=remark,
            created_at=self._clock(),
        ))
        await session.flush()

        logger.info(
            f"额度{'充值' if change_type == QuotaChangeType.RECHARGE else '退还'}: "
            f"user={user_id}, type={quota_type.value}, amount={amount}, total {before} -> {after}"
        )
        return QuotaChange(
            user_id=user_id,
            quota_type=quota_type.value,
            change_type=change_type.value,
            amount=amount,
            before_amount=before,
            after_amount=after,
        )

    # ------------------------------------------------------------------
    # 过期
    # ------------------------------------------------------------------

    async def expire(
        self,
        user_id: str,
        quota_type: QuotaType,
        amount: int,
        remark: Optional[str] = None
    ) -> QuotaChange:
        """将未使用的额度标记为已用（过期作废），最多作废剩余部分"""
        self._check_amount(amount)
        quota_type = QuotaType(quota_type)

        async with self._locks.hold((user_id, quota_type.value)):
            return await retry_on_conflict(
                lambda: self._expire_once(user_id, quota_type, amount, remark),
                self.retry_config,
                f"额度过期 {user_id}/{quota_type.value}"
            )

    async def _expire_once(
        self,
        user_id: str,
        quota_type: QuotaType,
        amount: int,
        remark: Optional[str]
    ) -> QuotaChange:
        async with self.database.transaction() as session:
            quota = await self._load(session, user_id, quota_type)
            if quota is None:
                raise QuotaNotFound(user_id, quota_type)

            before = quota.used_quota
            lapsed = min(amount, quota.remaining)
            if lapsed <= 0:
                return QuotaChange(
                    user_id=user_id,
                    quota_type=quota_type.value,
                    change_type=QuotaChangeType.EXPIRE.value,
                    amount=0,
                    before_amount=before,
                    after_amount=before,
                    applied=False,
                )

            after = before + lapsed
            result = await session.execute(
                update(UserQuota)
                .where(UserQuota.id == quota.id, UserQuota.version == quota.version)
                .values(used_quota=after, version=UserQuota.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(f"额度版本冲突: {user_id}/{quota_type.value}")

            session.add(QuotaRecord(
                user_id=user_id,
                quota_type=quota_type.value,
                change_type=QuotaChangeType.EXPIRE.value,
                change_amount=lapsed,
                before_amount=before,
                after_amount=after,
                remark=remark,
                created_at=self._clock(),
            ))

        logger.info(f"额度过期: user={user_id}, type={quota_type.value}, amount={lapsed}")
        return QuotaChange(
            user_id=user_id,
            quota_type=quota_type.value,
            change_type=QuotaChangeType.EXPIRE.value,
            amount=lapsed,
            before_amount=before,
            after_amount=after,
        )

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def get_quota(self, user_id: str, quota_type: QuotaType) -> Optional[UserQuota]:
        async with self.database.session() as session:
            return await self._load(session, user_id, QuotaType(quota_type))

    async def get_quota_status(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        """获取用户各类额度概况，没有额度行时返回0"""
        now = self._clock()
        async with self.database.session() as session:
            result = await session.execute(select(UserQuota).where(UserQuota.user_id == user_id))
            rows = {row.quota_type: row for row in result.scalars().all()}

        status = {}
        for quota_type in QuotaType:
            row = rows.get(quota_type.value)
            if row is None:
                status[quota_type.value] = {
                    'total': 0,
                    'used': 0,
                    'remaining': 0,
                    'expire_time': None,
                    'expired': False,
                }
                continue
            status[quota_type.value] = {
                'total': row.total_quota,
                'used': row.used_quota,
                'remaining': row.remaining,
                'expire_time': row.expire_time.isoformat() if row.expire_time else None,
                'expired': row.expire_time is not None and row.expire_time < now,
            }
        return status

    async def list_records(
        self,
        user_id: str,
        quota_type: Optional[QuotaType] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[QuotaRecord]:
        """额度流水，按时间倒序"""
        query = select(QuotaRecord).where(QuotaRecord.user_id == user_id)
        if quota_type is not None:
            query = query.where(QuotaRecord.quota_type == QuotaType(quota_type).value)
        query = query.order_by(QuotaRecord.id.desc()).limit(limit).offset(offset)

        async with self.database.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # 流水重建
    # ------------------------------------------------------------------

    async def rebuild_from_ledger(
        self,
        user_id: str,
        quota_type: QuotaType,
        repair: bool = False
    ) -> LedgerAudit:
        """
        用额度流水重新计算余额

        total = 充值 + 退还, used = 消耗 + 过期。
        repair=True 时把余额行修正为流水计算结果
        """
        quota_type = QuotaType(quota_type)

        async with self._locks.hold((user_id, quota_type.value)):
            async with self.database.transaction() as session:
                result = await session.execute(
                    select(QuotaRecord.change_type, func.sum(QuotaRecord.change_amount))
                    .where(QuotaRecord.user_id == user_id, QuotaRecord.quota_type == quota_type.value)
                    .group_by(QuotaRecord.change_type)
                )
                sums = {change_type: int(total or 0) for change_type, total in result.all()}

                expected_total = (
                    sums.get(QuotaChangeType.RECHARGE.value, 0) + sums.get(QuotaChangeType.REFUND.value, 0)
                )
                expected_used = (
                    sums.get(QuotaChangeType.CONSUME.value, 0) + sums.get(QuotaChangeType.EXPIRE.value, 0)
                )

                quota = await self._load(session, user_id, quota_type)
                audit = LedgerAudit(
                    user_id=user_id,
                    quota_type=quota_type.value,
                    expected_total=expected_total,
                    expected_used=expected_used,
                    actual_total=quota.total_quota if quota else None,
                    actual_used=quota.used_quota if quota else None,
                )

                if quota is None and not sums:
                    # 没有余额也没有流水
                    audit.actual_total = 0
                    audit.actual_used = 0
                    return audit

                if not audit.drifted:
                    return audit

                logger.warning(
                    f"额度余额与流水不一致: user={user_id}, type={quota_type.value}, "
                    f"余额=({audit.actual_total}, {audit.actual_used}), "
                    f"流水=({expected_total}, {expected_used})"
                )
                if not repair:
                    return audit

                await self._ensure_row(session, user_id, quota_type)
                await session.execute(
                    update(UserQuota)
                    .where(UserQuota.user_id == user_id, UserQuota.quota_type == quota_type.value)
                    .values(
                        total_quota=expected_total,
                        used_quota=expected_used,
                        version=UserQuota.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                audit.repaired = True

        logger.info(f"额度余额已按流水修复: user={user_id}, type={quota_type.value}")
        return audit
