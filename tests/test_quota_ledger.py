"""
额度账本测试
消耗上限、并发扣减、首次充值建行、按订单幂等、过期作废、流水重建
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select, update

from aigc_billing.core.exceptions import (
    ConflictError,
    InsufficientQuota,
    QuotaExpired,
    QuotaNotFound,
    TransientError,
)
from aigc_billing.core.concurrency import RetryConfig
from aigc_billing.models.quota import QuotaChangeType, QuotaRecord, QuotaType, UserQuota
from aigc_billing.services.quota_ledger import QuotaLedger

USER = "user-1"


async def count_records(database, change_type=None, user_id=USER):
    query = select(func.count(QuotaRecord.id)).where(QuotaRecord.user_id == user_id)
    if change_type is not None:
        query = query.where(QuotaRecord.change_type == change_type.value)
    async with database.session() as session:
        return (await session.execute(query)).scalar()


class TestConsume:
    """额度消耗"""

    @pytest.mark.asyncio
    async def test_consume_without_row_fails(self, services):
        with pytest.raises(QuotaNotFound):
            await services.ledger.consume(USER, QuotaType.DETECTION, 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "total, used, amount",
        [(10, 0, 1), (10, 0, 10), (10, 4, 6), (100, 99, 1), (5, 2, 2)],
    )
    async def test_consume_within_balance(self, services, database, total, used, amount):
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.DETECTION, total)
        if used:
            await ledger.consume(USER, QuotaType.DETECTION, used)

        result = await ledger.consume(USER, QuotaType.DETECTION, amount, remark="检测")

        assert result.success is True
        assert result.remaining == total - used - amount
        quota = await ledger.get_quota(USER, QuotaType.DETECTION)
        assert quota.used_quota == used + amount
        assert quota.total_quota == total

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "total, used, amount",
        [(10, 0, 11), (10, 10, 1), (10, 4, 7), (1, 0, 2)],
    )
    async def test_consume_over_balance_leaves_state_unchanged(self, services, database, total, used, amount):
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.REWRITE, total)
        if used:
            await ledger.consume(USER, QuotaType.REWRITE, used)
        records_before = await count_records(database)

        with pytest.raises(InsufficientQuota) as exc_info:
            await ledger.consume(USER, QuotaType.REWRITE, amount)

        assert exc_info.value.kind == "insufficient_resource"
        assert exc_info.value.remaining == total - used
        quota = await ledger.get_quota(USER, QuotaType.REWRITE)
        assert quota.used_quota == used
        assert quota.total_quota == total
        assert await count_records(database) == records_before

    @pytest.mark.asyncio
    async def test_consume_record_tracks_used_quota(self, services):
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.DETECTION, 10)
        await ledger.consume(USER, QuotaType.DETECTION, 3, remark="文本检测")

        records = await ledger.list_records(USER, QuotaType.DETECTION)
        consume = records[0]
        assert consume.change_type == QuotaChangeType.CONSUME.value
        assert consume.change_amount == 3
        assert consume.before_amount == 0
        assert consume.after_amount == 3
        assert consume.remark == "文本检测"

    @pytest.mark.asyncio
    async def test_consume_expired_quota_fails(self, services, clock):
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.DETECTION, 10, expire_time=clock() + timedelta(days=1))
        clock.advance(days=2)

        with pytest.raises(QuotaExpired):
            await ledger.consume(USER, QuotaType.DETECTION, 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -1])
    async def test_consume_rejects_non_positive_amount(self, services, amount):
        with pytest.raises(ValueError):
            await services.ledger.consume(USER, QuotaType.DETECTION, amount)


class TestConcurrentConsume:
    """并发扣减不丢失更新"""

    @pytest.mark.asyncio
    async def test_n_concurrent_consumes_exhaust_quota_exactly(self, services, database):
        n = 20
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.DETECTION, n)

        results = await asyncio.gather(
            *(ledger.consume(USER, QuotaType.DETECTION, 1) for _ in range(n))
        )

        assert all(result.success for result in results)
        assert sorted(result.remaining for result in results) == list(range(n))
        quota = await ledger.get_quota(USER, QuotaType.DETECTION)
        assert quota.used_quota == n
        assert quota.remaining == 0
        assert await count_records(database, QuotaChangeType.CONSUME) == n

        with pytest.raises(InsufficientQuota):
            await ledger.consume(USER, QuotaType.DETECTION, 1)

    @pytest.mark.asyncio
    async def test_oversubscribed_consumes_never_exceed_total(self, services, database):
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.REWRITE, 5)

        results = await asyncio.gather(
            *(ledger.consume(USER, QuotaType.REWRITE, 1) for _ in range(10)),
            return_exceptions=True
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 5
        assert len(failed) == 5
        assert all(isinstance(e, InsufficientQuota) for e in failed)
        quota = await ledger.get_quota(USER, QuotaType.REWRITE)
        assert quota.used_quota == 5
        assert await count_records(database, QuotaChangeType.CONSUME) == 5

    @pytest.mark.asyncio
    async def test_lost_cas_surfaces_transient_after_retries(self, services):
        ledger = services.ledger
        failing = AsyncMock(side_effect=ConflictError("额度版本冲突"))

        with patch.object(ledger, "_consume_once", failing):
            with pytest.raises(TransientError) as exc_info:
                await ledger.consume(USER, QuotaType.DETECTION, 1)

        assert failing.await_count == ledger.retry_config.max_attempts
        assert isinstance(exc_info.value.__cause__, ConflictError)
        assert exc_info.value.details == {'attempts': ledger.retry_config.max_attempts}

    @pytest.mark.asyncio
    async def test_conflict_then_success_is_retried(self, services):
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.DETECTION, 3)
        original = ledger._consume_once
        calls = []

        async def flaky(*args):
            calls.append(args)
            if len(calls) == 1:
                raise ConflictError("额度版本冲突")
            return await original(*args)

        with patch.object(ledger, "_consume_once", side_effect=flaky):
            result = await ledger.consume(USER, QuotaType.DETECTION, 2)

        assert len(calls) == 2
        assert result.remaining == 1

    @pytest.mark.asyncio
    async def test_two_ledgers_on_one_database_never_lose_updates(self, database, clock):
        """两个账本实例（模拟多个进程）各自持锁，只靠版本号互斥"""
        retry_config = RetryConfig(max_attempts=5, base_delay=0.001)
        first = QuotaLedger(database, retry_config, clock=clock)
        second = QuotaLedger(database, retry_config, clock=clock)
        await first.grant(USER, QuotaType.DETECTION, 30)

        results = await asyncio.gather(
            *(ledger.consume(USER, QuotaType.DETECTION, 1) for _ in range(20) for ledger in (first, second)),
            return_exceptions=True
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert all(isinstance(e, (TransientError, InsufficientQuota)) for e in failed)
        assert 0 < len(succeeded) <= 30

        quota = await first.get_quota(USER, QuotaType.DETECTION)
        assert quota.used_quota == len(succeeded)
        assert quota.used_quota <= quota.total_quota
        assert await count_records(database, QuotaChangeType.CONSUME) == quota.used_quota


class TestGrantAndRefund:
    """充值与退还"""

    @pytest.mark.asyncio
    async def test_first_grant_creates_row(self, services):
        ledger = services.ledger
        change = await ledger.grant(USER, QuotaType.DETECTION, 50, remark="赠送")

        assert change.applied is True
        assert (change.before_amount, change.after_amount) == (0, 50)
        quota = await ledger.get_quota(USER, QuotaType.DETECTION)
        assert quota.total_quota == 50
        assert quota.used_quota == 0
        assert quota.expire_time is None

    @pytest.mark.asyncio
    async def test_grant_is_idempotent_per_order(self, services, database):
        ledger = services.ledger
        first = await ledger.grant(USER, QuotaType.REWRITE, 20, order_id=7)
        second = await ledger.grant(USER, QuotaType.REWRITE, 20, order_id=7)

        assert first.applied is True
        assert second.applied is False
        assert second.after_amount == first.after_amount
        quota = await ledger.get_quota(USER, QuotaType.REWRITE)
        assert quota.total_quota == 20
        assert await count_records(database, QuotaChangeType.RECHARGE) == 1

    @pytest.mark.asyncio
    async def test_refund_increases_total(self, services):
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.DETECTION, 10)
        await ledger.consume(USER, QuotaType.DETECTION, 4)

        change = await ledger.refund(USER, QuotaType.DETECTION, 2, remark="检测失败退还")

        assert change.change_type == QuotaChangeType.REFUND.value
        assert (change.before_amount, change.after_amount) == (10, 12)
        quota = await ledger.get_quota(USER, QuotaType.DETECTION)
        assert quota.total_quota == 12
        assert quota.used_quota == 4
        assert quota.remaining == 8

    @pytest.mark.asyncio
    async def test_grant_keeps_latest_expire_time(self, services, clock):
        ledger = services.ledger
        later = clock() + timedelta(days=60)
        earlier = clock() + timedelta(days=30)

        await ledger.grant(USER, QuotaType.DETECTION, 10, expire_time=earlier)
        await ledger.grant(USER, QuotaType.DETECTION, 10, expire_time=later)
        await ledger.grant(USER, QuotaType.DETECTION, 10, expire_time=earlier)

        quota = await ledger.get_quota(USER, QuotaType.DETECTION)
        assert quota.expire_time == later
        assert quota.total_quota == 30


class TestExpire:
    """过期作废"""

    @pytest.mark.asyncio
    async def test_expire_clamps_to_remaining(self, services, database):
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.DETECTION, 10)
        await ledger.consume(USER, QuotaType.DETECTION, 7)

        change = await ledger.expire(USER, QuotaType.DETECTION, 5)

        assert change.amount == 3
        assert (change.before_amount, change.after_amount) == (7, 10)
        quota = await ledger.get_quota(USER, QuotaType.DETECTION)
        assert quota.used_quota == 10
        assert quota.remaining == 0

        again = await ledger.expire(USER, QuotaType.DETECTION, 5)
        assert again.applied is False
        assert await count_records(database, QuotaChangeType.EXPIRE) == 1

    @pytest.mark.asyncio
    async def test_expire_without_row_fails(self, services):
        with pytest.raises(QuotaNotFound):
            await services.ledger.expire(USER, QuotaType.REWRITE, 1)


class TestQueriesAndRebuild:
    """查询与流水重建"""

    @pytest.mark.asyncio
    async def test_quota_status_for_new_user_is_zero(self, services):
        status = await services.ledger.get_quota_status("nobody")

        assert set(status) == {"detection", "rewrite"}
        assert status["detection"] == {
            'total': 0, 'used': 0, 'remaining': 0, 'expire_time': None, 'expired': False
        }

    @pytest.mark.asyncio
    async def test_quota_status_reports_balances(self, services, clock):
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.REWRITE, 8, expire_time=clock() + timedelta(days=1))
        await ledger.consume(USER, QuotaType.REWRITE, 3)

        status = await ledger.get_quota_status(USER)

        assert status["rewrite"]["total"] == 8
        assert status["rewrite"]["used"] == 3
        assert status["rewrite"]["remaining"] == 5
        assert status["rewrite"]["expired"] is False
        assert status["detection"]["total"] == 0

    @pytest.mark.asyncio
    async def test_list_records_newest_first(self, services):
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.DETECTION, 10)
        await ledger.consume(USER, QuotaType.DETECTION, 1)
        await ledger.grant(USER, QuotaType.REWRITE, 5)

        records = await ledger.list_records(USER)
        assert [r.change_type for r in records] == ["recharge", "consume", "recharge"]

        detection = await ledger.list_records(USER, QuotaType.DETECTION, limit=1)
        assert len(detection) == 1
        assert detection[0].change_type == "consume"

    @pytest.mark.asyncio
    async def test_rebuild_matches_ledger(self, services):
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.DETECTION, 10)
        await ledger.consume(USER, QuotaType.DETECTION, 4)
        await ledger.refund(USER, QuotaType.DETECTION, 1)
        await ledger.expire(USER, QuotaType.DETECTION, 2)

        audit = await ledger.rebuild_from_ledger(USER, QuotaType.DETECTION)

        assert audit.expected_total == 11
        assert audit.expected_used == 6
        assert audit.drifted is False
        assert audit.repaired is False

    @pytest.mark.asyncio
    async def test_rebuild_repairs_drift(self, services, database):
        ledger = services.ledger
        await ledger.grant(USER, QuotaType.REWRITE, 10)
        await ledger.consume(USER, QuotaType.REWRITE, 3)

        async with database.transaction() as session:
            await session.execute(
                update(UserQuota)
                .where(UserQuota.user_id == USER, UserQuota.quota_type == QuotaType.REWRITE.value)
                .values(used_quota=9)
            )

        report = await ledger.rebuild_from_ledger(USER, QuotaType.REWRITE)
        assert report.drifted is True
        assert report.repaired is False
        assert (await ledger.get_quota(USER, QuotaType.REWRITE)).used_quota == 9

        repaired = await ledger.rebuild_from_ledger(USER, QuotaType.REWRITE, repair=True)
        assert repaired.repaired is True
        quota = await ledger.get_quota(USER, QuotaType.REWRITE)
        assert (quota.total_quota, quota.used_quota) == (10, 3)
