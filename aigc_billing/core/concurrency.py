"""
并发控制工具 - 按键互斥锁与乐观锁冲突重试
"""

import asyncio
import random
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, TypeVar

from loguru import logger

from aigc_billing.core.exceptions import ConflictError, TransientError

T = TypeVar('T')


@dataclass
class RetryConfig:
    """重试配置"""
    max_attempts: int = 3
    base_delay: float = 0.02        # 基础延迟（秒）
    max_delay: float = 0.5          # 最大延迟
    backoff_factor: float = 2.0     # 退避因子
    jitter: bool = True             # 是否加入随机抖动

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次失败后的等待时间（attempt 从1开始）"""
        delay = min(self.base_delay * (self.backoff_factor ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random() / 2)
        return delay


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    description: str = "operation"
) -> T:
    """
    执行乐观锁操作，ConflictError 时退避重试

    超出重试次数后抛出 TransientError
    """
    last_error: ConflictError = None
    for attempt in range(1, config.max_attempts + 1):
        try:
            return await operation()
        except ConflictError as e:
            last_error = e
            if attempt >= config.max_attempts:
                break
            delay = config.delay_for(attempt)
            logger.debug(f"{description} 并发冲突，第{attempt}次重试，等待{delay:.3f}s")
            await asyncio.sleep(delay)

    logger.warning(f"{description} 并发冲突重试{config.max_attempts}次后仍失败")
    raise TransientError(
        f"{description} 并发冲突，请稍后重试",
        details={'attempts': config.max_attempts}
    ) from last_error


class KeyedLock:
    """按键的进程内互斥锁，键无人持有时自动回收"""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def active_keys(self) -> Dict[Hashable, Any]:
        """当前持有或等待中的键"""
        return dict(self._waiters)
