"""
支付对账结果缓存

以 {prefix}{order_no} 为键缓存对账结果，供状态轮询和重复回调直接返回
"""

from typing import Any, Dict, Optional

from aigc_billing.redis_client import RedisClient


class PaymentResultCache:
    """对账结果缓存"""

    def __init__(self, redis_client: RedisClient, prefix: str = "payment:", ttl: int = 1800):
        self.redis_client = redis_client
        self.prefix = prefix
        self.ttl = ttl

    def key(self, order_no: str) -> str:
        return f"{self.prefix}{order_no}"

    async def get(self, order_no: str) -> Optional[Dict[str, Any]]:
        return await self.redis_client.get_json(self.key(order_no))

    async def set(self, order_no: str, result: Dict[str, Any]) -> bool:
        return await self.redis_client.set_json(self.key(order_no), result, ttl=self.ttl)

    async def invalidate(self, order_no: str) -> bool:
        return await self.redis_client.delete(self.key(order_no))
