"""
AIGC Billing Service - Redis客户端

用于支付对账结果缓存。实例在应用启动时创建并连接，关闭时释放；
缓存读写失败只记录日志，不影响主流程
"""

import json
from datetime import timedelta
from typing import Any, Dict, Optional, Union

import redis.asyncio as redis
from loguru import logger


class RedisClient:
    """Redis异步客户端封装"""

    def __init__(self, url: str, db: int = 0, password: Optional[str] = None, max_connections: int = 20):
        self.url = url
        self.db = db
        self.password = password or None
        self.max_connections = max_connections
        self.redis_pool = None
        self.redis_client = None

    @property
    def is_connected(self) -> bool:
        return self.redis_client is not None

    async def connect(self) -> bool:
        """连接到Redis，失败时缓存降级为不可用"""
        try:
            self.redis_pool = redis.ConnectionPool.from_url(
                self.url,
                password=self.password,
                db=self.db,
                encoding="utf-8",
                decode_responses=True,
                max_connections=self.max_connections
            )
            client = redis.Redis(connection_pool=self.redis_pool)
            await client.ping()
            self.redis_client = client
            logger.info("Redis连接成功")
            return True

        except Exception as e:
            logger.warning(f"Redis连接失败，缓存不可用: {e}")
            if self.redis_pool is not None:
                await self.redis_pool.aclose()
            self.redis_pool = None
            self.redis_client = None
            return False

    async def close(self):
        """关闭Redis连接"""
        try:
            if self.redis_client:
                await self.redis_client.aclose()
            if self.redis_pool:
                await self.redis_pool.aclose()
            logger.info("Redis连接已关闭")
        except Exception as e:
            logger.error(f"关闭Redis连接失败: {e}")
        finally:
            self.redis_client = None
            self.redis_pool = None

    async def set_json(
        self,
        key: str,
        value: Dict[str, Any],
        ttl: Optional[Union[int, timedelta]] = None
    ) -> bool:
        """设置JSON缓存"""
        if not self.is_connected:
            return False
        try:
            result = await self.redis_client.set(key, json.dumps(value, ensure_ascii=False), ex=ttl)
            return bool(result)
        except Exception as e:
            logger.warning(f"Redis设置失败 {key}: {e}")
            return False

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        """获取JSON缓存"""
        if not self.is_connected:
            return None
        try:
            value = await self.redis_client.get(key)
            if value is None:
                return None
            return json.loads(value)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Redis缓存内容无法解析 {key}: {e}")
            return None
        except Exception as e:
            logger.warning(f"Redis获取失败 {key}: {e}")
            return None

    async def delete(self, key: str) -> bool:
        """删除缓存"""
        if not self.is_connected:
            return False
        try:
            result = await self.redis_client.delete(key)
            return result > 0
        except Exception as e:
            logger.warning(f"Redis删除失败 {key}: {e}")
            return False

    async def health_check(self) -> Dict[str, Any]:
        """健康检查"""
        if not self.is_connected:
            return {"status": "unavailable"}
        try:
            await self.redis_client.ping()
            info = await self.redis_client.info()
            return {
                "status": "healthy",
                "connected_clients": info.get("connected_clients", 0),
                "used_memory": info.get("used_memory_human", "unknown"),
                "redis_version": info.get("redis_version", "unknown")
            }
        except Exception as e:
            return {
                "status": "unhealthy",
                "error": str(e)
            }
