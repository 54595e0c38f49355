"""
AIGC Billing Service - 数据库连接管理

异步引擎与会话工厂由 Database 实例持有，
在应用启动时创建、关闭时释放，不使用模块级全局连接
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from aigc_billing.core.exceptions import TransientError

# 创建基础模型
Base = declarative_base()


class Database:
    """数据库句柄 - 持有引擎和会话工厂"""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: AsyncEngine = None
        self.session_factory: async_sessionmaker = None

    async def init(self, create_tables: bool = True):
        """创建引擎并初始化表结构"""
        connect_args = {}
        if self.database_url.startswith("sqlite"):
            connect_args = {
                "check_same_thread": False,  # SQLite多线程支持
                "timeout": 20,               # 等待写锁20秒
            }

        self.engine = create_async_engine(
            self.database_url,
            echo=self.echo,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        if create_tables:
            # 导入所有模型以确保表被创建
            from aigc_billing import models  # noqa: F401

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        logger.info("数据库初始化成功")

    async def close(self):
        """关闭数据库连接"""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            logger.info("数据库连接已关闭")

    def session(self) -> AsyncSession:
        """创建新会话（调用方负责关闭）"""
        if self.session_factory is None:
            raise RuntimeError("数据库尚未初始化")
        return self.session_factory()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        事务上下文 - 正常退出提交，异常回滚

        存储层错误统一转换为 TransientError，调用方可重试
        """
        session = self.session()
        try:
            async with session.begin():
                yield session
        except OperationalError as e:
            logger.error(f"数据库暂不可用: {e}")
            raise TransientError("数据库暂不可用，请稍后重试") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                logger.error(f"数据库连接失效: {e}")
                raise TransientError("数据库连接失效，请稍后重试") from e
            raise
        finally:
            await session.close()

    async def check_connection(self) -> bool:
        """检查数据库连接"""
        try:
            async with self.session() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            logger.error(f"数据库连接检查失败: {e}")
            return False

