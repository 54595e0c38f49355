"""
AIGC Billing Service - 主应用入口

集成功能:
- 会员订阅与升级
- 检测/降重额度账本
- 支付回调对账
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from aigc_billing import __version__
from aigc_billing.api.v1 import api_router
from aigc_billing.config import Settings, get_settings, validate_settings
from aigc_billing.core.exceptions import BillingException
from aigc_billing.core.logging_config import setup_logger
from aigc_billing.core.service_result import ErrorDetail
from aigc_billing.database import Database
from aigc_billing.redis_client import RedisClient
from aigc_billing.schemas.response import ErrorResponse
from aigc_billing.services.container import BillingServices, build_services

# 错误类型 -> HTTP状态码
ERROR_STATUS_CODES = {
    "not_found": 404,
    "invalid_state": 409,
    "insufficient_resource": 402,
    "authenticity_failure": 400,
    "conflict": 409,
    "transient": 503,
}


def create_app(settings: Optional[Settings] = None, services: Optional[BillingServices] = None) -> FastAPI:
    """创建应用；传入 services 时直接使用，不在启动时重新装配"""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        if getattr(app.state, "services", None) is not None:
            yield
            return

        # 启动
        setup_logger(settings)
        validate_settings(settings)

        database = Database(settings.database_url, echo=settings.debug)
        await database.init()
        redis_client = RedisClient(settings.redis_url, db=settings.redis_db, password=settings.redis_password)
        await redis_client.connect()
        app.state.services = build_services(settings, database, redis_client)

        logger.info(f"{settings.app_name} 启动成功, 环境: {settings.environment}, {settings.host}:{settings.port}")

        yield

        await database.close()
        await redis_client.close()
        app.state.services = None
        logger.info(f"{settings.app_name} 已关闭")

    app = FastAPI(
        title=settings.app_name,
        description="会员订阅、额度账本与支付对账服务",
        version=__version__,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.services = services

    # CORS中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 请求时间中间件
    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Process-Time"] = str(time.time() - start_time)
        return response

    @app.exception_handler(BillingException)
    async def billing_exception_handler(request: Request, exc: BillingException):
        detail = ErrorDetail.from_exception(exc, {'path': request.url.path})
        status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
        if status_code >= 500:
            logger.error(f"请求失败 {request.url.path}: {exc.message}")
        else:
            logger.info(f"请求被拒绝 {request.url.path}: [{detail.code.name}] {exc.message}")

        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=detail.code.name,
                kind=detail.kind,
                message=detail.message,
                code=detail.code.value,
                details=detail.context,
            ).model_dump()
        )

    # 全局异常处理
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"未处理的异常 {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "内部服务器错误",
                "error": str(exc) if settings.debug else "服务器错误",
                "path": request.url.path
            }
        )

    # 注册路由
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check(request: Request):
        current = request.app.state.services
        database_ok = await current.database.check_connection() if current else False
        return {
            "status": "healthy" if database_ok else "degraded",
            "database": database_ok,
            "timestamp": time.time(),
            "environment": settings.environment
        }

    return app


def run():
    settings = get_settings()
    uvicorn.run(
        "aigc_billing.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )


if __name__ == "__main__":
    run()
