"""
AIGC Billing Service - API v1
"""

from fastapi import APIRouter

from .member import router as member_router
from .orders import router as orders_router
from .payments import router as payments_router

# 创建API路由器
api_router = APIRouter()

# 注册子路由
api_router.include_router(member_router)
api_router.include_router(orders_router)
api_router.include_router(payments_router)
