"""
订单API端点
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from aigc_billing.api.deps import get_current_user_id, get_services
from aigc_billing.models.order import Order, OrderStatus
from aigc_billing.schemas.payment import CancelOrderRequest, OrderInfo
from aigc_billing.schemas.response import PaginatedResponse, SuccessResponse
from aigc_billing.services.container import BillingServices

router = APIRouter(prefix="/orders", tags=["订单管理"])


def _order_info(services: BillingServices, order: Order) -> OrderInfo:
    info = OrderInfo.model_validate(order)
    info.status = services.orders.effective_status(order).value
    return info


@router.get("", response_model=PaginatedResponse[List[OrderInfo]], summary="获取订单列表")
async def list_orders(
    status: Optional[OrderStatus] = Query(None, description="订单状态"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services)
):
    orders = await services.orders.list_user_orders(user_id, status=status, limit=limit, offset=offset)
    return PaginatedResponse(
        data=[_order_info(services, order) for order in orders],
        pagination={'limit': limit, 'offset': offset, 'count': len(orders)}
    )


@router.post("/{order_no}/cancel", response_model=SuccessResponse[OrderInfo], summary="取消订单")
async def cancel_order(
    order_no: str,
    request: Optional[CancelOrderRequest] = None,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services)
):
    reason = request.reason if request else "用户取消"
    order = await services.orders.cancel(order_no, reason, user_id=user_id)
    await services.payment_cache.invalidate(order_no)
    return SuccessResponse(data=_order_info(services, order), message="订单已取消")
