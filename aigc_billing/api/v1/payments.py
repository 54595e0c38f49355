"""
支付API端点
网关异步通知、手动完成支付、支付状态查询、刷新支付链接
"""

import json
from typing import Any, Dict
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request, status

from aigc_billing.api.deps import get_current_user_id, get_services, require_manual_complete
from aigc_billing.schemas.payment import (
    CompletePaymentRequest,
    OrderPaymentInfo,
    PaymentStatusInfo,
    ReconciliationInfo,
)
from aigc_billing.schemas.response import SuccessResponse
from aigc_billing.services.container import BillingServices

router = APIRouter(prefix="/payments", tags=["支付"])


async def _read_callback_payload(request: Request) -> Dict[str, Any]:
    """解析网关回调参数（JSON 或表单），保留网关发送的全部字段"""
    body = await request.body()
    content_type = request.headers.get("content-type", "")

    if "application/json" in content_type:
        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="回调数据格式错误")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="回调数据格式错误")
    else:
        payload = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))

    if not payload:
        payload = dict(request.query_params)
    return payload


@router.post("/notify", response_model=SuccessResponse[ReconciliationInfo], summary="支付网关异步通知")
async def payment_notify(
    request: Request,
    services: BillingServices = Depends(get_services)
):
    payload = await _read_callback_payload(request)
    result = await services.reconciler.handle_callback(payload)
    return SuccessResponse(data=ReconciliationInfo(**result.to_dict()), message="回调处理成功")


@router.post(
    "/complete",
    response_model=SuccessResponse[ReconciliationInfo],
    summary="完成支付（开发/测试）",
    dependencies=[Depends(require_manual_complete)]
)
async def complete_payment(
    request: CompletePaymentRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services)
):
    result = await services.reconciler.complete_payment(request.order_no, user_id=user_id)
    return SuccessResponse(data=ReconciliationInfo(**result.to_dict()), message="支付完成")


@router.get("/status/{order_no}", response_model=SuccessResponse[PaymentStatusInfo], summary="查询支付状态")
async def get_payment_status(
    order_no: str,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services)
):
    result = await services.reconciler.get_payment_status(order_no, user_id=user_id)
    return SuccessResponse(data=PaymentStatusInfo(**result.to_dict()), message="查询成功")


@router.post("/{order_no}/refresh", response_model=SuccessResponse[OrderPaymentInfo], summary="刷新支付链接")
async def refresh_payment_url(
    order_no: str,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services)
):
    payment = await services.membership.refresh_payment_url(user_id, order_no)
    return SuccessResponse(data=OrderPaymentInfo.model_validate(payment), message="支付链接已刷新")
