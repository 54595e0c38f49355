"""
会员与额度API端点
套餐列表、额度查询与消耗、订阅、升级、取消、自动续费
"""

from typing import Dict, List

from fastapi import APIRouter, Depends

from aigc_billing.api.deps import get_current_user_id, get_services
from aigc_billing.schemas.member import (
    AutoRenewRequest,
    ConsumeQuotaRequest,
    ConsumeQuotaResponse,
    MembershipInfo,
    PlanInfo,
    QuotaInfo,
    SubscribeRequest,
    UpgradeRequest,
    UserBenefits,
)
from aigc_billing.schemas.payment import OrderPaymentInfo
from aigc_billing.schemas.response import SuccessResponse
from aigc_billing.services.container import BillingServices

router = APIRouter(prefix="/member", tags=["会员管理"])


@router.get("/plans", response_model=SuccessResponse[List[PlanInfo]], summary="获取会员套餐列表")
async def list_plans(services: BillingServices = Depends(get_services)):
    plans = await services.plans.list_active_plans()
    return SuccessResponse(
        data=[PlanInfo.model_validate(plan) for plan in plans],
        message="获取套餐成功"
    )


@router.get("/quota", response_model=SuccessResponse[Dict[str, QuotaInfo]], summary="获取额度概况")
async def get_quota(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services)
):
    quotas = await services.ledger.get_quota_status(user_id)
    return SuccessResponse(data=quotas, message="获取额度成功")


@router.post("/quota/consume", response_model=SuccessResponse[ConsumeQuotaResponse], summary="消耗额度")
async def consume_quota(
    request: ConsumeQuotaRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services)
):
    """
    检测/降重功能在执行付费操作前调用
    余额不足时返回402，调用方不得继续执行
    """
    result = await services.ledger.consume(user_id, request.quota_type, request.amount, request.remark)
    return SuccessResponse(
        data=ConsumeQuotaResponse(success=result.success, remaining=result.remaining),
        message="额度扣减成功"
    )


@router.get("/benefits", response_model=SuccessResponse[UserBenefits], summary="获取用户权益")
async def get_benefits(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services)
):
    benefits = await services.membership.get_user_benefits(user_id)
    return SuccessResponse(data=benefits, message="获取权益成功")


@router.post("/subscribe", response_model=SuccessResponse[OrderPaymentInfo], summary="订阅会员")
async def subscribe(
    request: SubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services)
):
    payment = await services.membership.subscribe(
        user_id,
        request.plan_id,
        duration=request.duration,
        auto_renew=request.auto_renew,
        pay_type=request.pay_type,
    )
    return SuccessResponse(data=OrderPaymentInfo.model_validate(payment), message="订单创建成功")


@router.post("/upgrade", response_model=SuccessResponse[OrderPaymentInfo], summary="升级会员")
async def upgrade(
    request: UpgradeRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services)
):
    payment = await services.membership.create_upgrade_order(
        user_id, request.target_plan_id, pay_type=request.pay_type
    )
    return SuccessResponse(data=OrderPaymentInfo.model_validate(payment), message="升级订单创建成功")


@router.post("/cancel", response_model=SuccessResponse[MembershipInfo], summary="取消会员")
async def cancel_membership(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services)
):
    membership = await services.membership.cancel_membership(user_id)
    return SuccessResponse(data=MembershipInfo.model_validate(membership), message="会员已取消")


@router.post("/auto-renew", response_model=SuccessResponse[MembershipInfo], summary="设置自动续费")
async def set_auto_renew(
    request: AutoRenewRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services)
):
    membership = await services.membership.set_auto_renew(user_id, request.auto_renew)
    return SuccessResponse(data=MembershipInfo.model_validate(membership), message="设置成功")
