"""
API依赖项 - 服务实例与当前用户
"""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from aigc_billing.services.container import BillingServices


def get_services(request: Request) -> BillingServices:
    """从应用状态获取服务实例"""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="服务尚未初始化"
        )
    return services


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id")
) -> str:
    """当前用户ID（认证由网关完成，透传在 X-User-Id 请求头中）"""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="未登录或登录已过期"
        )
    return x_user_id.strip()


def require_manual_complete(request: Request):
    """手动完成支付只在开发/测试环境开放"""
    settings = request.app.state.settings
    if not settings.manual_complete_enabled:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="手动完成支付未开启"
        )
