"""
自定义异常类 - 额度账本、订单与支付对账的错误分类

六类错误: NotFound / InvalidState / InsufficientResource /
AuthenticityFailure / Conflict / Transient
"""

from typing import Optional, Any

from aigc_billing.core.service_result import ErrorCode


class BillingException(Exception):
    """计费系统基础异常"""

    kind = "unknown"
    default_code = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None, details: Optional[Any] = None):
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details
        super().__init__(self.message)


class NotFoundError(BillingException):
    """资源不存在（套餐/订单/额度）"""
    kind = "not_found"
    default_code = ErrorCode.NOT_FOUND


class InvalidStateError(BillingException):
    """状态不允许当前操作"""
    kind = "invalid_state"
    default_code = ErrorCode.INVALID_STATE


class InsufficientResourceError(BillingException):
    """资源不足"""
    kind = "insufficient_resource"
    default_code = ErrorCode.INSUFFICIENT_QUOTA


class AuthenticityError(BillingException):
    """回调真实性校验失败"""
    kind = "authenticity_failure"
    default_code = ErrorCode.INVALID_SIGNATURE


class ConflictError(BillingException):
    """并发修改冲突"""
    kind = "conflict"
    default_code = ErrorCode.CONFLICT


class TransientError(BillingException):
    """暂时性故障，调用方可重试"""
    kind = "transient"
    default_code = ErrorCode.TRANSIENT


def _value(member):
    return getattr(member, "value", member)


# ---------------------------------------------------------------------------
# 具体错误
# ---------------------------------------------------------------------------

class PlanNotFound(NotFoundError):
    default_code = ErrorCode.PLAN_NOT_FOUND

    def __init__(self, plan_id):
        super().__init__(f"会员套餐不存在: {plan_id}", details={'plan_id': plan_id})


class OrderNotFound(NotFoundError):
    default_code = ErrorCode.ORDER_NOT_FOUND

    def __init__(self, order_ref):
        super().__init__(f"订单不存在: {order_ref}", details={'order': order_ref})


class QuotaNotFound(NotFoundError):
    default_code = ErrorCode.QUOTA_NOT_FOUND

    def __init__(self, user_id, quota_type):
        super().__init__(
            f"用户额度不存在: user={user_id}, type={_value(quota_type)}",
            details={'user_id': user_id, 'quota_type': _value(quota_type)}
        )


class OrderAlreadyPaid(InvalidStateError):
    default_code = ErrorCode.ORDER_ALREADY_PAID

    def __init__(self, order_no: str):
        self.order_no = order_no
        super().__init__(f"订单已支付: {order_no}", details={'order_no': order_no})


class OrderExpired(InvalidStateError):
    default_code = ErrorCode.ORDER_EXPIRED

    def __init__(self, order_no: str):
        super().__init__(f"订单已过期: {order_no}", details={'order_no': order_no})


class InvalidOrderTransition(InvalidStateError):
    default_code = ErrorCode.INVALID_ORDER_TRANSITION

    def __init__(self, order_no: str, current: str, target: str):
        super().__init__(
            f"订单状态不允许变更: {order_no} {current} -> {target}",
            details={'order_no': order_no, 'current': current, 'target': target}
        )


class InvalidUpgrade(InvalidStateError):
    default_code = ErrorCode.INVALID_UPGRADE


class AlreadySubscribed(InvalidStateError):
    default_code = ErrorCode.ALREADY_SUBSCRIBED

    def __init__(self, user_id):
        super().__init__("用户已有生效中的会员，请使用升级", details={'user_id': user_id})


class QuotaExpired(InvalidStateError):
    default_code = ErrorCode.QUOTA_EXPIRED

    def __init__(self, user_id, quota_type):
        super().__init__(
            f"额度已过期: user={user_id}, type={_value(quota_type)}",
            details={'user_id': user_id, 'quota_type': _value(quota_type)}
        )


class InsufficientQuota(InsufficientResourceError):
    default_code = ErrorCode.INSUFFICIENT_QUOTA

    def __init__(self, user_id, quota_type, requested: int, remaining: int):
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            "额度不足",
            details={
                'user_id': user_id,
                'quota_type': _value(quota_type),
                'requested': requested,
                'remaining': remaining,
            }
        )


class InvalidSignature(AuthenticityError):
    default_code = ErrorCode.INVALID_SIGNATURE

    def __init__(self):
        super().__init__("Invalid signature")


class MembershipNotFound(NotFoundError):
    default_code = ErrorCode.MEMBERSHIP_NOT_FOUND

    def __init__(self, user_id):
        super().__init__("用户没有生效中的会员", details={'user_id': user_id})
