"""
统一的错误代码与错误详情

服务层异常携带 ErrorCode，API 层据此渲染标准化的错误响应
"""

from typing import Optional, Any, Dict
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime


class ErrorCode(Enum):
    """标准错误代码"""
    # 通用错误 (1000-1999)
    SUCCESS = 1000
    UNKNOWN_ERROR = 1001
    VALIDATION_ERROR = 1002

    # 资源不存在 (2000-2999)
    NOT_FOUND = 2000
    PLAN_NOT_FOUND = 2001
    ORDER_NOT_FOUND = 2002
    QUOTA_NOT_FOUND = 2003
    MEMBERSHIP_NOT_FOUND = 2004

    # 状态错误 (3000-3999)
    INVALID_STATE = 3000
    ORDER_ALREADY_PAID = 3001
    ORDER_EXPIRED = 3002
    INVALID_ORDER_TRANSITION = 3003
    INVALID_UPGRADE = 3004
    ALREADY_SUBSCRIBED = 3005
    QUOTA_EXPIRED = 3006

    # 资源不足 (4000-4999)
    INSUFFICIENT_QUOTA = 4001

    # 安全错误 (5000-5999)
    INVALID_SIGNATURE = 5001

    # 并发与系统错误 (6000-6999)
    CONFLICT = 6001
    TRANSIENT = 6002


@dataclass
class ErrorDetail:
    """错误详情"""
    code: ErrorCode
    message: str
    kind: str = "unknown"
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            'code': self.code.value,
            'code_name': self.code.name,
            'kind': self.kind,
            'message': self.message,
            'context': self.context,
            'timestamp': self.timestamp.isoformat()
        }

    @classmethod
    def from_exception(cls, exc: Exception, context: Optional[Dict[str, Any]] = None) -> 'ErrorDetail':
        """从服务层异常构造错误详情"""
        code = getattr(exc, 'error_code', None) or ErrorCode.UNKNOWN_ERROR
        details = getattr(exc, 'details', None)
        merged = dict(details) if isinstance(details, dict) else {}
        merged.update(context or {})
        return cls(
            code=code,
            message=getattr(exc, 'message', str(exc)),
            kind=getattr(exc, 'kind', 'unknown'),
            context=merged
        )
