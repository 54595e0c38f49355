"""
支付网关签名工具

签名规则: 参数按键名升序排列，过滤空值和 sign 字段，
拼接为 key1=val1&key2=val2&...&key=<密钥> 后取 MD5 (大写十六进制)
"""

import hashlib
import hmac
from typing import Any, Dict, Mapping


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def canonical_string(params: Mapping[str, Any], secret: str) -> str:
    """构造待签名字符串"""
    filtered: Dict[str, Any] = {
        key: value for key, value in params.items()
        if value is not None and key != "sign"
    }
    sign_str = "&".join(f"{key}={_stringify(filtered[key])}" for key in sorted(filtered))
    return f"{sign_str}&key={secret}"


def generate(params: Mapping[str, Any], secret: str) -> str:
    """生成签名"""
    return hashlib.md5(canonical_string(params, secret).encode("utf-8")).hexdigest().upper()


def verify(params: Mapping[str, Any], sign: str, secret: str) -> bool:
    """校验签名"""
    if not sign:
        return False
    expected = generate(params, secret)
    return hmac.compare_digest(expected, str(sign).upper())
