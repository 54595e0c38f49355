"""
第三方支付网关客户端

网关采用收银台跳转: 按签名规则生成带签名的支付链接，
用户支付后网关异步回调 notify 地址
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from urllib.parse import urlencode

from loguru import logger

from aigc_billing.services.proration import round2
from aigc_billing.utils import signature


@dataclass
class PaymentRequestResult:
    """支付链接"""
    pay_url: str
    order_no: str
    amount: Decimal


class PaymentGatewayClient:
    """支付网关客户端"""

    def __init__(self, gateway_url: str, app_id: str, app_secret: str, notify_url: str):
        self.gateway_url = gateway_url
        self.app_id = app_id
        self.app_secret = app_secret
        self.notify_url = notify_url

    def verify(self, params, sign: str) -> bool:
        """校验网关回调签名"""
        return signature.verify(params, sign, self.app_secret)

    async def request_payment(
        self,
        order_no: str,
        amount: Decimal,
        subject: str,
        notify_url: Optional[str] = None,
        body: Optional[str] = None
    ) -> PaymentRequestResult:
        """生成支付链接"""
        amount = round2(Decimal(str(amount)))
        pay_params = {
            'order_id': order_no,
            'product_name': subject,
            'product_desc': body or subject,
            'pay_amount': str(amount),
        }
        sign = signature.generate(pay_params, self.app_secret)

        query = urlencode({
            **pay_params,
            'appid': self.app_id,
            'callback': notify_url or self.notify_url,
            'sign': sign,
        })
        pay_url = f"{self.gateway_url}?{query}"

        logger.info(f"生成支付链接: {order_no}, 金额: {amount}")
        return PaymentRequestResult(pay_url=pay_url, order_no=order_no, amount=amount)
