"""
AIGC Billing Service

会员额度账本、订单状态机与支付回调对账
"""

__version__ = "1.0.0"
