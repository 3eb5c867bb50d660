"""Модели базы данных."""
from app.models.api_key import ApiKey
from app.models.third_party_order import ThirdPartyOrder
from app.models.ecpay_transaction import EcpayTransaction
from app.models.api_call_log import ApiCallLog

__all__ = [
    "ApiKey",
    "ThirdPartyOrder",
    "EcpayTransaction",
    "ApiCallLog",
]
