from .commerce import CoinbaseAPIError, CommerceClient
from .exchange import ExchangeClient, sign_request
from .handlers import create_charge_handler, exchange_proxy_handler

__all__ = [
    "CoinbaseAPIError",
    "CommerceClient",
    "ExchangeClient",
    "sign_request",
    "create_charge_handler",
    "exchange_proxy_handler",
]
