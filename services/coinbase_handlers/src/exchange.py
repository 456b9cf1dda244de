"""
WhatIfInvested Coinbase Handlers - Exchange Client.
Signed requests to the Coinbase Exchange REST API.
"""
from __future__ import annotations
import base64
import hashlib
import hmac
import json
import time
from collections.abc import Callable
from typing import Any
import httpx
import structlog

from infrastructure.compute.secrets import SecretBundle
from .commerce import CoinbaseAPIError
from .schemas import GetCandlesAction, PlaceOrderAction

logger = structlog.get_logger(__name__)

EXCHANGE_SANDBOX_URL = "https://api-public.sandbox.exchange.coinbase.com"


def sign_request(secret: str, timestamp: str, method: str, request_path: str, body: str = "") -> str:
    """CB-ACCESS-SIGN: base64 HMAC-SHA256 keyed by the decoded secret."""
    key = base64.b64decode(secret, validate=True)
    message = f"{timestamp}{method.upper()}{request_path}{body}".encode()
    return base64.b64encode(hmac.new(key, message, hashlib.sha256).digest()).decode()


class ExchangeClient:
    """Coinbase Exchange client authenticated with one credential bundle."""

    def __init__(self, http_client: httpx.AsyncClient, credentials: SecretBundle,
                 base_url: str = EXCHANGE_SANDBOX_URL, clock: Callable[[], float] = time.time) -> None:
        self._client = http_client
        self._credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._clock = clock

    def signed_headers(self, method: str, request_path: str, body: str = "") -> dict[str, str]:
        timestamp = str(int(self._clock()))
        try:
            signature = sign_request(self._credentials.api_secret.get_secret_value(), timestamp, method,
                                     request_path, body)
        except ValueError:
            raise CoinbaseAPIError("apiSecret is not valid base64")
        return {
            "CB-ACCESS-KEY": self._credentials.api_key.get_secret_value(),
            "CB-ACCESS-SIGN": signature,
            "CB-ACCESS-TIMESTAMP": timestamp,
            "CB-ACCESS-PASSPHRASE": self._credentials.api_passphrase.get_secret_value(),
            "Content-Type": "application/json",
        }

    async def _send(self, method: str, request_path: str, body: str = "") -> Any:
        headers = self.signed_headers(method, request_path, body)
        try:
            response = await self._client.request(method, f"{self._base_url}{request_path}",
                                                  content=body or None, headers=headers)
        except httpx.HTTPError as e:
            raise CoinbaseAPIError(f"Exchange request failed: {type(e).__name__}")
        if response.status_code != 200:
            logger.error("exchange_request_failed", method=method, path=request_path.split("?")[0],
                         status_code=response.status_code)
            raise CoinbaseAPIError("Exchange request failed", response.status_code)
        return response.json()

    async def get_candles(self, action: GetCandlesAction) -> list[list[float]]:
        candles = await self._send("GET", action.request_path())
        logger.info("exchange_candles_fetched", trading_pair=action.trading_pair, count=len(candles))
        return candles

    async def place_order(self, action: PlaceOrderAction) -> Any:
        body = json.dumps(action.order_body(), separators=(",", ":"))
        order = await self._send("POST", "/orders", body)
        logger.info("exchange_order_placed", product_id=action.product_id, side=action.side.value)
        return order
