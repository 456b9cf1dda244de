"""
WhatIfInvested Coinbase Handlers - Commerce Client.
Creates fixed-price USD charges and returns the hosted payment link.
"""
from __future__ import annotations
from typing import Any
import httpx
import structlog
from pydantic import SecretStr

from .schemas import CreateChargeRequest, PaymentLink

logger = structlog.get_logger(__name__)

COMMERCE_CHARGES_URL = "https://api.commerce.coinbase.com/charges"
COMMERCE_API_VERSION = "2018-03-22"


class CoinbaseAPIError(Exception):
    """Upstream Coinbase call failed or answered unexpectedly."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def extract_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.text


def is_same_origin(url: str, base_url: str) -> bool:
    """True when url has the scheme, host and port of base_url."""
    try:
        target, base = httpx.URL(url), httpx.URL(base_url)
    except httpx.InvalidURL:
        return False
    if not target.host or not base.host:
        return False
    return (target.scheme, target.host, target.port) == (base.scheme, base.host, base.port)


class CommerceClient:
    """Coinbase Commerce charges API."""

    def __init__(self, http_client: httpx.AsyncClient, api_key: SecretStr, frontend_base_url: str,
                 charges_url: str = COMMERCE_CHARGES_URL) -> None:
        self._client = http_client
        self._api_key = api_key
        self._frontend_base_url = frontend_base_url
        self._charges_url = charges_url

    def build_charge_payload(self, request: CreateChargeRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": request.description or "Payment",
            "description": request.description,
            "pricing_type": "fixed_price",
            "local_price": {"amount": request.formatted_amount(), "currency": "USD"},
            "redirect_url": request.redirect_url or self._frontend_base_url,
            "cancel_url": request.cancel_url or self._frontend_base_url,
        }
        if request.customer_email:
            payload["metadata"] = {"customer_email": request.customer_email}
        return payload

    async def create_charge(self, request: CreateChargeRequest) -> PaymentLink:
        if not self._api_key.get_secret_value():
            raise CoinbaseAPIError("Missing COINBASE_COMMERCE_API_KEY")
        headers = {"Content-Type": "application/json", "X-CC-Api-Key": self._api_key.get_secret_value(),
                   "X-CC-Version": COMMERCE_API_VERSION}
        logger.info("commerce_charge_creating", amount=request.formatted_amount(), currency="USD")
        try:
            response = await self._client.post(self._charges_url, json=self.build_charge_payload(request),
                                               headers=headers)
        except httpx.HTTPError as e:
            raise CoinbaseAPIError(f"Commerce request failed: {type(e).__name__}")
        if not response.is_success:
            logger.error("commerce_charge_failed", status_code=response.status_code)
            raise CoinbaseAPIError(f"Coinbase API error: {extract_error_message(response)}", response.status_code)
        data = (response.json() or {}).get("data") or {}
        if not data.get("code") or not data.get("hosted_url"):
            raise CoinbaseAPIError("Unexpected Coinbase response", response.status_code)
        link = PaymentLink(id=data["code"], charge_id=data["code"], hosted_url=data["hosted_url"],
                           created_at=data.get("created_at"), amount=float(request.amount),
                           description=request.description, customer_email=request.customer_email)
        logger.info("commerce_charge_created", charge_id=link.charge_id)
        return link
