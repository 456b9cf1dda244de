"""
WhatIfInvested Coinbase Handlers - Compute Unit Entry Points.
Charge creation and exchange proxy handlers invoked by the edge.
"""
from __future__ import annotations
from pydantic import SecretStr, ValidationError
import structlog

from infrastructure.common.exceptions import SecretUnavailableError
from infrastructure.compute.units import ComputeContext, ComputeRequest, ComputeResponse
from .commerce import CoinbaseAPIError, CommerceClient, is_same_origin
from .exchange import EXCHANGE_SANDBOX_URL, ExchangeClient
from .schemas import CreateChargeRequest, GetCandlesAction, exchange_action_adapter

logger = structlog.get_logger(__name__)

COMMERCE_API_KEY_ENV = "COINBASE_COMMERCE_API_KEY"
FRONTEND_BASE_URL_ENV = "FRONTEND_BASE_URL"
EXCHANGE_SECRET_ENV = "COINBASE_API_SECRET_ARN"
EXCHANGE_API_URL_ENV = "COINBASE_EXCHANGE_API_URL"


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "Invalid request body").removeprefix("Value error, ")
    return f"{location}: {message}" if location else message


async def create_charge_handler(request: ComputeRequest, context: ComputeContext) -> ComputeResponse:
    """POST /charges"""
    try:
        charge = CreateChargeRequest.model_validate(request.json())
    except ValidationError as e:
        return ComputeResponse.bad_request(_validation_message(e))
    except ValueError:
        return ComputeResponse.bad_request("Invalid request body")
    api_key = SecretStr(context.environment.get(COMMERCE_API_KEY_ENV, ""))
    frontend = context.environment.get(FRONTEND_BASE_URL_ENV, "")
    for field, url in (("redirectUrl", charge.redirect_url), ("cancelUrl", charge.cancel_url)):
        if url and not is_same_origin(url, frontend):
            logger.warning("charge_return_url_rejected", field=field)
            return ComputeResponse.bad_request(f"{field} must share the frontend origin")
    async with context.http_client() as http_client:
        client = CommerceClient(http_client, api_key, frontend)
        try:
            link = await client.create_charge(charge)
        except CoinbaseAPIError as e:
            logger.error("charge_creation_failed", upstream_status=e.status_code)
            return ComputeResponse.server_error("Charge creation failed")
    return ComputeResponse.ok(link.to_response())


async def exchange_proxy_handler(request: ComputeRequest, context: ComputeContext) -> ComputeResponse:
    """POST /coinbase-proxy"""
    try:
        payload = request.json()
    except ValueError:
        return ComputeResponse.bad_request("Invalid request body")
    if not isinstance(payload, dict) or payload.get("action") not in ("getCandles", "placeOrder"):
        return ComputeResponse.bad_request("Unsupported proxy request type")
    try:
        action = exchange_action_adapter.validate_python(payload)
    except ValidationError as e:
        return ComputeResponse.bad_request(_validation_message(e))

    reference = context.environment.get(EXCHANGE_SECRET_ENV)
    if not reference or context.credentials is None:
        raise SecretUnavailableError(reference or EXCHANGE_SECRET_ENV, "no credential provider configured")
    credentials = await context.credentials.get_credentials()
    base_url = context.environment.get(EXCHANGE_API_URL_ENV, EXCHANGE_SANDBOX_URL)
    async with context.http_client() as http_client:
        client = ExchangeClient(http_client, credentials, base_url=base_url)
        try:
            if isinstance(action, GetCandlesAction):
                result = await client.get_candles(action)
            else:
                result = await client.place_order(action)
        except CoinbaseAPIError as e:
            logger.error("exchange_proxy_failed", action=action.action, upstream_status=e.status_code)
            return ComputeResponse.server_error(
                f"Exchange request failed ({e.status_code})" if e.status_code else "Exchange request failed")
    return ComputeResponse.ok(result)
