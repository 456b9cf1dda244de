"""
End-to-end tests for the WhatIfInvested edge.
Throttle, routing, CORS annotation and compute-unit invocation against stubbed Coinbase APIs.
"""
from __future__ import annotations
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent))

import asyncio
import base64
import json
import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from pydantic import SecretStr

from infrastructure.api_gateway.gateway import EdgeGateway
from infrastructure.api_gateway.main import create_application
from infrastructure.api_gateway.rate_limiting import RateLimitConfig, RateLimiter, TokenBucketStore
from infrastructure.api_gateway.routes import CORS_RESPONSE_HEADERS
from infrastructure.compute.secrets import LocalSecretsProvider, SecretBundle
from infrastructure.provisioning.settings import EdgeSettings
from infrastructure.provisioning.stack import CHARGE_UNIT, PROXY_UNIT, build_backend_stack
from services.coinbase_handlers.src.exchange import sign_request

ORIGIN = "http://localhost:3000"
BUNDLE = SecretBundle(apiKey="exchange-test-key", apiSecret=base64.b64encode(b"exchange-test-secret").decode(),
                      apiPassphrase="exchange-test-passphrase")


class FakeCoinbase:
    """Stands in for the Commerce and Exchange APIs and records what reached them."""

    def __init__(self, commerce_status: int = 201, exchange_status: int = 200) -> None:
        self.commerce_status = commerce_status
        self.exchange_status = exchange_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "api.commerce.coinbase.com":
            if self.commerce_status >= 300:
                return httpx.Response(self.commerce_status, json={"error": {"message": "invalid api key"}})
            return httpx.Response(self.commerce_status, json={"data": {
                "code": "CHG123", "hosted_url": "https://commerce.coinbase.com/charges/CHG123",
                "created_at": "2026-10-18T12:00:00Z"}})
        if self.exchange_status != 200:
            return httpx.Response(self.exchange_status, json={"message": "invalid signature"})
        if request.url.path.endswith("/candles"):
            return httpx.Response(200, json=[[1760745600, 67000.5, 68000.0, 67200.0, 67900.1, 12.5]])
        if request.url.path == "/orders":
            return httpx.Response(200, json={"id": "order-1", "status": "pending"})
        return httpx.Response(404)


async def provision(upstream: FakeCoinbase, settings: EdgeSettings | None = None, populate: bool = True):
    provider = LocalSecretsProvider()
    stack = await build_backend_stack(
        settings or EdgeSettings(commerce_api_key=SecretStr("commerce-test-key")),
        secret_provider=provider, rate_limit_config=RateLimitConfig(enabled=False),
        transport=httpx.MockTransport(upstream),
    )
    if populate:
        await provider.rotate(stack.secret_reference.identifier, BUNDLE.to_secret_string())
    return stack


@pytest.fixture
def upstream() -> FakeCoinbase:
    return FakeCoinbase()


@pytest_asyncio.fixture
async def stack(upstream):
    return await provision(upstream)


def post(gateway: EdgeGateway, path: str, payload, origin: str | None = ORIGIN):
    headers = {"Content-Type": "application/json"}
    if origin:
        headers["Origin"] = origin
    return gateway.handle("POST", path, headers, json.dumps(payload).encode())


def assert_cors(response) -> None:
    for name in CORS_RESPONSE_HEADERS:
        assert name in response.headers
    assert response.headers["Access-Control-Allow-Origin"] == ORIGIN
    assert response.headers["Access-Control-Allow-Credentials"] == "true"


def assert_no_secret_values(response) -> None:
    rendered = response.render().decode() + json.dumps(response.headers)
    for value in BUNDLE.secret_values():
        assert value not in rendered


class TestChargeRoute:
    @pytest.mark.asyncio
    async def test_charge_created(self, stack, upstream):
        response = await post(stack.gateway, "/charges",
                              {"amount": 25, "description": "Demo", "customerEmail": "a@example.com"})
        assert response.status_code == 200
        assert_cors(response)
        assert response.body["chargeId"] == "CHG123"
        assert response.body["hostedUrl"] == "https://commerce.coinbase.com/charges/CHG123"
        assert response.body["status"] == "pending"
        sent = upstream.requests[0]
        assert sent.headers["X-CC-Api-Key"] == "commerce-test-key"
        assert sent.headers["X-CC-Version"] == "2018-03-22"
        body = json.loads(sent.content)
        assert body["local_price"] == {"amount": "25.00", "currency": "USD"}
        assert body["metadata"] == {"customer_email": "a@example.com"}
        assert body["redirect_url"] == ORIGIN

    @pytest.mark.asyncio
    async def test_charge_invalid_amount(self, stack, upstream):
        response = await post(stack.gateway, "/charges", {"amount": 0})
        assert response.status_code == 400
        assert_cors(response)
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_charge_oversized_amount(self, stack, upstream):
        response = await post(stack.gateway, "/charges", {"amount": 1e30})
        assert response.status_code == 400
        assert_cors(response)
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_charge_foreign_redirect_rejected(self, stack, upstream):
        response = await post(stack.gateway, "/charges", {"amount": 5, "redirectUrl": "https://evil.example/phish"})
        assert response.status_code == 400
        assert_cors(response)
        assert response.body == {"error": "redirectUrl must share the frontend origin"}
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_charge_malformed_body(self, stack):
        response = await stack.gateway.handle("POST", "/charges", {"Origin": ORIGIN}, b"{not json")
        assert response.status_code == 400
        assert_cors(response)

    @pytest.mark.asyncio
    async def test_charge_upstream_failure(self):
        stack = await provision(FakeCoinbase(commerce_status=401))
        response = await post(stack.gateway, "/charges", {"amount": 10})
        assert response.status_code == 500
        assert_cors(response)
        assert "invalid api key" not in response.render().decode()


class TestExchangeProxyRoute:
    @pytest.mark.asyncio
    async def test_get_candles_signed(self, stack, upstream):
        response = await post(stack.gateway, "/coinbase-proxy",
                              {"action": "getCandles", "tradingPair": "BTC-USD", "granularity": 3600})
        assert response.status_code == 200
        assert_cors(response)
        assert response.body[0][0] == 1760745600
        sent = upstream.requests[0]
        assert sent.method == "GET"
        assert sent.url.raw_path == b"/products/BTC-USD/candles?granularity=3600"
        assert sent.headers["CB-ACCESS-KEY"] == "exchange-test-key"
        assert sent.headers["CB-ACCESS-PASSPHRASE"] == "exchange-test-passphrase"
        timestamp = sent.headers["CB-ACCESS-TIMESTAMP"]
        expected = sign_request(BUNDLE.api_secret.get_secret_value(), timestamp, "GET",
                                "/products/BTC-USD/candles?granularity=3600")
        assert sent.headers["CB-ACCESS-SIGN"] == expected
        assert_no_secret_values(response)

    @pytest.mark.asyncio
    async def test_place_order_signs_body(self, stack, upstream):
        response = await post(stack.gateway, "/coinbase-proxy",
                              {"action": "placeOrder", "side": "buy", "productId": "BTC-USD", "funds": "100"})
        assert response.status_code == 200
        sent = upstream.requests[0]
        assert sent.content == b'{"side":"buy","product_id":"BTC-USD","type":"market","funds":"100"}'
        expected = sign_request(BUNDLE.api_secret.get_secret_value(), sent.headers["CB-ACCESS-TIMESTAMP"],
                                "POST", "/orders", sent.content.decode())
        assert sent.headers["CB-ACCESS-SIGN"] == expected

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"action": "placeOrder", "side": "buy", "productId": "BTC-USD", "size": "1"},
        {"action": "placeOrder", "side": "sell", "productId": "BTC-USD", "funds": "100"},
        {"action": "placeOrder", "side": "hold", "productId": "BTC-USD", "size": "1"},
        {"action": "withdraw"},
        {"action": "getCandles", "tradingPair": "BTC-USD"},
    ])
    async def test_invalid_proxy_request(self, stack, upstream, payload):
        response = await post(stack.gateway, "/coinbase-proxy", payload)
        assert response.status_code == 400
        assert_cors(response)
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_exchange_rejection_is_server_error(self):
        stack = await provision(FakeCoinbase(exchange_status=401))
        response = await post(stack.gateway, "/coinbase-proxy",
                              {"action": "getCandles", "tradingPair": "BTC-USD", "granularity": 60})
        assert response.status_code == 500
        assert_cors(response)
        assert_no_secret_values(response)

    @pytest.mark.asyncio
    async def test_unpopulated_secret_is_server_error(self, upstream):
        stack = await provision(upstream, populate=False)
        response = await post(stack.gateway, "/coinbase-proxy",
                              {"action": "getCandles", "tradingPair": "BTC-USD", "granularity": 60})
        assert response.status_code == 500
        assert response.body["error"]["code"] == "SECRET_UNAVAILABLE"
        assert_cors(response)
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_egress_limited_to_https_port(self, upstream):
        settings = EdgeSettings(commerce_api_key=SecretStr("commerce-test-key"),
                                exchange_api_url="https://api-public.sandbox.exchange.coinbase.com:8443")
        stack = await provision(upstream, settings=settings)
        response = await post(stack.gateway, "/coinbase-proxy",
                              {"action": "getCandles", "tradingPair": "BTC-USD", "granularity": 60})
        assert response.status_code == 500
        assert response.body["error"]["code"] == "EGRESS_BLOCKED"
        assert_cors(response)
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_credentials(self, stack, upstream):
        payload = {"action": "getCandles", "tradingPair": "ETH-USD", "granularity": 300}
        first, second = await asyncio.gather(post(stack.gateway, "/coinbase-proxy", payload),
                                             post(stack.gateway, "/coinbase-proxy", payload))
        assert first.status_code == second.status_code == 200
        keys = {r.headers["CB-ACCESS-KEY"] for r in upstream.requests}
        passphrases = {r.headers["CB-ACCESS-PASSPHRASE"] for r in upstream.requests}
        assert keys == {"exchange-test-key"}
        assert passphrases == {"exchange-test-passphrase"}


class TestEdgeBehaviour:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/charges", "/coinbase-proxy"])
    async def test_preflight_answered_without_invocation(self, stack, upstream, path):
        response = await stack.gateway.handle("OPTIONS", path, {
            "Origin": ORIGIN, "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type"})
        assert response.status_code == 204
        assert response.body is None
        assert_cors(response)
        assert response.headers["Access-Control-Max-Age"] == "600"
        assert stack.registry.invocation_count(CHARGE_UNIT) == 0
        assert stack.registry.invocation_count(PROXY_UNIT) == 0
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_unknown_path(self, stack):
        response = await post(stack.gateway, "/withdrawals", {"amount": 1})
        assert response.status_code == 404
        assert response.body["error"]["code"] == "ROUTE_NOT_FOUND"
        assert_cors(response)

    @pytest.mark.asyncio
    async def test_wrong_method(self, stack):
        response = await stack.gateway.handle("GET", "/charges", {"Origin": ORIGIN})
        assert response.status_code == 405
        assert response.headers["Allow"] == "POST, OPTIONS"
        assert_cors(response)
        assert stack.registry.invocation_count(CHARGE_UNIT) == 0

    @pytest.mark.asyncio
    async def test_burst_then_throttled(self, stack, upstream):
        limiter = RateLimiter(RateLimitConfig(), store=TokenBucketStore(clock=lambda: 500.0))
        gateway = EdgeGateway(stack.routes, stack.cors, limiter, stack.registry)
        results = [await post(gateway, "/charges", {"amount": 5}) for _ in range(3)]
        assert [r.status_code for r in results] == [200, 200, 429]
        assert results[2].headers["Retry-After"] == "1"
        assert results[2].body["error"]["code"] == "THROTTLED"
        assert_cors(results[2])
        assert stack.registry.invocation_count(CHARGE_UNIT) == 2

    @pytest.mark.asyncio
    async def test_preflight_is_throttled(self, stack):
        limiter = RateLimiter(RateLimitConfig(burst_limit=1), store=TokenBucketStore(clock=lambda: 0.0))
        gateway = EdgeGateway(stack.routes, stack.cors, limiter, stack.registry)
        headers = {"Origin": ORIGIN, "Access-Control-Request-Method": "POST"}
        assert (await gateway.handle("OPTIONS", "/charges", headers)).status_code == 204
        assert (await gateway.handle("OPTIONS", "/charges", headers)).status_code == 429

    @pytest.mark.asyncio
    async def test_request_without_origin_gets_no_cors(self, stack):
        response = await post(stack.gateway, "/charges", {"amount": 5}, origin=None)
        assert response.status_code == 200
        assert "Access-Control-Allow-Origin" not in response.headers

    @pytest.mark.asyncio
    async def test_disallowed_origin_still_processed(self, stack):
        response = await post(stack.gateway, "/charges", {"amount": 5}, origin="https://evil.example")
        assert response.status_code == 200
        assert "Access-Control-Allow-Origin" not in response.headers

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, stack):
        response = await stack.gateway.handle("POST", "/charges", {"X-Request-ID": "req-42"}, b'{"amount": 1}')
        assert response.headers["X-Request-ID"] == "req-42"


class TestApplication:
    @pytest.mark.asyncio
    async def test_asgi_round_trip(self, stack):
        app = create_application(stack)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://edge") as client:
            response = await client.post("/charges", json={"amount": 12.5}, headers={"Origin": ORIGIN})
            preflight = await client.options("/coinbase-proxy", headers={
                "Origin": ORIGIN, "Access-Control-Request-Method": "POST"})
            ready = await client.get("/_edge/ready")
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == ORIGIN
        assert response.json()["amount"] == 12.5
        assert preflight.status_code == 204
        assert ready.json() == {"status": "ready", "routes": 2}

    def test_probes_without_stack(self):
        client = TestClient(create_application(settings=EdgeSettings()))
        assert client.get("/_edge/live").json() == {"status": "alive"}
        assert client.get("/_edge/ready").status_code == 503
