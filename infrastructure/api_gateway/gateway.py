"""
WhatIfInvested API Gateway - Edge Dispatch.
Admission, routing, CORS annotation and compute-unit invocation for one request.
"""
from __future__ import annotations
import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
import structlog

from infrastructure.common.exceptions import EdgeError
from infrastructure.compute.units import ComputeRequest, ComputeUnitRegistry
from .cors import CORSHandler, CORSRequest
from .rate_limiting import RateLimiter
from .routes import HttpMethod, RouteTable

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@dataclass
class EdgeResponse:
    """Response leaving the edge."""
    status_code: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    def render(self) -> bytes:
        if self.body is None:
            return b""
        return json.dumps(self.body).encode()


class EdgeGateway:
    """Single entry point: throttle, then route, then invoke, then annotate."""

    def __init__(self, routes: RouteTable, cors: CORSHandler, limiter: RateLimiter,
                 registry: ComputeUnitRegistry) -> None:
        self._routes = routes
        self._cors = cors
        self._limiter = limiter
        self._registry = registry

    @property
    def routes(self) -> RouteTable:
        return self._routes

    @property
    def registry(self) -> ComputeUnitRegistry:
        return self._registry

    async def handle(self, method: str, path: str, headers: Mapping[str, str], body: bytes = b"") -> EdgeResponse:
        method = method.upper()
        lowered = {k.lower(): v for k, v in headers.items()}
        request_id = lowered.get(REQUEST_ID_HEADER.lower()) or str(uuid.uuid4())
        cors_request = CORSRequest.from_headers(headers, method)
        with structlog.contextvars.bound_contextvars(request_id=request_id, method=method, path=path):
            try:
                response = await self._dispatch(method, path, lowered, body, request_id, cors_request)
            except EdgeError as e:
                response = EdgeResponse(status_code=e.http_status, body=e.to_dict(), headers=e.response_headers())
                response.headers.update(self._cors.handle_headers(headers, method))
            except Exception as e:
                logger.error("edge_unhandled_exception", error_type=type(e).__name__)
                response = EdgeResponse(status_code=500, body={"error": {"code": "INTERNAL_ERROR",
                                                                         "message": "An unexpected error occurred"}})
                response.headers.update(self._cors.handle_headers(headers, method))
            response.headers[REQUEST_ID_HEADER] = request_id
            if response.body is not None:
                response.headers.setdefault("Content-Type", "application/json")
            logger.info("edge_request_completed", status_code=response.status_code)
        return response

    async def _dispatch(self, method: str, path: str, headers: dict[str, str], body: bytes,
                        request_id: str, cors_request: CORSRequest) -> EdgeResponse:
        await self._limiter.enforce()
        if method == HttpMethod.OPTIONS.value and self._routes.has_path(path):
            return EdgeResponse(status_code=204, headers=self._cors.handle_request(cors_request).to_headers())
        route = self._routes.resolve(path, method)
        request = ComputeRequest(method=method, path=route.path, body=body, headers=headers, request_id=request_id)
        unit_response = await self._registry.invoke(route.compute_unit, request)
        status_code, payload = unit_response.status_code, unit_response.body
        if status_code not in route.declared_status_codes:
            logger.warning("undeclared_status_code", route=route.name, status_code=status_code)
            status_code, payload = 500, {"error": "Internal server error"}
        response = EdgeResponse(status_code=status_code, body=payload, headers=dict(unit_response.headers))
        response.headers.update(self._cors.handle_request(cors_request).to_headers())
        return response
