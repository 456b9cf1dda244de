"""
WhatIfInvested API Gateway - Route Definitions.
Authoritative (path, method) to compute-unit table with per-status response contracts.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
import structlog

from infrastructure.common.exceptions import DuplicateRouteError, MethodNotAllowedError, RouteNotFoundError

logger = structlog.get_logger(__name__)

CORS_RESPONSE_HEADERS: tuple[str, ...] = (
    "Access-Control-Allow-Origin",
    "Access-Control-Allow-Headers",
    "Access-Control-Allow-Methods",
)
DEFAULT_STATUS_CODES: tuple[int, ...] = (200, 400, 500)


class HttpMethod(str, Enum):
    """Supported HTTP methods for routes."""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


def normalize_path(path: str) -> str:
    return "/" + path.strip().strip("/")


@dataclass(frozen=True)
class MethodResponse:
    """Declared response status and the headers bound to it."""
    status_code: int
    response_headers: tuple[str, ...] = CORS_RESPONSE_HEADERS

    def response_parameters(self) -> dict[str, bool]:
        return {f"method.response.header.{name}": True for name in self.response_headers}

    def carries_cors(self) -> bool:
        return all(name in self.response_headers for name in CORS_RESPONSE_HEADERS)


@dataclass(frozen=True)
class RouteDefinition:
    """Individual route definition."""
    name: str
    path: str
    method: HttpMethod
    compute_unit: str
    method_responses: tuple[MethodResponse, ...] = field(
        default_factory=lambda: tuple(MethodResponse(code) for code in DEFAULT_STATUS_CODES))
    tags: tuple[str, ...] = ()

    @property
    def declared_status_codes(self) -> tuple[int, ...]:
        return tuple(r.status_code for r in self.method_responses)

    def response_for(self, status_code: int) -> MethodResponse | None:
        for response in self.method_responses:
            if response.status_code == status_code:
                return response
        return None

    def matches(self, path: str, method: str) -> bool:
        return self.path == normalize_path(path) and self.method.value == method.upper()

    def to_declarative(self) -> dict[str, Any]:
        return {"name": self.name, "path": self.path, "method": self.method.value,
                "integration": {"type": "compute_unit", "target": self.compute_unit},
                "method_responses": [{"status_code": str(r.status_code), "response_parameters": r.response_parameters()} for r in self.method_responses],
                "tags": list(self.tags)}


class RouteTable:
    """Fixed routing surface keyed by (path, method)."""

    def __init__(self) -> None:
        self._routes: dict[tuple[str, HttpMethod], RouteDefinition] = {}

    def add_route(self, path: str, method: HttpMethod | str, compute_unit: str,
                  status_codes: tuple[int, ...] = DEFAULT_STATUS_CODES,
                  tags: tuple[str, ...] = ()) -> RouteDefinition:
        http_method = HttpMethod(method.upper()) if isinstance(method, str) else method
        if http_method == HttpMethod.OPTIONS:
            raise ValueError("OPTIONS is answered by the CORS preflight and cannot be routed")
        normalized = normalize_path(path)
        key = (normalized, http_method)
        if key in self._routes:
            raise DuplicateRouteError(normalized, http_method.value)
        route = RouteDefinition(
            name=f"{http_method.value.lower()}-{normalized.strip('/').replace('/', '-') or 'root'}",
            path=normalized, method=http_method, compute_unit=compute_unit,
            method_responses=tuple(MethodResponse(code) for code in status_codes), tags=tags,
        )
        self._routes[key] = route
        logger.info("route_defined", name=route.name, path=normalized, method=http_method.value,
                    compute_unit=compute_unit, status_codes=list(status_codes))
        return route

    def has_path(self, path: str) -> bool:
        normalized = normalize_path(path)
        return any(p == normalized for p, _ in self._routes)

    def methods_for(self, path: str) -> list[str]:
        normalized = normalize_path(path)
        return sorted(m.value for p, m in self._routes if p == normalized)

    def resolve(self, path: str, method: str) -> RouteDefinition:
        normalized = normalize_path(path)
        try:
            http_method = HttpMethod(method.upper())
        except ValueError:
            http_method = None
        if http_method is not None and (normalized, http_method) in self._routes:
            return self._routes[(normalized, http_method)]
        allowed = self.methods_for(normalized)
        if not allowed:
            raise RouteNotFoundError(normalized, method.upper())
        raise MethodNotAllowedError(normalized, method.upper(), allowed + [HttpMethod.OPTIONS.value])

    def routes(self) -> list[RouteDefinition]:
        return list(self._routes.values())

    def routes_for_unit(self, compute_unit: str) -> list[RouteDefinition]:
        return [r for r in self._routes.values() if r.compute_unit == compute_unit]

    def export_routes(self) -> list[dict[str, Any]]:
        return [route.to_declarative() for route in self._routes.values()]

    def __len__(self) -> int:
        return len(self._routes)
