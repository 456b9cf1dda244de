"""
WhatIfInvested API Gateway - CORS Configuration.
Cross-origin policy applied uniformly to every route and every response status.
"""
from __future__ import annotations
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger(__name__)


class CORSConfig(BaseSettings):
    """CORS configuration settings."""
    origins: str = Field(default="http://localhost:3000", description="Comma-separated allowed origins, matched exactly. Replace with the public origin in production.")
    methods: str = Field(default="POST,GET,OPTIONS")
    headers: str = Field(default="Content-Type,Authorization")
    max_age: int = Field(default=600, ge=0)
    credentials: bool = Field(default=True)
    model_config = SettingsConfigDict(env_prefix="CORS_", env_file=".env", extra="ignore")

    @field_validator("origins")
    @classmethod
    def validate_origins(cls, v: str) -> str:
        if "*" in [o.strip() for o in v.split(",")]:
            raise ValueError("wildcard origin is not allowed; list exact origins")
        return v

    @property
    def origins_list(self) -> list[str]:
        return [o.strip().rstrip("/") for o in self.origins.split(",") if o.strip()]

    @property
    def methods_list(self) -> list[str]:
        return [m.strip().upper() for m in self.methods.split(",") if m.strip()]

    @property
    def headers_list(self) -> list[str]:
        return [h.strip() for h in self.headers.split(",") if h.strip()]


@dataclass(frozen=True)
class CORSPolicy:
    """CORS policy definition shared by every route."""
    name: str
    origins: tuple[str, ...]
    methods: tuple[str, ...] = ("POST", "GET", "OPTIONS")
    headers: tuple[str, ...] = ("Content-Type", "Authorization")
    max_age: int = 600
    credentials: bool = True

    @classmethod
    def from_config(cls, config: CORSConfig, name: str = "default") -> CORSPolicy:
        return cls(name=name, origins=tuple(config.origins_list), methods=tuple(config.methods_list),
                   headers=tuple(config.headers_list), max_age=config.max_age, credentials=config.credentials)

    def allows_origin(self, origin: str) -> bool:
        return origin in self.origins

    def allows_method(self, method: str) -> bool:
        return method.upper() in self.methods

    def allows_header(self, header: str) -> bool:
        return header.lower() in [h.lower() for h in self.headers]

    def to_declarative(self) -> dict[str, Any]:
        return {"name": self.name, "allow_origins": list(self.origins), "allow_methods": list(self.methods),
                "allow_headers": list(self.headers), "allow_credentials": self.credentials, "max_age": self.max_age}


@dataclass
class CORSRequest:
    """Parsed CORS request information."""
    origin: str | None
    method: str
    request_method: str | None = None
    request_headers: list[str] = field(default_factory=list)
    is_preflight: bool = False

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], method: str) -> CORSRequest:
        lowered = {k.lower(): v for k, v in headers.items()}
        origin = lowered.get("origin")
        request_method = lowered.get("access-control-request-method")
        is_preflight = method.upper() == "OPTIONS" and request_method is not None
        request_headers = [h.strip() for h in lowered.get("access-control-request-headers", "").split(",") if h.strip()]
        return cls(origin=origin, method=method.upper(), request_method=request_method,
                   request_headers=request_headers, is_preflight=is_preflight)


@dataclass
class CORSResponse:
    """CORS response headers."""
    allow_origin: str | None = None
    allow_methods: list[str] | None = None
    allow_headers: list[str] | None = None
    max_age: int | None = None
    allow_credentials: bool = False

    def to_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if not self.allow_origin:
            return headers
        headers["Access-Control-Allow-Origin"] = self.allow_origin
        headers["Vary"] = "Origin"
        if self.allow_methods:
            headers["Access-Control-Allow-Methods"] = ",".join(self.allow_methods)
        if self.allow_headers:
            headers["Access-Control-Allow-Headers"] = ",".join(self.allow_headers)
        if self.max_age is not None:
            headers["Access-Control-Max-Age"] = str(self.max_age)
        if self.allow_credentials:
            headers["Access-Control-Allow-Credentials"] = "true"
        return headers


class CORSHandler:
    """Computes CORS headers for preflight and actual responses."""

    def __init__(self, config: CORSConfig | None = None, policy: CORSPolicy | None = None) -> None:
        self._config = config or CORSConfig()
        self._policy = policy or CORSPolicy.from_config(self._config)

    @property
    def policy(self) -> CORSPolicy:
        return self._policy

    def handle_request(self, request: CORSRequest) -> CORSResponse:
        policy = self._policy
        if not request.origin:
            return CORSResponse()
        if not policy.allows_origin(request.origin):
            logger.warning("cors_origin_rejected", origin=request.origin, policy=policy.name)
            return CORSResponse()
        if request.is_preflight:
            method_to_check = request.request_method or request.method
            if not policy.allows_method(method_to_check):
                logger.warning("cors_method_rejected", method=method_to_check, policy=policy.name)
                return CORSResponse()
            for header in request.request_headers:
                if not policy.allows_header(header):
                    logger.warning("cors_header_rejected", header=header, policy=policy.name)
                    return CORSResponse()
            return CORSResponse(allow_origin=request.origin, allow_methods=list(policy.methods),
                                allow_headers=list(policy.headers), max_age=policy.max_age,
                                allow_credentials=policy.credentials)
        return CORSResponse(allow_origin=request.origin, allow_methods=list(policy.methods),
                            allow_headers=list(policy.headers), allow_credentials=policy.credentials)

    def handle_headers(self, headers: Mapping[str, str], method: str) -> dict[str, str]:
        request = CORSRequest.from_headers(headers, method)
        return self.handle_request(request).to_headers()


def create_cors_handler(config: CORSConfig | None = None) -> CORSHandler:
    """Create the CORS handler for the public API."""
    handler = CORSHandler(config)
    logger.info("cors_handler_created", origins=list(handler.policy.origins),
                credentials=handler.policy.credentials)
    return handler
