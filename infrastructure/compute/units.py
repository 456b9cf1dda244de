"""
WhatIfInvested Compute - Compute Units.
Unit specifications, per-invocation context and the registry that runs handlers under their limits.
"""
from __future__ import annotations
import asyncio
import json
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
import httpx
import structlog

from infrastructure.common.exceptions import (
    ConfigurationError,
    EdgeError,
    SecretExposureError,
    UnitInvocationError,
    UnitNotRegisteredError,
    UnitTimeoutError,
)
from infrastructure.compute.network import EgressGuardTransport, NetworkZone, SharedTransport
from infrastructure.compute.secrets import CredentialProvider

logger = structlog.get_logger(__name__)


class NetworkPlacement(str, Enum):
    """Whether a unit runs inside the network zone."""
    ZONED = "zoned"
    UNZONED = "unzoned"


@dataclass(frozen=True)
class ComputeUnitSpec:
    """Compute unit specification fixed at provisioning time."""
    name: str
    memory_mb: int
    timeout_seconds: float
    environment: dict[str, str] = field(default_factory=dict)
    placement: NetworkPlacement = NetworkPlacement.UNZONED
    secret_grants: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.memory_mb <= 0 or self.timeout_seconds <= 0:
            raise ConfigurationError(f"Compute unit '{self.name}' needs positive memory and timeout",
                                     config_key=self.name)

    @property
    def is_zoned(self) -> bool:
        return self.placement == NetworkPlacement.ZONED

    def validate_environment(self, forbidden_values: Iterable[str]) -> None:
        """Reject any environment value that carries a raw secret value."""
        for value in (v for v in forbidden_values if v):
            for variable, configured in self.environment.items():
                if configured == value or (len(value) >= 8 and value in configured):
                    raise SecretExposureError(self.name, variable)

    def to_declarative(self) -> dict[str, Any]:
        return {"name": self.name, "memory_mb": self.memory_mb, "timeout_seconds": self.timeout_seconds,
                "placement": self.placement.value, "environment": sorted(self.environment),
                "secret_grants": list(self.secret_grants)}


@dataclass
class ComputeRequest:
    """Request forwarded from the edge to a compute unit."""
    method: str
    path: str
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    request_id: str | None = None

    def json(self) -> Any:
        if not self.body:
            raise ValueError("request body is empty")
        return json.loads(self.body)


@dataclass
class ComputeResponse:
    """Response returned by a compute unit."""
    status_code: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def ok(cls, body: Any) -> ComputeResponse:
        return cls(status_code=200, body=body)

    @classmethod
    def bad_request(cls, message: str) -> ComputeResponse:
        return cls(status_code=400, body={"error": message})

    @classmethod
    def server_error(cls, message: str = "Internal server error") -> ComputeResponse:
        return cls(status_code=500, body={"error": message})


@dataclass
class ComputeContext:
    """What one invocation may see: its environment, credentials and outbound client."""
    spec: ComputeUnitSpec
    environment: dict[str, str]
    credentials: CredentialProvider | None = None
    zone: NetworkZone | None = None
    transport: httpx.AsyncBaseTransport | None = None

    @property
    def egress_address(self) -> str | None:
        return self.zone.egress_address_for(self.spec) if self.zone else None

    def http_client(self, base_url: str = "", timeout: float | None = None) -> httpx.AsyncClient:
        transport = SharedTransport(self.transport) if self.transport is not None else None
        if self.spec.is_zoned and self.zone is not None:
            transport = EgressGuardTransport(self.zone, transport)
        return httpx.AsyncClient(base_url=base_url, transport=transport,
                                 timeout=timeout or self.spec.timeout_seconds)


UnitHandler = Callable[[ComputeRequest, ComputeContext], Awaitable[ComputeResponse]]


@dataclass
class _RegisteredUnit:
    spec: ComputeUnitSpec
    handler: UnitHandler
    credentials: CredentialProvider | None = None
    invocations: int = 0


class ComputeUnitRegistry:
    """Named compute units and their invocation under memory/timeout limits."""

    def __init__(self, zone: NetworkZone | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._zone = zone
        self._transport = transport
        self._units: dict[str, _RegisteredUnit] = {}

    def register(self, spec: ComputeUnitSpec, handler: UnitHandler,
                 credentials: CredentialProvider | None = None) -> None:
        if spec.name in self._units:
            raise ConfigurationError(f"Compute unit '{spec.name}' already registered", config_key=spec.name)
        if spec.is_zoned and (self._zone is None or not self._zone.is_attached(spec.name)):
            raise ConfigurationError(f"Zoned unit '{spec.name}' is not attached to a network zone",
                                     config_key=spec.name)
        self._units[spec.name] = _RegisteredUnit(spec=spec, handler=handler, credentials=credentials)
        logger.info("compute_unit_registered", unit=spec.name, memory_mb=spec.memory_mb,
                    timeout_seconds=spec.timeout_seconds, placement=spec.placement.value)

    def __contains__(self, name: str) -> bool:
        return name in self._units

    def spec(self, name: str) -> ComputeUnitSpec:
        if name not in self._units:
            raise UnitNotRegisteredError(name)
        return self._units[name].spec

    def specs(self) -> list[ComputeUnitSpec]:
        return [u.spec for u in self._units.values()]

    def invocation_count(self, name: str) -> int:
        return self._units[name].invocations if name in self._units else 0

    def context_for(self, name: str) -> ComputeContext:
        unit = self._units.get(name)
        if unit is None:
            raise UnitNotRegisteredError(name)
        return ComputeContext(spec=unit.spec, environment=dict(unit.spec.environment),
                              credentials=unit.credentials,
                              zone=self._zone if unit.spec.is_zoned else None, transport=self._transport)

    async def invoke(self, name: str, request: ComputeRequest) -> ComputeResponse:
        context = self.context_for(name)
        unit = self._units[name]
        unit.invocations += 1
        log = logger.bind(unit=name, request_id=request.request_id)
        try:
            response = await asyncio.wait_for(unit.handler(request, context), timeout=unit.spec.timeout_seconds)
        except asyncio.TimeoutError:
            raise UnitTimeoutError(name, unit.spec.timeout_seconds)
        except EdgeError:
            raise
        except Exception as e:
            log.error("compute_unit_failed", error_type=type(e).__name__)
            raise UnitInvocationError(name, cause=e)
        log.info("compute_unit_invoked", status_code=response.status_code)
        return response
