"""
WhatIfInvested Compute - Network Boundary.
Isolated zone with private subnets and one shared egress gateway giving a stable outbound address.
"""
from __future__ import annotations
import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
import httpx
import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from infrastructure.common.exceptions import ConfigurationError, EgressBlockedError

if TYPE_CHECKING:
    from infrastructure.compute.units import ComputeUnitSpec

logger = structlog.get_logger(__name__)

DEFAULT_PORTS = {"https": 443, "http": 80}


class SubnetTier(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class NetworkZoneSettings(BaseSettings):
    """Network zone configuration."""
    cidr: str = Field(default="10.0.0.0/16")
    availability_zones: str = Field(default="us-east-1a,us-east-1b")
    subnet_prefix: int = Field(default=24, ge=16, le=28)
    egress_public_ip: str = Field(default="203.0.113.10", description="Address assigned to the egress gateway")
    egress_port: int = Field(default=443, ge=1, le=65535)
    model_config = SettingsConfigDict(env_prefix="NETWORK_", env_file=".env", extra="ignore")

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        ipaddress.ip_network(v, strict=True)
        return v

    @field_validator("egress_public_ip")
    @classmethod
    def validate_public_ip(cls, v: str) -> str:
        ipaddress.ip_address(v)
        return v

    @property
    def zones_list(self) -> list[str]:
        return [z.strip() for z in self.availability_zones.split(",") if z.strip()]


@dataclass(frozen=True)
class Subnet:
    name: str
    tier: SubnetTier
    availability_zone: str
    cidr: str

    def to_declarative(self) -> dict[str, Any]:
        return {"name": self.name, "tier": self.tier.value, "availability_zone": self.availability_zone, "cidr": self.cidr}


@dataclass(frozen=True)
class EgressGateway:
    """Single NAT gateway; its public address is what external services see."""
    name: str
    subnet: Subnet
    public_ip: str

    def to_declarative(self) -> dict[str, Any]:
        return {"name": self.name, "subnet": self.subnet.name, "public_ip": self.public_ip}


@dataclass(frozen=True)
class EgressRule:
    protocol: str = "tcp"
    port: int = 443
    destination: str = "0.0.0.0/0"

    def permits(self, port: int, protocol: str = "tcp") -> bool:
        return protocol.lower() == self.protocol and port == self.port

    def to_declarative(self) -> dict[str, Any]:
        return {"protocol": self.protocol, "port": self.port, "destination": self.destination}


@dataclass
class NetworkZone:
    """Private network zone hosting zoned compute units."""
    name: str
    cidr: str
    subnets: tuple[Subnet, ...]
    gateway: EgressGateway
    egress_rules: tuple[EgressRule, ...] = (EgressRule(),)
    attachments: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def build(cls, settings: NetworkZoneSettings | None = None, name: str = "exchange-zone") -> NetworkZone:
        settings = settings or NetworkZoneSettings()
        zones = settings.zones_list
        if not zones:
            raise ConfigurationError("Network zone needs at least one availability zone",
                                     config_key="NETWORK_AVAILABILITY_ZONES")
        network = ipaddress.ip_network(settings.cidr)
        blocks = network.subnets(new_prefix=settings.subnet_prefix)
        subnets: list[Subnet] = []
        try:
            for tier in (SubnetTier.PUBLIC, SubnetTier.PRIVATE):
                for index, az in enumerate(zones, start=1):
                    subnets.append(Subnet(name=f"{name}-{tier.value}-{index}", tier=tier,
                                          availability_zone=az, cidr=str(next(blocks))))
        except StopIteration:
            raise ConfigurationError(f"CIDR {settings.cidr} too small for {len(zones)} zones",
                                     config_key="NETWORK_CIDR")
        gateway = EgressGateway(name=f"{name}-egress", subnet=subnets[0], public_ip=settings.egress_public_ip)
        zone = cls(name=name, cidr=settings.cidr, subnets=tuple(subnets), gateway=gateway,
                   egress_rules=(EgressRule(port=settings.egress_port),))
        logger.info("network_zone_built", name=name, cidr=settings.cidr, zones=zones,
                    egress_ip=gateway.public_ip)
        return zone

    def subnets_in(self, tier: SubnetTier) -> list[Subnet]:
        return [s for s in self.subnets if s.tier == tier]

    def attach(self, spec: ComputeUnitSpec) -> tuple[str, ...]:
        """Place a zoned unit in the private subnets."""
        from infrastructure.compute.units import NetworkPlacement
        if spec.placement != NetworkPlacement.ZONED:
            raise ConfigurationError(f"Compute unit '{spec.name}' is not zoned", config_key="placement")
        names = tuple(s.name for s in self.subnets_in(SubnetTier.PRIVATE))
        self.attachments[spec.name] = names
        logger.info("compute_unit_attached", unit=spec.name, zone=self.name, subnets=list(names))
        return names

    def is_attached(self, unit_name: str) -> bool:
        return unit_name in self.attachments

    def egress_address_for(self, spec: ComputeUnitSpec) -> str | None:
        from infrastructure.compute.units import NetworkPlacement
        if spec.placement == NetworkPlacement.ZONED:
            return self.gateway.public_ip
        return None

    def allow_list_entry(self) -> str:
        return f"{self.gateway.public_ip}/32"

    def check_egress(self, host: str, port: int, protocol: str = "tcp") -> None:
        if not any(rule.permits(port, protocol) for rule in self.egress_rules):
            logger.warning("egress_blocked", zone=self.name, host=host, port=port, protocol=protocol)
            raise EgressBlockedError(host, port, protocol)

    def to_declarative(self) -> dict[str, Any]:
        return {"name": self.name, "cidr": self.cidr, "subnets": [s.to_declarative() for s in self.subnets],
                "egress_gateway": self.gateway.to_declarative(),
                "egress_rules": [r.to_declarative() for r in self.egress_rules],
                "attachments": {k: list(v) for k, v in self.attachments.items()}}


class SharedTransport(httpx.AsyncBaseTransport):
    """Delegates to a transport owned elsewhere; closing a client leaves it open."""

    def __init__(self, transport: httpx.AsyncBaseTransport) -> None:
        self._transport = transport

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self._transport.handle_async_request(request)

    async def aclose(self) -> None:
        pass


class EgressGuardTransport(httpx.AsyncBaseTransport):
    """Applies the zone's egress rules to every outbound request of a zoned unit."""

    def __init__(self, zone: NetworkZone, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._zone = zone
        self._owns_transport = transport is None
        self._transport = transport or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        port = request.url.port or DEFAULT_PORTS.get(request.url.scheme, 0)
        self._zone.check_egress(request.url.host, port)
        return await self._transport.handle_async_request(request)

    async def aclose(self) -> None:
        if self._owns_transport:
            await self._transport.aclose()
