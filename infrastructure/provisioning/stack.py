"""
WhatIfInvested Provisioning - Backend Stack.
Wires secrets, network zone, compute units, routes, CORS and throttling into one edge.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any
import httpx
import structlog

from infrastructure.api_gateway.cors import CORSConfig, CORSHandler, create_cors_handler
from infrastructure.api_gateway.gateway import EdgeGateway
from infrastructure.api_gateway.rate_limiting import RateLimitConfig, RateLimiter, create_rate_limiter
from infrastructure.api_gateway.routes import HttpMethod, RouteTable
from infrastructure.compute.network import NetworkZone, NetworkZoneSettings
from infrastructure.compute.secrets import (
    SecretAccessBroker,
    SecretProviderBase,
    SecretReference,
    SecretsSettings,
    create_secret_provider,
)
from infrastructure.compute.units import ComputeUnitRegistry, ComputeUnitSpec, NetworkPlacement
from services.coinbase_handlers.src.handlers import (
    COMMERCE_API_KEY_ENV,
    EXCHANGE_API_URL_ENV,
    EXCHANGE_SECRET_ENV,
    FRONTEND_BASE_URL_ENV,
    create_charge_handler,
    exchange_proxy_handler,
)
from .settings import EdgeSettings

logger = structlog.get_logger(__name__)

CHARGE_UNIT = "charge-creation"
PROXY_UNIT = "exchange-proxy"


@dataclass(frozen=True)
class StackOutputs:
    """Values an operator needs after provisioning."""
    egress_allow_list_entry: str
    exchange_secret_reference: str
    route_paths: tuple[str, ...]

    def to_declarative(self) -> dict[str, Any]:
        return {"egress_allow_list_entry": self.egress_allow_list_entry,
                "exchange_secret_reference": self.exchange_secret_reference, "routes": list(self.route_paths)}


class BackendStack:
    """Provisioned edge topology."""

    def __init__(self, settings: EdgeSettings, routes: RouteTable, cors: CORSHandler, limiter: RateLimiter,
                 zone: NetworkZone, broker: SecretAccessBroker, registry: ComputeUnitRegistry,
                 secret_reference: SecretReference) -> None:
        self.settings = settings
        self.routes = routes
        self.cors = cors
        self.limiter = limiter
        self.zone = zone
        self.broker = broker
        self.registry = registry
        self.secret_reference = secret_reference
        self.gateway = EdgeGateway(routes, cors, limiter, registry)

    def outputs(self) -> StackOutputs:
        return StackOutputs(egress_allow_list_entry=self.zone.allow_list_entry(),
                            exchange_secret_reference=self.secret_reference.identifier,
                            route_paths=tuple(sorted({r.path for r in self.routes.routes()})))

    def export_declarative_config(self) -> dict[str, Any]:
        return {
            "_format_version": "1.0",
            "service": self.settings.service_name,
            "routes": self.routes.export_routes(),
            "cors": self.cors.policy.to_declarative(),
            "throttle": self.limiter.policy.to_declarative(),
            "network_zone": self.zone.to_declarative(),
            "compute_units": [spec.to_declarative() for spec in self.registry.specs()],
            "secret_grants": [grant.to_declarative() for grant in self.broker.grants()],
            "outputs": self.outputs().to_declarative(),
        }

    def export_to_yaml(self) -> str:
        import yaml
        return yaml.dump(self.export_declarative_config(), default_flow_style=False, sort_keys=False)


def charge_unit_spec(settings: EdgeSettings) -> ComputeUnitSpec:
    return ComputeUnitSpec(
        name=CHARGE_UNIT, memory_mb=settings.charge_memory_mb, timeout_seconds=settings.charge_timeout_seconds,
        environment={COMMERCE_API_KEY_ENV: settings.commerce_api_key.get_secret_value(),
                     FRONTEND_BASE_URL_ENV: settings.frontend_base_url},
        placement=NetworkPlacement.UNZONED,
    )


def proxy_unit_spec(settings: EdgeSettings, reference: SecretReference) -> ComputeUnitSpec:
    return ComputeUnitSpec(
        name=PROXY_UNIT, memory_mb=settings.proxy_memory_mb, timeout_seconds=settings.proxy_timeout_seconds,
        environment={EXCHANGE_SECRET_ENV: reference.identifier, EXCHANGE_API_URL_ENV: settings.exchange_api_url},
        placement=NetworkPlacement.ZONED, secret_grants=(reference.identifier,),
    )


async def build_backend_stack(
    settings: EdgeSettings | None = None,
    *,
    cors_config: CORSConfig | None = None,
    rate_limit_config: RateLimitConfig | None = None,
    network_settings: NetworkZoneSettings | None = None,
    secrets_settings: SecretsSettings | None = None,
    secret_provider: SecretProviderBase | None = None,
    redis_client: Any | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BackendStack:
    """Provision the full edge: secret, zone, units, grants, routes and edge policies."""
    settings = settings or EdgeSettings()
    secrets_settings = secrets_settings or SecretsSettings()
    broker = SecretAccessBroker(secret_provider or create_secret_provider(secrets_settings), secrets_settings)
    reference = await broker.provision_bundle(settings.exchange_secret_name,
                                              description="Coinbase Exchange API credentials")
    zone = NetworkZone.build(network_settings)

    charge_spec = charge_unit_spec(settings)
    proxy_spec = proxy_unit_spec(settings, reference)
    secret_values = await broker.current_values(reference)
    for spec in (charge_spec, proxy_spec):
        spec.validate_environment(secret_values)

    zone.attach(proxy_spec)
    broker.grant_read(reference, PROXY_UNIT)
    registry = ComputeUnitRegistry(zone=zone, transport=transport)
    registry.register(charge_spec, create_charge_handler)
    registry.register(proxy_spec, exchange_proxy_handler,
                      credentials=broker.credentials_for(PROXY_UNIT, reference.identifier))

    routes = RouteTable()
    routes.add_route("/charges", HttpMethod.POST, CHARGE_UNIT, tags=("payments",))
    routes.add_route("/coinbase-proxy", HttpMethod.POST, PROXY_UNIT, tags=("exchange",))

    cors = create_cors_handler(cors_config)
    limiter = create_rate_limiter(rate_limit_config, redis_client=redis_client)
    if settings.is_production and not limiter.is_shared:
        logger.warning("throttle_store_not_shared", environment=settings.environment.value,
                       detail="set EDGE_REDIS_URL so every instance shares one bucket")
    if (limiter.policy.rate, limiter.policy.burst) == (1.0, 2):
        logger.warning("throttle_placeholder_limits", rate=limiter.policy.rate, burst=limiter.policy.burst)

    stack = BackendStack(settings, routes, cors, limiter, zone, broker, registry, reference)
    logger.info("backend_stack_provisioned", routes=len(routes), units=len(registry.specs()),
                egress=zone.allow_list_entry(), secret=reference.identifier)
    return stack
