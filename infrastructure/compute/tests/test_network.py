"""
Unit tests for the network zone and egress guard.
"""
from __future__ import annotations
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent))

import httpx
import pytest

from infrastructure.common.exceptions import ConfigurationError, EgressBlockedError
from infrastructure.compute.network import (
    EgressGuardTransport, EgressRule, NetworkZone, NetworkZoneSettings, SharedTransport, SubnetTier,
)
from infrastructure.compute.units import ComputeUnitSpec, NetworkPlacement


def zoned_spec(name: str = "exchange-proxy") -> ComputeUnitSpec:
    return ComputeUnitSpec(name=name, memory_mb=512, timeout_seconds=10, placement=NetworkPlacement.ZONED)


def unzoned_spec(name: str = "charge-creation") -> ComputeUnitSpec:
    return ComputeUnitSpec(name=name, memory_mb=512, timeout_seconds=30)


class TestNetworkZoneSettings:
    def test_defaults(self):
        settings = NetworkZoneSettings()
        assert settings.cidr == "10.0.0.0/16"
        assert settings.zones_list == ["us-east-1a", "us-east-1b"]
        assert settings.egress_port == 443

    def test_invalid_cidr(self):
        with pytest.raises(ValueError):
            NetworkZoneSettings(cidr="10.0.0.1/16")

    def test_invalid_public_ip(self):
        with pytest.raises(ValueError):
            NetworkZoneSettings(egress_public_ip="not-an-ip")


class TestNetworkZone:
    def test_build_carves_subnets_per_tier_and_zone(self):
        zone = NetworkZone.build(NetworkZoneSettings())
        public = zone.subnets_in(SubnetTier.PUBLIC)
        private = zone.subnets_in(SubnetTier.PRIVATE)
        assert [s.cidr for s in public] == ["10.0.0.0/24", "10.0.1.0/24"]
        assert [s.cidr for s in private] == ["10.0.2.0/24", "10.0.3.0/24"]
        assert {s.availability_zone for s in private} == {"us-east-1a", "us-east-1b"}

    def test_single_gateway_in_first_public_subnet(self):
        zone = NetworkZone.build(NetworkZoneSettings(egress_public_ip="198.51.100.7"))
        assert zone.gateway.subnet == zone.subnets_in(SubnetTier.PUBLIC)[0]
        assert zone.allow_list_entry() == "198.51.100.7/32"

    def test_cidr_too_small(self):
        settings = NetworkZoneSettings(cidr="10.0.0.0/23", availability_zones="a,b,c")
        with pytest.raises(ConfigurationError):
            NetworkZone.build(settings)

    def test_attach_places_unit_in_private_subnets(self):
        zone = NetworkZone.build()
        subnets = zone.attach(zoned_spec())
        assert subnets == ("exchange-zone-private-1", "exchange-zone-private-2")
        assert zone.is_attached("exchange-proxy")

    def test_attach_rejects_unzoned_unit(self):
        with pytest.raises(ConfigurationError):
            NetworkZone.build().attach(unzoned_spec())

    def test_every_zoned_unit_shares_one_egress_address(self):
        zone = NetworkZone.build()
        addresses = {zone.egress_address_for(zoned_spec(f"unit-{i}")) for i in range(3)}
        assert addresses == {zone.gateway.public_ip}
        assert zone.egress_address_for(unzoned_spec()) is None

    def test_check_egress(self):
        zone = NetworkZone.build()
        zone.check_egress("api.exchange.coinbase.com", 443)
        with pytest.raises(EgressBlockedError) as exc_info:
            zone.check_egress("api.exchange.coinbase.com", 80)
        assert exc_info.value.port == 80
        with pytest.raises(EgressBlockedError):
            zone.check_egress("api.exchange.coinbase.com", 443, protocol="udp")

    def test_egress_rule_to_declarative(self):
        assert EgressRule().to_declarative() == {"protocol": "tcp", "port": 443, "destination": "0.0.0.0/0"}

    def test_to_declarative(self):
        zone = NetworkZone.build()
        zone.attach(zoned_spec())
        exported = zone.to_declarative()
        assert len(exported["subnets"]) == 4
        assert exported["egress_gateway"]["subnet"] == "exchange-zone-public-1"
        assert exported["attachments"] == {"exchange-proxy": ["exchange-zone-private-1", "exchange-zone-private-2"]}


class TestEgressGuardTransport:
    @pytest.mark.asyncio
    async def test_https_allowed(self):
        transport = EgressGuardTransport(NetworkZone.build(), httpx.MockTransport(lambda r: httpx.Response(200)))
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.get("https://api-public.sandbox.exchange.coinbase.com/products")
        assert response.status_code == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["http://example.com/", "https://example.com:8443/"])
    async def test_other_ports_blocked(self, url):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        transport = EgressGuardTransport(NetworkZone.build(), httpx.MockTransport(handler))
        async with httpx.AsyncClient(transport=transport) as client:
            with pytest.raises(EgressBlockedError):
                await client.get(url)
        assert seen == []

    @pytest.mark.asyncio
    async def test_supplied_transport_left_open(self):
        inner = httpx.MockTransport(lambda r: httpx.Response(200))
        closed: list[bool] = []

        async def record_close() -> None:
            closed.append(True)

        inner.aclose = record_close
        async with httpx.AsyncClient(transport=EgressGuardTransport(NetworkZone.build(), inner)) as client:
            await client.get("https://api.commerce.coinbase.com/charges")
        async with httpx.AsyncClient(transport=SharedTransport(inner)) as client:
            await client.get("https://api.commerce.coinbase.com/charges")
        assert closed == []
