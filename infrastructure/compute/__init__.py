"""
WhatIfInvested Compute - units, network boundary and secret access.
"""
from .network import (
    EgressGateway,
    EgressGuardTransport,
    EgressRule,
    NetworkZone,
    NetworkZoneSettings,
    SharedTransport,
    Subnet,
    SubnetTier,
)
from .secrets import (
    AWSSecretsManagerProvider,
    CredentialProvider,
    LocalSecretsProvider,
    ScopedCredentialProvider,
    SecretAccessBroker,
    SecretBundle,
    SecretGrant,
    SecretReference,
    SecretsSettings,
    create_secret_provider,
)
from .units import (
    ComputeContext,
    ComputeRequest,
    ComputeResponse,
    ComputeUnitRegistry,
    ComputeUnitSpec,
    NetworkPlacement,
)

__all__ = [
    "EgressGateway",
    "EgressGuardTransport",
    "EgressRule",
    "NetworkZone",
    "NetworkZoneSettings",
    "SharedTransport",
    "Subnet",
    "SubnetTier",
    "AWSSecretsManagerProvider",
    "CredentialProvider",
    "LocalSecretsProvider",
    "ScopedCredentialProvider",
    "SecretAccessBroker",
    "SecretBundle",
    "SecretGrant",
    "SecretReference",
    "SecretsSettings",
    "create_secret_provider",
    "ComputeContext",
    "ComputeRequest",
    "ComputeResponse",
    "ComputeUnitRegistry",
    "ComputeUnitSpec",
    "NetworkPlacement",
]
