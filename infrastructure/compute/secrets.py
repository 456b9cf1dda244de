"""
WhatIfInvested Compute - Secret Access Broker.
Exchange credential bundle stored by reference, resolved per invocation under per-unit read grants.
"""
from __future__ import annotations
import asyncio
import json
import secrets as token_source
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

from infrastructure.common.exceptions import SecretAccessDeniedError, SecretUnavailableError

logger = structlog.get_logger(__name__)

SECRET_BUNDLE_FIELDS: tuple[str, ...] = ("apiKey", "apiSecret", "apiPassphrase")
GENERATED_FIELD = "apiPassphrase"
READ_ACTIONS: tuple[str, ...] = ("secretsmanager:GetSecretValue", "secretsmanager:DescribeSecret")


class SecretProvider(str, Enum):
    """Secret storage provider types."""
    AWS_SECRETS_MANAGER = "aws_secrets_manager"
    LOCAL = "local"


class SecretsSettings(BaseSettings):
    """Secrets configuration."""
    default_provider: SecretProvider = Field(default=SecretProvider.LOCAL)
    aws_region: str = Field(default="us-east-1")
    aws_access_key_id: SecretStr | None = Field(default=None)
    aws_secret_access_key: SecretStr | None = Field(default=None)
    generated_length: int = Field(default=32, ge=16, le=128)
    model_config = SettingsConfigDict(env_prefix="SECRETS_", env_file=".env", extra="ignore")


class SecretMetadata(BaseModel):
    """Metadata for secrets."""
    name: str
    identifier: str
    provider: SecretProvider
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = Field(default="1")
    description: str | None = None


class SecretBundle(BaseModel):
    """Exchange credential bundle; values never appear in repr or logs."""
    api_key: SecretStr = Field(default=SecretStr(""), alias="apiKey")
    api_secret: SecretStr = Field(default=SecretStr(""), alias="apiSecret")
    api_passphrase: SecretStr = Field(default=SecretStr(""), alias="apiPassphrase")
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @classmethod
    def from_secret_string(cls, secret_string: str) -> SecretBundle:
        data = json.loads(secret_string)
        if not isinstance(data, dict):
            raise ValueError("secret string is not a JSON object")
        return cls.model_validate({k: v for k, v in data.items() if k in SECRET_BUNDLE_FIELDS})

    @classmethod
    def placeholder(cls, length: int = 32) -> SecretBundle:
        return cls.model_validate({GENERATED_FIELD: token_source.token_urlsafe(length)})

    def missing_fields(self) -> list[str]:
        values = {"apiKey": self.api_key, "apiSecret": self.api_secret, "apiPassphrase": self.api_passphrase}
        return [name for name, value in values.items() if not value.get_secret_value()]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()

    def to_secret_string(self) -> SecretStr:
        return SecretStr(json.dumps({
            "apiKey": self.api_key.get_secret_value(),
            "apiSecret": self.api_secret.get_secret_value(),
            "apiPassphrase": self.api_passphrase.get_secret_value(),
        }))

    def secret_values(self) -> list[str]:
        return [v.get_secret_value() for v in (self.api_key, self.api_secret, self.api_passphrase) if v.get_secret_value()]


@dataclass(frozen=True)
class SecretReference:
    """Opaque identifier of a secret, safe to place in unit configuration."""
    identifier: str
    name: str

    def __str__(self) -> str:
        return self.identifier


@dataclass(frozen=True)
class SecretGrant:
    """Read-only access of one compute unit to one secret."""
    reference: SecretReference
    principal: str
    actions: tuple[str, ...] = READ_ACTIONS

    def to_declarative(self) -> dict[str, Any]:
        return {"secret": self.reference.identifier, "principal": self.principal, "actions": list(self.actions)}


class SecretProviderBase(ABC):
    """Abstract base class for secret providers."""

    @abstractmethod
    async def get_secret(self, identifier: str) -> tuple[SecretStr, SecretMetadata]:
        """Retrieve a secret by identifier."""

    @abstractmethod
    async def describe_secret(self, name: str) -> SecretMetadata | None:
        """Return metadata for a secret name, or None when absent."""

    @abstractmethod
    async def create_secret(self, name: str, value: SecretStr, description: str | None = None) -> SecretMetadata:
        """Create a secret."""

    @abstractmethod
    async def check_health(self) -> dict[str, Any]:
        """Check provider health status."""


class AWSSecretsManagerProvider(SecretProviderBase):
    """AWS Secrets Manager provider."""

    def __init__(self, settings: SecretsSettings, client: Any | None = None) -> None:
        self._settings = settings
        self._client: Any = client

    async def _ensure_client(self) -> Any:
        """Initialize AWS Secrets Manager client."""
        if self._client is None:
            import boto3
            kwargs: dict[str, Any] = {"region_name": self._settings.aws_region}
            if self._settings.aws_access_key_id and self._settings.aws_secret_access_key:
                kwargs["aws_access_key_id"] = self._settings.aws_access_key_id.get_secret_value()
                kwargs["aws_secret_access_key"] = self._settings.aws_secret_access_key.get_secret_value()
            self._client = await asyncio.to_thread(boto3.client, "secretsmanager", **kwargs)
            logger.info("aws_secrets_manager_initialized", region=self._settings.aws_region)
        return self._client

    async def get_secret(self, identifier: str) -> tuple[SecretStr, SecretMetadata]:
        client = await self._ensure_client()
        response = await asyncio.to_thread(client.get_secret_value, SecretId=identifier)
        secret_value = response.get("SecretString")
        if secret_value is None:
            raise ValueError("secret has no string value")
        metadata = SecretMetadata(
            name=response.get("Name", identifier), identifier=response.get("ARN", identifier),
            provider=SecretProvider.AWS_SECRETS_MANAGER, version=response.get("VersionId", "AWSCURRENT"),
            created_at=response.get("CreatedDate", datetime.now(timezone.utc)),
        )
        return SecretStr(secret_value), metadata

    async def describe_secret(self, name: str) -> SecretMetadata | None:
        client = await self._ensure_client()
        try:
            response = await asyncio.to_thread(client.describe_secret, SecretId=name)
        except client.exceptions.ResourceNotFoundException:
            return None
        return SecretMetadata(name=response["Name"], identifier=response["ARN"],
                              provider=SecretProvider.AWS_SECRETS_MANAGER,
                              created_at=response.get("CreatedDate", datetime.now(timezone.utc)),
                              description=response.get("Description"))

    async def create_secret(self, name: str, value: SecretStr, description: str | None = None) -> SecretMetadata:
        client = await self._ensure_client()
        kwargs: dict[str, Any] = {"Name": name, "SecretString": value.get_secret_value()}
        if description:
            kwargs["Description"] = description
        response = await asyncio.to_thread(client.create_secret, **kwargs)
        return SecretMetadata(name=response["Name"], identifier=response["ARN"],
                              provider=SecretProvider.AWS_SECRETS_MANAGER,
                              version=response.get("VersionId", "AWSCURRENT"), description=description)

    async def check_health(self) -> dict[str, Any]:
        try:
            client = await self._ensure_client()
            await asyncio.to_thread(client.list_secrets, MaxResults=1)
            return {"status": "healthy", "provider": "aws_secrets_manager", "region": self._settings.aws_region}
        except Exception as e:
            return {"status": "unhealthy", "provider": "aws_secrets_manager", "error": str(e)}


class LocalSecretsProvider(SecretProviderBase):
    """In-memory secrets provider for development and tests."""

    def __init__(self, settings: SecretsSettings | None = None) -> None:
        self._settings = settings or SecretsSettings()
        self._secrets: dict[str, tuple[SecretStr, SecretMetadata]] = {}

    @staticmethod
    def _identifier(name: str) -> str:
        return f"local:secret:{name}"

    async def get_secret(self, identifier: str) -> tuple[SecretStr, SecretMetadata]:
        if identifier not in self._secrets:
            raise KeyError(f"Secret not found: {identifier}")
        return self._secrets[identifier]

    async def describe_secret(self, name: str) -> SecretMetadata | None:
        entry = self._secrets.get(self._identifier(name))
        return entry[1] if entry else None

    async def create_secret(self, name: str, value: SecretStr, description: str | None = None) -> SecretMetadata:
        identifier = self._identifier(name)
        if identifier in self._secrets:
            raise ValueError(f"Secret already exists: {name}")
        meta = SecretMetadata(name=name, identifier=identifier, provider=SecretProvider.LOCAL, description=description)
        self._secrets[identifier] = (value, meta)
        return meta

    async def rotate(self, identifier: str, value: SecretStr) -> SecretMetadata:
        """Replace the stored value, as an out-of-band rotation would."""
        _, previous = await self.get_secret(identifier)
        meta = previous.model_copy(update={"version": str(int(previous.version) + 1)})
        self._secrets[identifier] = (value, meta)
        logger.info("local_secret_rotated", identifier=identifier, version=meta.version)
        return meta

    async def check_health(self) -> dict[str, Any]:
        return {"status": "healthy", "provider": "local", "secret_count": len(self._secrets)}


class CredentialProvider(Protocol):
    """Injected credential source handed to a compute unit."""

    async def get_credentials(self) -> SecretBundle:
        ...


class SecretAccessBroker:
    """Provisions secret bundles, records grants and resolves references at call time."""

    def __init__(self, provider: SecretProviderBase, settings: SecretsSettings | None = None) -> None:
        self._provider = provider
        self._settings = settings or SecretsSettings()
        self._grants: dict[tuple[str, str], SecretGrant] = {}

    async def provision_bundle(self, name: str, description: str | None = None) -> SecretReference:
        existing = await self._provider.describe_secret(name)
        if existing is not None:
            logger.info("secret_bundle_exists", name=name, identifier=existing.identifier)
            return SecretReference(identifier=existing.identifier, name=name)
        placeholder = SecretBundle.placeholder(self._settings.generated_length)
        meta = await self._provider.create_secret(name, placeholder.to_secret_string(), description)
        logger.info("secret_bundle_provisioned", name=name, identifier=meta.identifier,
                    pending_fields=placeholder.missing_fields())
        return SecretReference(identifier=meta.identifier, name=name)

    def grant_read(self, reference: SecretReference, principal: str) -> SecretGrant:
        grant = SecretGrant(reference=reference, principal=principal)
        self._grants[(reference.identifier, principal)] = grant
        logger.info("secret_access_granted", secret=reference.identifier, principal=principal)
        return grant

    def has_grant(self, identifier: str, principal: str) -> bool:
        return (identifier, principal) in self._grants

    def grants(self) -> list[SecretGrant]:
        return list(self._grants.values())

    async def current_values(self, reference: SecretReference) -> list[str]:
        """Raw values of the bundle, for provisioning-time exposure checks only."""
        value, _ = await self._provider.get_secret(reference.identifier)
        return SecretBundle.from_secret_string(value.get_secret_value()).secret_values()

    def credentials_for(self, principal: str, identifier: str) -> ScopedCredentialProvider:
        return ScopedCredentialProvider(self, principal, identifier)

    async def resolve(self, identifier: str, principal: str) -> SecretBundle:
        if not self.has_grant(identifier, principal):
            logger.warning("secret_access_denied", secret=identifier, principal=principal)
            raise SecretAccessDeniedError(identifier, principal)
        try:
            value, meta = await self._provider.get_secret(identifier)
            bundle = SecretBundle.from_secret_string(value.get_secret_value())
        except (ValueError, ValidationError) as e:
            raise SecretUnavailableError(identifier, "malformed bundle", cause=e)
        except Exception as e:
            raise SecretUnavailableError(identifier, type(e).__name__, cause=e)
        missing = bundle.missing_fields()
        if missing:
            raise SecretUnavailableError(identifier, f"fields not populated: {', '.join(missing)}")
        logger.info("secret_resolved", secret=identifier, principal=principal, version=meta.version)
        return bundle


class ScopedCredentialProvider:
    """Credential provider bound to one principal and one secret reference."""

    def __init__(self, broker: SecretAccessBroker, principal: str, identifier: str) -> None:
        self._broker = broker
        self._principal = principal
        self._identifier = identifier

    @property
    def identifier(self) -> str:
        return self._identifier

    async def get_credentials(self) -> SecretBundle:
        return await self._broker.resolve(self._identifier, self._principal)


def create_secret_provider(settings: SecretsSettings | None = None, client: Any | None = None) -> SecretProviderBase:
    """Create the configured secret provider."""
    settings = settings or SecretsSettings()
    if settings.default_provider == SecretProvider.AWS_SECRETS_MANAGER:
        return AWSSecretsManagerProvider(settings, client=client)
    return LocalSecretsProvider(settings)
