"""
Unit tests for the secret access broker and providers.
"""
from __future__ import annotations
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent))

import json
import pytest
from unittest.mock import MagicMock
from pydantic import SecretStr

from infrastructure.common.exceptions import SecretAccessDeniedError, SecretUnavailableError
from infrastructure.compute.secrets import (
    AWSSecretsManagerProvider, LocalSecretsProvider, SecretAccessBroker, SecretBundle, SecretProvider,
    SecretsSettings, create_secret_provider,
)

COMPLETE = {"apiKey": "key-value-123", "apiSecret": "c2VjcmV0LXZhbHVl", "apiPassphrase": "pass-value-123"}


class TestSecretBundle:
    def test_placeholder_generates_only_passphrase(self):
        bundle = SecretBundle.placeholder()
        assert bundle.missing_fields() == ["apiKey", "apiSecret"]
        assert len(bundle.api_passphrase.get_secret_value()) >= 32

    def test_repr_hides_values(self):
        bundle = SecretBundle.model_validate(COMPLETE)
        assert "key-value-123" not in repr(bundle)
        assert "pass-value-123" not in str(bundle)

    def test_round_trip_through_secret_string(self):
        bundle = SecretBundle.model_validate(COMPLETE)
        parsed = SecretBundle.from_secret_string(bundle.to_secret_string().get_secret_value())
        assert parsed.is_complete
        assert parsed.api_key.get_secret_value() == "key-value-123"

    def test_from_secret_string_rejects_non_object(self):
        with pytest.raises(ValueError):
            SecretBundle.from_secret_string("[1, 2]")


class TestLocalSecretsProvider:
    @pytest.mark.asyncio
    async def test_create_and_rotate(self):
        provider = LocalSecretsProvider()
        meta = await provider.create_secret("bundle", SecretStr("{}"))
        assert meta.identifier == "local:secret:bundle"
        rotated = await provider.rotate(meta.identifier, SecretStr(json.dumps(COMPLETE)))
        assert rotated.version == "2"
        value, _ = await provider.get_secret(meta.identifier)
        assert json.loads(value.get_secret_value()) == COMPLETE

    @pytest.mark.asyncio
    async def test_duplicate_create_rejected(self):
        provider = LocalSecretsProvider()
        await provider.create_secret("bundle", SecretStr("{}"))
        with pytest.raises(ValueError):
            await provider.create_secret("bundle", SecretStr("{}"))


class TestAWSSecretsManagerProvider:
    @pytest.mark.asyncio
    async def test_get_secret_uses_client(self):
        client = MagicMock()
        client.get_secret_value.return_value = {
            "ARN": "arn:aws:secretsmanager:us-east-1:123:secret:bundle", "Name": "bundle",
            "SecretString": json.dumps(COMPLETE), "VersionId": "v2"}
        provider = AWSSecretsManagerProvider(SecretsSettings(), client=client)
        value, meta = await provider.get_secret("arn:aws:secretsmanager:us-east-1:123:secret:bundle")
        assert json.loads(value.get_secret_value())["apiKey"] == "key-value-123"
        assert meta.version == "v2"
        client.get_secret_value.assert_called_once_with(SecretId="arn:aws:secretsmanager:us-east-1:123:secret:bundle")

    @pytest.mark.asyncio
    async def test_create_secret(self):
        client = MagicMock()
        client.create_secret.return_value = {"ARN": "arn:aws:secretsmanager:us-east-1:123:secret:bundle",
                                             "Name": "bundle", "VersionId": "v1"}
        provider = AWSSecretsManagerProvider(SecretsSettings(), client=client)
        meta = await provider.create_secret("bundle", SecretStr("{}"), description="creds")
        assert meta.identifier.startswith("arn:aws:secretsmanager")
        client.create_secret.assert_called_once_with(Name="bundle", SecretString="{}", Description="creds")

    @pytest.mark.asyncio
    async def test_health_reports_failure(self):
        client = MagicMock()
        client.list_secrets.side_effect = RuntimeError("no network")
        health = await AWSSecretsManagerProvider(SecretsSettings(), client=client).check_health()
        assert health["status"] == "unhealthy"

    def test_factory_selects_provider(self):
        settings = SecretsSettings(default_provider=SecretProvider.AWS_SECRETS_MANAGER)
        assert isinstance(create_secret_provider(settings, client=MagicMock()), AWSSecretsManagerProvider)
        assert isinstance(create_secret_provider(SecretsSettings()), LocalSecretsProvider)


class TestSecretAccessBroker:
    @pytest.mark.asyncio
    async def test_provision_is_idempotent(self):
        broker = SecretAccessBroker(LocalSecretsProvider())
        first = await broker.provision_bundle("bundle")
        second = await broker.provision_bundle("bundle")
        assert first == second

    @pytest.mark.asyncio
    async def test_resolve_requires_grant(self):
        provider = LocalSecretsProvider()
        broker = SecretAccessBroker(provider)
        reference = await broker.provision_bundle("bundle")
        await provider.rotate(reference.identifier, SecretStr(json.dumps(COMPLETE)))
        with pytest.raises(SecretAccessDeniedError):
            await broker.resolve(reference.identifier, "charge-creation")
        broker.grant_read(reference, "exchange-proxy")
        bundle = await broker.resolve(reference.identifier, "exchange-proxy")
        assert bundle.api_key.get_secret_value() == "key-value-123"

    @pytest.mark.asyncio
    async def test_incomplete_bundle_unavailable(self):
        broker = SecretAccessBroker(LocalSecretsProvider())
        reference = await broker.provision_bundle("bundle")
        broker.grant_read(reference, "exchange-proxy")
        with pytest.raises(SecretUnavailableError) as exc_info:
            await broker.resolve(reference.identifier, "exchange-proxy")
        assert exc_info.value.http_status == 500

    @pytest.mark.asyncio
    async def test_malformed_bundle_unavailable(self):
        provider = LocalSecretsProvider()
        broker = SecretAccessBroker(provider)
        reference = await broker.provision_bundle("bundle")
        broker.grant_read(reference, "exchange-proxy")
        await provider.rotate(reference.identifier, SecretStr("not-json"))
        with pytest.raises(SecretUnavailableError):
            await broker.resolve(reference.identifier, "exchange-proxy")

    @pytest.mark.asyncio
    async def test_rotation_visible_on_next_resolve(self):
        provider = LocalSecretsProvider()
        broker = SecretAccessBroker(provider)
        reference = await broker.provision_bundle("bundle")
        broker.grant_read(reference, "exchange-proxy")
        credentials = broker.credentials_for("exchange-proxy", reference.identifier)
        await provider.rotate(reference.identifier, SecretStr(json.dumps(COMPLETE)))
        assert (await credentials.get_credentials()).api_key.get_secret_value() == "key-value-123"
        await provider.rotate(reference.identifier, SecretStr(json.dumps({**COMPLETE, "apiKey": "rotated-key-456"})))
        assert (await credentials.get_credentials()).api_key.get_secret_value() == "rotated-key-456"

    @pytest.mark.asyncio
    async def test_grants_exported(self):
        broker = SecretAccessBroker(LocalSecretsProvider())
        reference = await broker.provision_bundle("bundle")
        broker.grant_read(reference, "exchange-proxy")
        exported = [g.to_declarative() for g in broker.grants()]
        assert exported == [{"secret": "local:secret:bundle", "principal": "exchange-proxy",
                             "actions": ["secretsmanager:GetSecretValue", "secretsmanager:DescribeSecret"]}]
