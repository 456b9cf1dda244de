"""
WhatIfInvested Provisioning - Edge Settings.
Environment-driven configuration for the edge runtime and its compute units.
"""
from __future__ import annotations
from enum import Enum
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from services.coinbase_handlers.src.exchange import EXCHANGE_SANDBOX_URL


class EdgeEnvironment(str, Enum):
    """Deployment environment types."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class EdgeSettings(BaseSettings):
    """Edge runtime settings from environment."""
    environment: EdgeEnvironment = Field(default=EdgeEnvironment.DEVELOPMENT)
    service_name: str = Field(default="whatif-edge")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    frontend_base_url: str = Field(default="http://localhost:3000")
    commerce_api_key: SecretStr = Field(default=SecretStr(""))
    exchange_secret_name: str = Field(default="CoinbaseExchangeApiSecret")
    exchange_api_url: str = Field(default=EXCHANGE_SANDBOX_URL)
    redis_url: str | None = Field(default=None)
    charge_memory_mb: int = Field(default=512, ge=128, le=10240)
    charge_timeout_seconds: float = Field(default=30.0, gt=0, le=900)
    proxy_memory_mb: int = Field(default=512, ge=128, le=10240)
    proxy_timeout_seconds: float = Field(default=10.0, gt=0, le=900)
    model_config = SettingsConfigDict(env_prefix="EDGE_", env_file=".env", extra="ignore")

    @field_validator("frontend_base_url", "exchange_api_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level

    @property
    def is_production(self) -> bool:
        return self.environment == EdgeEnvironment.PRODUCTION
