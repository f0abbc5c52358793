"""
Configuration management for the task market service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

REDACTION_MARKER = "***REDACTED***"

_SENSITIVE_KEY_FRAGMENTS: tuple[str, ...] = ("secret", "password", "api_key")


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str | None


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class IdentityConfig(BaseModel):
    """Identity service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    verify_token_path: str
    timeout_seconds: int


class PaymentsConfig(BaseModel):
    """Payment gateway connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    secret_key: str
    webhook_secret: str
    webhook_tolerance_seconds: int
    currency: str
    timeout_seconds: int


class PricingConfig(BaseModel):
    """Platform pricing configuration."""

    model_config = ConfigDict(extra="forbid")
    platform_fee_rate: Decimal

    @field_validator("platform_fee_rate")
    @classmethod
    def _fee_rate_is_fraction(cls, value: Decimal) -> Decimal:
        if value < 0 or value >= 1:
            msg = "platform_fee_rate must be in [0, 1)"
            raise ValueError(msg)
        return value


class EventsConfig(BaseModel):
    """Realtime event stream configuration."""

    model_config = ConfigDict(extra="forbid")
    subscriber_queue_size: int
    keepalive_seconds: int


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    identity: IdentityConfig
    payments: PaymentsConfig
    pricing: PricingConfig
    events: EventsConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path(__file__).resolve().parents[2] / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache settings from the configuration file."""
    config_path = get_config_path()
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


def clear_settings_cache() -> None:
    """Drop cached settings so the next call re-reads the file."""
    get_settings.cache_clear()


def _redact(value: Any, key: str = "") -> Any:
    if isinstance(value, dict):
        return {k: _redact(v, k) for k, v in value.items()}
    if any(fragment in key.lower() for fragment in _SENSITIVE_KEY_FRAGMENTS):
        return REDACTION_MARKER
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return _redact(get_settings().model_dump(mode="json"))
