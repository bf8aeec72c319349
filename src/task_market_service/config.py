"""
Configuration management for the task market service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
Deployment secrets may be supplied through environment variables,
which take precedence over the YAML values.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

REDACTION_MARKER = "***REDACTED***"

# Environment variable -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "JWT_SECRET": ("auth", "user_jwt_secret"),
    "WORKER_JWT_SECRET": ("auth", "worker_jwt_secret"),
    "AWS_ACCESS_KEY_ID": ("storage", "access_key_id"),
    "AWS_SECRET_ACCESS_KEY": ("storage", "secret_access_key"),
    "AWS_REGION": ("storage", "region"),
    "S3_BUCKET_NAME": ("storage", "bucket"),
    "CLOUDFRONT_DOMAIN": ("delivery", "base_url"),
    "SOLANA_RPC_URL": ("settlement", "rpc_url"),
    "PARENT_WALLET_PRIVATE_KEY": ("settlement", "payer_private_key"),
    "PORT": ("server", "port"),
}

_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "user_jwt_secret",
        "worker_jwt_secret",
        "access_key_id",
        "secret_access_key",
        "payer_private_key",
    }
)


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
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class AuthConfig(BaseModel):
    """Credential signing configuration for the user and worker namespaces."""

    model_config = ConfigDict(extra="forbid")
    user_jwt_secret: str
    worker_jwt_secret: str
    token_ttl_seconds: int
    allow_legacy_worker_signin: bool

    @field_validator("user_jwt_secret", "worker_jwt_secret")
    @classmethod
    def secret_must_not_be_empty(cls, value: str) -> str:
        """Reject missing signing secrets at startup."""
        if not value.strip():
            msg = "auth signing secrets must not be empty"
            raise ValueError(msg)
        return value

    @field_validator("token_ttl_seconds")
    @classmethod
    def ttl_must_be_positive(cls, value: int) -> int:
        """Reject non-positive token lifetimes."""
        if value <= 0:
            msg = "auth.token_ttl_seconds must be positive"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def secrets_must_differ(self) -> AuthConfig:
        """User and worker credentials must never be interchangeable."""
        if self.user_jwt_secret == self.worker_jwt_secret:
            msg = "auth.user_jwt_secret and auth.worker_jwt_secret must differ"
            raise ValueError(msg)
        return self


class StorageConfig(BaseModel):
    """Object storage (S3) configuration."""

    model_config = ConfigDict(extra="forbid")
    bucket: str
    region: str
    access_key_id: str | None
    secret_access_key: str | None
    upload_url_ttl_seconds: int

    @field_validator("upload_url_ttl_seconds")
    @classmethod
    def ttl_must_be_positive(cls, value: int) -> int:
        """Reject non-positive presigned URL lifetimes."""
        if value <= 0:
            msg = "storage.upload_url_ttl_seconds must be positive"
            raise ValueError(msg)
        return value


class DeliveryConfig(BaseModel):
    """Content delivery front end configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str

    @field_validator("base_url")
    @classmethod
    def base_url_must_be_absolute(cls, value: str) -> str:
        """Delivery URLs are built by prefixing keys with this base."""
        value = value.strip()
        if not value:
            msg = "delivery.base_url must not be empty"
            raise ValueError(msg)
        if "://" not in value:
            value = f"https://{value}"
        return value


class SettlementConfig(BaseModel):
    """Reward and payout configuration."""

    model_config = ConfigDict(extra="forbid")
    rpc_url: str
    payer_private_key: str | None
    reward_pct: int
    transfer_failure_policy: Literal["strict", "optimistic"]
    confirm_timeout_seconds: int

    @field_validator("reward_pct")
    @classmethod
    def reward_pct_in_range(cls, value: int) -> int:
        """Reward is a percentage of the task bounty."""
        if not 0 <= value <= 100:
            msg = "settlement.reward_pct must be between 0 and 100"
            raise ValueError(msg)
        return value

    @field_validator("payer_private_key")
    @classmethod
    def blank_key_means_disabled(cls, value: str | None) -> str | None:
        """Treat an empty payer key the same as an absent one."""
        if value is None or not value.strip():
            return None
        return value.strip()


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
    auth: AuthConfig
    storage: StorageConfig
    delivery: DeliveryConfig
    settlement: SettlementConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path."""
    return Path(os.environ.get("CONFIG_PATH", "config.yaml")).resolve()


def apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Overlay recognized environment variables onto raw YAML data."""
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None:
            continue
        target = raw.get(section)
        if not isinstance(target, dict):
            continue
        target[key] = value
    return raw


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and validate settings once per process.

    Raises:
        FileNotFoundError: If the configuration file does not exist
        ValueError: If the file is not a YAML mapping
        pydantic.ValidationError: If any value is missing or invalid
    """
    config_path = get_config_path()
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**apply_env_overrides(raw))


def clear_settings_cache() -> None:
    """Forget the cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            key: (REDACTION_MARKER if key in _SENSITIVE_KEYS and value is not None else _redact(value))
            for key, value in data.items()
        }
    return data


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return _redact(get_settings().model_dump())
