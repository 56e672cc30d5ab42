"""
Shared configuration management for the caching proxy.
"""

from typing import Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.errors import ConfigurationError


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="CACHE_PROXY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Logging sink
    logs_dir: str = Field(default="./logs")
    access_log_file: Optional[str] = Field(default="access.log")


class ProxyConfig(BaseConfig):
    """Caching proxy configuration."""

    service_name: str = "proxy"
    host: str = "0.0.0.0"
    port: int = 443

    # Storage
    cache_dir: str = Field(default="./cache")
    cache_expiry_seconds: float = Field(default=72 * 3600)
    cache_refresh_seconds: float = Field(default=24 * 3600)

    # Origin
    origin_base_url: str = Field(default="http://real.example.com")
    origin_timeout_seconds: float = Field(default=50.0)
    origin_verify_tls: bool = Field(default=True)
    origin_ca_bundle: Optional[str] = Field(default=None)

    # TLS listener
    tls_certfile: Optional[str] = Field(default="cert.pem")
    tls_keyfile: Optional[str] = Field(default="key.key")

    # Background refresh
    refresh_workers: int = Field(default=4)
    refresh_queue_size: int = Field(default=1000)
    coalesce_fetches: bool = Field(default=True)

    ops_prefix: str = Field(default="/_proxy")

    @field_validator("cache_expiry_seconds", "cache_refresh_seconds", "origin_timeout_seconds")
    @classmethod
    def _positive_duration(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @field_validator("refresh_workers", "refresh_queue_size")
    @classmethod
    def _positive_count(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("origin_base_url")
    @classmethod
    def _origin_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("origin_base_url must be an http(s) URL")
        return value.rstrip("/")

    @field_validator("ops_prefix")
    @classmethod
    def _ops_prefix(cls, value: str) -> str:
        value = "/" + value.strip("/")
        if value == "/":
            raise ValueError("ops_prefix cannot be the root path")
        return value

    @model_validator(mode="after")
    def _refresh_within_expiry(self) -> "ProxyConfig":
        if self.cache_refresh_seconds > self.cache_expiry_seconds:
            raise ValueError("cache_refresh_seconds must not exceed cache_expiry_seconds")
        return self

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_certfile and self.tls_keyfile)


def get_config(**overrides) -> ProxyConfig:
    """Load proxy configuration from the environment, applying overrides."""
    try:
        return ProxyConfig(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(
            "Invalid proxy configuration",
            details={"errors": [err["msg"] for err in exc.errors()]},
        ) from exc
