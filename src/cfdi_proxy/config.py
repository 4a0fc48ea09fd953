"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (12-factor app)
  - Fall back to .env file
  - Validate types and constraints at startup

Every field has a working default: the proxy needs no secrets of its own,
the FIEL arrives with each request.

Architecture: Only AppSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated by AppSettings via env_nested_delimiter="__", so the env
var PORTAL__TIMEOUT_SECONDS maps to portal.timeout_seconds, API__DEBUG maps to
api.debug, etc.
"""

from __future__ import annotations

import logging
from pathlib import Path

from limits import parse_many
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class PortalSettings(BaseModel):
    """
    CFDI portal (scraping path) transport and download settings.

    The portal is slow and occasionally requires legacy TLS negotiation;
    the defaults tolerate both.
    """

    login_url: str = Field(
        default="https://cfdiau.sat.gob.mx/nidp/app/login?id=SATx509Custom&sid=0&option=credential&sid=0",
        description="FIEL login form URL",
    )
    base_url: str = Field(
        default="https://portalcfdi.facturaelectronica.sat.gob.mx/",
        description="Portal root; query pages and resource links are relative to it",
    )
    connect_timeout_seconds: float = Field(default=60.0, ge=1)
    timeout_seconds: float = Field(default=600.0, ge=1)
    legacy_tls: bool = Field(
        default=True,
        description="Allow SECLEVEL=1 ciphers for the portal hosts only",
    )
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Base of the exponential backoff between login retries",
    )
    download_concurrency: int = Field(default=10, ge=1, le=50)
    download_deadline_seconds: float = Field(default=600.0, ge=1)
    result_limit: int = Field(
        default=500,
        ge=1,
        description="Rows the portal returns per search before truncating",
    )

    @model_validator(mode="after")
    def connect_within_total(self) -> PortalSettings:
        """The connect timeout can never exceed the total timeout."""
        if self.connect_timeout_seconds > self.timeout_seconds:
            raise ValueError(
                "PORTAL__CONNECT_TIMEOUT_SECONDS must not exceed PORTAL__TIMEOUT_SECONDS"
            )
        return self


class BulkSettings(BaseModel):
    """Descarga Masiva web-service settings."""

    timeout_seconds: float = Field(default=120.0, ge=1)
    token_ttl_seconds: int = Field(
        default=300,
        ge=30,
        description="Lifetime of the signed WS-Security timestamp",
    )


class ApiSettings(BaseModel):
    """HTTP surface settings."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    debug: bool = Field(
        default=False,
        description="Include exception details in 500 responses",
    )
    rate_limit: str = Field(
        default="60/minute",
        description="Per client IP budget shared by every route except health",
    )

    @field_validator("rate_limit")
    @classmethod
    def validate_rate_limit(cls, v: str) -> str:
        try:
            parse_many(v)
        except ValueError as e:
            raise ValueError(f"rate_limit must read like \"60/minute\": {e}") from e
        return v


class JobSettings(BaseModel):
    """
    Job-queue consumer mode: where files are written and how bulk
    requests are polled.
    """

    storage_dir: Path = Field(default=Path("storage/cfdis"))
    poll_interval_minutes: int = Field(default=5, ge=1, le=60)
    poll_max_hours: int = Field(default=72, ge=1)


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    portal: PortalSettings = Field(default_factory=lambda: PortalSettings())
    bulk: BulkSettings = Field(default_factory=lambda: BulkSettings())
    api: ApiSettings = Field(default_factory=lambda: ApiSettings())
    jobs: JobSettings = Field(default_factory=lambda: JobSettings())

    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Reject names the logging module does not know."""
        normalized = value.strip().upper()
        if not isinstance(logging.getLevelNamesMapping().get(normalized), int):
            raise ValueError(f"Unknown log level: {value!r}")
        return normalized
