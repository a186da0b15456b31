"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables, falling back to a .env file
  - Validate types, ranges and cron expressions at startup
  - Keep secrets (database password, SMTP password, admin password) as SecretStr

Only AppSettings is a BaseSettings instance. Sub-settings are plain BaseModel
classes populated through env_nested_delimiter="__", so MAIL__SMTP_HOST maps to
mail.smtp_host, REMINDERS__DOMAIN_LEAD_DAYS to reminders.domain_lead_days, etc.

Settings are an immutable snapshot: get_settings() loads them once per process
and components receive the values they need at construction. Calling
get_settings.cache_clear() is the explicit reload boundary.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class DatabaseSettings(BaseModel):
    """
    PostgreSQL connection configuration.

    Accepts either a full connection string via DATABASE__DSN or individual
    components (DATABASE__HOST, DATABASE__PORT, DATABASE__NAME,
    DATABASE__USERNAME, DATABASE__PASSWORD). The DSN wins when both are set.
    """

    dsn: SecretStr | None = Field(default=None, description="Full PostgreSQL connection string")

    host: str | None = Field(default=None, description="PostgreSQL host")
    port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    name: str | None = Field(default=None, description="PostgreSQL database name")
    username: str | None = Field(default=None, description="PostgreSQL username")
    password: SecretStr | None = Field(default=None, description="PostgreSQL password")

    @model_validator(mode="after")
    def resolve_dsn(self) -> DatabaseSettings:
        """Build `dsn` from the components when no full DSN was given."""
        if self.dsn is not None:
            return self
        missing = [f for f, v in [
            ("DATABASE__HOST", self.host),
            ("DATABASE__NAME", self.name),
            ("DATABASE__USERNAME", self.username),
            ("DATABASE__PASSWORD", self.password),
        ] if not v]
        if missing:
            raise ValueError("Set DATABASE__DSN or provide all of: " + ", ".join(missing))
        dsn_value = (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"  # type: ignore[union-attr]
            f"@{self.host}:{self.port}/{self.name}"
        )
        object.__setattr__(self, "dsn", SecretStr(dsn_value))
        return self

    def get_dsn(self) -> str:
        assert self.dsn is not None  # guaranteed by resolve_dsn validator
        return self.dsn.get_secret_value()


class AdminSettings(BaseModel):
    """The single privileged account, created on first start when absent."""

    username: str = Field(min_length=5, description="Initial admin username")
    password: SecretStr = Field(description="Initial admin password")


class ReminderSettings(BaseModel):
    """Lead windows, in days, before expiration at which reminders start."""

    domain_lead_days: int = Field(default=30, ge=1, le=3650)
    certificate_lead_days: int = Field(default=14, ge=1, le=3650)


class MailSettings(BaseModel):
    """Outbound notification mail, sent over SMTP with implicit TLS."""

    from_address: str = Field(description="Envelope and header sender")
    to_address: str = Field(description="Recipient of every notification")
    smtp_host: str
    smtp_port: int = Field(default=465, ge=1, le=65535)
    username: str = Field(description="SMTP login")
    password: SecretStr = Field(description="SMTP password")
    timeout_seconds: int = Field(default=30, ge=1)


def _validate_cron(value: str) -> str:
    fields = value.strip().split()
    if len(fields) != 5:
        raise ValueError(
            f"Cron expression must have exactly 5 fields "
            f"(minute hour dom month dow), got {len(fields)}: {value!r}"
        )
    return value.strip()


class SchedulerSettings(BaseModel):
    """
    Cadence of the periodic jobs as 5-field cron expressions.

    Format: minute hour day-of-month month day-of-week
      "0 3 * * mon"  every Monday at 03:00
      "30 4 * * *"   daily at 04:30
    """

    domain_refresh_cron: str = Field(default="0 3 * * mon")
    nameserver_check_cron: str = Field(default="30 4 * * *")
    certificate_refresh_cron: str = Field(default="0 5 * * mon")
    session_cleanup_cron: str = Field(default="0 2 * * *")

    domain_refresh_delay_seconds: float = Field(default=15.0, ge=0)
    certificate_refresh_delay_seconds: float = Field(default=5.0, ge=0)

    @field_validator(
        "domain_refresh_cron",
        "nameserver_check_cron",
        "certificate_refresh_cron",
        "session_cleanup_cron",
    )
    @classmethod
    def validate_cron(cls, value: str) -> str:
        return _validate_cron(value)


class AppSettings(BaseSettings):
    """
    Root application settings.

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
        frozen=True,
    )

    database: DatabaseSettings
    admin: AdminSettings
    mail: MailSettings
    reminders: ReminderSettings = Field(default_factory=lambda: ReminderSettings())
    scheduler: SchedulerSettings = Field(default_factory=lambda: SchedulerSettings())

    listen_host: str = Field(default="0.0.0.0")
    listen_port: int = Field(default=8080, ge=1, le=65535)
    base_url: str = Field(default="http://localhost:8080", description="Public URL used in email deep links")

    rdap_bootstrap_url: str = Field(default="https://data.iana.org/rdap/dns.json")
    rdap_fallback_url: str = Field(default="https://rdap.org")
    doh_url: str = Field(default="https://dns.google/resolve")

    http_timeout_seconds: int = Field(default=20, ge=1)
    whois_timeout_seconds: int = Field(default=20, ge=1)
    tls_timeout_seconds: int = Field(default=10, ge=1)

    raw_payload_max_chars: int = Field(default=262_144, ge=1024)
    session_ttl_hours: int = Field(default=24, ge=1)
    secure_cookies: bool = Field(default=True)

    run_on_startup: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Process-wide settings snapshot. Clear the cache to reload."""
    return AppSettings()
