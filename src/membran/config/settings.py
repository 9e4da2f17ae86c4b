"""Settings for the reconciliation service, read from the environment or `.env`."""

from typing import Literal

from pydantic import Field, PostgresDsn, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Service settings.

    Field names map to upper-case environment variables (`DB_DSN`,
    `MIDTRANS_SERVER_KEY`, ...). Only `ENV` and `DB_DSN` are required.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Deployment environment (dev, staging or prod)",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL DSN holding tiers, subscriptions and the ledger",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    log_level: str = Field(
        default="INFO",
        description="Root log level passed to logging.basicConfig",
    )
    webhook_server_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for the webhook and read API server",
    )
    midtrans_server_key: SecretStr = Field(
        default=SecretStr(""),
        description="Midtrans server key (API auth and notification signatures)",
    )
    midtrans_environment: Literal["sandbox", "production"] = Field(
        default="sandbox",
        description="Midtrans API environment",
    )
    lock_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        description="Maximum wait for a per-subscription lock before reporting Busy",
    )
    expiring_soon_days: int = Field(
        default=7,
        ge=1,
        le=90,
        description="Lookahead window for the isExpiringSoon flag (days)",
    )
    expiry_sweep_interval_minutes: int = Field(
        default=60,
        ge=1,
        le=1440,
        description="Interval between expiry sweeps when run in-process (minutes)",
    )
    pending_timeout_minutes: int = Field(
        default=1440,
        ge=5,
        le=10080,
        description="Age after which an unpaid Pending order is marked Failed (minutes)",
    )
    payment_expiry_hours: int = Field(
        default=24,
        ge=1,
        le=168,
        description="Lifetime of a gateway payment link (hours)",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @model_validator(mode="after")
    def require_server_key_in_prod(self) -> "AppConfig":
        """Reject prod settings without a Midtrans server key."""
        if self.env == "prod" and not self.midtrans_server_key.get_secret_value():
            raise ValueError("midtrans_server_key is required when env is prod")
        return self


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
