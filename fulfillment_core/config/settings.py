"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./fulfillment.db",
        description="Database URL (postgresql+asyncpg://... in production)",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    sqlite_busy_timeout_seconds: float = Field(
        default=30.0, description="How long a SQLite writer waits for the write lock"
    )

    # Application Configuration
    app_name: str = Field(default="order-fulfillment-core", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    # Payment Verification
    payment_provider: str = Field(
        default="paystack", description="The single payment provider accepted by verification"
    )
    payment_webhook_secret: str = Field(
        default="", description="Provider secret used to sign webhook bodies (HMAC-SHA512)"
    )
    payment_amount_tolerance: Decimal = Field(
        default=Decimal("0.01"), description="Allowed rounding difference between reported and expected amounts"
    )
    default_currency: str = Field(default="NGN", description="Currency orders are priced in")
    payment_lock_attempts: int = Field(
        default=5, description="Lock acquisition attempts before verification reports a conflict"
    )

    # Order Locks
    lock_default_ttl_seconds: int = Field(default=30, description="Default order lock lease (seconds)")
    lock_max_ttl_seconds: int = Field(default=300, description="Longest lease an admin may request")

    # Notification Queue
    notification_max_retries: int = Field(
        default=3, description="Delivery attempts before an event is failed permanently"
    )
    notification_retry_delays_minutes: List[int] = Field(
        default=[5, 15, 60], description="Backoff before each redelivery attempt"
    )
    notification_processing_timeout_seconds: int = Field(
        default=600, description="Processing rows older than this are requeued by the janitor"
    )
    notification_stale_queued_minutes: int = Field(
        default=15, description="Queued rows older than this count as stale in health snapshots"
    )
    notification_batch_size: int = Field(default=50, description="Events claimed per worker poll")
    notification_poll_interval_seconds: float = Field(
        default=1.0, description="Worker sleep when the queue is empty"
    )

    # Reconciliation / maintenance
    reconciliation_batch_limit: int = Field(
        default=100, description="Orders healed per reconciliation run"
    )
    maintenance_interval_seconds: int = Field(
        default=60, description="Seconds between maintenance worker cycles"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currencies are 3-letter codes, stored upper-case."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    @field_validator("payment_provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Provider names are compared lower-case."""
        return v.strip().lower()

    @field_validator("notification_retry_delays_minutes")
    @classmethod
    def validate_retry_delays(cls, v: List[int]) -> List[int]:
        """At least one non-negative delay is required."""
        if not v or any(delay < 0 for delay in v):
            raise ValueError("Retry delays must be a non-empty list of non-negative minutes")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        """Check if the configured store is SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
