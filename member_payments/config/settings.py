"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="member-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=2, description="Number of API workers")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./member_payments.db",
        description="Async SQLAlchemy connection URL",
    )
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    database_max_overflow: int = Field(default=20, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    database_busy_timeout_seconds: float = Field(
        default=30.0, description="SQLite lock wait before giving up (seconds)"
    )

    # Hubtel Configuration
    hubtel_client_id: str = Field(default="", description="Hubtel API client id")
    hubtel_client_secret: str = Field(default="", description="Hubtel API client secret")
    hubtel_merchant_account_number: str = Field(
        default="", description="Hubtel merchant (POS sales) account number"
    )
    hubtel_checkout_url: str = Field(
        default="https://payproxyapi.hubtel.com/items/initiate",
        description="Hubtel online checkout initiation endpoint",
    )
    hubtel_status_url: str = Field(
        default=(
            "https://api.hubtel.com/v1/merchantaccount/merchants/"
            "{merchant_account}/transactions/status"
        ),
        description="Hubtel transaction status endpoint ({merchant_account} is substituted)",
    )
    hubtel_timeout_seconds: float = Field(default=15.0, description="Provider call timeout")
    hubtel_circuit_failure_threshold: int = Field(
        default=5, description="Consecutive provider failures before the circuit opens"
    )
    hubtel_circuit_reset_seconds: int = Field(
        default=60, description="Seconds before an open circuit lets a probe through"
    )

    # Public URLs
    public_api_url: str = Field(
        default="http://localhost:8000", description="Externally reachable base URL of this API"
    )
    frontend_url: str = Field(
        default="http://localhost:5173", description="Portal front-end used for return URLs"
    )

    # Authentication
    auth_jwt_secret: str = Field(default="", description="Secret used to verify bearer JWTs")
    auth_jwt_algorithm: str = Field(default="HS256", description="Bearer JWT algorithm")
    auth_jwt_audience: Optional[str] = Field(
        default="authenticated", description="Expected JWT audience (empty disables the check)"
    )
    admin_api_key: str = Field(default="", description="API key for admin endpoints")
    api_key_header: str = Field(default="X-API-Key", description="API key header name")

    # CORS
    allowed_origins: str = Field(
        default="http://localhost:5173,http://localhost:8080,http://localhost:3000",
        description="CORS allowed origins (comma-separated)",
    )
    preview_origin_pattern: str = Field(
        default=r"^https://[a-z0-9-]+--[a-f0-9-]+\.lovable\.app$",
        description="Regex matched against preview deployment origins",
    )

    # Payments
    currency: str = Field(default="GHS", description="Settlement currency")
    max_payment_amount: Decimal = Field(
        default=Decimal("100000"), description="Largest amount a member may pay in one checkout"
    )
    registration_fee: Decimal = Field(default=Decimal("5"), description="Flat registration fee")
    registration_window_minutes: int = Field(
        default=10, description="How recent a sign-up must be to start a registration payment"
    )
    abandoned_checkout_hours: int = Field(
        default=24, description="Age after which an unpaid pending checkout is closed"
    )

    # Rate Limiting
    rate_limit_backend: str = Field(default="memory", description="memory or redis")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    rate_limit_window_seconds: int = Field(default=60, description="Rate limit window length")
    initiate_checkout_rate_limit: int = Field(default=5, description="Checkouts per user per window")
    create_pending_rate_limit: int = Field(default=5, description="Pre-created payments per window")
    registration_rate_limit: int = Field(default=5, description="Registration checkouts per IP")
    status_check_rate_limit: int = Field(default=20, description="Status checks per user")
    verify_rate_limit: int = Field(default=20, description="Verify calls per user")
    receipt_rate_limit: int = Field(default=10, description="Receipt resends per user")
    webhook_rate_limit: int = Field(default=60, description="Provider callbacks per source IP")
    trust_forwarded_for: bool = Field(
        default=False, description="Take the client IP from X-Forwarded-For (behind a proxy)"
    )

    # Email
    email_api_url: str = Field(
        default="https://api.resend.com/emails", description="Transactional email API endpoint"
    )
    email_api_key: str = Field(default="", description="Transactional email API key")
    receipt_from_address: str = Field(
        default="Payments <payments@example.org>", description="Sender of payment receipts"
    )
    receipt_max_attempts: int = Field(
        default=5, description="Outbox deliveries attempted before a receipt is parked"
    )
    receipt_retry_backoff_seconds: float = Field(
        default=30.0, description="Base delay before a failed receipt is retried (doubles)"
    )
    organisation_name: str = Field(
        default="Member Association", description="Organisation named on receipts"
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

    @field_validator("rate_limit_backend")
    @classmethod
    def validate_rate_limit_backend(cls, v: str) -> str:
        """Only the in-process and Redis counters exist."""
        if v.lower() not in ("memory", "redis"):
            raise ValueError("rate_limit_backend must be 'memory' or 'redis'")
        return v.lower()

    @field_validator(
        "hubtel_client_id", "hubtel_client_secret", "hubtel_merchant_account_number"
    )
    @classmethod
    def strip_secret(cls, v: str) -> str:
        """Pasted secrets often carry a trailing newline."""
        return v.strip()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def hubtel_configured(self) -> bool:
        """All three provider credentials are present."""
        return bool(
            self.hubtel_client_id
            and self.hubtel_client_secret
            and self.hubtel_merchant_account_number
        )

    @property
    def callback_url(self) -> str:
        """Server-to-server notification URL handed to the provider."""
        return f"{self.public_api_url.rstrip('/')}/webhooks/hubtel-callback"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
