"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./engagement_orders.db",
        description="SQLAlchemy async database URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Pesapal Configuration
    pesapal_consumer_key: str = Field(default="", description="Pesapal consumer key")
    pesapal_consumer_secret: str = Field(default="", description="Pesapal consumer secret")
    pesapal_base_url: str = Field(
        default="https://cybqa.pesapal.com/pesapalv3",
        description="Pesapal API base URL (sandbox by default)",
    )
    pesapal_ipn_id: str = Field(default="", description="Registered IPN notification id")
    pesapal_callback_url: str = Field(
        default="http://localhost:5173/payment/callback",
        description="Buyer-facing callback URL sent with every order",
    )
    pesapal_timeout_seconds: float = Field(default=10.0, description="Pesapal request timeout")
    pesapal_submit_timeout_seconds: float = Field(
        default=15.0, description="Pesapal order submission timeout"
    )

    # Supplier Configuration
    supplier_api_url: str = Field(
        default="https://jeskieinc.com/api/v2", description="Supplier API endpoint"
    )
    supplier_api_key: str = Field(default="", description="Supplier static API key")
    supplier_timeout_seconds: float = Field(default=15.0, description="Supplier request timeout")

    # Service catalog overrides: "platform:service:quality" -> supplier service id
    service_overrides: Dict[str, int] = Field(
        default_factory=dict,
        description="Manual (platform, service, quality) to supplier service id mapping",
    )

    # Reconciliation
    payment_expiry_minutes: int = Field(
        default=30, description="Minutes without payment confirmation before expiry"
    )
    supplier_max_retries: int = Field(
        default=3, description="Max supplier submission attempts before manual intervention"
    )
    registration_max_attempts: int = Field(
        default=3, description="Max payment registration attempts before expiry"
    )
    sweep_interval_seconds: int = Field(default=300, description="Seconds between sweeps")
    sweep_batch_size: int = Field(default=50, description="Max orders selected per sweep")
    processing_refresh_minutes: int = Field(
        default=15, description="Minimum minutes between supplier status checks"
    )
    pending_payment_grace_minutes: int = Field(
        default=5, description="Minutes to wait for a webhook before polling payment status"
    )
    sweep_lease_enabled: bool = Field(
        default=False, description="Guard sweeps with a storage lease (multi-instance)"
    )
    sweep_lease_seconds: int = Field(default=600, description="Sweep lease duration")
    submission_claim_timeout_minutes: int = Field(
        default=10, description="Minutes before an unrecorded supplier submission claim is stale"
    )
    expiry_poll_failure_grace_minutes: int = Field(
        default=60, description="Extra minutes before expiring an order whose payment poll failed"
    )

    # Application Configuration
    app_name: str = Field(default="engagement-orders", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)"
    )
    public_base_url: str = Field(
        default="http://localhost:8000", description="Public URL of this service (IPN target)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("pesapal_base_url", "supplier_api_url", "public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URLs so paths can be appended."""
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_sandbox(self) -> bool:
        """Check if the Pesapal sandbox is configured."""
        return "cybqa" in self.pesapal_base_url

    @property
    def ipn_url(self) -> str:
        """Public IPN endpoint registered with Pesapal."""
        return f"{self.public_base_url}/payment/ipn"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
