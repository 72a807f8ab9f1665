"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # M-Pesa Daraja Configuration
    daraja_env: str = Field(default="sandbox", description="Daraja environment (sandbox/production)")
    daraja_consumer_key: str = Field(default="", description="Daraja app consumer key")
    daraja_consumer_secret: str = Field(default="", description="Daraja app consumer secret")
    daraja_shortcode: str = Field(default="174379", description="Paybill or till number")
    daraja_passkey: str = Field(default="", description="Lipa Na M-Pesa Online passkey")
    daraja_callback_url: str = Field(
        default="http://localhost:8000/callback", description="Public URL of the callback route"
    )
    daraja_transaction_type: str = Field(
        default="CustomerPayBillOnline",
        description="CustomerPayBillOnline for a paybill, CustomerBuyGoodsOnline for a till",
    )
    daraja_account_reference: str = Field(default="HOTSPOT", description="Account reference shown to payer")
    gateway_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Upper bound for one STK push, token fetch included"
    )
    gateway_failure_threshold: int = Field(
        default=5, description="Consecutive gateway failures before the circuit opens"
    )
    gateway_reset_timeout: int = Field(
        default=60, description="Seconds before an open circuit allows a trial call"
    )

    # Phone normalization
    country_prefix: str = Field(default="254", description="Country calling code used for MSISDNs")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./hotspot.db", description="SQLAlchemy async database URL"
    )
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    database_max_overflow: int = Field(default=20, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Pull Queue Configuration
    queue_backend: str = Field(default="memory", description="Pull queue backend (memory/redis)")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    queue_redis_key: str = Field(default="hotspot:pull_queue", description="Redis list key of the pull queue")

    # Application Configuration
    app_name: str = Field(default="hotspot-bridge", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(
        default=1, description="Number of API workers (use the redis queue backend above 1)"
    )
    allowed_origins: str = Field(default="*", description="CORS allowed origins (comma-separated)")

    # Security
    api_key_header: str = Field(default="X-API-Key", description="Admin API key header name")
    admin_api_key: Optional[str] = Field(
        default=None, description="Key required on admin routes; admin routes are open when unset"
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

    @field_validator("daraja_env")
    @classmethod
    def validate_daraja_env(cls, v: str) -> str:
        if v.lower() not in ("sandbox", "production"):
            raise ValueError("Invalid Daraja environment. Must be 'sandbox' or 'production'")
        return v.lower()

    @field_validator("queue_backend")
    @classmethod
    def validate_queue_backend(cls, v: str) -> str:
        if v.lower() not in ("memory", "redis"):
            raise ValueError("Invalid queue backend. Must be 'memory' or 'redis'")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def daraja_base_url(self) -> str:
        if self.daraja_env == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
