"""
Application settings with validation using pydantic-settings.
Validates all required environment variables at startup.
"""
from decimal import Decimal
from typing import Optional
from urllib.parse import quote_plus

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    DB_USER: str = Field(default="postgres", description="PostgreSQL username")
    DB_PASSWORD: str = Field(default="", description="PostgreSQL password")
    DB_NAME: str = Field(default="commerce", description="PostgreSQL database name")
    DB_HOST: str = Field(default="localhost", description="PostgreSQL host")
    DB_PORT: str = Field(default="5432", description="PostgreSQL port")
    DB_URL: Optional[str] = Field(default=None, description="Full SQLAlchemy URL (overrides DB_* parts)")

    # Database pool configuration
    DB_POOL_SIZE: int = Field(default=20, description="Database connection pool size")
    DB_MAX_OVERFLOW: int = Field(default=40, description="Database max overflow connections")
    DB_POOL_RECYCLE: int = Field(default=3600, description="Database connection recycle time (seconds)")

    # Environment
    ENVIRONMENT: str = Field(default="production", description="Environment: development or production")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # Stock reservation policy
    RESERVATION_TTL_SECONDS: int = Field(default=900, description="Default hold duration for cart reservations")
    RESERVATION_MIN_QUANTITY: int = Field(default=1, description="Smallest quantity a single reservation may hold")
    RESERVATION_MAX_QUANTITY: int = Field(default=100, description="Largest quantity a single reservation may hold")
    RESERVATION_SWEEP_INTERVAL_SECONDS: int = Field(default=300, description="Expired reservation sweep period")
    STRICT_STOCK_CONFIRM: bool = Field(
        default=False,
        description="Fail confirmations that would drive on-hand stock below zero instead of clamping",
    )

    # Khalti payment gateway
    KHALTI_BASE_URL: str = Field(default="https://dev.khalti.com/api/v2/epayment/", description="Khalti ePayment API base URL")
    KHALTI_SECRET_KEY: Optional[str] = Field(default=None, description="Khalti live/test secret key")
    KHALTI_RETURN_URL: Optional[str] = Field(default=None, description="URL Khalti redirects the buyer to after payment")
    KHALTI_WEBSITE_URL: Optional[str] = Field(default=None, description="Merchant website URL sent to Khalti")
    GATEWAY_TIMEOUT_SECONDS: float = Field(default=10.0, description="Timeout for a single gateway call")

    # Payment reconciliation
    RECONCILIATION_INTERVAL_SECONDS: int = Field(default=180, description="Pause between reconciliation cycles")
    RECONCILIATION_STALE_AFTER_SECONDS: int = Field(default=300, description="Age after which an initiated payment is reconciled")
    PAYMENT_AMOUNT_TOLERANCE: Decimal = Field(default=Decimal("0.01"), description="Accepted paid-vs-total difference")

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        if v not in ("development", "production"):
            raise ValueError("ENVIRONMENT must be 'development' or 'production'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator("RESERVATION_MIN_QUANTITY", "RESERVATION_MAX_QUANTITY")
    @classmethod
    def validate_quantity_bound(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Reservation quantity bounds must be at least 1")
        return v

    def validate_production_settings(self) -> list[str]:
        """
        Validate that all required settings are present in production.
        Returns list of missing settings.
        """
        errors = []

        if self.ENVIRONMENT == "production":
            if not self.KHALTI_SECRET_KEY:
                errors.append("KHALTI_SECRET_KEY is required in production")
            if not self.KHALTI_RETURN_URL:
                errors.append("KHALTI_RETURN_URL is required in production")
            if not self.DB_URL and not self.DB_PASSWORD:
                errors.append("DB_PASSWORD is required in production")

        if self.RESERVATION_MIN_QUANTITY > self.RESERVATION_MAX_QUANTITY:
            errors.append("RESERVATION_MIN_QUANTITY must not exceed RESERVATION_MAX_QUANTITY")

        return errors

    @property
    def db_url(self) -> str:
        """Get database URL."""
        if self.DB_URL:
            return self.DB_URL
        password = quote_plus(self.DB_PASSWORD)
        return f"postgresql+asyncpg://{self.DB_USER}:{password}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT == "production"

    @property
    def khalti_configured(self) -> bool:
        return bool(self.KHALTI_SECRET_KEY)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get application settings (singleton)."""
    global _settings
    if _settings is None:
        settings = Settings()
        # Validate production settings
        errors = settings.validate_production_settings()
        if errors:
            error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            raise ValueError(error_msg)
        _settings = settings
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
