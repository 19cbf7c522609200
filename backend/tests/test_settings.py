"""Tests for application settings and production validation."""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from backend.app.core.settings import Settings, get_settings, reset_settings


def test_defaults():
    settings = Settings(ENVIRONMENT="development")
    assert settings.RESERVATION_TTL_SECONDS == 900
    assert settings.RESERVATION_MIN_QUANTITY == 1
    assert settings.RESERVATION_MAX_QUANTITY == 100
    assert settings.STRICT_STOCK_CONFIRM is False
    assert settings.RECONCILIATION_INTERVAL_SECONDS == 180
    assert settings.RECONCILIATION_STALE_AFTER_SECONDS == 300
    assert settings.PAYMENT_AMOUNT_TOLERANCE == Decimal("0.01")
    assert settings.is_production is False


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        Settings(ENVIRONMENT="staging")
    with pytest.raises(ValidationError):
        Settings(ENVIRONMENT="development", LOG_LEVEL="LOUD")
    with pytest.raises(ValidationError):
        Settings(ENVIRONMENT="development", RESERVATION_MIN_QUANTITY=0)


def test_log_level_normalized():
    assert Settings(ENVIRONMENT="development", LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"


def test_production_requires_khalti_and_db_password():
    settings = Settings(ENVIRONMENT="production", DB_PASSWORD="", KHALTI_SECRET_KEY=None, KHALTI_RETURN_URL=None)
    errors = settings.validate_production_settings()
    assert any("KHALTI_SECRET_KEY" in e for e in errors)
    assert any("KHALTI_RETURN_URL" in e for e in errors)
    assert any("DB_PASSWORD" in e for e in errors)


def test_production_complete_config_is_valid():
    settings = Settings(
        ENVIRONMENT="production",
        DB_PASSWORD="secret",
        KHALTI_SECRET_KEY="live_secret_key",
        KHALTI_RETURN_URL="https://shop.example/payment/return",
    )
    assert settings.validate_production_settings() == []
    assert settings.khalti_configured is True


def test_quantity_bounds_must_be_ordered():
    settings = Settings(ENVIRONMENT="development", RESERVATION_MIN_QUANTITY=10, RESERVATION_MAX_QUANTITY=5)
    assert "RESERVATION_MIN_QUANTITY must not exceed RESERVATION_MAX_QUANTITY" in settings.validate_production_settings()


def test_db_url():
    settings = Settings(
        ENVIRONMENT="development",
        DB_USER="shop",
        DB_PASSWORD="p@ss word",
        DB_HOST="db",
        DB_PORT="5433",
        DB_NAME="commerce",
    )
    assert settings.db_url == "postgresql+asyncpg://shop:p%40ss+word@db:5433/commerce"

    override = Settings(ENVIRONMENT="development", DB_URL="postgresql+asyncpg://u:p@h/d")
    assert override.db_url == "postgresql+asyncpg://u:p@h/d"


def test_get_settings_fails_fast_in_production(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.delenv("KHALTI_SECRET_KEY", raising=False)
    reset_settings()
    try:
        with pytest.raises(ValueError) as exc_info:
            get_settings()
        assert "KHALTI_SECRET_KEY" in str(exc_info.value)
    finally:
        reset_settings()


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "development")
    reset_settings()
    try:
        assert get_settings() is get_settings()
    finally:
        reset_settings()
