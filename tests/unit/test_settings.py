"""
Unit tests for Pydantic Settings configuration.

Tests defaults, environment loading and production validation.
"""

import pytest
from pydantic import ValidationError

from app.config.settings import Settings


class TestSettings:
    """Tests for Settings configuration."""

    def test_settings_has_defaults(self):
        """Settings should import and build without any environment."""
        settings = Settings()

        assert settings.jwt_algorithm == "HS256"
        assert settings.access_token_expire_minutes > 0
        assert settings.ledger_max_retries >= 1
        assert settings.default_currency in ("BRL", "USD", "EUR")

    def test_settings_loads_from_env(self, monkeypatch):
        """Environment variables override defaults (case-insensitive)."""
        monkeypatch.setenv("GRACE_PERIOD_DAYS", "7")
        monkeypatch.setenv("signup_bonus_credits", "50")

        settings = Settings()

        assert settings.grace_period_days == 7
        assert settings.signup_bonus_credits == 50

    def test_is_production_property(self):
        settings = Settings(environment="development")

        assert settings.is_production is False
        assert settings.is_development is True

    def test_allowed_origins_includes_localhost(self):
        settings = Settings()

        assert "http://localhost:5173" in settings.allowed_origins

    def test_production_rejects_default_jwt_secret(self):
        with pytest.raises(ValidationError):
            Settings(
                environment="production",
                stripe_secret_key="sk_live_x",
                stripe_webhook_secret="whsec_x",
            )

    def test_production_requires_stripe_keys(self):
        with pytest.raises(ValidationError):
            Settings(environment="production", jwt_secret="x" * 40)

    def test_production_accepts_complete_config(self):
        settings = Settings(
            environment="production",
            jwt_secret="x" * 40,
            stripe_secret_key="sk_live_x",
            stripe_webhook_secret="whsec_x",
        )

        assert settings.is_production is True

    def test_ledger_retries_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(ledger_max_retries=0)

    def test_unknown_currency_rejected(self):
        with pytest.raises(ValidationError):
            Settings(default_currency="GBP")
