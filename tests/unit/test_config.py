"""Tests for configuration loading and startup validation."""

import pytest

from app.config import (
    DEV_SECRET_KEY,
    ConfigurationError,
    Settings,
    validate_configuration,
)


def make_settings(**overrides):
    values = {
        "database_url": "postgresql+asyncpg://u:p@localhost:5432/db",
        "redis_url": "redis://localhost:6379/0",
        "square_access_token": "EAAAtesttoken1234567890",
        "square_location_id": "LOC1234567890",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestSettings:
    """Test derived settings."""

    def test_development_defaults(self):
        settings = make_settings(app_env="development")

        assert settings.is_development
        assert settings.catalog_ttl_seconds == 300
        assert settings.availability_ttl_seconds == 30
        assert settings.rate_limiting_active is False

    def test_production_defaults(self):
        settings = make_settings(app_env="production")

        assert settings.catalog_ttl_seconds == 24 * 60 * 60
        assert settings.staff_ttl_seconds == 24 * 60 * 60
        assert settings.availability_ttl_seconds == 60
        assert settings.rate_limiting_active is True

    def test_explicit_overrides(self):
        settings = make_settings(catalog_ttl=10, availability_ttl=0, rate_limit_enabled=True)

        assert settings.catalog_ttl_seconds == 10
        assert settings.availability_ttl_seconds == 0
        assert settings.rate_limiting_active is True

    def test_normalization(self):
        settings = make_settings(square_environment=" Sandbox ", log_level="debug")

        assert settings.square_environment == "sandbox"
        assert settings.log_level == "DEBUG"

    def test_cors_origins_list(self):
        settings = make_settings(cors_origins="https://a.example, ,https://b.example")

        assert settings.cors_origins_list == ["https://a.example", "https://b.example"]


class TestValidateConfiguration:
    """Test the startup validator."""

    def test_development_valid(self):
        result = validate_configuration(make_settings())

        assert result.valid is True
        assert result.errors == []

    def test_missing_database_url(self):
        result = validate_configuration(make_settings(database_url=""))

        assert result.valid is False
        assert any("DATABASE_URL" in e for e in result.errors)

    def test_production_requirements(self):
        """Test production requires OAuth config, explicit origins and a real secret."""
        result = validate_configuration(
            make_settings(app_env="production", cors_origins="*", secret_key=DEV_SECRET_KEY)
        )

        assert result.valid is False
        joined = " ".join(result.errors)
        assert "SQUARE_APPLICATION_ID" in joined
        assert "SQUARE_APPLICATION_SECRET" in joined
        assert "SQUARE_WEBHOOK_SIGNATURE_KEY" in joined
        assert "CORS_ORIGINS" in joined
        assert "SECRET_KEY" in joined

    def test_production_complete(self):
        result = validate_configuration(
            make_settings(
                app_env="production",
                cors_origins="https://agent.example.com",
                secret_key="a-real-secret",
                square_application_id="sq0idp-app",
                square_application_secret="sq0csp-secret",
                square_webhook_signature_key="whsec",
            )
        )

        assert result.valid is True

    def test_recommended_are_warnings(self):
        result = validate_configuration(make_settings(square_access_token=None, redis_url=""))

        assert result.valid is True
        assert any("SQUARE_ACCESS_TOKEN" in w for w in result.warnings)
        assert any("REDIS_URL" in w for w in result.warnings)

    def test_configuration_error_message(self):
        error = ConfigurationError(["first problem", "second problem"])

        assert error.errors == ["first problem", "second problem"]
        with pytest.raises(ConfigurationError, match="first problem; second problem"):
            raise error
