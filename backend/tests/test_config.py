"""Tests for configuration validation."""

import pytest

from orchestrator.config import Settings, ConfigurationError, validate_config_on_startup


def make_settings(**overrides) -> Settings:
    values = {
        "default_instance_id": "default",
        "default_admin_url": "http://localhost:2019",
        "health_check_interval": 30.0,
        "admin_timeout_seconds": 10.0,
        "environment": "development",
        "cors_allowed_origins": "http://localhost:5173,http://localhost:3000",
    }
    values.update(overrides)
    return Settings(**values)


class TestSettingsValidation:
    """Test Settings.validate_required() method."""

    def test_default_settings_pass_in_development(self):
        """Default settings are valid in development."""
        assert make_settings().validate_required() == []

    def test_admin_url_without_scheme_fails(self):
        """DEFAULT_ADMIN_URL must carry an http(s) scheme."""
        errors = make_settings(default_admin_url="localhost:2019").validate_required()
        assert any("DEFAULT_ADMIN_URL" in e for e in errors)

    def test_admin_url_with_other_scheme_fails(self):
        """Only http and https admin URLs are accepted."""
        errors = make_settings(default_admin_url="ftp://caddy:2019").validate_required()
        assert any("DEFAULT_ADMIN_URL" in e for e in errors)

    def test_empty_instance_id_fails(self):
        """An empty default instance id produces an error."""
        errors = make_settings(default_instance_id="  ").validate_required()
        assert any("DEFAULT_INSTANCE_ID" in e for e in errors)

    def test_busy_loop_interval_fails(self):
        """Health polling below one second is rejected."""
        errors = make_settings(health_check_interval=0.1).validate_required()
        assert any("HEALTH_CHECK_INTERVAL" in e for e in errors)

    def test_non_positive_timeout_fails(self):
        """The admin API timeout must be positive."""
        errors = make_settings(admin_timeout_seconds=0).validate_required()
        assert any("ADMIN_TIMEOUT_SECONDS" in e for e in errors)

    def test_zero_resync_threshold_fails(self):
        """The resync breaker needs a threshold of at least one."""
        errors = make_settings(resync_failure_threshold=0).validate_required()
        assert any("RESYNC_FAILURE_THRESHOLD" in e for e in errors)

    def test_timeout_longer_than_interval_is_only_a_warning(self):
        """A slow timeout relative to the interval does not fail validation."""
        errors = make_settings(admin_timeout_seconds=60.0, health_check_interval=5.0).validate_required()
        assert errors == []

    def test_default_cors_fails_in_production(self):
        """Default CORS settings fail in production."""
        errors = make_settings(environment="production").validate_required()
        assert any("CORS_ALLOWED_ORIGINS" in e for e in errors)

    def test_wildcard_cors_fails_in_production(self):
        """Wildcard CORS fails in production."""
        errors = make_settings(environment="production", cors_allowed_origins="*").validate_required()
        assert any("*" in e or "all" in e.lower() for e in errors)

    def test_custom_cors_passes_in_production(self):
        """Custom CORS settings pass in production."""
        errors = make_settings(
            environment="production",
            cors_allowed_origins="https://dashboard.example.com",
        ).validate_required()
        assert errors == []


class TestValidateConfigOnStartup:
    """Test validate_config_on_startup function."""

    def test_valid_config_does_not_raise(self):
        """Valid configuration does not raise."""
        validate_config_on_startup(make_settings())

    def test_invalid_config_raises_configuration_error(self):
        """Invalid configuration raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="DEFAULT_ADMIN_URL"):
            validate_config_on_startup(make_settings(default_admin_url=""))

    def test_configuration_error_is_runtime_error(self):
        """ConfigurationError inherits from RuntimeError."""
        assert isinstance(ConfigurationError("test error"), RuntimeError)


class TestDefaults:
    """Test defaults that other components rely on."""

    def test_require_auth_default_is_false(self):
        """require_auth defaults to False."""
        assert make_settings().require_auth is False

    def test_reconciliation_enabled_by_default(self):
        """Automatic resync is on unless disabled."""
        settings = make_settings()
        assert settings.auto_resync_enabled is True
        assert settings.resync_failure_threshold == 3

    def test_history_kept_on_instance_delete_by_default(self):
        """Instance deletion keeps edit history unless configured otherwise."""
        assert make_settings().purge_history_on_instance_delete is False
