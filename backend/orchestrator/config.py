from functools import lru_cache
import logging
import sys
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when required configuration is missing or invalid."""
    pass


MIN_HEALTH_CHECK_INTERVAL = 1.0


class Settings(BaseSettings):
    """Application configuration pulled from environment variables or .env file."""

    # Database settings
    sqlite_db_path: str = "orchestrator.db"
    history_retention_days: int = 90
    audit_retention_days: int = 90
    audit_max_output_length: int = 10000

    # Default instance (single-instance deployments)
    default_instance_id: str = "default"
    default_instance_name: str = "Default Caddy"
    default_admin_url: str = "http://localhost:2019"

    # Admin API client
    admin_timeout_seconds: float = 10.0

    # Health monitor
    health_check_interval: float = 30.0
    shutdown_grace_seconds: float = 5.0

    # Reconciliation of instances whose last apply failed
    auto_resync_enabled: bool = True
    resync_failure_threshold: int = 3
    resync_recovery_timeout: float = 60.0

    purge_history_on_instance_delete: bool = False

    # CORS settings
    # Comma-separated list of allowed origins, or "*" for all (not recommended)
    cors_allowed_origins: str = "http://localhost:5173,http://localhost:3000"

    # Environment (development, staging, production)
    environment: str = "development"
    log_level: str = "INFO"

    # Auth settings (OAuth2 proxy headers)
    auth_header_email: str = "X-Forwarded-Email"
    auth_header_user: str = "X-Forwarded-User"
    require_auth: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    def validate_required(self) -> list[str]:
        """Validate required configuration settings.

        Returns a list of error messages for invalid settings.
        """
        errors: list[str] = []
        warnings: list[str] = []

        if not self.default_instance_id.strip():
            errors.append("DEFAULT_INSTANCE_ID is required but not set")

        parsed = urlparse(self.default_admin_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append(
                f"DEFAULT_ADMIN_URL must be an http(s) URL with a host, got '{self.default_admin_url}'"
            )

        if self.health_check_interval < MIN_HEALTH_CHECK_INTERVAL:
            errors.append(
                f"HEALTH_CHECK_INTERVAL must be at least {MIN_HEALTH_CHECK_INTERVAL}s "
                f"(got {self.health_check_interval})"
            )

        if self.admin_timeout_seconds <= 0:
            errors.append("ADMIN_TIMEOUT_SECONDS must be positive")

        if self.resync_failure_threshold < 1:
            errors.append("RESYNC_FAILURE_THRESHOLD must be at least 1")

        if self.admin_timeout_seconds >= self.health_check_interval:
            warnings.append(
                "ADMIN_TIMEOUT_SECONDS is not shorter than HEALTH_CHECK_INTERVAL, "
                "slow probes will delay the next tick"
            )

        # Check CORS settings in production
        is_production = self.environment.lower() == "production"
        default_cors = "http://localhost:5173,http://localhost:3000"

        if is_production:
            if self.cors_allowed_origins == default_cors:
                errors.append(
                    "CORS_ALLOWED_ORIGINS is using default localhost values in production. "
                    "Set CORS_ALLOWED_ORIGINS to your actual domain(s) or this is a security risk."
                )
            if self.cors_allowed_origins == "*":
                errors.append(
                    "CORS_ALLOWED_ORIGINS is set to '*' (allow all) in production. "
                    "This is a security risk. Set specific allowed origins."
                )
            if not self.require_auth:
                warnings.append(
                    "REQUIRE_AUTH is False in production. "
                    "Consider enabling authentication via OAuth2 proxy."
                )

        for warning in warnings:
            logger.warning(f"Config warning: {warning}")

        return errors


def validate_config_on_startup(settings: Settings) -> None:
    """Validate configuration and exit if critical settings are missing."""
    errors = settings.validate_required()

    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        print("\nConfiguration Error:", file=sys.stderr)
        print("The following required settings are missing or invalid:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        print("\nPlease check your .env file or environment variables.", file=sys.stderr)
        raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    logger.info("Configuration validated successfully")


@lru_cache
def get_settings() -> Settings:
    return Settings()
