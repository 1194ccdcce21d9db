from functools import lru_cache

from fastapi import Header, HTTPException

from orchestrator.config import get_settings
from orchestrator.database import Database, get_database
from orchestrator.services.audit import AuditService
from orchestrator.services.health_monitor import HealthMonitor
from orchestrator.services.registry import InstanceRegistry
from orchestrator.services.store import DomainStore
from orchestrator.services.sync import SyncOrchestrator


def get_current_user_email(
    x_auth_request_email: str | None = Header(None, alias="X-Auth-Request-Email"),
    x_forwarded_email: str | None = Header(None, alias="X-Forwarded-Email"),
    x_forwarded_user: str | None = Header(None, alias="X-Forwarded-User"),
) -> str | None:
    """Extract user email from oauth2-proxy headers.

    oauth2-proxy sets X-Auth-Request-Email when using --set-xauthrequest.
    Also checks X-Forwarded-Email (common OAuth2 proxy header).
    Falls back to X-Forwarded-User if available.
    """
    return x_auth_request_email or x_forwarded_email or x_forwarded_user


def require_authenticated_user(
    x_auth_request_email: str | None = Header(None, alias="X-Auth-Request-Email"),
    x_forwarded_email: str | None = Header(None, alias="X-Forwarded-Email"),
    x_forwarded_user: str | None = Header(None, alias="X-Forwarded-User"),
) -> str:
    """Require authenticated user when REQUIRE_AUTH is enabled.

    Raises HTTPException 401 if authentication is required but no user is identified.
    The returned name is recorded as the editor of history entries.
    """
    settings = get_settings()
    user = x_auth_request_email or x_forwarded_email or x_forwarded_user

    if settings.require_auth and not user:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Please access through OAuth2 proxy.",
        )

    return user or "anonymous"


@lru_cache
def get_db() -> Database:
    return get_database(get_settings().sqlite_db_path)


@lru_cache
def get_store() -> DomainStore:
    return DomainStore(get_db())


@lru_cache
def get_audit_service() -> AuditService:
    return AuditService(get_settings(), get_db())


@lru_cache
def get_registry() -> InstanceRegistry:
    return InstanceRegistry(get_store(), get_settings())


@lru_cache
def get_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator(get_store(), get_registry(), get_settings(), get_audit_service())


@lru_cache
def get_health_monitor() -> HealthMonitor:
    settings = get_settings()
    monitor = HealthMonitor(
        get_registry(),
        interval=settings.health_check_interval,
        orchestrator=get_orchestrator(),
        auto_resync=settings.auto_resync_enabled,
        resync_failure_threshold=settings.resync_failure_threshold,
        resync_recovery_timeout=settings.resync_recovery_timeout,
        grace=settings.shutdown_grace_seconds,
    )
    get_registry().attach_monitor(monitor)
    return monitor
