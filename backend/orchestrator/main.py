from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orchestrator.config import get_settings, validate_config_on_startup, ConfigurationError
from orchestrator.database import init_database
from orchestrator.dependencies import get_health_monitor, get_orchestrator, get_registry
from orchestrator.routers import audit, instances, routes
from orchestrator.services.store import AlreadyExistsError, NotFoundError, StoreError
from orchestrator.validators import ValidationError


logger = logging.getLogger(__name__)


settings = get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

VERSION = "0.3.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup - validate config first
    try:
        validate_config_on_startup(settings)
    except ConfigurationError:
        # Re-raise to prevent server from starting with invalid config
        raise

    init_database(settings.sqlite_db_path)
    await get_registry().ensure_default_instance()
    monitor = get_health_monitor()
    await monitor.start()

    yield

    # Shutdown: polling can stop right away, in-flight applies get the grace period
    await monitor.stop()
    await get_orchestrator().wait_idle(settings.shutdown_grace_seconds)


app = FastAPI(
    title="Caddy Orchestrator API",
    version=VERSION,
    lifespan=lifespan,
)

# Parse CORS origins from settings
# Default restricts to localhost dev servers; in production set CORS_ALLOWED_ORIGINS env var
cors_origins = [
    origin.strip()
    for origin in settings.cors_allowed_origins.split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)

app.include_router(routes.router)
app.include_router(instances.router)
app.include_router(audit.router)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle rejected input with 400 error."""
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Invalid request",
            "error": str(exc),
            "error_type": "validation_error",
        },
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=404,
        content={
            "detail": f"{exc.kind} not found",
            "error": str(exc),
            "error_type": "not_found",
        },
    )


@app.exception_handler(AlreadyExistsError)
async def already_exists_error_handler(request: Request, exc: AlreadyExistsError):
    return JSONResponse(
        status_code=409,
        content={
            "detail": f"{exc.kind} already exists",
            "error": str(exc),
            "error_type": "already_exists",
        },
    )


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    """Handle persistence failures with 500 error."""
    logger.error(f"Store operation failed: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Storage operation failed",
            "error": str(exc),
            "error_type": "store_error",
        },
    )


@app.get("/api/ping")
async def ping():
    """Simple health check for load balancers."""
    return {"status": "ok", "version": VERSION}
