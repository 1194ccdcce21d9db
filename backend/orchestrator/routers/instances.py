from __future__ import annotations

import asyncio
import time
from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from orchestrator.config import Settings, get_settings
from orchestrator.dependencies import (
    get_audit_service,
    get_orchestrator,
    get_registry,
    get_store,
    require_authenticated_user,
)
from orchestrator.schemas.audit import ActionStatus, ActionType, TargetType
from orchestrator.schemas.history import EditHistoryEntry, EditHistoryResponse
from orchestrator.schemas.instances import (
    ConnectionTestRequest,
    ConnectionTestResponse,
    Instance,
    InstanceCreate,
    InstanceStatusResponse,
    InstancesListResponse,
    InstanceUpdate,
)
from orchestrator.schemas.settings import GlobalConfig, GlobalConfigResponse
from orchestrator.schemas.sync import ConfigPreviewResponse, SyncResult
from orchestrator.services.audit import AuditService
from orchestrator.services.caddy_client import CaddyClientError
from orchestrator.services.registry import InstanceRegistry
from orchestrator.services.store import DomainStore
from orchestrator.services.sync import SyncOrchestrator


router = APIRouter(prefix="/api/instances", tags=["instances"])


def _sync_response(result: SyncResult) -> Any:
    if result.success:
        return result
    return JSONResponse(status_code=502, content=result.model_dump(mode="json"))


@router.get("/", response_model=InstancesListResponse)
async def list_instances(registry: InstanceRegistry = Depends(get_registry)):
    return InstancesListResponse(instances=await registry.list_instances())


@router.post("/", response_model=Instance, status_code=201)
async def create_instance(
    request: InstanceCreate,
    registry: InstanceRegistry = Depends(get_registry),
    audit: AuditService = Depends(get_audit_service),
    user: str = Depends(require_authenticated_user),
):
    """Register an instance and start polling its health."""
    instance = await registry.create_instance(request)
    await audit.log_action_async(
        action_type=ActionType.INSTANCE_CREATE,
        target_type=TargetType.INSTANCE,
        target_name=instance.id,
        status=ActionStatus.SUCCESS,
        user_email=user,
        output=f"Registered {instance.name} at {instance.admin_url}",
    )
    return instance


@router.post("/test-connection", response_model=ConnectionTestResponse)
async def test_connection(
    request: ConnectionTestRequest,
    registry: InstanceRegistry = Depends(get_registry),
):
    """Probe an admin URL without registering it."""
    client = registry.build_client(request.url)
    start = time.perf_counter()
    try:
        await client.health()
    except CaddyClientError as e:
        return ConnectionTestResponse(
            success=False,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
            error=str(e),
        )
    return ConnectionTestResponse(success=True, latency_ms=round((time.perf_counter() - start) * 1000, 2))


@router.get("/history/{history_id}", response_model=EditHistoryEntry)
async def get_history_entry(history_id: str, store: DomainStore = Depends(get_store)):
    return await asyncio.to_thread(store.get_history, history_id)


@router.post("/history/cleanup")
async def cleanup_history(
    store: DomainStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """Delete history entries older than the retention period."""
    deleted = await asyncio.to_thread(store.cleanup_old_history, settings.history_retention_days)
    return {"deleted": deleted, "message": f"Deleted {deleted} old history entries"}


@router.get("/{instance_id}", response_model=Instance)
async def get_instance(instance_id: str, registry: InstanceRegistry = Depends(get_registry)):
    return await registry.get_instance(instance_id)


@router.put("/{instance_id}", response_model=Instance)
async def update_instance(
    instance_id: str,
    request: InstanceUpdate,
    registry: InstanceRegistry = Depends(get_registry),
    audit: AuditService = Depends(get_audit_service),
    user: str = Depends(require_authenticated_user),
):
    instance = await registry.update_instance(instance_id, request)
    await audit.log_action_async(
        action_type=ActionType.INSTANCE_UPDATE,
        target_type=TargetType.INSTANCE,
        target_name=instance.id,
        status=ActionStatus.SUCCESS,
        user_email=user,
        metadata=request.model_dump(exclude_none=True),
    )
    return instance


@router.delete("/{instance_id}", response_model=Instance)
async def delete_instance(
    instance_id: str,
    purge_history: bool | None = Query(None, description="Also delete the instance's edit history"),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    audit: AuditService = Depends(get_audit_service),
    user: str = Depends(require_authenticated_user),
):
    """Deregister an instance, its routes and settings."""
    instance = await orchestrator.delete_instance(instance_id, purge_history=purge_history)
    await audit.log_action_async(
        action_type=ActionType.INSTANCE_DELETE,
        target_type=TargetType.INSTANCE,
        target_name=instance_id,
        status=ActionStatus.SUCCESS,
        user_email=user,
        metadata={"purge_history": purge_history},
    )
    return instance


@router.get("/{instance_id}/status", response_model=InstanceStatusResponse)
async def get_instance_status(
    instance_id: str,
    registry: InstanceRegistry = Depends(get_registry),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    store: DomainStore = Depends(get_store),
):
    """Last observed health plus what is declared for the instance."""
    admin_url = await registry.resolve_admin_url(instance_id)
    health = registry.get_health(instance_id)
    route_count = await asyncio.to_thread(store.count_routes, instance_id)
    return InstanceStatusResponse(
        instance_id=instance_id,
        status=health.status,
        admin_url=admin_url,
        latency_ms=health.latency_ms,
        error=health.error,
        checked_at=health.checked_at,
        route_count=route_count,
        pending_resync=orchestrator.needs_resync(instance_id),
    )


@router.post("/{instance_id}/sync", response_model=SyncResult)
async def sync_instance(
    instance_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user: str = Depends(require_authenticated_user),
):
    """Rebuild from stored routes and push. 502 if the instance refused it."""
    return _sync_response(await orchestrator.sync_now(instance_id, actor=user))


@router.get("/{instance_id}/config")
async def get_live_config(
    instance_id: str,
    registry: InstanceRegistry = Depends(get_registry),
):
    """The config the instance is running right now."""
    client = await registry.get_client(instance_id)
    try:
        config = await client.fetch_config()
    except CaddyClientError as e:
        return JSONResponse(
            status_code=502,
            content={
                "detail": "Failed to read config from instance",
                "error": str(e),
                "error_type": "admin_api_error",
            },
        )
    return {"instance_id": instance_id, "config": config}


@router.get("/{instance_id}/config/preview", response_model=ConfigPreviewResponse)
async def preview_config(
    instance_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """The config a sync would push, without pushing it."""
    return await orchestrator.preview(instance_id)


@router.get("/{instance_id}/settings", response_model=GlobalConfigResponse)
async def get_instance_settings(instance_id: str, store: DomainStore = Depends(get_store)):
    await asyncio.to_thread(store.get_instance, instance_id)
    config = await asyncio.to_thread(store.get_global_config, instance_id)
    return GlobalConfigResponse(instance_id=instance_id, config=config)


@router.put("/{instance_id}/settings", response_model=GlobalConfigResponse)
async def update_instance_settings(
    instance_id: str,
    request: GlobalConfig,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user: str = Depends(require_authenticated_user),
):
    """Store settings. They reach the instance with the next sync."""
    config = await orchestrator.update_global_config(instance_id, request, actor=user)
    return GlobalConfigResponse(instance_id=instance_id, config=config)


@router.get("/{instance_id}/history", response_model=EditHistoryResponse)
async def list_history(
    instance_id: str,
    limit: int = Query(50, ge=1, le=500, description="Maximum number of entries"),
    store: DomainStore = Depends(get_store),
):
    """Attempted applies for an instance, newest first."""
    entries = await asyncio.to_thread(store.list_history, instance_id, limit)
    return EditHistoryResponse(instance_id=instance_id, entries=entries)


@router.post("/{instance_id}/history/{history_id}/rollback", response_model=SyncResult)
async def rollback(
    instance_id: str,
    history_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user: str = Depends(require_authenticated_user),
):
    """Push the config that was live before the given apply."""
    return _sync_response(await orchestrator.rollback(instance_id, history_id, actor=user))
