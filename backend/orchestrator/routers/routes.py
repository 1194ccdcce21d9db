from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Query

from orchestrator.dependencies import get_orchestrator, get_store, require_authenticated_user
from orchestrator.schemas.routes import Route, RouteCreate, RouteResponse, RoutesListResponse, RouteUpdate
from orchestrator.services.store import DomainStore
from orchestrator.services.sync import SyncOrchestrator


router = APIRouter(prefix="/api/routes", tags=["routes"])


@router.get("/", response_model=RoutesListResponse)
async def list_routes(
    instance_id: str | None = Query(None, description="Only routes of this instance"),
    store: DomainStore = Depends(get_store),
):
    """List stored routes, ordered by domain and path."""
    routes = await asyncio.to_thread(store.list_routes, instance_id)
    return RoutesListResponse(routes=routes)


@router.post("/", response_model=RouteResponse, status_code=201)
async def create_route(
    request: RouteCreate,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user: str = Depends(require_authenticated_user),
):
    """Create a route and push the rebuilt config to its instance.

    A failed push still returns the created route, with a warning.
    """
    return await orchestrator.create_route(request, actor=user)


@router.get("/{route_id}", response_model=Route)
async def get_route(route_id: str, store: DomainStore = Depends(get_store)):
    return await asyncio.to_thread(store.get_route, route_id)


@router.put("/{route_id}", response_model=RouteResponse)
async def update_route(
    route_id: str,
    request: RouteUpdate,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user: str = Depends(require_authenticated_user),
):
    return await orchestrator.update_route(route_id, request, actor=user)


@router.delete("/{route_id}", response_model=RouteResponse)
async def delete_route(
    route_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user: str = Depends(require_authenticated_user),
):
    return await orchestrator.delete_route(route_id, actor=user)


@router.post("/{route_id}/toggle", response_model=RouteResponse)
async def toggle_route(
    route_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    user: str = Depends(require_authenticated_user),
):
    """Flip a route between enabled and disabled."""
    return await orchestrator.toggle_route(route_id, actor=user)
