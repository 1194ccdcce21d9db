from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.exc import SQLAlchemyError

from orchestrator.config import Settings
from orchestrator.schemas.audit import ActionStatus, ActionType, TargetType
from orchestrator.schemas.instances import Instance
from orchestrator.schemas.routes import Route, RouteCreate, RouteResponse, RouteUpdate
from orchestrator.schemas.settings import GlobalConfig
from orchestrator.schemas.sync import ConfigPreviewResponse, SkippedRoute, SyncResult
from orchestrator.services.audit import AuditService
from orchestrator.services.caddy_client import CaddyClientError
from orchestrator.services.config_builder import BuildResult, build_config, serialize_config
from orchestrator.services.registry import AdminClient, InstanceRegistry
from orchestrator.services.store import DomainStore, StoreError
from orchestrator.validators import ValidationError, validate_admin_url, validate_route_input


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class SyncOrchestrator:
    """Runs every route mutation as: store write, full rebuild, audited apply.

    Store failures abort the operation. Admin API failures never undo the
    store write; they come back as a warning and mark the instance for
    reconciliation.

    Build and apply for one instance run under that instance's lock, so
    applies to one instance never interleave. Different instances do not
    block each other.
    """

    def __init__(
        self,
        store: DomainStore,
        registry: InstanceRegistry,
        settings: Settings,
        audit: AuditService | None = None,
    ):
        self.store = store
        self.registry = registry
        self.settings = settings
        self.audit = audit
        self._locks: dict[str, asyncio.Lock] = {}
        self._pending_resync: set[str] = set()
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # Bookkeeping ----------------------------------------------------------

    def _lock_for(self, instance_id: str) -> asyncio.Lock:
        return self._locks.setdefault(instance_id, asyncio.Lock())

    @asynccontextmanager
    async def _operation(self, instance_id: str) -> AsyncGenerator[None, None]:
        self._inflight += 1
        self._idle.clear()
        try:
            async with self._lock_for(instance_id):
                yield
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

    def needs_resync(self, instance_id: str) -> bool:
        return instance_id in self._pending_resync

    def pending_instances(self) -> set[str]:
        return set(self._pending_resync)

    async def wait_idle(self, timeout: float) -> bool:
        """Wait for in-flight operations to finish; False if the timeout hit."""
        if self._inflight == 0:
            return True
        logger.info("Waiting up to %.1fs for %d in-flight sync operation(s)", timeout, self._inflight)
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Shutdown grace period expired with %d sync operation(s) in flight", self._inflight)
            return False

    async def _audit(self, **kwargs: Any) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.log_action_async(**kwargs)
        except (StoreError, SQLAlchemyError) as exc:
            # The operation already committed
            logger.error("Failed to write audit log for %s: %s", kwargs.get("action_type"), exc)

    # Route mutations ------------------------------------------------------

    async def create_route(self, data: RouteCreate, actor: str = SYSTEM_ACTOR) -> RouteResponse:
        validate_route_input(data)
        instance_id = data.instance_id or self.settings.default_instance_id
        # 404 before anything is written
        await asyncio.to_thread(self.store.get_instance, instance_id)

        start_time = time.time()
        async with self._operation(instance_id):
            route = await asyncio.to_thread(self.store.create_route, instance_id, data)
            result = await self._sync_after_mutation(instance_id, actor)

        return await self._finish_mutation(
            ActionType.ROUTE_CREATE, route, result, actor, start_time,
            message=f"Route created: {route.domain}{route.path}",
            warning_prefix="Route created but sync to Caddy failed",
        )

    async def update_route(self, route_id: str, data: RouteUpdate, actor: str = SYSTEM_ACTOR) -> RouteResponse:
        validate_route_input(data)
        existing = await asyncio.to_thread(self.store.get_route, route_id)

        start_time = time.time()
        async with self._operation(existing.instance_id):
            route = await asyncio.to_thread(self.store.update_route, route_id, data)
            result = await self._sync_after_mutation(existing.instance_id, actor)

        return await self._finish_mutation(
            ActionType.ROUTE_UPDATE, route, result, actor, start_time,
            message=f"Route updated: {route.domain}{route.path}",
            warning_prefix="Route updated but sync to Caddy failed",
        )

    async def toggle_route(self, route_id: str, actor: str = SYSTEM_ACTOR) -> RouteResponse:
        existing = await asyncio.to_thread(self.store.get_route, route_id)

        start_time = time.time()
        async with self._operation(existing.instance_id):
            # Re-read under the lock so concurrent toggles flip from the latest state
            current = await asyncio.to_thread(self.store.get_route, route_id)
            route = await asyncio.to_thread(self.store.set_route_enabled, route_id, not current.enabled)
            result = await self._sync_after_mutation(existing.instance_id, actor)

        state = "enabled" if route.enabled else "disabled"
        return await self._finish_mutation(
            ActionType.ROUTE_TOGGLE, route, result, actor, start_time,
            message=f"Route {state}: {route.domain}{route.path}",
            warning_prefix="Route toggled but sync to Caddy failed",
        )

    async def delete_route(self, route_id: str, actor: str = SYSTEM_ACTOR) -> RouteResponse:
        existing = await asyncio.to_thread(self.store.get_route, route_id)

        start_time = time.time()
        async with self._operation(existing.instance_id):
            route = await asyncio.to_thread(self.store.delete_route, route_id)
            result = await self._sync_after_mutation(existing.instance_id, actor)

        return await self._finish_mutation(
            ActionType.ROUTE_DELETE, route, result, actor, start_time,
            message=f"Route deleted: {route.domain}{route.path}",
            warning_prefix="Route deleted but sync to Caddy failed",
        )

    async def _sync_after_mutation(self, instance_id: str, actor: str) -> SyncResult:
        # The mutation is committed at this point, so even a store failure
        # while rebuilding is only a warning.
        try:
            return await self._sync_locked(instance_id, actor)
        except StoreError as exc:
            logger.error("Rebuild for instance %s failed after store write: %s", instance_id, exc)
            self._pending_resync.add(instance_id)
            return SyncResult(instance_id=instance_id, success=False, error=str(exc))

    async def _finish_mutation(
        self,
        action_type: ActionType,
        route: Route,
        result: SyncResult,
        actor: str,
        start_time: float,
        message: str,
        warning_prefix: str,
    ) -> RouteResponse:
        warning = None
        if not result.success:
            warning = (
                f"{warning_prefix}: {result.error}. The route is saved; the live instance "
                f"will be updated by the next change or a manual sync."
            )

        await self._audit(
            action_type=action_type,
            target_type=TargetType.ROUTE,
            target_name=route.domain,
            status=ActionStatus.SUCCESS if result.success else ActionStatus.WARNING,
            user_email=actor,
            output=message,
            error_message=result.error,
            metadata=self._sync_metadata(route.instance_id, result, route_id=route.id),
            duration_ms=(time.time() - start_time) * 1000,
        )
        return RouteResponse(route=route, message=message, warning=warning)

    @staticmethod
    def _sync_metadata(instance_id: str, result: SyncResult, **extra: Any) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "instance_id": instance_id,
            "history_id": result.history_id,
            "route_count": result.route_count,
        }
        if result.skipped:
            metadata["skipped"] = [skip.model_dump() for skip in result.skipped]
        metadata.update(extra)
        return metadata

    # Sync -----------------------------------------------------------------

    async def build_for_instance(self, instance_id: str) -> BuildResult:
        routes = await asyncio.to_thread(self.store.list_routes, instance_id)
        global_config = await asyncio.to_thread(self.store.get_global_config, instance_id)
        return build_config(routes, global_config)

    async def preview(self, instance_id: str) -> ConfigPreviewResponse:
        await asyncio.to_thread(self.store.get_instance, instance_id)
        build = await self.build_for_instance(instance_id)
        return ConfigPreviewResponse(instance_id=instance_id, config=build.config, skipped=build.skipped)

    async def sync_now(self, instance_id: str, actor: str = SYSTEM_ACTOR) -> SyncResult:
        """Rebuild from the stored routes and push, without a store mutation."""
        await asyncio.to_thread(self.store.get_instance, instance_id)

        start_time = time.time()
        async with self._operation(instance_id):
            result = await self._sync_locked(instance_id, actor)

        await self._audit(
            action_type=ActionType.CONFIG_SYNC,
            target_type=TargetType.INSTANCE,
            target_name=instance_id,
            status=ActionStatus.SUCCESS if result.success else ActionStatus.FAILURE,
            user_email=actor,
            output=f"Synced {result.route_count} route(s) to {instance_id}",
            error_message=result.error,
            metadata=self._sync_metadata(instance_id, result),
            duration_ms=(time.time() - start_time) * 1000,
        )
        return result

    async def _sync_locked(self, instance_id: str, actor: str) -> SyncResult:
        build = await self.build_for_instance(instance_id)
        for skip in build.skipped:
            logger.info(
                "Route %s (%s) left out of config for %s: %s",
                skip.route_id, skip.domain, instance_id, skip.reason,
            )
        client = await self.registry.get_client(instance_id)
        return await self._apply_locked(
            instance_id,
            client,
            build.config,
            actor,
            route_count=build.route_count,
            skipped=build.skipped,
        )

    async def _apply_locked(
        self,
        instance_id: str,
        client: AdminClient,
        config: dict[str, Any],
        actor: str,
        route_count: int = 0,
        skipped: list[SkippedRoute] | None = None,
    ) -> SyncResult:
        """Record history, then push. Must hold the instance lock."""
        try:
            old_config = await client.fetch_config_raw()
        except CaddyClientError as exc:
            logger.warning("Could not read current config of %s before apply: %s", instance_id, exc)
            old_config = ""

        # Written before the apply so failed attempts are on record too
        entry = await asyncio.to_thread(
            self.store.append_history,
            instance_id,
            old_config,
            serialize_config(config),
            actor,
        )

        try:
            await client.apply_config(config)
        except CaddyClientError as exc:
            self._pending_resync.add(instance_id)
            logger.warning("Apply to %s failed (history %s): %s", instance_id, entry.id, exc)
            return SyncResult(
                instance_id=instance_id,
                success=False,
                error=str(exc),
                history_id=entry.id,
                route_count=route_count,
                skipped=skipped or [],
            )

        self._pending_resync.discard(instance_id)
        logger.info("Applied config with %d route(s) to %s (history %s)", route_count, instance_id, entry.id)
        return SyncResult(
            instance_id=instance_id,
            success=True,
            history_id=entry.id,
            route_count=route_count,
            skipped=skipped or [],
        )

    async def rollback(self, instance_id: str, history_id: str, actor: str = SYSTEM_ACTOR) -> SyncResult:
        """Re-apply the config that was live before a recorded apply.

        The route model is not touched, so the next mutation or sync
        replaces the rolled-back config again.
        """
        entry = await asyncio.to_thread(self.store.get_history, history_id)
        if entry.instance_id != instance_id:
            raise ValidationError(f"History entry {history_id} belongs to instance '{entry.instance_id}'")
        if not entry.old_config.strip():
            raise ValidationError(f"History entry {history_id} has no previous config to restore")
        try:
            config = json.loads(entry.old_config)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"History entry {history_id} holds invalid JSON: {exc}") from exc
        if not isinstance(config, dict):
            raise ValidationError(f"History entry {history_id} has no previous config to restore")

        start_time = time.time()
        async with self._operation(instance_id):
            client = await self.registry.get_client(instance_id)
            result = await self._apply_locked(instance_id, client, config, actor)

        await self._audit(
            action_type=ActionType.CONFIG_ROLLBACK,
            target_type=TargetType.INSTANCE,
            target_name=instance_id,
            status=ActionStatus.SUCCESS if result.success else ActionStatus.FAILURE,
            user_email=actor,
            output=f"Rolled back {instance_id} to the config before {history_id}",
            error_message=result.error,
            metadata={"instance_id": instance_id, "history_id": result.history_id, "restored_from": history_id},
            duration_ms=(time.time() - start_time) * 1000,
        )
        return result

    # Instances ------------------------------------------------------------

    async def delete_instance(self, instance_id: str, purge_history: bool | None = None) -> Instance:
        """Deregister an instance once no operation on it is running.

        Operations queued behind the delete find the instance gone and fail
        with NotFoundError. The lock itself is kept so they, and any later
        operation on a re-registered id, still share it.
        """
        async with self._operation(instance_id):
            instance = await self.registry.delete_instance(instance_id, purge_history=purge_history)
            self._pending_resync.discard(instance_id)
        return instance

    # Settings -------------------------------------------------------------

    async def update_global_config(
        self,
        instance_id: str,
        config: GlobalConfig,
        actor: str = SYSTEM_ACTOR,
    ) -> GlobalConfig:
        """Store new settings. Takes effect on the next sync."""
        if config.caddy_admin_url:
            config = config.model_copy(update={"caddy_admin_url": validate_admin_url(config.caddy_admin_url)})
        await asyncio.to_thread(self.store.get_instance, instance_id)

        async with self._operation(instance_id):
            saved = await asyncio.to_thread(self.store.set_global_config, instance_id, config)
            self.registry.invalidate_client(instance_id)

        await self._audit(
            action_type=ActionType.SETTINGS_UPDATE,
            target_type=TargetType.CONFIG,
            target_name=instance_id,
            status=ActionStatus.SUCCESS,
            user_email=actor,
            output=f"Settings updated for {instance_id}",
            metadata={"instance_id": instance_id, **saved.model_dump()},
        )
        return saved
