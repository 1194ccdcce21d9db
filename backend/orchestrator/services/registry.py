from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Callable, Protocol

from orchestrator.config import Settings
from orchestrator.schemas.instances import (
    Instance,
    InstanceCreate,
    InstanceHealth,
    InstanceStatus,
    InstanceUpdate,
)
from orchestrator.services.caddy_client import CaddyAdminClient
from orchestrator.services.store import DomainStore, NotFoundError
from orchestrator.validators import validate_admin_url, validate_instance_id

if TYPE_CHECKING:
    from orchestrator.services.health_monitor import HealthMonitor


logger = logging.getLogger(__name__)


class AdminClient(Protocol):
    base_url: str

    async def fetch_config_raw(self) -> str: ...

    async def apply_config(self, config) -> None: ...

    async def health(self) -> None: ...


ClientFactory = Callable[[str], AdminClient]


class InstanceRegistry:
    """Tracks managed instances, their admin clients and last observed health.

    Health snapshots are immutable models swapped under a lock, so readers
    see either the old or the new status, never a mix.
    """

    def __init__(
        self,
        store: DomainStore,
        settings: Settings,
        client_factory: ClientFactory | None = None,
    ):
        self.store = store
        self.settings = settings
        self._client_factory = client_factory or self._default_client_factory
        self._clients: dict[str, AdminClient] = {}
        self._generations: dict[str, int] = {}
        self._health: dict[str, InstanceHealth] = {}
        self._lock = threading.Lock()
        self._monitor: HealthMonitor | None = None

    def _default_client_factory(self, base_url: str) -> AdminClient:
        return CaddyAdminClient(base_url, timeout=self.settings.admin_timeout_seconds)

    def attach_monitor(self, monitor: HealthMonitor) -> None:
        self._monitor = monitor

    # Instances ------------------------------------------------------------

    async def ensure_default_instance(self) -> Instance:
        """Register the configured default instance if it is missing."""
        try:
            return await asyncio.to_thread(self.store.get_instance, self.settings.default_instance_id)
        except NotFoundError:
            pass

        instance = await asyncio.to_thread(
            self.store.create_instance,
            InstanceCreate(
                id=self.settings.default_instance_id,
                name=self.settings.default_instance_name,
                admin_url=validate_admin_url(self.settings.default_admin_url),
            ),
        )
        logger.info("Registered default instance %s at %s", instance.id, instance.admin_url)
        return instance

    async def create_instance(self, data: InstanceCreate) -> Instance:
        data = data.model_copy(
            update={
                "id": validate_instance_id(data.id) if data.id else None,
                "admin_url": validate_admin_url(data.admin_url),
            }
        )
        instance = await asyncio.to_thread(self.store.create_instance, data)
        logger.info("Registered instance %s (%s) at %s", instance.id, instance.name, instance.admin_url)

        if self._monitor is not None:
            self._monitor.watch(instance.id)
        return self._with_health(instance)

    async def update_instance(self, instance_id: str, data: InstanceUpdate) -> Instance:
        if data.admin_url is not None:
            data = data.model_copy(update={"admin_url": validate_admin_url(data.admin_url)})
        instance = await asyncio.to_thread(self.store.update_instance, instance_id, data)
        self.invalidate_client(instance_id)
        return self._with_health(instance)

    async def delete_instance(self, instance_id: str, purge_history: bool | None = None) -> Instance:
        if purge_history is None:
            purge_history = self.settings.purge_history_on_instance_delete

        # Make sure the instance exists before tearing anything down
        await asyncio.to_thread(self.store.get_instance, instance_id)

        if self._monitor is not None:
            await self._monitor.unwatch(instance_id)

        instance = await asyncio.to_thread(self.store.delete_instance, instance_id, purge_history)
        self.invalidate_client(instance_id)
        with self._lock:
            self._health.pop(instance_id, None)
        logger.info("Deregistered instance %s (history purged: %s)", instance_id, purge_history)
        return instance

    async def get_instance(self, instance_id: str) -> Instance:
        instance = await asyncio.to_thread(self.store.get_instance, instance_id)
        return self._with_health(instance)

    async def list_instances(self) -> list[Instance]:
        instances = await asyncio.to_thread(self.store.list_instances)
        return [self._with_health(instance) for instance in instances]

    async def list_instance_ids(self) -> list[str]:
        return [instance.id for instance in await asyncio.to_thread(self.store.list_instances)]

    def _with_health(self, instance: Instance) -> Instance:
        health = self.get_health(instance.id)
        if health.status == InstanceStatus.UNKNOWN:
            return instance
        return instance.model_copy(update={"status": health.status})

    # Clients --------------------------------------------------------------

    async def resolve_admin_url(self, instance_id: str) -> str:
        """The instance's admin URL, unless its global config overrides it."""
        instance = await asyncio.to_thread(self.store.get_instance, instance_id)
        global_config = await asyncio.to_thread(self.store.get_global_config, instance_id)
        return global_config.caddy_admin_url or instance.admin_url

    async def get_client(self, instance_id: str) -> AdminClient:
        while True:
            with self._lock:
                client = self._clients.get(instance_id)
                generation = self._generations.get(instance_id, 0)
            if client is not None:
                return client

            base_url = await self.resolve_admin_url(instance_id)
            client = self._client_factory(base_url)
            with self._lock:
                # Only cache if nothing invalidated the entry while we resolved
                if self._generations.get(instance_id, 0) == generation:
                    return self._clients.setdefault(instance_id, client)
            logger.debug("Client for %s invalidated while resolving, retrying", instance_id)

    def invalidate_client(self, instance_id: str) -> None:
        with self._lock:
            self._clients.pop(instance_id, None)
            self._generations[instance_id] = self._generations.get(instance_id, 0) + 1

    def build_client(self, base_url: str) -> AdminClient:
        """A throwaway client for an unregistered URL (connection tests)."""
        return self._client_factory(validate_admin_url(base_url))

    # Health ---------------------------------------------------------------

    def get_health(self, instance_id: str) -> InstanceHealth:
        with self._lock:
            health = self._health.get(instance_id)
        return health or InstanceHealth(instance_id=instance_id)

    def list_health(self) -> dict[str, InstanceHealth]:
        with self._lock:
            return dict(self._health)

    async def record_health(self, health: InstanceHealth) -> InstanceHealth:
        """Publish a new health snapshot; returns the previous one.

        Status transitions are also written to the store so they survive a
        restart.
        """
        with self._lock:
            previous = self._health.get(health.instance_id) or InstanceHealth(
                instance_id=health.instance_id
            )
            self._health[health.instance_id] = health

        if previous.status != health.status:
            last_seen = health.checked_at if health.status == InstanceStatus.ONLINE else None
            try:
                await asyncio.to_thread(
                    self.store.set_instance_status, health.instance_id, health.status, last_seen
                )
            except NotFoundError:
                logger.debug("Instance %s disappeared before its status was saved", health.instance_id)
        return previous
