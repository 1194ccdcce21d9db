"""Tests for the Instance Registry."""

import pytest

from orchestrator.schemas.instances import InstanceCreate, InstanceHealth, InstanceStatus, InstanceUpdate
from orchestrator.schemas.settings import GlobalConfig
from orchestrator.services.caddy_client import CaddyAdminClient
from orchestrator.services.registry import InstanceRegistry
from orchestrator.services.store import AlreadyExistsError, NotFoundError
from orchestrator.validators import ValidationError


class TestInstances:
    @pytest.mark.asyncio
    async def test_create_normalizes_url(self, registry):
        instance = await registry.create_instance(
            InstanceCreate(id="edge-1", name="Edge", admin_url="http://edge:2019/")
        )
        assert instance.admin_url == "http://edge:2019"
        assert [i.id for i in await registry.list_instances()] == ["default", "edge-1"]

    @pytest.mark.asyncio
    async def test_create_rejects_bad_url(self, registry):
        with pytest.raises(ValidationError):
            await registry.create_instance(InstanceCreate(id="edge-1", name="Edge", admin_url="edge:2019"))

    @pytest.mark.asyncio
    async def test_create_rejects_bad_id(self, registry):
        with pytest.raises(ValidationError):
            await registry.create_instance(InstanceCreate(id="edge 1", name="Edge", admin_url="http://e:2019"))

    @pytest.mark.asyncio
    async def test_create_duplicate(self, registry):
        with pytest.raises(AlreadyExistsError):
            await registry.create_instance(InstanceCreate(id="default", name="Again", admin_url="http://e:2019"))

    @pytest.mark.asyncio
    async def test_ensure_default_instance(self, store, settings, clients):
        registry = InstanceRegistry(store, settings, client_factory=clients)

        first = await registry.ensure_default_instance()
        second = await registry.ensure_default_instance()

        assert first.id == settings.default_instance_id
        assert first.admin_url == "http://caddy:2019"
        assert second == first

    @pytest.mark.asyncio
    async def test_update_rebuilds_client(self, registry, clients):
        before = await registry.get_client("default")
        await registry.update_instance("default", InstanceUpdate(admin_url="http://moved:2019"))
        after = await registry.get_client("default")

        assert before.base_url == "http://caddy:2019"
        assert after.base_url == "http://moved:2019"

    @pytest.mark.asyncio
    async def test_delete(self, registry, store):
        await registry.create_instance(InstanceCreate(id="edge-1", name="Edge", admin_url="http://e:2019"))
        store.append_history("edge-1", "", "{}", "system")

        deleted = await registry.delete_instance("edge-1", purge_history=True)

        assert deleted.id == "edge-1"
        assert store.list_history("edge-1") == []
        with pytest.raises(NotFoundError):
            await registry.get_instance("edge-1")

    @pytest.mark.asyncio
    async def test_delete_missing(self, registry):
        with pytest.raises(NotFoundError):
            await registry.delete_instance("nope")


class TestClients:
    @pytest.mark.asyncio
    async def test_client_cached(self, registry):
        assert await registry.get_client("default") is await registry.get_client("default")

    @pytest.mark.asyncio
    async def test_global_config_overrides_url(self, registry, store):
        store.set_global_config("default", GlobalConfig(caddy_admin_url="http://override:2019"))
        assert await registry.resolve_admin_url("default") == "http://override:2019"

    @pytest.mark.asyncio
    async def test_invalidated_while_resolving(self, registry, store, monkeypatch):
        """A URL change that lands mid-resolve is not shadowed by a client for the old URL."""
        resolve = registry.resolve_admin_url
        seen = []

        async def racing_resolve(instance_id):
            url = await resolve(instance_id)
            if not seen:
                store.update_instance(instance_id, InstanceUpdate(admin_url="http://moved:2019"))
                registry.invalidate_client(instance_id)
            seen.append(url)
            return url

        monkeypatch.setattr(registry, "resolve_admin_url", racing_resolve)
        client = await registry.get_client("default")

        assert seen == ["http://caddy:2019", "http://moved:2019"]
        assert client.base_url == "http://moved:2019"
        assert await registry.get_client("default") is client

    @pytest.mark.asyncio
    async def test_unknown_instance(self, registry):
        with pytest.raises(NotFoundError):
            await registry.get_client("nope")

    def test_default_factory_builds_http_client(self, store, settings):
        registry = InstanceRegistry(store, settings)
        client = registry.build_client("http://probe:2019/")
        assert isinstance(client, CaddyAdminClient)
        assert client.base_url == "http://probe:2019"
        assert client.timeout == settings.admin_timeout_seconds


class TestHealth:
    @pytest.mark.asyncio
    async def test_unknown_until_probed(self, registry):
        assert registry.get_health("default").status == InstanceStatus.UNKNOWN
        assert (await registry.get_instance("default")).status == InstanceStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_record_returns_previous_snapshot(self, registry):
        online = InstanceHealth(instance_id="default", status=InstanceStatus.ONLINE, latency_ms=1.5)
        offline = InstanceHealth(instance_id="default", status=InstanceStatus.OFFLINE, error="down")

        assert (await registry.record_health(online)).status == InstanceStatus.UNKNOWN
        previous = await registry.record_health(offline)

        assert previous == online
        assert registry.get_health("default") == offline
        assert (await registry.get_instance("default")).status == InstanceStatus.OFFLINE
        assert registry.list_health() == {"default": offline}

    @pytest.mark.asyncio
    async def test_record_for_deleted_instance(self, registry):
        """Status of an instance deleted mid-probe is dropped quietly."""
        health = InstanceHealth(instance_id="ghost", status=InstanceStatus.ONLINE)
        previous = await registry.record_health(health)
        assert previous.status == InstanceStatus.UNKNOWN
