"""Shared fixtures: a temp SQLite store and scriptable admin API clients."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from orchestrator.config import Settings
from orchestrator.database import Database
from orchestrator.schemas.instances import InstanceCreate
from orchestrator.services.caddy_client import ApplyRejected, TransportError
from orchestrator.services.registry import InstanceRegistry
from orchestrator.services.store import DomainStore


class FakeAdminClient:
    """In-memory stand-in for CaddyAdminClient.

    Holds the "live" config, records every apply and can be told to be
    unreachable or to reject loads.
    """

    def __init__(self, base_url: str):
        self.base_url = base_url
        self.live: Any = None
        self.applied: list[Any] = []
        self.health_calls = 0
        self.reachable = True
        self.reject_apply = False
        self.apply_delay = 0.0
        self.health_delay = 0.0

    def _check(self) -> None:
        if not self.reachable:
            raise TransportError(self.base_url, ConnectionRefusedError("connection refused"))

    async def fetch_config_raw(self) -> str:
        self._check()
        return json.dumps(self.live)

    async def fetch_config(self) -> Any:
        return json.loads(await self.fetch_config_raw())

    async def apply_config(self, config: Any) -> None:
        if self.apply_delay:
            await asyncio.sleep(self.apply_delay)
        self._check()
        if self.reject_apply:
            raise ApplyRejected(400, "loading config: invalid")
        self.applied.append(config)
        self.live = config

    async def health(self) -> None:
        self.health_calls += 1
        if self.health_delay:
            await asyncio.sleep(self.health_delay)
        self._check()


class FakeClientFactory:
    """Hands out one FakeAdminClient per base URL."""

    def __init__(self):
        self.clients: dict[str, FakeAdminClient] = {}

    def __call__(self, base_url: str) -> FakeAdminClient:
        return self.clients.setdefault(base_url, FakeAdminClient(base_url))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        sqlite_db_path=str(tmp_path / "orchestrator.db"),
        default_instance_id="default",
        default_admin_url="http://caddy:2019",
        health_check_interval=30.0,
        environment="development",
    )


@pytest.fixture
def store(tmp_path):
    db = Database(str(tmp_path / "store.db"))
    db.init_db()
    yield DomainStore(db)
    db.dispose()


@pytest.fixture
def clients() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def registry(store, settings, clients) -> InstanceRegistry:
    store.create_instance(InstanceCreate(id="default", name="Default Caddy", admin_url="http://caddy:2019"))
    return InstanceRegistry(store, settings, client_factory=clients)
