from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from orchestrator.database import utcnow
from orchestrator.schemas.instances import InstanceHealth, InstanceStatus
from orchestrator.services.caddy_client import CaddyClientError
from orchestrator.services.registry import InstanceRegistry
from orchestrator.services.store import NotFoundError, StoreError

if TYPE_CHECKING:
    from orchestrator.services.sync import SyncOrchestrator


logger = logging.getLogger(__name__)

RESYNC_ACTOR = "health-monitor"


class CircuitBreaker:
    """Circuit breaker to handle repeated failures gracefully."""

    # Circuit states
    CLOSED = "closed"       # Normal operation, requests flow through
    OPEN = "open"           # Failures exceeded threshold, requests blocked
    HALF_OPEN = "half_open" # Testing if the instance recovered

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 1,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._state = self.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == self.CLOSED

    def allow_request(self) -> bool:
        """Check if a request should be allowed through."""
        if self._state == self.CLOSED:
            return True

        if self._state == self.OPEN:
            if self._last_failure_time and (time.time() - self._last_failure_time) >= self.recovery_timeout:
                self._state = self.HALF_OPEN
                self._half_open_calls = 0
                logger.info(f"Circuit breaker '{self.name}' entering half-open state")
                return True
            return False

        if self._state == self.HALF_OPEN:
            if self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False

        return False

    def record_success(self) -> None:
        """Record a successful request."""
        if self._state == self.HALF_OPEN:
            logger.info(f"Circuit breaker '{self.name}' recovered, closing circuit")
            self._state = self.CLOSED

        self._failure_count = 0
        self._last_failure_time = None

    def record_failure(self, error: Exception | str | None = None) -> None:
        """Record a failed request."""
        self._failure_count += 1
        self._last_failure_time = time.time()

        if self._state == self.HALF_OPEN:
            logger.warning(f"Circuit breaker '{self.name}' failed in half-open state, re-opening circuit")
            self._state = self.OPEN
            return

        if self._failure_count >= self.failure_threshold:
            if self._state != self.OPEN:
                logger.error(
                    f"Circuit breaker '{self.name}' OPENED after {self._failure_count} consecutive failures. "
                    f"Will retry in {self.recovery_timeout}s. Last error: {error}"
                )
                self._state = self.OPEN

    def get_status(self) -> dict[str, Any]:
        """Get circuit breaker status for monitoring."""
        return {
            "name": self.name,
            "state": self._state,
            "failure_count": self._failure_count,
            "last_failure_time": self._last_failure_time,
            "threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }


class HealthMonitor:
    """Polls every registered instance on its own task.

    A slow or dead instance only delays its own loop. When an instance that
    missed an apply comes back online, the monitor re-runs the sync for it,
    with a circuit breaker so a config the instance keeps rejecting is not
    pushed on every poll.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        interval: float = 30.0,
        orchestrator: SyncOrchestrator | None = None,
        auto_resync: bool = True,
        resync_failure_threshold: int = 3,
        resync_recovery_timeout: float = 60.0,
        grace: float = 5.0,
    ):
        self.registry = registry
        self.interval = interval
        self.orchestrator = orchestrator
        self.auto_resync = auto_resync
        self.resync_failure_threshold = resync_failure_threshold
        self.resync_recovery_timeout = resync_recovery_timeout
        self.grace = grace
        self._tasks: dict[str, asyncio.Task] = {}
        self._circuit_breakers: dict[str, CircuitBreaker] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def watched(self) -> list[str]:
        return sorted(self._tasks)

    async def start(self) -> None:
        """Start one polling task per registered instance."""
        if self._running:
            logger.warning("Health monitor already running")
            return

        self._running = True
        for instance_id in await self.registry.list_instance_ids():
            self.watch(instance_id)
        logger.info(
            "Health monitor started for %d instance(s) with interval: %.1fs",
            len(self._tasks),
            self.interval,
        )

    def watch(self, instance_id: str) -> None:
        """Begin polling an instance. No-op before start() or if already watched."""
        if not self._running:
            return
        task = self._tasks.get(instance_id)
        if task is not None and not task.done():
            return
        self._tasks[instance_id] = asyncio.create_task(
            self._poll_loop(instance_id),
            name=f"health:{instance_id}",
        )
        logger.debug("Watching instance %s", instance_id)

    async def unwatch(self, instance_id: str) -> None:
        """Stop polling one instance and wait for its task to finish."""
        task = self._tasks.pop(instance_id, None)
        self._circuit_breakers.pop(instance_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Stopped watching instance %s", instance_id)

    async def stop(self) -> None:
        """Cancel every polling task, waiting at most the grace period."""
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.grace)
            if pending:
                logger.warning("%d health task(s) did not stop within %.1fs", len(pending), self.grace)
        logger.info("Health monitor stopped")

    async def _poll_loop(self, instance_id: str) -> None:
        while self._running:
            try:
                await self.check_instance(instance_id)
            except Exception as e:
                logger.error("Health check for %s failed: %s", instance_id, e)

            await asyncio.sleep(self.interval)

    async def check_instance(self, instance_id: str) -> InstanceHealth:
        """Probe one instance, publish the result and reconcile if needed."""
        started = time.perf_counter()
        try:
            client = await self.registry.get_client(instance_id)
            await client.health()
        except CaddyClientError as exc:
            health = InstanceHealth(
                instance_id=instance_id,
                status=InstanceStatus.OFFLINE,
                error=str(exc),
                checked_at=utcnow(),
            )
        except (NotFoundError, StoreError) as exc:
            health = InstanceHealth(
                instance_id=instance_id,
                status=InstanceStatus.ERROR,
                error=str(exc),
                checked_at=utcnow(),
            )
        else:
            health = InstanceHealth(
                instance_id=instance_id,
                status=InstanceStatus.ONLINE,
                latency_ms=round((time.perf_counter() - started) * 1000, 2),
                checked_at=utcnow(),
            )

        previous = await self.registry.record_health(health)
        if previous.status != health.status:
            if health.status == InstanceStatus.ONLINE:
                logger.info(f"Instance {instance_id} is online ({health.latency_ms}ms)")
            else:
                logger.warning(f"Instance {instance_id} is {health.status.value}: {health.error}")

        if health.status == InstanceStatus.ONLINE:
            await self._maybe_reconcile(instance_id)
        return health

    def _breaker_for(self, instance_id: str) -> CircuitBreaker:
        breaker = self._circuit_breakers.get(instance_id)
        if breaker is None:
            breaker = CircuitBreaker(
                f"resync:{instance_id}",
                failure_threshold=self.resync_failure_threshold,
                recovery_timeout=self.resync_recovery_timeout,
            )
            self._circuit_breakers[instance_id] = breaker
        return breaker

    async def _maybe_reconcile(self, instance_id: str) -> None:
        if not self.auto_resync or self.orchestrator is None:
            return
        if not self.orchestrator.needs_resync(instance_id):
            return

        breaker = self._breaker_for(instance_id)
        if not breaker.allow_request():
            logger.debug("Resync of %s held back, circuit is %s", instance_id, breaker.state)
            return

        logger.info("Instance %s missed an apply, resyncing", instance_id)
        # Shielded so unwatch/stop do not cut an apply off halfway
        result = await asyncio.shield(self.orchestrator.sync_now(instance_id, actor=RESYNC_ACTOR))
        if result.success:
            breaker.record_success()
        else:
            breaker.record_failure(result.error)

    def get_circuit_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all resync circuit breakers."""
        return {name: cb.get_status() for name, cb in self._circuit_breakers.items()}
