"""
Vigil -- Health Monitor

Periodically samples every managed system through its circuit breaker
and computes the tier-weighted aggregate health score.

One cycle per tick (the shortest tier interval, 15s by default). On each
tick a system is probed only if it is due for its tier's interval and
its previous probe has finished; at most one probe per system is ever in
flight, so results for a system are applied in the order they were
issued. Probes run concurrently; a slow probe never holds up the others
or the snapshot.

While emergency mode is active the coordinator suspends non-critical
tiers and tightens the critical interval; the monitor simply asks it.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from collections.abc import Callable, Coroutine, Iterable
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from vigil.primitives.common import TIER_WEIGHTS, Tier, health_label
from vigil.systems.monitor.types import HealthSnapshot, VigilEvent, VigilEventType
from vigil.systems.registry.types import ManagedSystem

if TYPE_CHECKING:
    from vigil.config import MonitorConfig
    from vigil.systems.breaker.manager import CircuitBreakerManager
    from vigil.systems.monitor.event_bus import EventBus
    from vigil.systems.registry.registry import SystemRegistry

logger = structlog.get_logger("vigil.systems.monitor.health")

# A system counts as due this close to its interval, so tick jitter
# does not push it to the following tick
_SCHEDULE_TOLERANCE_S: float = 0.5

# Listener signature: async def on_snapshot(snapshot: HealthSnapshot) -> None
SnapshotListener = Callable[[HealthSnapshot], Coroutine[Any, Any, None]]


class SchedulePolicy(Protocol):
    """What the monitor needs from whoever owns emergency mode."""

    @property
    def active(self) -> bool:
        ...

    def probe_interval(self, tier: Tier) -> float | None:
        """Interval for a tier, or None while the tier is suspended."""
        ...


def aggregate_score(systems: Iterable[ManagedSystem]) -> float:
    """Σ(tier weight × score) / Σ(tier weight). 1.0 for an empty registry."""
    weighted = 0.0
    total_weight = 0
    for system in systems:
        weight = TIER_WEIGHTS[system.tier]
        weighted += weight * system.health_score
        total_weight += weight
    if total_weight == 0:
        return 1.0
    return max(0.0, min(1.0, weighted / total_weight))


class HealthMonitor:
    """
    Drives the probe schedule and produces one HealthSnapshot per cycle.

    The snapshot goes to direct listeners (the emergency coordinator)
    and is published on the event bus as HEALTH_SNAPSHOT.
    """

    def __init__(
        self,
        registry: SystemRegistry,
        breakers: CircuitBreakerManager,
        config: MonitorConfig,
        event_bus: EventBus,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._breakers = breakers
        self._config = config
        self._event_bus = event_bus
        self._clock = clock
        self._logger = logger.bind(component="health_monitor")

        # Wired after construction
        self._policy: SchedulePolicy | None = None
        self._threat_counter: Callable[[], int] | None = None
        self._listeners: list[SnapshotListener] = []

        # Scheduling state (clock seconds)
        self._started_at: float = clock()
        self._last_issued: dict[str, float] = {}
        self._last_completed: dict[str, float] = {}
        self._in_flight: dict[str, asyncio.Task[None]] = {}

        # Snapshots
        self._cycle: int = 0
        self._latest: HealthSnapshot | None = None
        self._history: deque[HealthSnapshot] = deque(maxlen=config.history_size)

        # Background task
        self._task: asyncio.Task[None] | None = None
        self._running: bool = False

        # Metrics
        self._total_probes_issued: int = 0
        self._total_skipped_in_flight: int = 0
        self._total_skipped_suspended: int = 0

    # ─── Wiring ──────────────────────────────────────────────────────

    def set_schedule_policy(self, policy: SchedulePolicy) -> None:
        self._policy = policy

    def set_threat_counter(self, counter: Callable[[], int]) -> None:
        self._threat_counter = counter

    def add_snapshot_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    # ─── Control ─────────────────────────────────────────────────────

    def start(self) -> asyncio.Task[None]:
        """Start the background monitoring loop."""
        if self._running:
            raise RuntimeError("HealthMonitor is already running")
        self._running = True
        self._started_at = self._clock()
        self._task = asyncio.create_task(
            self._monitor_loop(),
            name="vigil_health_monitor",
        )
        self._logger.info(
            "health_monitor_started",
            tick_s=self.tick_interval_s(),
            systems=self._registry.ids,
        )
        return self._task

    async def stop(self) -> None:
        """Stop the loop and abandon any probe still in flight."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

        pending = list(self._in_flight.values())
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._in_flight.clear()

        self._logger.info(
            "health_monitor_stopped",
            cycles=self._cycle,
            probes_issued=self._total_probes_issued,
        )

    # ─── Schedule ────────────────────────────────────────────────────

    def interval_for(self, tier: Tier) -> float | None:
        """Current probe interval for a tier; None while it is suspended."""
        if self._policy is not None:
            return self._policy.probe_interval(tier)
        return self._config.tier_intervals_s[tier]

    def tick_interval_s(self) -> float:
        """The shortest interval among currently scheduled tiers."""
        intervals = [
            interval
            for tier in Tier
            if (interval := self.interval_for(tier)) is not None
        ]
        return min(intervals) if intervals else min(self._config.tier_intervals_s.values())

    def is_due(self, system: ManagedSystem, now: float | None = None) -> bool:
        interval = self.interval_for(system.tier)
        if interval is None:
            return False
        last = self._last_issued.get(system.id)
        if last is None:
            return True
        now = self._clock() if now is None else now
        return now - last >= interval - _SCHEDULE_TOLERANCE_S

    def sample_age_s(self, system_id: str) -> float:
        """
        Seconds since the system's last completed probe (fallbacks included),
        or since the monitor started if it has never completed one.
        """
        last = self._last_completed.get(system_id, self._started_at)
        return max(0.0, self._clock() - last)

    def in_flight(self, system_id: str) -> bool:
        return system_id in self._in_flight

    # ─── Cycle ───────────────────────────────────────────────────────

    async def run_cycle(self) -> HealthSnapshot:
        """
        Issue probes for every due system, wait for them (bounded by the
        tick), then build, store and publish the snapshot.
        """
        now = self._clock()
        issued: list[str] = []
        skipped: list[str] = []
        tasks: list[asyncio.Task[None]] = []

        for system in self._registry:
            if self.interval_for(system.tier) is None:
                self._total_skipped_suspended += 1
                skipped.append(system.id)
                continue
            if system.id in self._in_flight:
                # Previous probe still running; don't pile up
                self._total_skipped_in_flight += 1
                skipped.append(system.id)
                continue
            if not self.is_due(system, now):
                continue

            self._last_issued[system.id] = now
            task = asyncio.create_task(
                self._probe_system(system),
                name=f"vigil_probe_{system.id}",
            )
            self._in_flight[system.id] = task
            task.add_done_callback(lambda _t, sid=system.id: self._in_flight.pop(sid, None))
            tasks.append(task)
            issued.append(system.id)
            self._total_probes_issued += 1

        if tasks:
            # Each probe has its own timeout; anything slower than a tick
            # stays in flight and lands on a later snapshot
            await asyncio.wait(tasks, timeout=self.tick_interval_s())

        return await self._publish_snapshot(issued, skipped)

    async def _probe_system(self, system: ManagedSystem) -> None:
        sample = await self._breakers.call_probe(system.id)
        async with self._registry.lock(system.id):
            system.set_score(sample.score)
            if not sample.short_circuited:
                system.last_signals = list(sample.signals)
        self._last_completed[system.id] = self._clock()

    async def _publish_snapshot(
        self,
        issued: list[str],
        skipped: list[str],
    ) -> HealthSnapshot:
        self._cycle += 1
        systems = list(self._registry)
        snapshot = HealthSnapshot(
            cycle=self._cycle,
            per_system_scores={s.id: round(s.health_score, 6) for s in systems},
            aggregate_score=aggregate_score(systems),
            active_threat_count=self._threat_counter() if self._threat_counter else 0,
            emergency_mode_active=self._policy.active if self._policy else False,
            probed_systems=issued,
            skipped_systems=skipped,
        )
        self._latest = snapshot
        self._history.append(snapshot)

        self._logger.debug(
            "health_snapshot",
            cycle=snapshot.cycle,
            aggregate=round(snapshot.aggregate_score, 4),
            label=health_label(snapshot.aggregate_score),
            probed=len(issued),
            skipped=len(skipped),
        )

        for listener in self._listeners:
            try:
                await listener(snapshot)
            except Exception as exc:
                self._logger.error(
                    "snapshot_listener_error",
                    listener=getattr(listener, "__name__", str(listener)),
                    error=str(exc),
                )

        await self._event_bus.emit(VigilEvent(
            event_type=VigilEventType.HEALTH_SNAPSHOT,
            details={
                "cycle": snapshot.cycle,
                "aggregate_score": round(snapshot.aggregate_score, 4),
                "active_threat_count": snapshot.active_threat_count,
                "emergency_mode_active": snapshot.emergency_mode_active,
            },
        ))
        return snapshot

    # ─── Monitor Loop ────────────────────────────────────────────────

    async def _monitor_loop(self) -> None:
        """Background loop. Runs until stopped."""
        while self._running:
            started = self._clock()
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                return
            except Exception as exc:
                self._logger.error("health_monitor_error", error=str(exc))
            elapsed = self._clock() - started
            await asyncio.sleep(max(0.0, self.tick_interval_s() - elapsed))

    # ─── State ───────────────────────────────────────────────────────

    @property
    def latest(self) -> HealthSnapshot | None:
        return self._latest

    @property
    def history(self) -> list[HealthSnapshot]:
        return list(self._history)

    @property
    def cycle(self) -> int:
        return self._cycle

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "cycles": self._cycle,
            "tick_s": self.tick_interval_s(),
            "probes_issued": self._total_probes_issued,
            "skipped_in_flight": self._total_skipped_in_flight,
            "skipped_suspended": self._total_skipped_suspended,
            "in_flight": sorted(self._in_flight),
            "aggregate_score": self._latest.aggregate_score if self._latest else None,
        }
