"""
Vigil -- Threat Responder

Owns every ThreatRecord once the detector has created it and drives it
through its lifecycle:

  detected → responding → {contained | escalated} → resolved

(responding falls back to detected when the tier is suspended between
retries; the record is then parked like any other deferred repair.)

Per severity:
  critical  repair now, one retry, then escalate (and notify the
            emergency coordinator)
  high      repair with up to 3 retries on a 1s/2s/4s backoff, then escalate
  medium    no automatic repair; contained for manual review, unless it is
            the 3rd medium threat on the same system inside 10 minutes,
            in which case it is promoted to high and re-dispatched
  low       observational; promoted to medium when its system produces
            them faster than the configured rate

Every repair goes through the global repair governor and the system's
circuit breaker, never straight to the descriptor. Each record has a
single owning task at a time (its lock), so transitions per record are
linearizable while different records are handled concurrently.

While emergency mode suspends a tier, repairs for its systems are
parked and resumed when the suspension lifts. The gate is checked
before every attempt, so a suspension that starts during a retry
backoff stops the remaining retries too.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import OrderedDict, defaultdict, deque
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

import structlog

from vigil.config import ResponderConfig
from vigil.primitives.errors import EscalationRequired
from vigil.systems.breaker.manager import CircuitBreakerManager
from vigil.systems.monitor.event_bus import EventBus
from vigil.systems.monitor.types import VigilEvent, VigilEventType
from vigil.systems.registry.registry import SystemRegistry
from vigil.systems.registry.types import RepairOutcome
from vigil.systems.threats.governor import RepairGovernor
from vigil.systems.threats.ledger import ThreatLedger
from vigil.systems.threats.types import (
    ThreatRecord,
    ThreatSeverity,
    ThreatStatus,
    ThreatTransition,
    ThreatUpdate,
    ThreatUpdateKind,
)

logger = structlog.get_logger("vigil.systems.threats.responder")

_ALLOWED_TRANSITIONS: dict[ThreatStatus, frozenset[ThreatStatus]] = {
    ThreatStatus.DETECTED: frozenset({
        ThreatStatus.RESPONDING,
        ThreatStatus.CONTAINED,
        ThreatStatus.RESOLVED,
    }),
    # Back to detected only when its tier is suspended between attempts
    ThreatStatus.RESPONDING: frozenset({
        ThreatStatus.DETECTED,
        ThreatStatus.CONTAINED,
        ThreatStatus.ESCALATED,
    }),
    ThreatStatus.CONTAINED: frozenset({ThreatStatus.RESOLVED}),
    ThreatStatus.ESCALATED: frozenset({ThreatStatus.RESOLVED}),
    ThreatStatus.RESOLVED: frozenset(),
}

_STATUS_EVENTS: dict[ThreatStatus, VigilEventType] = {
    ThreatStatus.DETECTED: VigilEventType.THREAT_DEFERRED,
    ThreatStatus.RESPONDING: VigilEventType.THREAT_RESPONDING,
    ThreatStatus.CONTAINED: VigilEventType.THREAT_CONTAINED,
    ThreatStatus.ESCALATED: VigilEventType.THREAT_ESCALATED,
    ThreatStatus.RESOLVED: VigilEventType.THREAT_RESOLVED,
}

# Escalation handler signature: async def on_escalation(record: ThreatRecord) -> None
EscalationHandler = Callable[[ThreatRecord], Coroutine[Any, Any, None]]


class ThreatResponder:
    """Severity-driven response state machine over the threat ledger."""

    def __init__(
        self,
        registry: SystemRegistry,
        ledger: ThreatLedger,
        breakers: CircuitBreakerManager,
        governor: RepairGovernor,
        config: ResponderConfig,
        event_bus: EventBus,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._ledger = ledger
        self._breakers = breakers
        self._governor = governor
        self._config = config
        self._event_bus = event_bus
        self._clock = clock
        self._sleep = sleep
        self._logger = logger.bind(component="threat_responder")

        # Wired after construction
        self._on_escalation: EscalationHandler | None = None
        self._repair_gate: Callable[[str], bool] | None = None

        # One owner at a time per record
        self._record_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Threat ids whose repair is parked while their tier is suspended
        self._deferred: OrderedDict[str, None] = OrderedDict()
        # Per-system creation times for promotion windows
        self._medium_seen: dict[str, deque[float]] = defaultdict(deque)
        self._low_seen: dict[str, deque[float]] = defaultdict(deque)

        # Background work
        self._consumer: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

        # Metrics
        self._total_repairs_requested: int = 0
        self._total_contained: int = 0
        self._total_escalated: int = 0
        self._total_resolved: int = 0
        self._total_promoted: int = 0

    # ─── Wiring ──────────────────────────────────────────────────────

    def set_escalation_handler(self, handler: EscalationHandler) -> None:
        self._on_escalation = handler

    def set_repair_gate(self, gate: Callable[[str], bool]) -> None:
        """gate(system_id) → False while repairs for that system are suspended."""
        self._repair_gate = gate

    # ─── Control ─────────────────────────────────────────────────────

    def start(self, updates: asyncio.Queue[ThreatUpdate]) -> asyncio.Task[None]:
        """Consume detector updates until stopped."""
        if self._consumer is not None and not self._consumer.done():
            raise RuntimeError("ThreatResponder is already running")
        self._consumer = asyncio.create_task(
            self._consume(updates),
            name="vigil_threat_responder",
        )
        self._logger.info("threat_responder_started")
        return self._consumer

    async def stop(self) -> None:
        if self._consumer and not self._consumer.done():
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
        self._consumer = None

        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self._logger.info(
            "threat_responder_stopped",
            escalated=self._total_escalated,
            resolved=self._total_resolved,
        )

    async def _consume(self, updates: asyncio.Queue[ThreatUpdate]) -> None:
        while True:
            update = await updates.get()
            try:
                self.dispatch(update)
            except Exception as exc:
                self._logger.error(
                    "threat_update_dispatch_error",
                    threat_id=update.threat_id,
                    error=str(exc),
                )
            finally:
                updates.task_done()

    def dispatch(self, update: ThreatUpdate) -> asyncio.Task[None]:
        """Hand one update to its own task. Different records run concurrently."""
        if update.kind == ThreatUpdateKind.CREATED:
            coro = self.respond(update.threat_id)
        else:
            coro = self.clear(update.threat_id)
        return self._spawn(coro, f"vigil_threat_{update.kind.value}_{update.threat_id}")

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(self._guarded(coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.error("threat_response_error", error=str(exc))

    async def drain(self) -> None:
        """Wait for every in-flight response task (spawned ones included)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ─── Response ────────────────────────────────────────────────────

    async def respond(self, threat_id: str) -> ThreatRecord:
        """Run the response strategy for a record. Returns it afterwards."""
        record = self._ledger.get(threat_id)
        async with self._record_locks[record.id]:
            if record.status != ThreatStatus.DETECTED:
                return record

            if record.severity in (ThreatSeverity.MEDIUM, ThreatSeverity.LOW):
                await self._observe(record)
            else:
                await self._run_remediation(record)

            if record.acknowledged and not record.is_resolved:
                await self._resolve(record, note="acknowledged")
        return record

    async def _observe(self, record: ThreatRecord) -> None:
        """Medium and low: log for review, promote on recurrence."""
        if record.severity == ThreatSeverity.LOW:
            seen = self._record_occurrence(
                self._low_seen, record, self._config.low_promotion_window_s
            )
            if seen > self._config.low_promotion_count:
                await self._promote(record, ThreatSeverity.MEDIUM, seen)

        if record.severity == ThreatSeverity.MEDIUM:
            seen = self._record_occurrence(
                self._medium_seen, record, self._config.medium_promotion_window_s
            )
            if seen >= self._config.medium_promotion_count:
                await self._promote(record, ThreatSeverity.HIGH, seen)
                await self._run_remediation(record)
                return

        self._logger.info(
            "threat_held_for_review",
            threat_id=record.id,
            system_id=record.source_system_id,
            signature=record.signature,
            severity=record.severity.value,
        )
        await self._transition(record, ThreatStatus.CONTAINED, note="manual review")
        self._total_contained += 1

    def _record_occurrence(
        self,
        seen: dict[str, deque[float]],
        record: ThreatRecord,
        window_s: float,
    ) -> int:
        now = self._clock()
        times = seen[record.source_system_id]
        times.append(now)
        while times and now - times[0] > window_s:
            times.popleft()
        return len(times)

    async def _promote(self, record: ThreatRecord, severity: ThreatSeverity, seen: int) -> None:
        previous = record.severity
        record.original_severity = record.original_severity or previous
        record.severity = severity
        self._total_promoted += 1
        self._logger.warning(
            "threat_promoted",
            threat_id=record.id,
            system_id=record.source_system_id,
            from_severity=previous.value,
            to_severity=severity.value,
            occurrences_in_window=seen,
        )
        await self._event_bus.emit(VigilEvent(
            event_type=VigilEventType.THREAT_PROMOTED,
            system_id=record.source_system_id,
            threat_id=record.id,
            details={
                "from_severity": previous.value,
                "to_severity": severity.value,
                "occurrences_in_window": seen,
            },
        ))

    async def _run_remediation(self, record: ThreatRecord) -> None:
        """Critical and high: repair through the governor and breaker."""
        if not self._repairs_allowed(record.source_system_id):
            self._defer(record)
            return

        await self._transition(record, ThreatStatus.RESPONDING)
        try:
            repaired = await self._remediate(record, self._retry_delays(record.severity))
        except EscalationRequired as exc:
            await self._escalate(record, exc.reason)
            return

        if not repaired:
            await self._transition(
                record, ThreatStatus.DETECTED, note="tier suspended mid-response"
            )
            self._defer(record)
            return

        await self._transition(record, ThreatStatus.CONTAINED, note="repaired")
        self._total_contained += 1
        await self._resolve(record, note="repair succeeded")

    def _retry_delays(self, severity: ThreatSeverity) -> list[float]:
        if severity == ThreatSeverity.CRITICAL:
            return [self._config.critical_retry_delay_s] * self._config.critical_retries
        return list(self._config.high_retry_backoff_s)

    async def _remediate(self, record: ThreatRecord, retry_delays: list[float]) -> bool:
        """
        One attempt plus one per retry delay. Raises EscalationRequired.

        Returns True once a repair succeeds, False when the system's tier
        was suspended before a retry could run.
        """
        last: RepairOutcome | None = None
        for attempt, delay in enumerate([0.0, *retry_delays]):
            if attempt > 0:
                if delay > 0:
                    await self._sleep(delay)
                if not self._repairs_allowed(record.source_system_id):
                    return False
            record.repair_attempts += 1
            last = await self.repair(record.source_system_id, threat_id=record.id)
            if last.success:
                return True
            self._logger.info(
                "threat_repair_attempt_failed",
                threat_id=record.id,
                system_id=record.source_system_id,
                attempt=attempt + 1,
                of=len(retry_delays) + 1,
                error=last.error,
                short_circuited=last.short_circuited,
            )

        reason = "repair retries exhausted"
        if last is not None and last.error:
            reason = f"{reason} (last: {last.error})"
        raise EscalationRequired(record.id, reason)

    async def repair(self, system_id: str, threat_id: str | None = None) -> RepairOutcome:
        """
        One repair through the governor and circuit breaker.

        Also the path for operator-forced repairs. A system the registry
        does not manage (a pseudo-system such as the host) cannot be
        repaired and comes back unsuccessful.
        """
        self._total_repairs_requested += 1
        if system_id not in self._registry:
            return RepairOutcome(
                success=False,
                error="RepairFailure",
                detail=f"{system_id} is not a managed system",
            )
        async with self._governor.slot(system_id):
            outcome = await self._breakers.call_repair(system_id)
        self._logger.debug(
            "repair_completed",
            system_id=system_id,
            threat_id=threat_id,
            success=outcome.success,
        )
        return outcome

    async def _escalate(self, record: ThreatRecord, reason: str) -> None:
        record.escalation_reason = reason
        await self._transition(record, ThreatStatus.ESCALATED, note=reason)
        self._total_escalated += 1
        self._logger.error(
            "threat_escalated",
            threat_id=record.id,
            system_id=record.source_system_id,
            severity=record.severity.value,
            reason=reason,
            repair_attempts=record.repair_attempts,
        )
        if self._on_escalation is not None:
            try:
                await self._on_escalation(record)
            except Exception as exc:
                self._logger.error("escalation_handler_error", threat_id=record.id, error=str(exc))

    # ─── Deferral ────────────────────────────────────────────────────

    def _repairs_allowed(self, system_id: str) -> bool:
        return self._repair_gate is None or self._repair_gate(system_id)

    def _defer(self, record: ThreatRecord) -> None:
        record.deferred = True
        self._deferred[record.id] = None
        self._logger.info(
            "threat_repair_deferred",
            threat_id=record.id,
            system_id=record.source_system_id,
            severity=record.severity.value,
        )

    def resume_deferred(self) -> list[str]:
        """Re-dispatch parked repairs whose systems are no longer suspended."""
        resumed: list[str] = []
        for threat_id in list(self._deferred):
            record = self._ledger.find(threat_id)
            if record is None or record.is_resolved:
                self._deferred.pop(threat_id, None)
                continue
            if not self._repairs_allowed(record.source_system_id):
                continue
            self._deferred.pop(threat_id, None)
            record.deferred = False
            resumed.append(threat_id)
            self._spawn(self.respond(threat_id), f"vigil_threat_resume_{threat_id}")
        if resumed:
            self._logger.info("deferred_repairs_resumed", count=len(resumed))
        return resumed

    @property
    def deferred(self) -> list[str]:
        return list(self._deferred)

    # ─── Clearing & Acknowledgement ──────────────────────────────────

    async def clear(self, threat_id: str) -> None:
        """The anomaly behind a settled threat is gone: resolve it."""
        record = self._ledger.find(threat_id)
        if record is None:
            return
        async with self._record_locks[record.id]:
            if record.status in (ThreatStatus.CONTAINED, ThreatStatus.ESCALATED):
                await self._resolve(record, note="anomaly cleared")

    async def acknowledge(self, threat_id: str) -> ThreatRecord:
        """
        Operator acknowledgement: resolves the threat.

        A threat in the middle of its response is flagged and resolved by
        its owning task when the response finishes.
        """
        record = self._ledger.get(threat_id)
        record.acknowledged = True
        lock = self._record_locks[record.id]
        if lock.locked():
            self._logger.info("threat_acknowledged_pending", threat_id=record.id)
            return record
        async with lock:
            if not record.is_resolved:
                self._deferred.pop(record.id, None)
                record.deferred = False
                await self._resolve(record, note="acknowledged")
        return record

    # ─── Transitions ─────────────────────────────────────────────────

    async def _resolve(self, record: ThreatRecord, note: str) -> None:
        await self._transition(record, ThreatStatus.RESOLVED, note=note)
        self._total_resolved += 1
        self._ledger.archive(record)
        self._record_locks.pop(record.id, None)

    async def _transition(
        self,
        record: ThreatRecord,
        new_status: ThreatStatus,
        note: str = "",
    ) -> None:
        old = record.status
        if new_status not in _ALLOWED_TRANSITIONS[old]:
            raise RuntimeError(f"illegal threat transition for {record.id}: {old} -> {new_status}")
        transition = ThreatTransition(from_status=old, to_status=new_status, note=note)
        record.status = new_status
        record.transitions.append(transition)
        if new_status == ThreatStatus.RESOLVED:
            record.resolved_at = transition.timestamp

        await self._event_bus.emit(VigilEvent(
            event_type=_STATUS_EVENTS[new_status],
            system_id=record.source_system_id,
            threat_id=record.id,
            details={
                "from_status": old.value,
                "to_status": new_status.value,
                "severity": record.severity.value,
                "signature": record.signature,
                "note": note,
            },
        ))

    # ─── Stats ───────────────────────────────────────────────────────

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "repairs_requested": self._total_repairs_requested,
            "contained": self._total_contained,
            "escalated": self._total_escalated,
            "resolved": self._total_resolved,
            "promoted": self._total_promoted,
            "deferred": len(self._deferred),
            "in_flight": len(self._tasks),
        }
