"""
Vigil -- Circuit Breaker & Fallback Manager

Every probe and repair call goes through here. The manager:

- gates the call on the system's circuit (open → fallback, no invocation)
- bounds the call with an execution timeout
- normalises whatever the descriptor returned
- feeds the outcome back into the breaker and emits circuit events

Fallbacks are never failures: a short-circuited probe returns the
system's configured fallback score, a short-circuited repair returns an
unsuccessful RepairOutcome flagged short_circuited. Neither touches the
failure streak.

The system's row lock is held only while reading or mutating breaker
state, never across the descriptor call or event emission.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from typing import Any

import structlog

from vigil.config import BreakerConfig
from vigil.primitives.common import clamp_score, utc_now
from vigil.primitives.errors import (
    CircuitOpenRejection,
    ProbeFailure,
    ProbeTimeout,
    RepairFailure,
)
from vigil.systems.breaker.breaker import CircuitBreaker
from vigil.systems.monitor.event_bus import EventBus
from vigil.systems.monitor.types import VigilEvent, VigilEventType
from vigil.systems.registry.registry import SystemRegistry
from vigil.systems.registry.types import (
    CircuitState,
    ManagedSystem,
    ProbeSample,
    RepairOutcome,
)

logger = structlog.get_logger("vigil.systems.breaker.manager")

_STATE_EVENTS: dict[CircuitState, VigilEventType] = {
    CircuitState.OPEN: VigilEventType.CIRCUIT_OPENED,
    CircuitState.HALF_OPEN: VigilEventType.CIRCUIT_HALF_OPENED,
    CircuitState.CLOSED: VigilEventType.CIRCUIT_CLOSED,
}


def normalise_probe_result(raw: Any) -> tuple[float, list[str]]:
    """
    Turn a descriptor's return value into (score, signals).

    Accepts a number in [0, 1], a bool, or {"score": ..., "signals": [...]}.
    Anything else is a ProbeFailure.
    """
    signals: list[str] = []
    if isinstance(raw, dict):
        if "score" not in raw:
            raise ProbeFailure("probe result mapping has no 'score'")
        raw_signals = raw.get("signals") or []
        if not isinstance(raw_signals, (list, tuple)):
            raise ProbeFailure("probe 'signals' must be a list")
        signals = [str(s) for s in raw_signals]
        raw = raw["score"]

    if isinstance(raw, bool):
        return (1.0 if raw else 0.0), signals
    if not isinstance(raw, (int, float)):
        raise ProbeFailure(f"probe returned {type(raw).__name__}, expected a score")
    score = float(raw)
    if math.isnan(score) or not 0.0 <= score <= 1.0:
        raise ProbeFailure(f"probe score out of range: {score}")
    return score, signals


def normalise_repair_result(raw: Any) -> RepairOutcome:
    if raw is None:
        return RepairOutcome(success=True)
    if isinstance(raw, RepairOutcome):
        return raw
    if isinstance(raw, bool):
        return RepairOutcome(success=raw)
    if isinstance(raw, dict) and "success" in raw:
        return RepairOutcome(success=bool(raw["success"]), detail=str(raw.get("detail", "")))
    raise RepairFailure(f"repair returned {type(raw).__name__}, expected an outcome")


class CircuitBreakerManager:
    """
    Owns one CircuitBreaker per registered system and wraps every
    descriptor invocation.
    """

    def __init__(
        self,
        registry: SystemRegistry,
        config: BreakerConfig,
        event_bus: EventBus,
        probe_timeout_s: float = 5.0,
        repair_timeout_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._config = config
        self._event_bus = event_bus
        self._probe_timeout_s = probe_timeout_s
        self._repair_timeout_s = repair_timeout_s
        self._clock = clock
        self._logger = logger.bind(component="circuit_breaker")

        self._breakers: dict[str, CircuitBreaker] = {
            system.id: CircuitBreaker(system, config, clock) for system in registry
        }

        # Metrics
        self._total_short_circuits: int = 0
        self._repair_invocations: dict[str, int] = {}

    def breaker(self, system_id: str) -> CircuitBreaker:
        self._registry.get(system_id)
        return self._breakers[system_id]

    # ─── Probe ───────────────────────────────────────────────────────

    async def call_probe(self, system_id: str) -> ProbeSample:
        """
        Run the system's probe through its circuit.

        Never raises for probe problems: timeouts and failures come back
        as a zero-score sample with the error name set, a short-circuit
        comes back as the fallback score.
        """
        system = self._registry.get(system_id)
        breaker = self._breakers[system_id]
        lock = self._registry.lock(system_id)

        rejected = False
        token = 0
        async with lock:
            before = breaker.state
            try:
                token = breaker.acquire()
            except CircuitOpenRejection:
                self._total_short_circuits += 1
                rejected = True
            after = breaker.state
        await self._emit_if_changed(system, before, after)
        if rejected:
            return ProbeSample(
                system_id=system_id,
                score=system.fallback_score,
                short_circuited=True,
                error="CircuitOpenRejection",
            )

        timeout = system.probe_timeout_s or self._probe_timeout_s
        started = time.monotonic()
        error: str | None = None
        detail = ""
        score = 0.0
        signals: list[str] = []
        try:
            try:
                raw = await asyncio.wait_for(system.probe_descriptor.probe(), timeout=timeout)
            except TimeoutError as exc:
                raise ProbeTimeout(f"probe of {system_id} exceeded {timeout}s") from exc
            except ProbeFailure:
                raise
            except Exception as exc:
                raise ProbeFailure(f"probe of {system_id} raised: {exc}") from exc
            score, signals = normalise_probe_result(raw)
        except (ProbeTimeout, ProbeFailure) as exc:
            error = type(exc).__name__
            detail = str(exc)
        except asyncio.CancelledError:
            breaker.abandon_trial(token)
            raise
        latency_ms = (time.monotonic() - started) * 1000.0

        async with lock:
            before = breaker.state
            system.total_probes += 1
            system.last_probe_at = utc_now()
            if error is None:
                breaker.record_success(token)
                system.last_success_at = system.last_probe_at
            else:
                system.total_probe_failures += 1
                breaker.record_failure(token)
            after = breaker.state

        if error is not None:
            self._logger.warning(
                "probe_failed",
                system_id=system_id,
                error=error,
                detail=detail,
                consecutive_failures=system.consecutive_failures,
            )
        await self._emit_if_changed(system, before, after)

        return ProbeSample(
            system_id=system_id,
            score=clamp_score(score),
            signals=signals,
            error=error,
            latency_ms=round(latency_ms, 2),
        )

    # ─── Repair ──────────────────────────────────────────────────────

    async def call_repair(self, system_id: str) -> RepairOutcome:
        """
        Run the system's repair through its circuit.

        A timeout, an exception or an unsuccessful outcome all come back
        as RepairOutcome(success=False) and count as a breaker failure.
        A short-circuit, or a system with no repair descriptor at all,
        comes back unsuccessful without touching the breaker. A successful
        repair leaves the probe failure streak alone; only a probe (or a
        half-open trial) clears it.
        """
        system = self._registry.get(system_id)
        breaker = self._breakers[system_id]
        lock = self._registry.lock(system_id)

        if not system.has_repair:
            outcome = RepairOutcome(
                success=False,
                error="RepairFailure",
                detail=f"{system_id} has no repair descriptor",
            )
            await self._record_repair(system, outcome)
            return outcome

        rejection: CircuitOpenRejection | None = None
        token = 0
        async with lock:
            before = breaker.state
            try:
                token = breaker.acquire()
            except CircuitOpenRejection as exc:
                self._total_short_circuits += 1
                rejection = exc
            after = breaker.state
        await self._emit_if_changed(system, before, after)
        if rejection is not None:
            outcome = RepairOutcome(
                success=False,
                short_circuited=True,
                error="CircuitOpenRejection",
                detail=str(rejection),
            )
            await self._record_repair(system, outcome)
            return outcome

        self._repair_invocations[system_id] = self._repair_invocations.get(system_id, 0) + 1
        timeout = system.repair_timeout_s or self._repair_timeout_s
        try:
            try:
                raw = await asyncio.wait_for(system.repair_descriptor.repair(), timeout=timeout)
            except TimeoutError as exc:
                raise RepairFailure(f"repair of {system_id} exceeded {timeout}s") from exc
            except RepairFailure:
                raise
            except Exception as exc:
                raise RepairFailure(f"repair of {system_id} raised: {exc}") from exc
            outcome = normalise_repair_result(raw)
        except RepairFailure as exc:
            outcome = RepairOutcome(success=False, error="RepairFailure", detail=str(exc))
        except asyncio.CancelledError:
            breaker.abandon_trial(token)
            raise

        if not outcome.success and outcome.error is None:
            outcome = outcome.model_copy(update={"error": "RepairFailure"})

        async with lock:
            before = breaker.state
            if outcome.success:
                breaker.record_success(token, resets_streak=False)
            else:
                breaker.record_failure(token)
            after = breaker.state
        await self._emit_if_changed(system, before, after)

        await self._record_repair(system, outcome)
        return outcome

    async def _record_repair(self, system: ManagedSystem, outcome: RepairOutcome) -> None:
        system.total_repairs += 1
        system.last_repair_at = outcome.timestamp
        system.last_repair_outcome = outcome
        self._logger.info(
            "repair_attempted",
            system_id=system.id,
            success=outcome.success,
            short_circuited=outcome.short_circuited,
            error=outcome.error,
        )
        await self._event_bus.emit(VigilEvent(
            event_type=VigilEventType.REPAIR_ATTEMPTED,
            system_id=system.id,
            details={
                "success": outcome.success,
                "short_circuited": outcome.short_circuited,
                "error": outcome.error,
                "detail": outcome.detail,
            },
        ))

    # ─── Maintenance ─────────────────────────────────────────────────

    async def poll_all(self) -> list[str]:
        """Apply elapsed cooldowns. Returns the ids that moved to half_open."""
        moved: list[ManagedSystem] = []
        for system in self._registry:
            breaker = self._breakers[system.id]
            if breaker.state != CircuitState.OPEN:
                continue
            async with self._registry.lock(system.id):
                if breaker.poll() is not None:
                    moved.append(system)
        for system in moved:
            await self._emit_transition(system, CircuitState.OPEN, CircuitState.HALF_OPEN)
        return [s.id for s in moved]

    async def reset(self, system_id: str) -> CircuitState:
        """Operator reset of one circuit. Returns the resulting state."""
        system = self._registry.get(system_id)
        breaker = self._breakers[system_id]
        async with self._registry.lock(system_id):
            before = breaker.state
            breaker.reset()
            after = breaker.state

        self._logger.info(
            "circuit_reset",
            system_id=system_id,
            from_state=before.value,
            to_state=after.value,
        )
        await self._event_bus.emit(VigilEvent(
            event_type=VigilEventType.CIRCUIT_RESET,
            system_id=system_id,
            details={"from_state": before.value, "to_state": after.value},
        ))
        await self._emit_if_changed(system, before, after)
        return after

    # ─── Query ───────────────────────────────────────────────────────

    def state(self, system_id: str) -> CircuitState:
        return self._registry.get(system_id).circuit_state

    def open_circuits(self) -> list[str]:
        return [s.id for s in self._registry if s.circuit_state == CircuitState.OPEN]

    def states(self) -> dict[str, CircuitState]:
        return {s.id: s.circuit_state for s in self._registry}

    def repair_invocations(self, system_id: str) -> int:
        """How many times the repair descriptor was actually invoked."""
        return self._repair_invocations.get(system_id, 0)

    # ─── Events ──────────────────────────────────────────────────────

    async def _emit_if_changed(
        self,
        system: ManagedSystem,
        before: CircuitState,
        after: CircuitState,
    ) -> None:
        if before != after:
            await self._emit_transition(system, before, after)

    async def _emit_transition(
        self,
        system: ManagedSystem,
        old_state: CircuitState,
        new_state: CircuitState,
    ) -> None:
        breaker = self._breakers[system.id]
        log = self._logger.warning if new_state == CircuitState.OPEN else self._logger.info
        log(
            "circuit_transition",
            system_id=system.id,
            from_state=old_state.value,
            to_state=new_state.value,
            consecutive_failures=system.consecutive_failures,
            cooldown_s=round(breaker.cooldown_s, 3),
        )
        await self._event_bus.emit(VigilEvent(
            event_type=_STATE_EVENTS[new_state],
            system_id=system.id,
            details={
                "from_state": old_state.value,
                "to_state": new_state.value,
                "consecutive_failures": system.consecutive_failures,
                "cooldown_s": round(breaker.cooldown_s, 3),
                "tier": system.tier.value,
            },
        ))

    # ─── Stats ───────────────────────────────────────────────────────

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "short_circuits": self._total_short_circuits,
            "open_circuits": self.open_circuits(),
            "breakers": {sid: b.snapshot() for sid, b in self._breakers.items()},
            "repair_invocations": dict(self._repair_invocations),
        }
