"""
Tests for the CircuitBreakerManager.

Covers:
  - Result normalisation for probes and repairs
  - Timeouts and failures absorbed into the failure streak
  - Short-circuit fallbacks that never invoke the descriptor
  - Circuit events and operator reset
"""

from __future__ import annotations

import asyncio
import math

import pytest

from vigil.config import BreakerConfig
from vigil.primitives.common import Tier
from vigil.primitives.errors import ProbeFailure, RepairFailure
from vigil.systems.breaker.manager import (
    CircuitBreakerManager,
    normalise_probe_result,
    normalise_repair_result,
)
from vigil.systems.monitor.event_bus import EventBus
from vigil.systems.monitor.types import VigilEventType
from vigil.systems.registry.registry import SystemRegistry
from vigil.systems.registry.types import CircuitState, RepairOutcome


class _FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _Probe:
    def __init__(self, result: object = 1.0, delay: float = 0.0) -> None:
        self.result = result
        self.delay = delay
        self.calls = 0

    async def probe(self) -> object:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class _Repair:
    def __init__(self, result: object = True) -> None:
        self.result = result
        self.calls = 0

    async def repair(self) -> object:
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def _make_manager(
    probe: _Probe | None = None,
    repair: _Repair | None = None,
    tier: Tier = Tier.MEDIUM,
    probe_timeout_s: float = 5.0,
) -> tuple[CircuitBreakerManager, SystemRegistry, EventBus, _FakeClock]:
    registry = SystemRegistry()
    registry.register(
        "svc",
        tier,
        probe=probe or _Probe(),
        repair=repair,
        fallback_score=0.3,
    )
    bus = EventBus(sinks=[])
    clock = _FakeClock()
    manager = CircuitBreakerManager(
        registry,
        BreakerConfig(),
        bus,
        probe_timeout_s=probe_timeout_s,
        repair_timeout_s=1.0,
        clock=clock,
    )
    return manager, registry, bus, clock


async def _fail_probes(manager: CircuitBreakerManager, count: int = 5) -> None:
    for _ in range(count):
        await manager.call_probe("svc")


class TestNormalise:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (0.5, (0.5, [])),
            (1, (1.0, [])),
            (0, (0.0, [])),
            (True, (1.0, [])),
            (False, (0.0, [])),
            ({"score": 0.4, "signals": ["resource_exhaustion"]}, (0.4, ["resource_exhaustion"])),
            ({"score": 0.9}, (0.9, [])),
        ],
    )
    def test_valid_probe_results(self, raw, expected):
        assert normalise_probe_result(raw) == expected

    @pytest.mark.parametrize(
        "raw",
        [1.5, -0.1, math.nan, "0.5", None, {"signals": []}, {"score": 0.5, "signals": "x"}],
    )
    def test_invalid_probe_results(self, raw):
        with pytest.raises(ProbeFailure):
            normalise_probe_result(raw)

    def test_repair_results(self):
        assert normalise_repair_result(None).success is True
        assert normalise_repair_result(False).success is False
        outcome = normalise_repair_result({"success": True, "detail": "restarted"})
        assert outcome.success is True
        assert outcome.detail == "restarted"
        given = RepairOutcome(success=False, detail="nope")
        assert normalise_repair_result(given) is given

    def test_unrecognised_repair_result(self):
        with pytest.raises(RepairFailure):
            normalise_repair_result(42)


class TestCallProbe:
    @pytest.mark.asyncio
    async def test_successful_probe(self):
        manager, registry, _, _ = _make_manager(_Probe({"score": 0.8, "signals": ["x"]}))
        sample = await manager.call_probe("svc")
        assert sample.ok
        assert sample.score == 0.8
        assert sample.signals == ["x"]
        system = registry.get("svc")
        assert system.last_probe_at is not None
        assert system.last_success_at == system.last_probe_at
        assert system.total_probes == 1

    @pytest.mark.asyncio
    async def test_raising_probe_is_a_failure(self):
        manager, registry, _, _ = _make_manager(_Probe(ConnectionError("refused")))
        sample = await manager.call_probe("svc")
        assert sample.score == 0.0
        assert sample.error == "ProbeFailure"
        assert not sample.short_circuited
        assert registry.get("svc").consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_invalid_score_is_a_failure(self):
        manager, registry, _, _ = _make_manager(_Probe(7.0))
        sample = await manager.call_probe("svc")
        assert sample.error == "ProbeFailure"
        assert registry.get("svc").total_probe_failures == 1

    @pytest.mark.asyncio
    async def test_slow_probe_times_out(self):
        manager, registry, _, _ = _make_manager(_Probe(1.0, delay=1.0), probe_timeout_s=0.05)
        sample = await manager.call_probe("svc")
        assert sample.error == "ProbeTimeout"
        assert sample.score == 0.0
        assert registry.get("svc").consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_open_circuit_returns_fallback_without_calling(self):
        probe = _Probe(ProbeFailure("down"))
        manager, registry, bus, _ = _make_manager(probe)
        await _fail_probes(manager)
        assert manager.state("svc") == CircuitState.OPEN
        assert probe.calls == 5

        sample = await manager.call_probe("svc")
        assert sample.short_circuited is True
        assert sample.error == "CircuitOpenRejection"
        assert sample.score == 0.3
        assert probe.calls == 5
        # A short-circuit is not a failure
        assert registry.get("svc").consecutive_failures == 5

        opened = bus.recent(VigilEventType.CIRCUIT_OPENED)
        assert len(opened) == 1
        assert opened[0].system_id == "svc"
        assert opened[0].details["from_state"] == "closed"
        assert opened[0].details["to_state"] == "open"

    @pytest.mark.asyncio
    async def test_successful_trial_closes_circuit(self):
        probe = _Probe(ProbeFailure("down"))
        manager, registry, bus, clock = _make_manager(probe)
        await _fail_probes(manager)
        clock.advance(60.0)
        probe.result = 0.9

        sample = await manager.call_probe("svc")
        assert sample.ok
        assert manager.state("svc") == CircuitState.CLOSED
        assert registry.get("svc").consecutive_failures == 0
        assert len(bus.recent(VigilEventType.CIRCUIT_HALF_OPENED)) == 1
        assert len(bus.recent(VigilEventType.CIRCUIT_CLOSED)) == 1

    @pytest.mark.asyncio
    async def test_cancelled_trial_is_released(self):
        probe = _Probe(ProbeFailure("down"))
        manager, _, _, clock = _make_manager(probe)
        await _fail_probes(manager)
        clock.advance(60.0)
        probe.result = 1.0
        probe.delay = 10.0

        task = asyncio.create_task(manager.call_probe("svc"))
        await asyncio.sleep(0.01)
        assert manager.breaker("svc").snapshot()["trial_in_flight"] is True
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert manager.breaker("svc").snapshot()["trial_in_flight"] is False

    @pytest.mark.asyncio
    async def test_cancelled_ordinary_call_keeps_the_trial(self):
        probe = _Probe(1.0, delay=10.0)
        manager, _, _, clock = _make_manager(probe)
        breaker = manager.breaker("svc")

        # Admitted while closed, still running when the circuit opens
        early = asyncio.create_task(manager.call_probe("svc"))
        await asyncio.sleep(0.01)
        for _ in range(5):
            breaker.record_failure()
        clock.advance(60.0)

        trial = asyncio.create_task(manager.call_probe("svc"))
        await asyncio.sleep(0.01)
        assert breaker.snapshot()["trial_in_flight"] is True

        early.cancel()
        with pytest.raises(asyncio.CancelledError):
            await early
        assert breaker.snapshot()["trial_in_flight"] is True
        assert manager.state("svc") == CircuitState.HALF_OPEN

        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial
        assert breaker.snapshot()["trial_in_flight"] is False


class TestCallRepair:
    @pytest.mark.asyncio
    async def test_successful_repair(self):
        repair = _Repair(True)
        manager, registry, bus, _ = _make_manager(repair=repair)
        outcome = await manager.call_repair("svc")
        assert outcome.success is True
        assert repair.calls == 1
        assert manager.repair_invocations("svc") == 1
        system = registry.get("svc")
        assert system.last_repair_outcome == outcome
        assert system.total_repairs == 1
        assert bus.recent(VigilEventType.REPAIR_ATTEMPTED)[0].details["success"] is True

    @pytest.mark.asyncio
    async def test_successful_repair_keeps_probe_failure_streak(self):
        probe = _Probe(ProbeFailure("down"))
        manager, registry, _, _ = _make_manager(probe, repair=_Repair(True))
        await _fail_probes(manager, 3)

        outcome = await manager.call_repair("svc")
        assert outcome.success is True
        assert registry.get("svc").consecutive_failures == 3

        await _fail_probes(manager, 2)
        assert manager.state("svc") == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_successful_repair_trial_closes_circuit(self):
        probe = _Probe(ProbeFailure("down"))
        manager, registry, _, clock = _make_manager(probe, repair=_Repair(True))
        await _fail_probes(manager)
        clock.advance(60.0)

        outcome = await manager.call_repair("svc")
        assert outcome.success is True
        assert manager.state("svc") == CircuitState.CLOSED
        assert registry.get("svc").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_unsuccessful_outcome_counts_as_failure(self):
        manager, registry, _, _ = _make_manager(repair=_Repair(False))
        outcome = await manager.call_repair("svc")
        assert outcome.success is False
        assert outcome.error == "RepairFailure"
        assert registry.get("svc").consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_raising_repair_is_a_failure(self):
        manager, _, _, _ = _make_manager(repair=_Repair(OSError("disk full")))
        outcome = await manager.call_repair("svc")
        assert outcome.success is False
        assert outcome.error == "RepairFailure"
        assert "disk full" in outcome.detail

    @pytest.mark.asyncio
    async def test_no_descriptor_leaves_breaker_alone(self):
        manager, registry, _, _ = _make_manager()
        outcome = await manager.call_repair("svc")
        assert outcome.success is False
        assert outcome.error == "RepairFailure"
        assert registry.get("svc").consecutive_failures == 0
        assert manager.repair_invocations("svc") == 0

    @pytest.mark.asyncio
    async def test_open_circuit_never_invokes_repair(self):
        repair = _Repair(True)
        manager, _, _, _ = _make_manager(_Probe(ProbeFailure("down")), repair=repair)
        await _fail_probes(manager)
        outcome = await manager.call_repair("svc")
        assert outcome.success is False
        assert outcome.short_circuited is True
        assert outcome.error == "CircuitOpenRejection"
        assert repair.calls == 0
        assert manager.repair_invocations("svc") == 0


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_poll_all_applies_elapsed_cooldowns(self):
        manager, _, bus, clock = _make_manager(_Probe(ProbeFailure("down")))
        await _fail_probes(manager)
        assert await manager.poll_all() == []
        clock.advance(60.0)
        assert await manager.poll_all() == ["svc"]
        assert manager.state("svc") == CircuitState.HALF_OPEN
        assert len(bus.recent(VigilEventType.CIRCUIT_HALF_OPENED)) == 1

    @pytest.mark.asyncio
    async def test_reset_open_circuit(self):
        manager, _, bus, _ = _make_manager(_Probe(ProbeFailure("down")))
        await _fail_probes(manager)
        assert await manager.reset("svc") == CircuitState.HALF_OPEN
        reset = bus.recent(VigilEventType.CIRCUIT_RESET)
        assert reset[0].details == {"from_state": "open", "to_state": "half_open"}
        assert len(bus.recent(VigilEventType.CIRCUIT_HALF_OPENED)) == 1

    @pytest.mark.asyncio
    async def test_query_helpers(self):
        manager, _, _, _ = _make_manager(_Probe(ProbeFailure("down")))
        assert manager.open_circuits() == []
        await _fail_probes(manager)
        assert manager.open_circuits() == ["svc"]
        assert manager.states() == {"svc": CircuitState.OPEN}
        stats = manager.stats
        assert stats["breakers"]["svc"]["state"] == "open"
        assert stats["breakers"]["svc"]["trips"] == 1
