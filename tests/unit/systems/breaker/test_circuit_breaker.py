"""
Tests for the per-system CircuitBreaker state machine.

Covers:
  - closed → open after K consecutive failures
  - open → half_open after the (tier-scaled) cooldown
  - single half-open trial, success closes, failure re-opens with doubled cooldown
  - only the call holding the trial token settles a half-open circuit
  - operator reset
  - only the four legal edges are ever taken
"""

from __future__ import annotations

import random

import pytest

from vigil.config import BreakerConfig
from vigil.primitives.common import Tier
from vigil.primitives.errors import CircuitOpenRejection
from vigil.systems.breaker.breaker import CircuitBreaker
from vigil.systems.registry.types import CircuitState, ManagedSystem

_LEGAL_EDGES = {
    (CircuitState.CLOSED, CircuitState.OPEN),
    (CircuitState.OPEN, CircuitState.HALF_OPEN),
    (CircuitState.HALF_OPEN, CircuitState.CLOSED),
    (CircuitState.HALF_OPEN, CircuitState.OPEN),
}


class _FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_breaker(
    tier: Tier = Tier.MEDIUM,
    clock: _FakeClock | None = None,
    **config,
) -> tuple[CircuitBreaker, ManagedSystem, _FakeClock]:
    clock = clock or _FakeClock()
    system = ManagedSystem(id="svc", tier=tier)
    breaker = CircuitBreaker(system, BreakerConfig(**config), clock)
    return breaker, system, clock


def _trip(breaker: CircuitBreaker, failures: int = 5) -> None:
    for _ in range(failures):
        breaker.record_failure()


class TestClosed:
    def test_opens_on_kth_consecutive_failure(self):
        breaker, system, _ = _make_breaker()
        _trip(breaker, 4)
        assert breaker.state == CircuitState.CLOSED
        assert system.consecutive_failures == 4
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert system.circuit_opened_at is not None
        assert breaker.trips == 1

    def test_success_resets_streak(self):
        breaker, system, _ = _make_breaker()
        _trip(breaker, 4)
        breaker.record_success()
        assert system.consecutive_failures == 0
        _trip(breaker, 4)
        assert breaker.state == CircuitState.CLOSED

    def test_custom_threshold(self):
        breaker, _, _ = _make_breaker(failure_threshold=2)
        _trip(breaker, 2)
        assert breaker.state == CircuitState.OPEN

    def test_acquire_passes(self):
        breaker, _, _ = _make_breaker()
        assert breaker.acquire() == 0
        assert breaker.acquire() == 0

    def test_success_that_keeps_streak(self):
        breaker, system, _ = _make_breaker()
        _trip(breaker, 3)
        assert breaker.record_success(resets_streak=False) is None
        assert system.consecutive_failures == 3
        _trip(breaker, 2)
        assert breaker.state == CircuitState.OPEN


class TestOpen:
    def test_acquire_short_circuits(self):
        breaker, _, _ = _make_breaker()
        _trip(breaker)
        with pytest.raises(CircuitOpenRejection) as excinfo:
            breaker.acquire()
        assert excinfo.value.system_id == "svc"
        assert excinfo.value.state == "open"

    def test_half_opens_after_cooldown(self):
        breaker, _, clock = _make_breaker()
        _trip(breaker)
        clock.advance(59.0)
        assert breaker.poll() is None
        assert breaker.remaining_cooldown_s() == pytest.approx(1.0)
        clock.advance(1.0)
        assert breaker.poll() == CircuitState.HALF_OPEN

    @pytest.mark.parametrize(
        "tier,expected",
        [(Tier.CRITICAL, 30.0), (Tier.HIGH, 45.0), (Tier.MEDIUM, 60.0), (Tier.LOW, 60.0)],
    )
    def test_cooldown_scales_with_tier(self, tier, expected):
        breaker, _, _ = _make_breaker(tier=tier)
        assert breaker.cooldown_s == pytest.approx(expected)

    def test_late_success_does_not_close(self):
        breaker, _, _ = _make_breaker()
        _trip(breaker)
        assert breaker.record_success() is None
        assert breaker.state == CircuitState.OPEN

    def test_failures_while_open_stay_open(self):
        breaker, system, _ = _make_breaker()
        _trip(breaker)
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert system.consecutive_failures == 6


class TestHalfOpen:
    def _half_open(self, **config) -> tuple[CircuitBreaker, ManagedSystem, _FakeClock]:
        breaker, system, clock = _make_breaker(**config)
        _trip(breaker)
        clock.advance(breaker.cooldown_s)
        breaker.poll()
        return breaker, system, clock

    def test_admits_a_single_trial(self):
        breaker, _, _ = self._half_open()
        breaker.acquire()
        with pytest.raises(CircuitOpenRejection):
            breaker.acquire()

    def test_abandoned_trial_frees_the_slot(self):
        breaker, _, _ = self._half_open()
        token = breaker.acquire()
        breaker.abandon_trial(token)
        breaker.acquire()

    def test_successful_trial_closes_and_resets(self):
        breaker, system, _ = self._half_open()
        token = breaker.acquire()
        assert breaker.record_success(token) == CircuitState.CLOSED
        assert system.consecutive_failures == 0
        assert system.circuit_opened_at is None
        assert breaker.cooldown_s == 60.0

    def test_failed_trial_reopens_with_doubled_cooldown(self):
        breaker, _, clock = self._half_open()
        token = breaker.acquire()
        assert breaker.record_failure(token) == CircuitState.OPEN
        assert breaker.cooldown_s == 120.0
        clock.advance(60.0)
        assert breaker.poll() is None

    def test_cooldown_doubling_is_capped(self):
        breaker, _, clock = self._half_open()
        seen = []
        for _ in range(5):
            token = breaker.acquire()
            breaker.record_failure(token)
            seen.append(breaker.cooldown_s)
            clock.advance(breaker.cooldown_s)
            breaker.poll()
        assert seen == [120.0, 240.0, 480.0, 600.0, 600.0]

    def test_success_after_backoff_restores_base_cooldown(self):
        breaker, _, clock = self._half_open()
        breaker.record_failure(breaker.acquire())
        clock.advance(breaker.cooldown_s)
        breaker.record_success(breaker.acquire())
        assert breaker.state == CircuitState.CLOSED
        assert breaker.cooldown_s == 60.0

    def test_late_success_without_the_trial_does_not_close(self):
        breaker, system, _ = self._half_open()
        token = breaker.acquire()
        assert breaker.record_success() is None
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.holds_trial(token)
        assert breaker.record_success(token) == CircuitState.CLOSED
        assert system.consecutive_failures == 0

    def test_late_failure_without_the_trial_does_not_reopen(self):
        breaker, _, _ = self._half_open()
        token = breaker.acquire()
        assert breaker.record_failure() is None
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.cooldown_s == 60.0
        assert breaker.record_failure(token) == CircuitState.OPEN

    def test_abandon_by_another_call_keeps_the_slot(self):
        breaker, _, _ = self._half_open()
        token = breaker.acquire()
        breaker.abandon_trial(0)
        breaker.abandon_trial(token + 1)
        with pytest.raises(CircuitOpenRejection):
            breaker.acquire()
        assert breaker.snapshot()["trial_in_flight"] is True

    def test_each_trial_gets_a_fresh_token(self):
        breaker, _, clock = self._half_open()
        first = breaker.acquire()
        breaker.record_failure(first)
        clock.advance(breaker.cooldown_s)
        second = breaker.acquire()
        assert second != first
        assert breaker.record_success(first) is None
        assert breaker.record_success(second) == CircuitState.CLOSED


class TestReset:
    def test_reset_open_goes_half_open(self):
        breaker, _, _ = _make_breaker()
        _trip(breaker)
        assert breaker.reset() == CircuitState.HALF_OPEN
        breaker.acquire()

    def test_reset_closed_clears_streak(self):
        breaker, system, _ = _make_breaker()
        _trip(breaker, 3)
        assert breaker.reset() is None
        assert system.consecutive_failures == 0
        assert breaker.state == CircuitState.CLOSED

    def test_reset_half_open_is_noop(self):
        breaker, _, _ = _make_breaker()
        _trip(breaker)
        breaker.reset()
        assert breaker.reset() is None
        assert breaker.state == CircuitState.HALF_OPEN


class TestTransitions:
    def test_illegal_edge_raises(self):
        breaker, _, _ = _make_breaker()
        with pytest.raises(RuntimeError):
            breaker._transition(CircuitState.HALF_OPEN)
        with pytest.raises(RuntimeError):
            breaker._transition(CircuitState.CLOSED)

    @pytest.mark.parametrize("seed", range(10))
    def test_random_outcomes_only_take_legal_edges(self, seed):
        rng = random.Random(seed)
        breaker, system, clock = _make_breaker(failure_threshold=3)
        for _ in range(300):
            action = rng.random()
            if action < 0.1:
                breaker.reset()
                continue
            clock.advance(rng.uniform(0.0, 40.0))
            try:
                token = breaker.acquire()
            except CircuitOpenRejection:
                continue
            if rng.random() < 0.6:
                breaker.record_failure(token)
            else:
                breaker.record_success(token)
            assert 0 <= system.consecutive_failures
        assert breaker.transitions
        assert set(breaker.transitions) <= _LEGAL_EDGES
