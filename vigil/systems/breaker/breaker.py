"""
Vigil -- Circuit Breaker

Per-system finite state machine:

  closed     calls pass; failures build a streak, K in a row → open
  open       calls short-circuit to the fallback; after the cooldown → half_open
  half_open  exactly one trial call; success → closed, failure → open
             with the cooldown doubled (capped)

The trial is identified by the token acquire() hands out. Only the
call holding it can settle a half-open circuit; a late result from a
call admitted before the circuit opened just updates the streak.

The only reachable edges are closed→open, open→half_open,
half_open→closed and half_open→open. Anything else raises.

The breaker is synchronous and owns no lock. Callers mutate it under
the system's registry row lock.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from typing import Any

from vigil.config import BreakerConfig
from vigil.primitives.common import utc_now
from vigil.primitives.errors import CircuitOpenRejection
from vigil.systems.registry.types import CircuitState, ManagedSystem

_ALLOWED_TRANSITIONS: dict[CircuitState, frozenset[CircuitState]] = {
    CircuitState.CLOSED: frozenset({CircuitState.OPEN}),
    CircuitState.OPEN: frozenset({CircuitState.HALF_OPEN}),
    CircuitState.HALF_OPEN: frozenset({CircuitState.CLOSED, CircuitState.OPEN}),
}

# Transitions kept per breaker for diagnostics
_TRANSITION_HISTORY: int = 50


class CircuitBreaker:
    """Failure isolation for one managed system."""

    def __init__(
        self,
        system: ManagedSystem,
        config: BreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._system = system
        self._threshold = config.failure_threshold
        scale = config.tier_cooldown_scale.get(system.tier, 1.0)
        self._max_cooldown_s = config.max_cooldown_s
        self._base_cooldown_s = min(config.cooldown_s * scale, self._max_cooldown_s)
        self._cooldown_s = self._base_cooldown_s
        self._clock = clock

        self._opened_at: float | None = None
        # 0 means no trial in flight
        self._trial_token: int = 0
        self._tokens_issued: int = 0
        self._trips: int = 0
        self._transitions: deque[tuple[CircuitState, CircuitState]] = deque(
            maxlen=_TRANSITION_HISTORY
        )

    # ─── State ───────────────────────────────────────────────────────

    @property
    def system_id(self) -> str:
        return self._system.id

    @property
    def state(self) -> CircuitState:
        return self._system.circuit_state

    @property
    def cooldown_s(self) -> float:
        return self._cooldown_s

    @property
    def trips(self) -> int:
        return self._trips

    @property
    def transitions(self) -> list[tuple[CircuitState, CircuitState]]:
        return list(self._transitions)

    def remaining_cooldown_s(self) -> float:
        if self.state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._cooldown_s - (self._clock() - self._opened_at))

    def _transition(self, new_state: CircuitState) -> CircuitState:
        old = self._system.circuit_state
        if new_state not in _ALLOWED_TRANSITIONS[old]:
            raise RuntimeError(
                f"illegal circuit transition for {self._system.id}: {old} -> {new_state}"
            )
        self._system.circuit_state = new_state
        self._transitions.append((old, new_state))
        return new_state

    # ─── Gating ──────────────────────────────────────────────────────

    def poll(self) -> CircuitState | None:
        """Move open → half_open once the cooldown has elapsed."""
        if (
            self.state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self._cooldown_s
        ):
            return self._transition(CircuitState.HALF_OPEN)
        return None

    def acquire(self) -> int:
        """
        Admit a call or raise CircuitOpenRejection.

        Returns the trial token when the call is the half-open trial, 0
        for an ordinary closed-state call. In half_open only the first
        caller gets through; it holds the trial until it reports back
        with its token.
        """
        self.poll()
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitOpenRejection(self._system.id, state.value)
        if state == CircuitState.HALF_OPEN:
            if self._trial_token:
                raise CircuitOpenRejection(self._system.id, state.value)
            self._tokens_issued += 1
            self._trial_token = self._tokens_issued
            return self._trial_token
        return 0

    def holds_trial(self, token: int) -> bool:
        return token != 0 and token == self._trial_token

    def abandon_trial(self, token: int) -> None:
        """Release a half-open trial whose call never produced a result."""
        if self.holds_trial(token):
            self._trial_token = 0

    # ─── Outcomes ────────────────────────────────────────────────────

    def record_success(self, token: int = 0, resets_streak: bool = True) -> CircuitState | None:
        """
        A call succeeded.

        Only the trial closes a half-open circuit. In closed state the
        failure streak is cleared unless ``resets_streak`` is False, which
        is how repairs report.
        """
        state = self.state
        if state == CircuitState.HALF_OPEN and self.holds_trial(token):
            self._trial_token = 0
            self._system.consecutive_failures = 0
            self._cooldown_s = self._base_cooldown_s
            self._opened_at = None
            self._system.circuit_opened_at = None
            return self._transition(CircuitState.CLOSED)
        if state == CircuitState.CLOSED and resets_streak:
            self._system.consecutive_failures = 0
        return None

    def record_failure(self, token: int = 0) -> CircuitState | None:
        self._system.consecutive_failures += 1
        state = self.state
        if state == CircuitState.CLOSED:
            if self._system.consecutive_failures >= self._threshold:
                return self._open()
            return None
        if state == CircuitState.HALF_OPEN and self.holds_trial(token):
            self._trial_token = 0
            self._cooldown_s = min(self._cooldown_s * 2.0, self._max_cooldown_s)
            return self._open()
        return None

    def _open(self) -> CircuitState:
        self._trips += 1
        self._opened_at = self._clock()
        self._system.circuit_opened_at = utc_now()
        return self._transition(CircuitState.OPEN)

    # ─── Manual Override ─────────────────────────────────────────────

    def reset(self) -> CircuitState | None:
        """
        Operator reset.

        An open circuit skips the rest of its cooldown and goes straight
        to half_open, so the next call is the trial. A closed circuit just
        forgets its failure streak. Half-open is left alone.
        """
        state = self.state
        if state == CircuitState.OPEN:
            return self._transition(CircuitState.HALF_OPEN)
        if state == CircuitState.CLOSED:
            self._system.consecutive_failures = 0
        return None

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self._system.consecutive_failures,
            "cooldown_s": round(self._cooldown_s, 3),
            "remaining_cooldown_s": round(self.remaining_cooldown_s(), 3),
            "trips": self._trips,
            "trial_in_flight": self._trial_token != 0,
        }
