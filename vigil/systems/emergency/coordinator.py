"""
Vigil -- Emergency Coordinator

Owns the single EmergencyState and drives the global mode:

  Normal ──(aggregate < 0.3, or ≥2 escalated threats)──▶ Emergency
  Emergency ──(aggregate > 0.5 for 1 cycle, <2 escalated)──▶ Recovery
  Recovery ──(aggregate > 0.6 for 2 consecutive cycles)──▶ Normal
  Recovery ──(entry conditions hold again)──▶ Emergency

Entry is evaluated on every health snapshot and on every threat
escalation; nothing else can activate emergency mode. Exit needs the
aggregate to stay clear of the thresholds for whole cycles, which keeps
the mode from flapping around the boundary.

While in Emergency, probes and repairs for non-critical tiers are
suspended outright and critical-tier probes run at a tightened interval.
Recovery lifts the suspension but keeps ``active`` set until Normal.
"""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any

import structlog

from vigil.config import EmergencyConfig, MonitorConfig
from vigil.primitives.common import Tier, utc_now
from vigil.systems.emergency.types import EmergencyMode, EmergencyState, EmergencyTrigger
from vigil.systems.monitor.event_bus import EventBus
from vigil.systems.monitor.types import HealthSnapshot, VigilEvent, VigilEventType

logger = structlog.get_logger("vigil.systems.emergency.coordinator")

# Mode listener signature: async def on_mode(old: EmergencyMode, new: EmergencyMode) -> None
ModeListener = Callable[[EmergencyMode, EmergencyMode], Coroutine[Any, Any, None]]


class EmergencyCoordinator:
    """The only writer of EmergencyState."""

    def __init__(
        self,
        config: EmergencyConfig,
        monitor_config: MonitorConfig,
        event_bus: EventBus,
        escalated_count: Callable[[], int],
        open_circuit_count: Callable[[], int] | None = None,
    ) -> None:
        self._config = config
        self._monitor_config = monitor_config
        self._event_bus = event_bus
        self._escalated_count = escalated_count
        self._open_circuit_count = open_circuit_count
        self._logger = logger.bind(component="emergency_coordinator")

        self._state = EmergencyState()
        self._last_aggregate: float = 1.0
        self._recovery_streak: int = 0
        self._exit_streak: int = 0
        self._listeners: list[ModeListener] = []

        # Metrics
        self._evaluations: int = 0
        self._relapses: int = 0

    def add_mode_listener(self, listener: ModeListener) -> None:
        self._listeners.append(listener)

    # ─── State ───────────────────────────────────────────────────────

    @property
    def state(self) -> EmergencyState:
        """A copy; callers never mutate the singleton."""
        return self._state.model_copy()

    @property
    def mode(self) -> EmergencyMode:
        return self._state.mode

    @property
    def active(self) -> bool:
        return self._state.active

    @property
    def last_aggregate(self) -> float:
        return self._last_aggregate

    # ─── Schedule Policy ─────────────────────────────────────────────

    def is_suspended(self, tier: Tier) -> bool:
        return self._state.mode == EmergencyMode.EMERGENCY and tier != Tier.CRITICAL

    def probe_interval(self, tier: Tier) -> float | None:
        """Probe interval for a tier under the current mode; None = suspended."""
        if self.is_suspended(tier):
            return None
        if self._state.mode == EmergencyMode.EMERGENCY and tier == Tier.CRITICAL:
            return self._monitor_config.emergency_critical_interval_s
        return self._monitor_config.tier_intervals_s[tier]

    # ─── Evaluation ──────────────────────────────────────────────────

    def entry_trigger(self, aggregate: float) -> EmergencyTrigger | None:
        """Which entry condition holds right now, if any."""
        if aggregate < self._config.enter_threshold:
            return EmergencyTrigger.AGGREGATE_BELOW_THRESHOLD
        if self._escalated_count() >= self._config.escalated_threat_trigger:
            return EmergencyTrigger.THREAT_ESCALATION
        if (
            self._config.open_circuit_trigger > 0
            and self._open_circuit_count is not None
            and self._open_circuit_count() >= self._config.open_circuit_trigger
        ):
            return EmergencyTrigger.REPEATED_SYSTEM_FAILURE
        return None

    async def evaluate(self, snapshot: HealthSnapshot) -> EmergencyMode:
        """Advance the state machine by one health cycle."""
        self._evaluations += 1
        aggregate = snapshot.aggregate_score
        self._last_aggregate = aggregate
        mode = self._state.mode

        if mode == EmergencyMode.NORMAL:
            trigger = self.entry_trigger(aggregate)
            if trigger is not None:
                await self._enter(trigger, aggregate)

        elif mode == EmergencyMode.EMERGENCY:
            escalated = self._escalated_count()
            if (
                aggregate > self._config.recovery_threshold
                and escalated < self._config.escalated_threat_trigger
            ):
                self._recovery_streak += 1
                if self._recovery_streak >= self._config.recovery_sustain_cycles:
                    await self._begin_recovery(aggregate)
            else:
                self._recovery_streak = 0

        else:
            trigger = self.entry_trigger(aggregate)
            if trigger is not None:
                await self._relapse(trigger, aggregate)
            elif aggregate > self._config.exit_threshold:
                self._exit_streak += 1
                if self._exit_streak == 1:
                    self._state.exit_eligible_at = snapshot.timestamp
                if self._exit_streak >= self._config.exit_sustain_cycles:
                    await self._exit(aggregate)
            else:
                self._exit_streak = 0
                self._state.exit_eligible_at = None

        return self._state.mode

    async def on_escalation(self, record: Any) -> None:
        """A threat just escalated: check entry without waiting for the next cycle."""
        mode = self._state.mode
        if mode == EmergencyMode.EMERGENCY:
            self._recovery_streak = 0
            return
        trigger = self.entry_trigger(self._last_aggregate)
        if trigger is None:
            return
        if mode == EmergencyMode.NORMAL:
            await self._enter(trigger, self._last_aggregate, threat_id=getattr(record, "id", None))
        else:
            await self._relapse(trigger, self._last_aggregate)

    # ─── Transitions ─────────────────────────────────────────────────

    async def _enter(
        self,
        trigger: EmergencyTrigger,
        aggregate: float,
        threat_id: str | None = None,
    ) -> None:
        detail = self._trigger_detail(trigger, aggregate)
        self._state = EmergencyState(
            mode=EmergencyMode.EMERGENCY,
            active=True,
            entered_at=utc_now(),
            trigger=trigger,
            trigger_detail=detail,
            entries=self._state.entries + 1,
        )
        self._recovery_streak = 0
        self._exit_streak = 0
        self._logger.error(
            "emergency_entered",
            trigger=trigger.value,
            detail=detail,
            aggregate=round(aggregate, 4),
        )
        await self._publish(
            VigilEventType.EMERGENCY_ENTERED,
            EmergencyMode.NORMAL,
            aggregate,
            threat_id=threat_id,
        )

    async def _begin_recovery(self, aggregate: float) -> None:
        self._state.mode = EmergencyMode.RECOVERY
        self._state.recovery_started_at = utc_now()
        self._state.exit_eligible_at = None
        self._recovery_streak = 0
        self._exit_streak = 0
        self._logger.warning("emergency_recovery_started", aggregate=round(aggregate, 4))
        await self._publish(
            VigilEventType.EMERGENCY_RECOVERY_STARTED,
            EmergencyMode.EMERGENCY,
            aggregate,
        )

    async def _relapse(self, trigger: EmergencyTrigger, aggregate: float) -> None:
        self._relapses += 1
        self._state.mode = EmergencyMode.EMERGENCY
        self._state.trigger = trigger
        self._state.trigger_detail = self._trigger_detail(trigger, aggregate)
        self._state.recovery_started_at = None
        self._state.exit_eligible_at = None
        self._recovery_streak = 0
        self._exit_streak = 0
        self._logger.error("emergency_relapsed", trigger=trigger.value, aggregate=round(aggregate, 4))
        await self._publish(VigilEventType.EMERGENCY_RELAPSED, EmergencyMode.RECOVERY, aggregate)

    async def _exit(self, aggregate: float) -> None:
        entered_at = self._state.entered_at
        exited_at = utc_now()
        self._state = EmergencyState(
            mode=EmergencyMode.NORMAL,
            active=False,
            exited_at=exited_at,
            entries=self._state.entries,
        )
        self._exit_streak = 0
        duration_s = (exited_at - entered_at).total_seconds() if entered_at else None
        self._logger.info(
            "emergency_exited",
            aggregate=round(aggregate, 4),
            duration_s=round(duration_s, 3) if duration_s is not None else None,
        )
        await self._publish(
            VigilEventType.EMERGENCY_EXITED,
            EmergencyMode.RECOVERY,
            aggregate,
            duration_s=duration_s,
        )

    def _trigger_detail(self, trigger: EmergencyTrigger, aggregate: float) -> str:
        if trigger == EmergencyTrigger.AGGREGATE_BELOW_THRESHOLD:
            return f"aggregate {aggregate:.3f} < {self._config.enter_threshold}"
        if trigger == EmergencyTrigger.THREAT_ESCALATION:
            return f"{self._escalated_count()} escalated threats"
        count = self._open_circuit_count() if self._open_circuit_count else 0
        return f"{count} open circuits"

    async def _publish(
        self,
        event_type: VigilEventType,
        old_mode: EmergencyMode,
        aggregate: float,
        threat_id: str | None = None,
        **details: Any,
    ) -> None:
        new_mode = self._state.mode
        await self._event_bus.emit(VigilEvent(
            event_type=event_type,
            threat_id=threat_id,
            details={
                "from_mode": old_mode.value,
                "to_mode": new_mode.value,
                "trigger": self._state.trigger.value if self._state.trigger else None,
                "aggregate_score": round(aggregate, 4),
                "escalated_threats": self._escalated_count(),
                **details,
            },
        ))
        for listener in self._listeners:
            try:
                await listener(old_mode, new_mode)
            except Exception as exc:
                self._logger.error("mode_listener_error", error=str(exc))

    # ─── Stats ───────────────────────────────────────────────────────

    @property
    def stats(self) -> dict[str, Any]:
        return {
            **self._state.summary(),
            "last_aggregate": round(self._last_aggregate, 4),
            "evaluations": self._evaluations,
            "relapses": self._relapses,
            "recovery_streak": self._recovery_streak,
            "exit_streak": self._exit_streak,
        }
