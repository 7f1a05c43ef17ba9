"""
Vigil -- Emergency Type Definitions
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from vigil.primitives.common import VigilBaseModel


class EmergencyMode(enum.StrEnum):
    """Global operating mode: Normal → Emergency → Recovery → Normal."""

    NORMAL = "normal"
    EMERGENCY = "emergency"
    RECOVERY = "recovery"


class EmergencyTrigger(enum.StrEnum):
    """Why emergency mode was entered."""

    AGGREGATE_BELOW_THRESHOLD = "aggregate_below_threshold"
    THREAT_ESCALATION = "threat_escalation"
    REPEATED_SYSTEM_FAILURE = "repeated_system_failure"


class EmergencyState(VigilBaseModel):
    """
    The process-wide emergency singleton.

    Mutated only by the EmergencyCoordinator. ``active`` stays true from
    entry until Recovery completes; ``exit_eligible_at`` is when the
    current above-exit-threshold streak began.
    """

    mode: EmergencyMode = EmergencyMode.NORMAL
    active: bool = False
    entered_at: datetime | None = None
    trigger: EmergencyTrigger | None = None
    trigger_detail: str = ""
    recovery_started_at: datetime | None = None
    exit_eligible_at: datetime | None = None
    exited_at: datetime | None = None
    entries: int = 0

    def summary(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "active": self.active,
            "entered_at": self.entered_at.isoformat() if self.entered_at else None,
            "trigger": self.trigger.value if self.trigger else None,
            "trigger_detail": self.trigger_detail or None,
            "recovery_started_at": (
                self.recovery_started_at.isoformat() if self.recovery_started_at else None
            ),
            "exit_eligible_at": self.exit_eligible_at.isoformat() if self.exit_eligible_at else None,
            "exited_at": self.exited_at.isoformat() if self.exited_at else None,
            "entries": self.entries,
        }
