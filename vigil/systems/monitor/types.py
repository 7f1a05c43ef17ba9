"""
Vigil -- Monitor Type Definitions

Health snapshots and the structured event records every component
emits through the event bus.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field

from vigil.primitives.common import VigilBaseModel, new_id, utc_now


# ─── Health Snapshot ─────────────────────────────────────────────


class HealthSnapshot(VigilBaseModel):
    """
    One Health Monitor cycle, frozen.

    Only the latest snapshot plus a short rolling history is retained.
    """

    model_config = {"frozen": True}

    cycle: int = 0
    timestamp: datetime = Field(default_factory=utc_now)
    per_system_scores: dict[str, float] = Field(default_factory=dict)
    aggregate_score: float = Field(default=1.0, ge=0.0, le=1.0)
    active_threat_count: int = 0
    emergency_mode_active: bool = False
    probed_systems: list[str] = Field(default_factory=list)
    skipped_systems: list[str] = Field(default_factory=list)


# ─── Events ──────────────────────────────────────────────────────


class VigilEventType(enum.StrEnum):
    """Every state transition the core reports to external sinks."""

    # Health
    HEALTH_SNAPSHOT = "health_snapshot"

    # Circuit breaker
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_HALF_OPENED = "circuit_half_opened"
    CIRCUIT_CLOSED = "circuit_closed"
    CIRCUIT_RESET = "circuit_reset"

    # Repairs
    REPAIR_ATTEMPTED = "repair_attempted"

    # Threats
    THREAT_CREATED = "threat_created"
    THREAT_PROMOTED = "threat_promoted"
    THREAT_DEFERRED = "threat_deferred"
    THREAT_RESPONDING = "threat_responding"
    THREAT_CONTAINED = "threat_contained"
    THREAT_ESCALATED = "threat_escalated"
    THREAT_RESOLVED = "threat_resolved"

    # Emergency
    EMERGENCY_ENTERED = "emergency_entered"
    EMERGENCY_RECOVERY_STARTED = "emergency_recovery_started"
    EMERGENCY_RELAPSED = "emergency_relapsed"
    EMERGENCY_EXITED = "emergency_exited"


class VigilEvent(VigilBaseModel):
    """A typed, structured event: {type, system_id?, threat_id?, timestamp, details}."""

    id: str = Field(default_factory=new_id)
    event_type: VigilEventType
    system_id: str | None = None
    threat_id: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    details: dict[str, Any] = Field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        """Flat JSON-compatible record for external sinks."""
        record: dict[str, Any] = {
            "id": self.id,
            "type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }
        if self.system_id is not None:
            record["system_id"] = self.system_id
        if self.threat_id is not None:
            record["threat_id"] = self.threat_id
        return record
