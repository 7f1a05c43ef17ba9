"""
Vigil -- Threat Type Definitions

Anomalies found by scanners, the threat records they become, and the
messages the detector hands to the responder.

A ThreatRecord is created by the detector and from then on mutated only
by the responder.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field

from vigil.primitives.common import VigilBaseModel, new_id, utc_now


# ─── Enums ────────────────────────────────────────────────────────


class ThreatSeverity(enum.StrEnum):
    """How bad is it?"""

    CRITICAL = "critical"  # Repair now, one retry, then escalate
    HIGH = "high"  # Repair with bounded backoff retries
    MEDIUM = "medium"  # Contain for manual review, promote on recurrence
    LOW = "low"  # Observational only


# Higher rank = more severe
SEVERITY_RANK: dict[ThreatSeverity, int] = {
    ThreatSeverity.LOW: 0,
    ThreatSeverity.MEDIUM: 1,
    ThreatSeverity.HIGH: 2,
    ThreatSeverity.CRITICAL: 3,
}


class ThreatStatus(enum.StrEnum):
    """detected → responding → {contained | escalated} → resolved"""

    DETECTED = "detected"
    RESPONDING = "responding"
    CONTAINED = "contained"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class ThreatSignature(enum.StrEnum):
    """Anomaly signatures the built-in scanners can raise."""

    CIRCUIT_OPEN = "circuit_open"
    MISSING_SAFETY_CONTROL = "missing_safety_control"
    SYSTEM_UNREACHABLE = "system_unreachable"
    REPEATED_BUILD_FAILURE = "repeated_build_failure"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    HEALTH_BELOW_THRESHOLD = "health_below_threshold"
    HOST_MEMORY_PRESSURE = "host_memory_pressure"
    SCAN_DEGRADED = "scan_degraded"
    STALE_PROBE = "stale_probe"


# Pseudo-systems threats can be raised against
HOST_SYSTEM_ID: str = "host"
DETECTOR_SYSTEM_ID: str = "threat_detector"


# ─── Records ─────────────────────────────────────────────────────


class Anomaly(VigilBaseModel):
    """One scanner finding. Not yet classified or de-duplicated."""

    system_id: str
    signature: str
    scanner: str
    detail: str = ""
    evidence: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return (self.signature, self.system_id)


class ThreatTransition(VigilBaseModel):
    from_status: ThreatStatus | None
    to_status: ThreatStatus
    timestamp: datetime = Field(default_factory=utc_now)
    note: str = ""


class ThreatRecord(VigilBaseModel):
    """
    A classified anomaly with a lifecycle.

    Same (signature, source_system_id) cannot be re-created while a
    record for that pair is unresolved or inside the dedup cooldown.
    """

    id: str = Field(default_factory=new_id)
    source_system_id: str
    signature: str
    severity: ThreatSeverity
    original_severity: ThreatSeverity | None = None
    detected_at: datetime = Field(default_factory=utc_now)
    status: ThreatStatus = ThreatStatus.DETECTED
    resolved_at: datetime | None = None
    detail: str = ""
    evidence: dict[str, Any] = Field(default_factory=dict)

    # Response bookkeeping
    repair_attempts: int = 0
    acknowledged: bool = False
    deferred: bool = False
    escalation_reason: str = ""
    transitions: list[ThreatTransition] = Field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return (self.signature, self.source_system_id)

    @property
    def is_resolved(self) -> bool:
        return self.status == ThreatStatus.RESOLVED

    def summary(self) -> dict[str, Any]:
        """Flat JSON-compatible view for the status surface."""
        return {
            "id": self.id,
            "system_id": self.source_system_id,
            "signature": self.signature,
            "severity": self.severity.value,
            "status": self.status.value,
            "detected_at": self.detected_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "repair_attempts": self.repair_attempts,
            "acknowledged": self.acknowledged,
            "deferred": self.deferred,
            "escalation_reason": self.escalation_reason or None,
        }


class ThreatUpdateKind(enum.StrEnum):
    CREATED = "created"
    CLEARED = "cleared"  # The anomaly behind the threat is no longer observed


class ThreatUpdate(VigilBaseModel):
    """A message on the detector → responder channel."""

    kind: ThreatUpdateKind
    threat_id: str
    timestamp: datetime = Field(default_factory=utc_now)
