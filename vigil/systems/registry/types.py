"""
Vigil -- Registry Type Definitions

The managed-system record, its circuit state, and the capability
protocol every monitored subsystem implements (or is adapted to).
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from pydantic import Field

from vigil.primitives.common import Tier, VigilBaseModel, clamp_score, utc_now


class CircuitState(enum.StrEnum):
    """Per-system circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# ─── Capability Protocol ──────────────────────────────────────────


@runtime_checkable
class HealthProbe(Protocol):
    """
    Returns a health sample for one subsystem.

    Either a float score in [0, 1], or a mapping
    ``{"score": float, "signals": [signature, ...]}`` when the subsystem
    also wants to report anomalies of its own.
    """

    async def probe(self) -> float | dict[str, Any]:
        ...


@runtime_checkable
class RepairAction(Protocol):
    """Asks a subsystem to remediate itself."""

    async def repair(self) -> RepairOutcome | bool | dict[str, Any]:
        ...


# ─── Samples & Outcomes ──────────────────────────────────────────


class ProbeSample(VigilBaseModel):
    """One normalised health sample."""

    system_id: str
    score: float = Field(ge=0.0, le=1.0)
    signals: list[str] = Field(default_factory=list)
    short_circuited: bool = False
    error: str | None = None  # Error class name from the taxonomy
    latency_ms: float = 0.0
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.short_circuited


class RepairOutcome(VigilBaseModel):
    """Result of a repair request."""

    success: bool
    detail: str = ""
    short_circuited: bool = False
    error: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


# ─── Managed System ──────────────────────────────────────────────


class ManagedSystem(VigilBaseModel):
    """
    A registry row.

    Created once at startup from configuration, never deleted. Mutated
    only by the HealthMonitor (score, probe timestamps) and by the
    circuit breaker (circuit state, failure streak).
    """

    model_config = {
        "populate_by_name": True,
        "from_attributes": True,
        "arbitrary_types_allowed": True,
    }

    id: str
    tier: Tier
    health_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    fallback_score: float = Field(default=0.25, ge=0.0, le=1.0)
    description: str = ""

    health_score: float = Field(default=1.0, ge=0.0, le=1.0)
    consecutive_failures: int = Field(default=0, ge=0)
    circuit_state: CircuitState = CircuitState.CLOSED
    circuit_opened_at: datetime | None = None

    last_probe_at: datetime | None = None
    last_success_at: datetime | None = None
    last_signals: list[str] = Field(default_factory=list)
    last_repair_at: datetime | None = None
    last_repair_outcome: RepairOutcome | None = None

    total_probes: int = 0
    total_probe_failures: int = 0
    total_repairs: int = 0

    # Capabilities, never serialised
    probe_descriptor: Any = Field(default=None, exclude=True)
    repair_descriptor: Any = Field(default=None, exclude=True)
    probe_timeout_s: float | None = Field(default=None, exclude=True)
    repair_timeout_s: float | None = Field(default=None, exclude=True)

    def set_score(self, score: float) -> None:
        """The only way the monitor writes a score. Keeps it in [0, 1]."""
        self.health_score = clamp_score(score)

    @property
    def has_repair(self) -> bool:
        return self.repair_descriptor is not None
