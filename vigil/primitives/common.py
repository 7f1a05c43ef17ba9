"""
Vigil -- Common Primitives

Shared enums, base classes, and utilities used across all systems.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def clamp_score(value: float) -> float:
    """Clamp a health score into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


# ─── Enums ────────────────────────────────────────────────────────


class Tier(enum.StrEnum):
    """Priority classification of a managed system."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Weight of each tier in the aggregate health score
TIER_WEIGHTS: dict[Tier, int] = {
    Tier.CRITICAL: 4,
    Tier.HIGH: 3,
    Tier.MEDIUM: 2,
    Tier.LOW: 1,
}


def health_label(score: float) -> str:
    """Human-readable band for a health score."""
    if score >= 0.8:
        return "excellent"
    if score >= 0.6:
        return "good"
    if score >= 0.4:
        return "fair"
    if score >= 0.2:
        return "poor"
    return "critical"


# ─── Base Models ──────────────────────────────────────────────────


class VigilBaseModel(BaseModel):
    """Base model for all Vigil primitives. Uses ULID IDs and UTC timestamps."""

    model_config = {"populate_by_name": True, "from_attributes": True}
