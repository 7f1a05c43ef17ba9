"""
Vigil -- Configuration System

All configuration is Pydantic-validated and loaded from:
1. a YAML file (defaults + the system registry)
2. Environment variables (overrides)

Every tunable parameter in the orchestrator lives here. The numeric
defaults form one coherent set; none of them is sacred.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from vigil.primitives.common import Tier
from vigil.primitives.errors import RegistryConfigError

# Default health threshold per tier (below it → health_below_threshold)
_DEFAULT_HEALTH_THRESHOLDS: dict[Tier, float] = {
    Tier.CRITICAL: 0.9,
    Tier.HIGH: 0.7,
    Tier.MEDIUM: 0.6,
    Tier.LOW: 0.5,
}


# ─── Registry ─────────────────────────────────────────────────────


class DescriptorConfig(BaseModel):
    """How to reach a subsystem's probe or repair capability."""

    kind: str = "callable"  # "callable" | "command"
    target: str
    timeout_s: float | None = None

    @field_validator("kind")
    @classmethod
    def _check_kind(cls, value: str) -> str:
        if value not in ("callable", "command"):
            raise ValueError(f"unknown descriptor kind: {value!r}")
        return value

    @field_validator("target")
    @classmethod
    def _check_target(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("descriptor target must not be empty")
        return value.strip()


class SystemEntryConfig(BaseModel):
    """One registry entry: {id, tier, probe, repair}."""

    id: str
    tier: Tier
    probe: DescriptorConfig
    repair: DescriptorConfig | None = None
    health_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    fallback_score: float = Field(default=0.25, ge=0.0, le=1.0)
    description: str = ""

    @model_validator(mode="after")
    def _default_threshold(self) -> SystemEntryConfig:
        if self.health_threshold is None:
            self.health_threshold = _DEFAULT_HEALTH_THRESHOLDS[self.tier]
        return self


# ─── Sub-configs ──────────────────────────────────────────────────


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


class MonitorConfig(BaseModel):
    # Probe interval per tier (seconds)
    tier_intervals_s: dict[Tier, float] = Field(
        default_factory=lambda: {
            Tier.CRITICAL: 15.0,
            Tier.HIGH: 20.0,
            Tier.MEDIUM: 60.0,
            Tier.LOW: 300.0,
        }
    )
    # Tightened critical-tier interval while in emergency mode
    emergency_critical_interval_s: float = 10.0
    # Per-call execution timeout
    probe_timeout_s: float = 5.0
    # Rolling snapshot history kept for hysteresis checks
    history_size: int = 20


class BreakerConfig(BaseModel):
    failure_threshold: int = Field(default=5, ge=1)
    cooldown_s: float = 60.0
    max_cooldown_s: float = 600.0
    # Multiplier on cooldown_s per tier (critical systems cool down faster)
    tier_cooldown_scale: dict[Tier, float] = Field(
        default_factory=lambda: {
            Tier.CRITICAL: 0.5,
            Tier.HIGH: 0.75,
            Tier.MEDIUM: 1.0,
            Tier.LOW: 1.0,
        }
    )


class DetectorConfig(BaseModel):
    scan_interval_s: float = 10.0
    # Same (signature, system) within this window → no new record
    dedup_cooldown_s: float = 120.0
    # Consecutive probe failures before system_unreachable
    unreachable_failure_count: int = 3
    # A system unprobed for this many intervals is stale
    stale_probe_factor: float = 3.0
    # Host memory pressure limits
    host_rss_limit_mb: float = 1024.0
    host_memory_percent_limit: float = 95.0
    default_severity: str = "medium"
    severity_overrides: dict[str, str] = Field(default_factory=dict)


class ResponderConfig(BaseModel):
    critical_retries: int = 1
    critical_retry_delay_s: float = 0.0
    high_retry_backoff_s: list[float] = Field(default_factory=lambda: [1.0, 2.0, 4.0])
    repair_timeout_s: float = 30.0
    max_concurrent_repairs: int = Field(default=5, ge=1)
    medium_promotion_count: int = 3
    medium_promotion_window_s: float = 600.0
    low_promotion_count: int = 5
    low_promotion_window_s: float = 600.0
    archive_size: int = 500


class EmergencyConfig(BaseModel):
    enter_threshold: float = 0.3
    recovery_threshold: float = 0.5
    exit_threshold: float = 0.6
    recovery_sustain_cycles: int = 1
    exit_sustain_cycles: int = 2
    escalated_threat_trigger: int = 2
    # Open circuits that trigger repeated_system_failure (0 = disabled)
    open_circuit_trigger: int = 0

    @model_validator(mode="after")
    def _check_hysteresis(self) -> EmergencyConfig:
        if not (self.enter_threshold <= self.recovery_threshold <= self.exit_threshold):
            raise ValueError(
                "emergency thresholds must satisfy enter <= recovery <= exit"
            )
        return self


# ─── Root Configuration ──────────────────────────────────────────


class VigilConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="VIGIL_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    instance_id: str = "vigil-default"

    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    detector: DetectorConfig = Field(default_factory=DetectorConfig)
    responder: ResponderConfig = Field(default_factory=ResponderConfig)
    emergency: EmergencyConfig = Field(default_factory=EmergencyConfig)

    systems: list[SystemEntryConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_system_ids(self) -> VigilConfig:
        seen: set[str] = set()
        for entry in self.systems:
            if entry.id in seen:
                raise ValueError(f"duplicate system id in registry: {entry.id}")
            seen.add(entry.id)
        return self


def load_config(config_path: str | Path | None = None) -> VigilConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.

    Any validation problem is a malformed registry and is fatal.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise RegistryConfigError(f"{path}: top level must be a mapping")
            raw = loaded

    import os

    if instance_id := os.environ.get("VIGIL_INSTANCE_ID"):
        raw["instance_id"] = instance_id
    if log_level := os.environ.get("VIGIL_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level

    try:
        return VigilConfig(**raw)
    except ValidationError as exc:
        raise RegistryConfigError(str(exc)) from exc
