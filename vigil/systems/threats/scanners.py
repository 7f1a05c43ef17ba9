"""
Vigil -- Threat Scanners

Scanners are the detector's sensors. Each one inspects a single managed
system (or, for host scanners, the orchestrator's own host) and returns
the anomalies it sees right now. Scanners hold no threat state; the
detector turns their findings into records.

Built-in scanners:
  CircuitScanner         -- circuit not closed                 → circuit_open
  UnreachableScanner     -- N consecutive probe failures       → system_unreachable
  HealthThresholdScanner -- real score below system threshold  → health_below_threshold
  ReportedSignalScanner  -- signatures the probe reported      → as reported
  StaleProbeScanner      -- no completed probe in K intervals  → stale_probe
  HostMemoryScanner      -- process RSS / host memory pressure → host_memory_pressure
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

import psutil

from vigil.config import DetectorConfig
from vigil.primitives.common import Tier
from vigil.systems.registry.types import CircuitState, ManagedSystem
from vigil.systems.threats.types import Anomaly, HOST_SYSTEM_ID, ThreatSignature

_BYTES_PER_MB: float = 1024.0 * 1024.0


# ─── Strategy ABC ───────────────────────────────────────────────


class BaseScanner(ABC):
    """
    Inspects one managed system for known anomaly signatures.

    Contract:
    - ``scanner_name`` is stable and unique among the detector's scanners.
    - ``scan`` is cheap and synchronous; it reads registry state, it does
      not call probes. Raising is allowed: the detector records the
      failure as scan_degraded and moves on.
    """

    @property
    @abstractmethod
    def scanner_name(self) -> str:
        ...

    @abstractmethod
    def scan(self, system: ManagedSystem) -> list[Anomaly]:
        ...

    def _anomaly(
        self,
        system: ManagedSystem,
        signature: str,
        detail: str,
        **evidence: object,
    ) -> Anomaly:
        return Anomaly(
            system_id=system.id,
            signature=signature,
            scanner=self.scanner_name,
            detail=detail,
            evidence=dict(evidence),
        )


class BaseHostScanner(ABC):
    """Inspects the orchestrator's own host rather than a managed system."""

    @property
    @abstractmethod
    def scanner_name(self) -> str:
        ...

    @abstractmethod
    def scan(self) -> list[Anomaly]:
        ...


# ─── System Scanners ─────────────────────────────────────────────


class CircuitScanner(BaseScanner):
    """Open (or still trialling) circuit."""

    @property
    def scanner_name(self) -> str:
        return "circuit"

    def scan(self, system: ManagedSystem) -> list[Anomaly]:
        if system.circuit_state == CircuitState.CLOSED:
            return []
        return [self._anomaly(
            system,
            ThreatSignature.CIRCUIT_OPEN,
            f"circuit is {system.circuit_state.value}",
            circuit_state=system.circuit_state.value,
            consecutive_failures=system.consecutive_failures,
        )]


class UnreachableScanner(BaseScanner):
    """Repeated probe failures that have not (yet) opened the circuit."""

    def __init__(self, failure_count: int = 3) -> None:
        self._failure_count = failure_count

    @property
    def scanner_name(self) -> str:
        return "unreachable"

    def scan(self, system: ManagedSystem) -> list[Anomaly]:
        if (
            system.circuit_state != CircuitState.CLOSED
            or system.consecutive_failures < self._failure_count
        ):
            return []
        return [self._anomaly(
            system,
            ThreatSignature.SYSTEM_UNREACHABLE,
            f"{system.consecutive_failures} consecutive probe failures",
            consecutive_failures=system.consecutive_failures,
        )]


class HealthThresholdScanner(BaseScanner):
    """
    A system that answers its probe but scores below its threshold.

    Failed probes are left to UnreachableScanner, open circuits to
    CircuitScanner, so the same outage is not raised three times.
    """

    @property
    def scanner_name(self) -> str:
        return "health_threshold"

    def scan(self, system: ManagedSystem) -> list[Anomaly]:
        if (
            system.last_probe_at is None
            or system.circuit_state != CircuitState.CLOSED
            or system.consecutive_failures > 0
            or system.health_score >= system.health_threshold
        ):
            return []
        return [self._anomaly(
            system,
            ThreatSignature.HEALTH_BELOW_THRESHOLD,
            f"health {system.health_score:.3f} below {system.health_threshold:.3f}",
            health_score=round(system.health_score, 4),
            threshold=system.health_threshold,
        )]


class ReportedSignalScanner(BaseScanner):
    """Signatures the subsystem reported alongside its last score."""

    @property
    def scanner_name(self) -> str:
        return "reported_signal"

    def scan(self, system: ManagedSystem) -> list[Anomaly]:
        return [
            self._anomaly(system, signal, f"reported by {system.id}")
            for signal in dict.fromkeys(system.last_signals)
        ]


class StaleProbeScanner(BaseScanner):
    """
    A scheduled system whose probe has not completed for too long.

    ``interval_for`` returns None for suspended tiers, which are never
    stale. ``sample_age_s`` is seconds since the last completed probe.
    """

    def __init__(
        self,
        interval_for: Callable[[Tier], float | None],
        sample_age_s: Callable[[str], float],
        factor: float = 3.0,
    ) -> None:
        self._interval_for = interval_for
        self._sample_age_s = sample_age_s
        self._factor = factor

    @property
    def scanner_name(self) -> str:
        return "stale_probe"

    def scan(self, system: ManagedSystem) -> list[Anomaly]:
        interval = self._interval_for(system.tier)
        if interval is None:
            return []
        age = self._sample_age_s(system.id)
        limit = interval * self._factor
        if age <= limit:
            return []
        return [self._anomaly(
            system,
            ThreatSignature.STALE_PROBE,
            f"no completed probe for {age:.1f}s (limit {limit:.1f}s)",
            age_s=round(age, 3),
            limit_s=limit,
        )]


# ─── Host Scanners ───────────────────────────────────────────────


class HostMemoryScanner(BaseHostScanner):
    """Process RSS or host memory use above the configured limits."""

    def __init__(self, rss_limit_mb: float = 1024.0, percent_limit: float = 95.0) -> None:
        self._rss_limit_mb = rss_limit_mb
        self._percent_limit = percent_limit
        self._process = psutil.Process()

    @property
    def scanner_name(self) -> str:
        return "host_memory"

    def scan(self) -> list[Anomaly]:
        rss_mb = self._process.memory_info().rss / _BYTES_PER_MB
        percent = psutil.virtual_memory().percent
        if rss_mb <= self._rss_limit_mb and percent <= self._percent_limit:
            return []
        return [Anomaly(
            system_id=HOST_SYSTEM_ID,
            signature=ThreatSignature.HOST_MEMORY_PRESSURE,
            scanner=self.scanner_name,
            detail=f"rss {rss_mb:.0f}MB, host memory {percent:.1f}%",
            evidence={
                "rss_mb": round(rss_mb, 1),
                "rss_limit_mb": self._rss_limit_mb,
                "memory_percent": percent,
                "memory_percent_limit": self._percent_limit,
            },
        )]


def default_scanners(
    config: DetectorConfig,
    interval_for: Callable[[Tier], float | None] | None = None,
    sample_age_s: Callable[[str], float] | None = None,
) -> list[BaseScanner]:
    """The standard per-system scanner set. Stale detection needs the monitor."""
    scanners: list[BaseScanner] = [
        CircuitScanner(),
        UnreachableScanner(config.unreachable_failure_count),
        HealthThresholdScanner(),
        ReportedSignalScanner(),
    ]
    if interval_for is not None and sample_age_s is not None:
        scanners.append(StaleProbeScanner(interval_for, sample_age_s, config.stale_probe_factor))
    return scanners


def default_host_scanners(config: DetectorConfig) -> list[BaseHostScanner]:
    return [HostMemoryScanner(config.host_rss_limit_mb, config.host_memory_percent_limit)]
