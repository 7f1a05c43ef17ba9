"""
Vigil -- Severity Rule Table

Explicit, versioned mapping from anomaly signature to threat severity.
Signatures not in the table fall back to the table default.
"""

from __future__ import annotations

from collections.abc import Mapping

import structlog

from vigil.config import DetectorConfig
from vigil.primitives.errors import RegistryConfigError
from vigil.systems.threats.types import ThreatSeverity, ThreatSignature

logger = structlog.get_logger("vigil.systems.threats.rules")

RULE_TABLE_VERSION: int = 1

DEFAULT_RULES: dict[str, ThreatSeverity] = {
    ThreatSignature.CIRCUIT_OPEN: ThreatSeverity.CRITICAL,
    ThreatSignature.MISSING_SAFETY_CONTROL: ThreatSeverity.CRITICAL,
    ThreatSignature.SYSTEM_UNREACHABLE: ThreatSeverity.HIGH,
    ThreatSignature.REPEATED_BUILD_FAILURE: ThreatSeverity.HIGH,
    ThreatSignature.RESOURCE_EXHAUSTION: ThreatSeverity.HIGH,
    ThreatSignature.HEALTH_BELOW_THRESHOLD: ThreatSeverity.MEDIUM,
    ThreatSignature.HOST_MEMORY_PRESSURE: ThreatSeverity.MEDIUM,
    ThreatSignature.SCAN_DEGRADED: ThreatSeverity.MEDIUM,
    ThreatSignature.STALE_PROBE: ThreatSeverity.LOW,
}


class SeverityRuleTable:
    """signature → severity, independent of the orchestration loop."""

    def __init__(
        self,
        rules: Mapping[str, ThreatSeverity] | None = None,
        default: ThreatSeverity = ThreatSeverity.MEDIUM,
        version: int = RULE_TABLE_VERSION,
    ) -> None:
        self._rules: dict[str, ThreatSeverity] = {
            str(sig): ThreatSeverity(sev)
            for sig, sev in (DEFAULT_RULES if rules is None else rules).items()
        }
        self._default = default
        self._version = version

    @classmethod
    def from_config(cls, config: DetectorConfig) -> SeverityRuleTable:
        """Default table with config overrides applied. Bad severities are fatal."""
        try:
            default = ThreatSeverity(config.default_severity)
            overrides = {
                sig: ThreatSeverity(sev) for sig, sev in config.severity_overrides.items()
            }
        except ValueError as exc:
            raise RegistryConfigError(f"invalid severity in detector config: {exc}") from exc

        rules = dict(DEFAULT_RULES)
        rules.update(overrides)
        if overrides:
            logger.info(
                "severity_overrides_applied",
                overrides={k: v.value for k, v in overrides.items()},
            )
        return cls(rules=rules, default=default)

    def classify(self, signature: str) -> ThreatSeverity:
        return self._rules.get(signature, self._default)

    def __contains__(self, signature: object) -> bool:
        return signature in self._rules

    @property
    def version(self) -> int:
        return self._version

    @property
    def default(self) -> ThreatSeverity:
        return self._default

    def as_dict(self) -> dict[str, str]:
        return {sig: sev.value for sig, sev in sorted(self._rules.items())}
