"""
Vigil -- Threats

Detection (scanners + severity rule table + de-duplicating ledger) and
response (per-record state machine behind a global repair governor).
"""

from vigil.systems.threats.detector import ThreatDetector
from vigil.systems.threats.governor import RepairGovernor
from vigil.systems.threats.ledger import ThreatLedger
from vigil.systems.threats.responder import ThreatResponder
from vigil.systems.threats.rules import DEFAULT_RULES, RULE_TABLE_VERSION, SeverityRuleTable
from vigil.systems.threats.scanners import (
    BaseHostScanner,
    BaseScanner,
    CircuitScanner,
    HealthThresholdScanner,
    HostMemoryScanner,
    ReportedSignalScanner,
    StaleProbeScanner,
    UnreachableScanner,
    default_host_scanners,
    default_scanners,
)
from vigil.systems.threats.types import (
    DETECTOR_SYSTEM_ID,
    HOST_SYSTEM_ID,
    SEVERITY_RANK,
    Anomaly,
    ThreatRecord,
    ThreatSeverity,
    ThreatSignature,
    ThreatStatus,
    ThreatTransition,
    ThreatUpdate,
    ThreatUpdateKind,
)

__all__ = [
    # Components
    "ThreatDetector",
    "ThreatLedger",
    "ThreatResponder",
    "RepairGovernor",
    "SeverityRuleTable",
    "DEFAULT_RULES",
    "RULE_TABLE_VERSION",
    # Scanners
    "BaseScanner",
    "BaseHostScanner",
    "CircuitScanner",
    "HealthThresholdScanner",
    "HostMemoryScanner",
    "ReportedSignalScanner",
    "StaleProbeScanner",
    "UnreachableScanner",
    "default_scanners",
    "default_host_scanners",
    # Types
    "DETECTOR_SYSTEM_ID",
    "HOST_SYSTEM_ID",
    "SEVERITY_RANK",
    "Anomaly",
    "ThreatRecord",
    "ThreatSeverity",
    "ThreatSignature",
    "ThreatStatus",
    "ThreatTransition",
    "ThreatUpdate",
    "ThreatUpdateKind",
]
