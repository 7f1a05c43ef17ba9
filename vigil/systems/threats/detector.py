"""
Vigil -- Threat Detector & Classifier

Scans every managed system on its own cycle (10s by default,
independent of health scoring), classifies what the scanners find via
the severity rule table, and creates de-duplicated threat records.

The detector only creates records. It tells the responder about them,
and about threats whose anomaly has gone away, through an internal
queue; the responder owns every record mutation.

A scanner that raises for one system never stops the scan of the
others. The failure becomes a medium "scan_degraded" threat against the
detector itself.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

import structlog

from vigil.config import DetectorConfig
from vigil.primitives.errors import DetectorScanError
from vigil.systems.monitor.event_bus import EventBus
from vigil.systems.monitor.types import VigilEvent, VigilEventType
from vigil.systems.registry.registry import SystemRegistry
from vigil.systems.threats.ledger import ThreatLedger
from vigil.systems.threats.rules import SeverityRuleTable
from vigil.systems.threats.scanners import BaseHostScanner, BaseScanner
from vigil.systems.threats.types import (
    DETECTOR_SYSTEM_ID,
    Anomaly,
    ThreatRecord,
    ThreatSignature,
    ThreatStatus,
    ThreatUpdate,
    ThreatUpdateKind,
)

logger = structlog.get_logger("vigil.systems.threats.detector")


class ThreatDetector:
    """Periodic anomaly scan → classified, de-duplicated ThreatRecords."""

    def __init__(
        self,
        registry: SystemRegistry,
        ledger: ThreatLedger,
        rules: SeverityRuleTable,
        config: DetectorConfig,
        event_bus: EventBus,
        scanners: list[BaseScanner],
        host_scanners: list[BaseHostScanner] | None = None,
    ) -> None:
        self._registry = registry
        self._ledger = ledger
        self._rules = rules
        self._config = config
        self._event_bus = event_bus
        self._scanners = list(scanners)
        self._host_scanners = list(host_scanners or [])
        self._logger = logger.bind(component="threat_detector")

        # Detector → responder channel
        self._updates: asyncio.Queue[ThreatUpdate] = asyncio.Queue()
        # Threats already reported as cleared, so each is reported once
        self._cleared_sent: set[str] = set()

        # Background task
        self._task: asyncio.Task[None] | None = None
        self._running: bool = False

        # Metrics
        self._total_scans: int = 0
        self._total_scan_errors: int = 0
        self._total_threats_created: int = 0

    @property
    def updates(self) -> asyncio.Queue[ThreatUpdate]:
        return self._updates

    # ─── Control ─────────────────────────────────────────────────────

    def start(self) -> asyncio.Task[None]:
        if self._running:
            raise RuntimeError("ThreatDetector is already running")
        self._running = True
        self._task = asyncio.create_task(self._scan_loop(), name="vigil_threat_detector")
        self._logger.info(
            "threat_detector_started",
            interval_s=self._config.scan_interval_s,
            scanners=[s.scanner_name for s in self._scanners],
            rule_table_version=self._rules.version,
        )
        return self._task

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self._logger.info(
            "threat_detector_stopped",
            scans=self._total_scans,
            threats_created=self._total_threats_created,
        )

    async def _scan_loop(self) -> None:
        while self._running:
            try:
                await self.scan_once()
                await asyncio.sleep(self._config.scan_interval_s)
            except asyncio.CancelledError:
                return
            except Exception as exc:
                self._logger.error("threat_scan_loop_error", error=str(exc))
                await asyncio.sleep(self._config.scan_interval_s)

    # ─── Scan ────────────────────────────────────────────────────────

    async def scan_once(self) -> list[ThreatRecord]:
        """
        One full pass over every system and host scanner.

        Returns the records created by this pass.
        """
        self._total_scans += 1
        anomalies = self.collect_anomalies()

        created: list[ThreatRecord] = []
        for anomaly in anomalies:
            record = self._ledger.open(anomaly, self._rules.classify(anomaly.signature))
            if record is None:
                continue
            created.append(record)
            self._total_threats_created += 1
            self._logger.info(
                "threat_detected",
                threat_id=record.id,
                system_id=record.source_system_id,
                signature=record.signature,
                severity=record.severity.value,
                detail=record.detail,
            )
            await self._event_bus.emit(VigilEvent(
                event_type=VigilEventType.THREAT_CREATED,
                system_id=record.source_system_id,
                threat_id=record.id,
                details={
                    "signature": record.signature,
                    "severity": record.severity.value,
                    "detail": record.detail,
                    "rule_table_version": self._rules.version,
                },
            ))
            self._updates.put_nowait(
                ThreatUpdate(kind=ThreatUpdateKind.CREATED, threat_id=record.id)
            )

        self._report_cleared({a.key for a in anomalies})
        return created

    def collect_anomalies(self) -> list[Anomaly]:
        """Run every scanner, isolating failures per (system, scanner)."""
        anomalies: list[Anomaly] = []
        for system in self._registry:
            for scanner in self._scanners:
                try:
                    anomalies.extend(scanner.scan(system))
                except Exception as exc:
                    anomalies.append(self._scan_degraded(
                        DetectorScanError(system.id, scanner.scanner_name, exc)
                    ))

        for host_scanner in self._host_scanners:
            try:
                anomalies.extend(host_scanner.scan())
            except Exception as exc:
                anomalies.append(self._scan_degraded(
                    DetectorScanError("host", host_scanner.scanner_name, exc)
                ))
        return anomalies

    def _scan_degraded(self, error: DetectorScanError) -> Anomaly:
        self._total_scan_errors += 1
        self._logger.warning(
            "threat_scan_error",
            system_id=error.system_id,
            scanner=error.scanner,
            error=str(error.cause),
        )
        return Anomaly(
            system_id=DETECTOR_SYSTEM_ID,
            signature=ThreatSignature.SCAN_DEGRADED,
            scanner=error.scanner,
            detail=str(error),
            evidence={"scanned_system_id": error.system_id},
        )

    def _report_cleared(self, observed: set[tuple[str, str]]) -> None:
        """Tell the responder about settled threats whose anomaly is gone."""
        live: set[str] = set()
        for record in self._ledger.active():
            live.add(record.id)
            if record.status not in (ThreatStatus.CONTAINED, ThreatStatus.ESCALATED):
                continue
            if record.key in observed or record.id in self._cleared_sent:
                continue
            self._cleared_sent.add(record.id)
            self._updates.put_nowait(
                ThreatUpdate(kind=ThreatUpdateKind.CLEARED, threat_id=record.id)
            )
        # Forget archived threats
        self._cleared_sent &= live

    # ─── Stats ───────────────────────────────────────────────────────

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "scans": self._total_scans,
            "scan_errors": self._total_scan_errors,
            "threats_created": self._total_threats_created,
            "pending_updates": self._updates.qsize(),
            "rule_table_version": self._rules.version,
        }
