"""
Vigil -- Threat Ledger

Storage for threat records, plus the de-duplication gate every new
record passes through.

Same (signature, system) is not re-created while the latest record for
that pair is still unresolved, nor within the dedup cooldown of its
creation. This keeps a flapping anomaly from producing an alert storm.

Resolved records move to a bounded archive; they are never deleted
outright while they fit.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from typing import Any

import structlog

from vigil.primitives.errors import UnknownThreatError
from vigil.systems.threats.types import (
    Anomaly,
    ThreatRecord,
    ThreatSeverity,
    ThreatStatus,
    ThreatTransition,
)

logger = structlog.get_logger("vigil.systems.threats.ledger")


class ThreatLedger:
    """Active threats by id, latest record per (signature, system), archive."""

    def __init__(
        self,
        dedup_cooldown_s: float = 120.0,
        archive_size: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._dedup_cooldown_s = dedup_cooldown_s
        self._clock = clock
        self._logger = logger.bind(component="threat_ledger")

        self._active: dict[str, ThreatRecord] = {}
        self._archive: deque[ThreatRecord] = deque(maxlen=archive_size)
        # (signature, system) → (latest record, clock time it was created)
        self._latest: dict[tuple[str, str], tuple[ThreatRecord, float]] = {}

        # Metrics
        self._total_created: int = 0
        self._total_deduplicated: int = 0

    # ─── Creation ────────────────────────────────────────────────────

    def open(self, anomaly: Anomaly, severity: ThreatSeverity) -> ThreatRecord | None:
        """
        Create a DETECTED record for the anomaly.

        Returns None when the anomaly is a duplicate of an existing record.
        """
        if self.is_duplicate(anomaly.key):
            self._total_deduplicated += 1
            self._logger.debug(
                "threat_deduplicated",
                signature=anomaly.signature,
                system_id=anomaly.system_id,
            )
            return None

        record = ThreatRecord(
            source_system_id=anomaly.system_id,
            signature=anomaly.signature,
            severity=severity,
            detail=anomaly.detail,
            evidence=dict(anomaly.evidence),
        )
        record.transitions.append(
            ThreatTransition(from_status=None, to_status=ThreatStatus.DETECTED, note=anomaly.scanner)
        )
        self._active[record.id] = record
        self._latest[anomaly.key] = (record, self._clock())
        self._total_created += 1
        return record

    def is_duplicate(self, key: tuple[str, str]) -> bool:
        entry = self._latest.get(key)
        if entry is None:
            return False
        record, created_at = entry
        if not record.is_resolved:
            return True
        return self._clock() - created_at < self._dedup_cooldown_s

    # ─── Archival ────────────────────────────────────────────────────

    def archive(self, record: ThreatRecord) -> None:
        """Move a resolved record out of the active set."""
        if not record.is_resolved:
            raise ValueError(f"threat {record.id} is {record.status}, not resolved")
        if self._active.pop(record.id, None) is not None:
            self._archive.append(record)

    # ─── Query ───────────────────────────────────────────────────────

    def get(self, threat_id: str) -> ThreatRecord:
        record = self.find(threat_id)
        if record is None:
            raise UnknownThreatError(f"unknown threat: {threat_id}")
        return record

    def find(self, threat_id: str) -> ThreatRecord | None:
        record = self._active.get(threat_id)
        if record is not None:
            return record
        for archived in self._archive:
            if archived.id == threat_id:
                return archived
        return None

    def active(self) -> list[ThreatRecord]:
        return list(self._active.values())

    def active_for(self, key: tuple[str, str]) -> ThreatRecord | None:
        entry = self._latest.get(key)
        if entry is None or entry[0].is_resolved:
            return None
        return entry[0]

    def archived(self, limit: int | None = None) -> list[ThreatRecord]:
        """Most recently archived first."""
        items = list(reversed(self._archive))
        return items if limit is None else items[:limit]

    def count(self, status: ThreatStatus | None = None) -> int:
        if status is None:
            return len(self._active)
        return sum(1 for r in self._active.values() if r.status == status)

    @property
    def escalated_count(self) -> int:
        return self.count(ThreatStatus.ESCALATED)

    @property
    def stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for record in self._active.values():
            by_status[record.status.value] = by_status.get(record.status.value, 0) + 1
        return {
            "active": len(self._active),
            "archived": len(self._archive),
            "created": self._total_created,
            "deduplicated": self._total_deduplicated,
            "by_status": by_status,
        }
