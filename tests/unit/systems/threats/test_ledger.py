"""
Tests for the ThreatLedger: creation, de-duplication and archival.
"""

from __future__ import annotations

import pytest

from vigil.primitives.errors import UnknownThreatError
from vigil.systems.threats.ledger import ThreatLedger
from vigil.systems.threats.types import Anomaly, ThreatSeverity, ThreatStatus


class _FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _anomaly(system_id: str = "db", signature: str = "circuit_open") -> Anomaly:
    return Anomaly(system_id=system_id, signature=signature, scanner="circuit", detail="circuit is open")


def _resolve(record) -> None:
    record.status = ThreatStatus.RESOLVED


class TestOpen:
    def test_creates_detected_record(self):
        ledger = ThreatLedger()
        record = ledger.open(_anomaly(), ThreatSeverity.CRITICAL)
        assert record is not None
        assert record.status == ThreatStatus.DETECTED
        assert record.severity == ThreatSeverity.CRITICAL
        assert record.key == ("circuit_open", "db")
        assert record.transitions[0].to_status == ThreatStatus.DETECTED
        assert ledger.get(record.id) is record

    def test_unresolved_duplicate_is_suppressed(self):
        clock = _FakeClock()
        ledger = ThreatLedger(clock=clock)
        first = ledger.open(_anomaly(), ThreatSeverity.CRITICAL)
        clock.advance(3600.0)
        assert ledger.open(_anomaly(), ThreatSeverity.CRITICAL) is None
        assert ledger.active() == [first]
        assert ledger.stats["deduplicated"] == 1

    def test_resolved_duplicate_inside_cooldown_is_suppressed(self):
        clock = _FakeClock()
        ledger = ThreatLedger(dedup_cooldown_s=120.0, clock=clock)
        first = ledger.open(_anomaly(), ThreatSeverity.CRITICAL)
        _resolve(first)
        ledger.archive(first)

        clock.advance(119.0)
        assert ledger.open(_anomaly(), ThreatSeverity.CRITICAL) is None
        clock.advance(1.0)
        second = ledger.open(_anomaly(), ThreatSeverity.CRITICAL)
        assert second is not None
        assert second.id != first.id

    def test_key_is_signature_and_system(self):
        ledger = ThreatLedger()
        assert ledger.open(_anomaly("db"), ThreatSeverity.HIGH) is not None
        assert ledger.open(_anomaly("cache"), ThreatSeverity.HIGH) is not None
        assert ledger.open(_anomaly("db", "stale_probe"), ThreatSeverity.LOW) is not None
        assert ledger.count() == 3

    def test_active_for(self):
        ledger = ThreatLedger()
        record = ledger.open(_anomaly(), ThreatSeverity.HIGH)
        assert ledger.active_for(("circuit_open", "db")) is record
        _resolve(record)
        assert ledger.active_for(("circuit_open", "db")) is None


class TestArchive:
    def test_archive_requires_resolution(self):
        ledger = ThreatLedger()
        record = ledger.open(_anomaly(), ThreatSeverity.HIGH)
        with pytest.raises(ValueError):
            ledger.archive(record)

    def test_archived_records_remain_findable(self):
        ledger = ThreatLedger()
        record = ledger.open(_anomaly(), ThreatSeverity.HIGH)
        _resolve(record)
        ledger.archive(record)
        assert ledger.count() == 0
        assert ledger.get(record.id) is record
        assert ledger.archived() == [record]

    def test_archive_is_bounded_and_newest_first(self):
        ledger = ThreatLedger(archive_size=2)
        records = []
        for system_id in ("a", "b", "c"):
            record = ledger.open(_anomaly(system_id), ThreatSeverity.LOW)
            _resolve(record)
            ledger.archive(record)
            records.append(record)
        assert ledger.archived() == [records[2], records[1]]
        assert ledger.archived(limit=1) == [records[2]]
        assert ledger.find(records[0].id) is None

    def test_unknown_threat(self):
        with pytest.raises(UnknownThreatError):
            ThreatLedger().get("nope")


class TestCounts:
    def test_count_by_status(self):
        ledger = ThreatLedger()
        a = ledger.open(_anomaly("a"), ThreatSeverity.CRITICAL)
        b = ledger.open(_anomaly("b"), ThreatSeverity.CRITICAL)
        ledger.open(_anomaly("c"), ThreatSeverity.CRITICAL)
        a.status = ThreatStatus.ESCALATED
        b.status = ThreatStatus.ESCALATED
        assert ledger.escalated_count == 2
        assert ledger.count(ThreatStatus.DETECTED) == 1
        assert ledger.stats["by_status"] == {"escalated": 2, "detected": 1}
