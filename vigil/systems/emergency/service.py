"""
Vigil -- Orchestrator Service

Wires the orchestration core together and exposes the unified status
surface and the manual override commands.

  Registry → HealthMonitor ─┐
           → ThreatDetector ┴→ CircuitBreakerManager (gates every call)
                               → ThreatResponder → EmergencyCoordinator
                               → EventBus sinks

The monitor and the detector run independent cycles. Every probe and
repair, automated or operator-forced, goes through the circuit breaker.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from vigil.config import VigilConfig
from vigil.primitives.common import health_label, utc_now
from vigil.systems.breaker.manager import CircuitBreakerManager
from vigil.systems.emergency.coordinator import EmergencyCoordinator
from vigil.systems.emergency.types import EmergencyMode
from vigil.systems.monitor.event_bus import EventBus
from vigil.systems.monitor.health import HealthMonitor
from vigil.systems.monitor.types import HealthSnapshot
from vigil.systems.registry.registry import SystemRegistry
from vigil.systems.registry.types import CircuitState, RepairOutcome
from vigil.systems.threats.detector import ThreatDetector
from vigil.systems.threats.governor import RepairGovernor
from vigil.systems.threats.ledger import ThreatLedger
from vigil.systems.threats.responder import ThreatResponder
from vigil.systems.threats.rules import SeverityRuleTable
from vigil.systems.threats.scanners import (
    BaseHostScanner,
    default_host_scanners,
    default_scanners,
)
from vigil.systems.threats.types import ThreatRecord

logger = structlog.get_logger("vigil.systems.emergency.service")


class VigilService:
    """
    Vigil -- the health-monitoring and threat-response orchestrator.

    Coordinates:
      CircuitBreakerManager  -- per-system isolation and fallbacks
      HealthMonitor          -- tiered probe schedule, aggregate health
      ThreatDetector         -- anomaly scan, classification, de-duplication
      ThreatResponder        -- per-threat response state machine
      EmergencyCoordinator   -- global Normal/Emergency/Recovery mode
      EventBus               -- in-process callbacks plus external sinks
    """

    def __init__(
        self,
        config: VigilConfig,
        registry: SystemRegistry | None = None,
        event_bus: EventBus | None = None,
        host_scanners: list[BaseHostScanner] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._logger = logger.bind(component="vigil_service")
        self._initialized: bool = False
        self._started: bool = False

        self._registry = registry if registry is not None else SystemRegistry.from_config(
            config.systems
        )
        self._event_bus = event_bus if event_bus is not None else EventBus()

        # Sub-systems
        self._breakers = CircuitBreakerManager(
            registry=self._registry,
            config=config.breaker,
            event_bus=self._event_bus,
            probe_timeout_s=config.monitor.probe_timeout_s,
            repair_timeout_s=config.responder.repair_timeout_s,
            clock=clock,
        )
        self._monitor = HealthMonitor(
            registry=self._registry,
            breakers=self._breakers,
            config=config.monitor,
            event_bus=self._event_bus,
            clock=clock,
        )
        self._ledger = ThreatLedger(
            dedup_cooldown_s=config.detector.dedup_cooldown_s,
            archive_size=config.responder.archive_size,
            clock=clock,
        )
        self._rules = SeverityRuleTable.from_config(config.detector)
        self._detector = ThreatDetector(
            registry=self._registry,
            ledger=self._ledger,
            rules=self._rules,
            config=config.detector,
            event_bus=self._event_bus,
            scanners=default_scanners(
                config.detector,
                interval_for=self._monitor.interval_for,
                sample_age_s=self._monitor.sample_age_s,
            ),
            host_scanners=(
                default_host_scanners(config.detector)
                if host_scanners is None
                else host_scanners
            ),
        )
        self._governor = RepairGovernor(config.responder.max_concurrent_repairs)
        self._responder = ThreatResponder(
            registry=self._registry,
            ledger=self._ledger,
            breakers=self._breakers,
            governor=self._governor,
            config=config.responder,
            event_bus=self._event_bus,
            clock=clock,
            sleep=sleep,
        )
        self._coordinator = EmergencyCoordinator(
            config=config.emergency,
            monitor_config=config.monitor,
            event_bus=self._event_bus,
            escalated_count=lambda: self._ledger.escalated_count,
            open_circuit_count=lambda: len(self._breakers.open_circuits()),
        )

    # ─── Lifecycle ───────────────────────────────────────────────────

    def initialize(self) -> None:
        """Wire inter-dependencies. Idempotent."""
        if self._initialized:
            return

        # Monitor ↔ coordinator
        self._monitor.set_schedule_policy(self._coordinator)
        self._monitor.set_threat_counter(self._ledger.count)
        self._monitor.add_snapshot_listener(self._poll_circuits)
        self._monitor.add_snapshot_listener(self._coordinator.evaluate)

        # Responder ↔ coordinator
        self._responder.set_escalation_handler(self._coordinator.on_escalation)
        self._responder.set_repair_gate(self._repairs_allowed)
        self._coordinator.add_mode_listener(self._on_mode_change)

        self._initialized = True
        self._logger.info(
            "vigil_initialized",
            instance_id=self._config.instance_id,
            systems=len(self._registry),
            rule_table_version=self._rules.version,
        )

    async def start(self) -> None:
        """Start the monitor, detector and responder loops."""
        self.initialize()
        if self._started:
            raise RuntimeError("VigilService is already running")
        self._responder.start(self._detector.updates)
        self._monitor.start()
        self._detector.start()
        self._started = True
        self._logger.info("vigil_started", instance_id=self._config.instance_id)

    async def stop(self) -> None:
        """Graceful shutdown: stop producers first, then in-flight responses."""
        self._logger.info("vigil_stopping")
        await self._detector.stop()
        await self._monitor.stop()
        await self._responder.stop()
        self._started = False
        self._logger.info(
            "vigil_stopped",
            cycles=self._monitor.cycle,
            mode=self._coordinator.mode.value,
        )

    # ─── Wiring Callbacks ────────────────────────────────────────────

    async def _poll_circuits(self, snapshot: HealthSnapshot) -> None:
        """Apply elapsed cooldowns once per cycle so status shows half_open."""
        await self._breakers.poll_all()

    def _repairs_allowed(self, system_id: str) -> bool:
        system = self._registry.find(system_id)
        if system is None:
            return True
        return not self._coordinator.is_suspended(system.tier)

    async def _on_mode_change(self, old: EmergencyMode, new: EmergencyMode) -> None:
        if old == EmergencyMode.EMERGENCY and new != EmergencyMode.EMERGENCY:
            self._responder.resume_deferred()

    # ─── Cycles (also driven directly in tests) ──────────────────────

    async def run_health_cycle(self) -> HealthSnapshot:
        self.initialize()
        return await self._monitor.run_cycle()

    async def run_threat_scan(self) -> list[ThreatRecord]:
        """One detector pass, with the resulting responses run to completion."""
        self.initialize()
        created = await self._detector.scan_once()
        updates = self._detector.updates
        while not updates.empty():
            self._responder.dispatch(updates.get_nowait())
            updates.task_done()
        await self._responder.drain()
        return created

    # ─── Manual Overrides ────────────────────────────────────────────

    async def force_repair(self, system_id: str) -> RepairOutcome:
        """
        Operator repair. Goes through the governor and the circuit breaker.

        Emergency suspension applies here as well: a system whose tier is
        suspended is not repaired and the outcome carries error "Suspended".
        """
        system = self._registry.get(system_id)
        self._logger.info("manual_repair_requested", system_id=system_id)
        if not self._repairs_allowed(system_id):
            self._logger.warning(
                "manual_repair_suspended",
                system_id=system_id,
                tier=system.tier.value,
            )
            return RepairOutcome(
                success=False,
                error="Suspended",
                detail=f"{system_id} is in a suspended tier while emergency mode is active",
            )
        return await self._responder.repair(system_id)

    async def reset_circuit(self, system_id: str) -> CircuitState:
        self._logger.info("manual_circuit_reset_requested", system_id=system_id)
        return await self._breakers.reset(system_id)

    async def acknowledge_threat(self, threat_id: str) -> ThreatRecord:
        self._logger.info("manual_threat_acknowledged", threat_id=threat_id)
        return await self._responder.acknowledge(threat_id)

    # ─── Status Surface ──────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        """
        The unified status record: latest snapshot, emergency state,
        per-system circuit states and the open threats. JSON-compatible.
        """
        snapshot = self._monitor.latest
        aggregate = snapshot.aggregate_score if snapshot is not None else None
        systems: dict[str, Any] = {}
        for system in self._registry:
            outcome = system.last_repair_outcome
            systems[system.id] = {
                "tier": system.tier.value,
                "health_score": round(system.health_score, 4),
                "health_label": health_label(system.health_score),
                "health_threshold": system.health_threshold,
                "circuit_state": system.circuit_state.value,
                "consecutive_failures": system.consecutive_failures,
                "last_probe_at": system.last_probe_at.isoformat() if system.last_probe_at else None,
                "last_repair_at": system.last_repair_at.isoformat() if system.last_repair_at else None,
                "last_repair_outcome": (
                    {
                        "success": outcome.success,
                        "short_circuited": outcome.short_circuited,
                        "error": outcome.error,
                    }
                    if outcome is not None
                    else None
                ),
                "suspended": self._coordinator.is_suspended(system.tier),
            }

        open_threats = self._ledger.active()
        return {
            "instance_id": self._config.instance_id,
            "timestamp": utc_now().isoformat(),
            "mode": self._coordinator.mode.value,
            "emergency": self._coordinator.state.summary(),
            "aggregate_score": round(aggregate, 4) if aggregate is not None else None,
            "health_label": health_label(aggregate) if aggregate is not None else None,
            "snapshot": snapshot.model_dump(mode="json") if snapshot is not None else None,
            "systems": systems,
            "circuits": {sid: state.value for sid, state in self._breakers.states().items()},
            "open_threat_count": len(open_threats),
            "escalated_threat_count": self._ledger.escalated_count,
            "threats": [t.summary() for t in open_threats],
            "repair_governor": self._governor.stats,
        }

    def threats(self, include_archived: bool = False) -> list[dict[str, Any]]:
        records = self._ledger.active()
        if include_archived:
            records = records + self._ledger.archived()
        return [r.summary() for r in records]

    def events(self, limit: int = 50) -> list[dict[str, Any]]:
        return [e.to_record() for e in self._event_bus.recent(limit=limit)]

    async def health(self) -> dict[str, Any]:
        """Self-health report."""
        return {
            "status": "healthy" if self._started else "starting",
            "instance_id": self._config.instance_id,
            "mode": self._coordinator.mode.value,
            "cycles": self._monitor.cycle,
            "systems": len(self._registry),
        }

    # ─── Accessors ───────────────────────────────────────────────────

    @property
    def registry(self) -> SystemRegistry:
        return self._registry

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def breakers(self) -> CircuitBreakerManager:
        return self._breakers

    @property
    def monitor(self) -> HealthMonitor:
        return self._monitor

    @property
    def detector(self) -> ThreatDetector:
        return self._detector

    @property
    def ledger(self) -> ThreatLedger:
        return self._ledger

    @property
    def responder(self) -> ThreatResponder:
        return self._responder

    @property
    def coordinator(self) -> EmergencyCoordinator:
        return self._coordinator

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "monitor": self._monitor.stats,
            "breakers": self._breakers.stats,
            "detector": self._detector.stats,
            "ledger": self._ledger.stats,
            "responder": self._responder.stats,
            "governor": self._governor.stats,
            "emergency": self._coordinator.stats,
            "event_bus": self._event_bus.stats,
        }
