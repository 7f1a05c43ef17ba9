"""
Vigil -- System Registry

The registry maps system ids to their ManagedSystem rows.

Rows are built once from configuration at startup; there is no dynamic
registration afterwards. The table is the only shared mutable structure
in the core, so every row carries its own asyncio.Lock: writers take the
row lock, never a table-wide one, and one slow system cannot hold up
progress on another.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Iterator
from typing import Any

import structlog

from vigil.config import SystemEntryConfig
from vigil.primitives.common import Tier
from vigil.primitives.errors import RegistryConfigError, UnknownSystemError
from vigil.systems.registry.descriptors import as_probe, as_repair, build_probe, build_repair
from vigil.systems.registry.types import ManagedSystem

logger = structlog.get_logger("vigil.systems.registry")


class SystemRegistry:
    """Owned table of managed systems with per-row exclusive access."""

    def __init__(self) -> None:
        self._systems: dict[str, ManagedSystem] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._logger = logger.bind(component="registry")

    # ─── Construction ────────────────────────────────────────────────

    @classmethod
    def from_config(cls, entries: Iterable[SystemEntryConfig]) -> SystemRegistry:
        """Build the registry from declarative entries. Raises RegistryConfigError."""
        registry = cls()
        for entry in entries:
            if not entry.id.strip():
                raise RegistryConfigError("system id must not be empty")
            probe = build_probe(entry.probe)
            repair = build_repair(entry.repair) if entry.repair is not None else None
            registry.add(
                ManagedSystem(
                    id=entry.id,
                    tier=entry.tier,
                    health_threshold=entry.health_threshold,
                    fallback_score=entry.fallback_score,
                    description=entry.description,
                    probe_descriptor=probe,
                    repair_descriptor=repair,
                    probe_timeout_s=entry.probe.timeout_s,
                    repair_timeout_s=entry.repair.timeout_s if entry.repair else None,
                )
            )
        return registry

    def add(self, system: ManagedSystem) -> None:
        """Add a row. Only used while building the registry."""
        if system.id in self._systems:
            raise RegistryConfigError(f"duplicate system id in registry: {system.id}")
        if system.probe_descriptor is None:
            raise RegistryConfigError(f"system {system.id} has no probe descriptor")
        system.probe_descriptor = as_probe(system.probe_descriptor)
        system.repair_descriptor = as_repair(system.repair_descriptor)
        self._systems[system.id] = system
        self._locks[system.id] = asyncio.Lock()
        self._logger.info(
            "system_registered",
            system_id=system.id,
            tier=system.tier.value,
            has_repair=system.has_repair,
        )

    def register(
        self,
        system_id: str,
        tier: Tier,
        probe: Any,
        repair: Any = None,
        **fields: Any,
    ) -> ManagedSystem:
        """Convenience builder for programmatic registries."""
        system = ManagedSystem(
            id=system_id,
            tier=tier,
            probe_descriptor=probe,
            repair_descriptor=repair,
            **fields,
        )
        self.add(system)
        return system

    # ─── Access ──────────────────────────────────────────────────────

    def get(self, system_id: str) -> ManagedSystem:
        try:
            return self._systems[system_id]
        except KeyError:
            raise UnknownSystemError(f"unknown system: {system_id}") from None

    def find(self, system_id: str) -> ManagedSystem | None:
        return self._systems.get(system_id)

    def lock(self, system_id: str) -> asyncio.Lock:
        """The row lock for one system."""
        self.get(system_id)
        return self._locks[system_id]

    def by_tier(self, tier: Tier) -> list[ManagedSystem]:
        return [s for s in self._systems.values() if s.tier == tier]

    @property
    def ids(self) -> list[str]:
        return list(self._systems.keys())

    def __iter__(self) -> Iterator[ManagedSystem]:
        return iter(list(self._systems.values()))

    def __len__(self) -> int:
        return len(self._systems)

    def __contains__(self, system_id: object) -> bool:
        return system_id in self._systems
