"""
Tests for the System Registry and its descriptors.

Covers:
  - Building rows from declarative entries
  - Duplicate / unknown ids
  - Callable and command descriptor adapters (invalid scores, killed children)
  - Score clamping on the row itself
"""

from __future__ import annotations

import asyncio
import os

import pytest

from vigil.config import DescriptorConfig, SystemEntryConfig
from vigil.primitives.common import Tier
from vigil.primitives.errors import ProbeFailure, RegistryConfigError, UnknownSystemError
from vigil.systems.registry.descriptors import (
    CallableProbe,
    CallableRepair,
    CommandProbe,
    CommandRepair,
    build_probe,
    build_repair,
    import_target,
)
from vigil.systems.registry.registry import SystemRegistry
from vigil.systems.registry.types import CircuitState, ManagedSystem


class _Probe:
    async def probe(self) -> float:
        return 1.0


def _entry(system_id: str, tier: Tier = Tier.MEDIUM, **kwargs) -> SystemEntryConfig:
    return SystemEntryConfig(
        id=system_id,
        tier=tier,
        probe=DescriptorConfig(kind="command", target="exit 0"),
        **kwargs,
    )


class TestFromConfig:
    def test_builds_one_row_per_entry(self):
        registry = SystemRegistry.from_config([
            _entry("api", Tier.CRITICAL),
            _entry("worker", Tier.LOW),
        ])
        assert len(registry) == 2
        assert registry.ids == ["api", "worker"]
        api = registry.get("api")
        assert api.tier == Tier.CRITICAL
        assert api.health_score == 1.0
        assert api.circuit_state == CircuitState.CLOSED
        assert isinstance(api.probe_descriptor, CommandProbe)
        assert api.has_repair is False

    def test_tier_default_health_threshold(self):
        registry = SystemRegistry.from_config([
            _entry("api", Tier.CRITICAL),
            _entry("batch", Tier.LOW, health_threshold=0.2),
        ])
        assert registry.get("api").health_threshold == 0.9
        assert registry.get("batch").health_threshold == 0.2

    def test_repair_descriptor_and_timeouts(self):
        entry = SystemEntryConfig(
            id="api",
            tier=Tier.HIGH,
            probe=DescriptorConfig(kind="command", target="exit 0", timeout_s=2.0),
            repair=DescriptorConfig(kind="command", target="true", timeout_s=45.0),
        )
        system = SystemRegistry.from_config([entry]).get("api")
        assert isinstance(system.repair_descriptor, CommandRepair)
        assert system.probe_timeout_s == 2.0
        assert system.repair_timeout_s == 45.0

    def test_duplicate_id_is_fatal(self):
        with pytest.raises(RegistryConfigError):
            SystemRegistry.from_config([_entry("api"), _entry("api")])

    def test_unimportable_callable_is_fatal(self):
        entry = SystemEntryConfig(
            id="api",
            tier=Tier.HIGH,
            probe=DescriptorConfig(kind="callable", target="no_such_module_xyz:probe"),
        )
        with pytest.raises(RegistryConfigError):
            SystemRegistry.from_config([entry])


class TestAccess:
    def test_unknown_system_raises(self):
        registry = SystemRegistry()
        with pytest.raises(UnknownSystemError):
            registry.get("ghost")
        assert registry.find("ghost") is None
        assert "ghost" not in registry

    def test_register_wraps_bare_callables(self):
        registry = SystemRegistry()
        system = registry.register("db", Tier.HIGH, probe=lambda: 0.8, repair=lambda: True)
        assert isinstance(system.probe_descriptor, CallableProbe)
        assert isinstance(system.repair_descriptor, CallableRepair)
        assert "db" in registry

    def test_register_keeps_capability_objects(self):
        registry = SystemRegistry()
        probe = _Probe()
        system = registry.register("db", Tier.HIGH, probe=probe)
        assert system.probe_descriptor is probe

    def test_register_requires_probe(self):
        registry = SystemRegistry()
        with pytest.raises(RegistryConfigError):
            registry.register("db", Tier.HIGH, probe=None)

    def test_by_tier(self):
        registry = SystemRegistry()
        registry.register("a", Tier.CRITICAL, probe=_Probe())
        registry.register("b", Tier.LOW, probe=_Probe())
        registry.register("c", Tier.CRITICAL, probe=_Probe())
        assert [s.id for s in registry.by_tier(Tier.CRITICAL)] == ["a", "c"]

    def test_each_row_has_its_own_lock(self):
        registry = SystemRegistry()
        registry.register("a", Tier.CRITICAL, probe=_Probe())
        registry.register("b", Tier.LOW, probe=_Probe())
        assert registry.lock("a") is not registry.lock("b")
        assert registry.lock("a") is registry.lock("a")


class TestManagedSystem:
    def test_set_score_clamps(self):
        system = ManagedSystem(id="a", tier=Tier.LOW)
        system.set_score(1.7)
        assert system.health_score == 1.0
        system.set_score(-0.2)
        assert system.health_score == 0.0

    def test_capabilities_not_serialised(self):
        system = ManagedSystem(id="a", tier=Tier.LOW, probe_descriptor=_Probe())
        dumped = system.model_dump()
        assert "probe_descriptor" not in dumped
        assert dumped["circuit_state"] == CircuitState.CLOSED


class TestDescriptors:
    def test_import_target(self):
        assert import_target("os.path:join") is os.path.join

    @pytest.mark.parametrize("target", ["os.path", "os:", ":join", "os:no_such_attr"])
    def test_import_target_rejects_bad_paths(self, target):
        with pytest.raises(RegistryConfigError):
            import_target(target)

    def test_build_probe_from_plain_function(self):
        probe = build_probe(DescriptorConfig(kind="callable", target="os:getcwd"))
        assert isinstance(probe, CallableProbe)

    def test_build_repair_command(self):
        repair = build_repair(DescriptorConfig(kind="command", target="true"))
        assert isinstance(repair, CommandRepair)

    def test_unknown_descriptor_kind_rejected(self):
        with pytest.raises(ValueError):
            DescriptorConfig(kind="grpc", target="x")

    @pytest.mark.asyncio
    async def test_callable_probe_runs_sync_function(self):
        probe = CallableProbe(lambda: 0.42)
        assert await probe.probe() == 0.42

    @pytest.mark.asyncio
    async def test_callable_probe_awaits_async_function(self):
        async def check() -> float:
            return 0.66

        assert await CallableProbe(check).probe() == 0.66

    @pytest.mark.asyncio
    async def test_command_probe_reads_score_from_stdout(self):
        assert await CommandProbe("echo 0.75").probe() == 0.75

    @pytest.mark.asyncio
    async def test_command_probe_defaults_to_healthy(self):
        assert await CommandProbe("echo ok").probe() == 1.0

    @pytest.mark.asyncio
    async def test_command_probe_nonzero_exit_fails(self):
        with pytest.raises(ProbeFailure):
            await CommandProbe("exit 3").probe()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("output", ["1.5", "-0.2", "nan", "inf"])
    async def test_command_probe_rejects_out_of_range_score(self, output):
        with pytest.raises(ProbeFailure, match="invalid score"):
            await CommandProbe(f"echo {output}").probe()

    @pytest.mark.asyncio
    async def test_command_probe_accepts_boundary_scores(self):
        assert await CommandProbe("echo 0").probe() == 0.0
        assert await CommandProbe("echo 1").probe() == 1.0

    @pytest.mark.asyncio
    async def test_timed_out_command_is_killed_and_reaped(self, tmp_path):
        pid_file = tmp_path / "pid"
        probe = CommandProbe(f"echo $$ > {pid_file}; exec sleep 30")
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(probe.probe(), 0.5)

        pid = int(pid_file.read_text())
        # A zombie still answers signal 0; only a reaped child is gone
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_command_repair_outcomes(self):
        assert (await CommandRepair("true").repair()).success is True
        failed = await CommandRepair("echo broken >&2; exit 1").repair()
        assert failed.success is False
        assert "broken" in failed.detail
