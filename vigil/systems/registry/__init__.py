"""
Vigil -- Registry

Static, config-loaded list of managed systems with their tier, probe
descriptor and repair descriptor. Leaf component; no dependencies.
"""

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
from vigil.systems.registry.types import (
    CircuitState,
    HealthProbe,
    ManagedSystem,
    ProbeSample,
    RepairAction,
    RepairOutcome,
)

__all__ = [
    "SystemRegistry",
    # Descriptors
    "CallableProbe",
    "CallableRepair",
    "CommandProbe",
    "CommandRepair",
    "build_probe",
    "build_repair",
    "import_target",
    # Types
    "CircuitState",
    "HealthProbe",
    "ManagedSystem",
    "ProbeSample",
    "RepairAction",
    "RepairOutcome",
]
