"""
Vigil -- Emergency Coordinator / Orchestrator

The global Normal/Emergency/Recovery state machine and the service that
wires the whole core together behind one status surface.
"""

from vigil.systems.emergency.coordinator import EmergencyCoordinator
from vigil.systems.emergency.service import VigilService
from vigil.systems.emergency.types import EmergencyMode, EmergencyState, EmergencyTrigger

__all__ = [
    "VigilService",
    "EmergencyCoordinator",
    # Types
    "EmergencyMode",
    "EmergencyState",
    "EmergencyTrigger",
]
