"""
Vigil -- Health Monitor

Probe scheduling, weighted aggregate health, per-cycle snapshots, and
the event bus every component publishes state transitions through.
"""

from vigil.systems.monitor.event_bus import EventBus, log_sink
from vigil.systems.monitor.health import HealthMonitor, aggregate_score
from vigil.systems.monitor.types import HealthSnapshot, VigilEvent, VigilEventType

__all__ = [
    "HealthMonitor",
    "EventBus",
    "aggregate_score",
    "log_sink",
    # Types
    "HealthSnapshot",
    "VigilEvent",
    "VigilEventType",
]
