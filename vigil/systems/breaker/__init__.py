"""
Vigil -- Circuit Breaker & Fallback Manager

Wraps every probe and repair invocation per system, tracks failure
streaks and open/half_open/closed state, and supplies fallback values
while a circuit is open.
"""

from vigil.systems.breaker.breaker import CircuitBreaker
from vigil.systems.breaker.manager import (
    CircuitBreakerManager,
    normalise_probe_result,
    normalise_repair_result,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerManager",
    "normalise_probe_result",
    "normalise_repair_result",
]
