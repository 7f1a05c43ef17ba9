"""
Vigil -- Repair Governor

The responder itself can be the problem. If twenty systems fail at
once, firing twenty repairs at the same moment only adds contention to
an already struggling host. The governor caps remediation globally
(5 concurrent repairs by default); extra requests wait FIFO for a slot.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from typing import Any

import structlog

logger = structlog.get_logger("vigil.systems.threats.governor")


class RepairGovernor:
    """Global cap on in-flight repair operations."""

    def __init__(self, max_concurrent: int = 5) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._max_concurrent = max_concurrent
        # asyncio.Semaphore wakes waiters in arrival order
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._active: int = 0
        self._waiting: int = 0
        self._peak_active: int = 0
        self._total_granted: int = 0
        self._logger = logger.bind(component="repair_governor")

    @contextlib.asynccontextmanager
    async def slot(self, system_id: str) -> AsyncIterator[None]:
        """Hold one repair slot for the duration of the block."""
        if self._semaphore.locked():
            self._logger.debug(
                "repair_queued",
                system_id=system_id,
                active=self._active,
                waiting=self._waiting + 1,
            )
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1

        self._active += 1
        self._total_granted += 1
        self._peak_active = max(self._peak_active, self._active)
        try:
            yield
        finally:
            self._active -= 1
            self._semaphore.release()

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return self._waiting

    @property
    def peak_active(self) -> int:
        return self._peak_active

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "max_concurrent": self._max_concurrent,
            "active": self._active,
            "waiting": self._waiting,
            "peak_active": self._peak_active,
            "total_granted": self._total_granted,
        }
