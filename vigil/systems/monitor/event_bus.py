"""
Vigil -- Event Bus

Dual-output event publication: in-memory callbacks for internal
coordination plus external sinks (log/alerting channels) that receive
the flat structured record. The core never delivers notifications
itself; sinks do.

High-frequency events (HEALTH_SNAPSHOT every tick) skip catch-all
callbacks and are logged at debug level.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from collections.abc import Callable, Coroutine
from typing import Any

import structlog

from vigil.systems.monitor.types import VigilEvent, VigilEventType

logger = structlog.get_logger("vigil.systems.monitor.event_bus")
_event_logger = structlog.get_logger("vigil.events")

# Callback signature: async def handler(event: VigilEvent) -> None
EventCallback = Callable[[VigilEvent], Coroutine[Any, Any, None]]

# Sink signature: async def sink(record: dict[str, Any]) -> None
EventSink = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]

# Events that fire every tick -- too noisy for catch-all callbacks
_HIGH_FREQUENCY_EVENTS: frozenset[VigilEventType] = frozenset({
    VigilEventType.HEALTH_SNAPSHOT,
})

# Maximum time a callback or sink gets before we log a warning and move on
_CALLBACK_TIMEOUT_S: float = 1.0

# Maximum recent events to keep in the ring buffer per event type
_RECENT_BUFFER_SIZE: int = 100


async def log_sink(record: dict[str, Any]) -> None:
    """Default external sink: one structured log line per event."""
    if record["type"] in _HIGH_FREQUENCY_EVENTS:
        _event_logger.debug(record["type"], **_flatten(record))
    else:
        _event_logger.info(record["type"], **_flatten(record))


def _flatten(record: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in record.items() if k != "type"}


class EventBus:
    """
    Vigil event bus.

    Provides two delivery mechanisms:
    1. In-memory async callbacks -- for internal coordination (low latency)
    2. External sinks -- for log/alerting consumers (flat JSON records)
    """

    def __init__(self, sinks: list[EventSink] | None = None) -> None:
        self._sinks: list[EventSink] = list(sinks) if sinks is not None else [log_sink]
        self._logger = logger.bind(component="event_bus")

        # Per-type callback registrations
        self._subscribers: dict[VigilEventType, list[EventCallback]] = defaultdict(list)
        # Catch-all subscribers (receive every event)
        self._global_subscribers: list[EventCallback] = []

        # Ring buffers for recent event history
        self._recent: dict[VigilEventType, deque[VigilEvent]] = defaultdict(
            lambda: deque(maxlen=_RECENT_BUFFER_SIZE)
        )

        # Metrics
        self._total_emitted: int = 0
        self._total_sink_failures: int = 0
        self._total_callback_timeouts: int = 0

    # ─── Subscription ────────────────────────────────────────────────

    def subscribe(
        self,
        event_type: VigilEventType,
        callback: EventCallback,
    ) -> None:
        """Register a callback for a specific event type."""
        self._subscribers[event_type].append(callback)

    def subscribe_all(self, callback: EventCallback) -> None:
        """Register a callback that receives every event (except high-frequency)."""
        self._global_subscribers.append(callback)

    def add_sink(self, sink: EventSink) -> None:
        """Attach another external sink."""
        self._sinks.append(sink)

    # ─── Emission ────────────────────────────────────────────────────

    async def emit(self, event: VigilEvent) -> None:
        """
        Publish an event to all registered listeners.

        In-memory callbacks fire first (with timeout protection),
        then the external sinks (failure-tolerant).
        """
        self._total_emitted += 1
        self._recent[event.event_type].append(event)

        callbacks = list(self._subscribers.get(event.event_type, []))
        if event.event_type not in _HIGH_FREQUENCY_EVENTS:
            callbacks.extend(self._global_subscribers)

        if callbacks:
            await self._dispatch_callbacks(callbacks, event)

        await self._publish_sinks(event)

    async def _dispatch_callbacks(
        self,
        callbacks: list[EventCallback],
        event: VigilEvent,
    ) -> None:
        """Dispatch event to callbacks with per-callback timeout protection."""
        for callback in callbacks:
            try:
                await asyncio.wait_for(
                    callback(event),
                    timeout=_CALLBACK_TIMEOUT_S,
                )
            except TimeoutError:
                self._total_callback_timeouts += 1
                self._logger.warning(
                    "event_callback_timeout",
                    event_type=event.event_type.value,
                    callback=getattr(callback, "__name__", str(callback)),
                )
            except Exception as exc:
                self._logger.error(
                    "event_callback_error",
                    event_type=event.event_type.value,
                    error=str(exc),
                )

    async def _publish_sinks(self, event: VigilEvent) -> None:
        """Hand the flat record to every sink. Failure is logged but never blocks."""
        if not self._sinks:
            return

        record = event.to_record()
        for sink in self._sinks:
            try:
                await asyncio.wait_for(sink(record), timeout=_CALLBACK_TIMEOUT_S)
            except Exception as exc:
                self._total_sink_failures += 1
                self._logger.warning(
                    "event_sink_failed",
                    event_type=event.event_type.value,
                    error=str(exc),
                )

    # ─── Query ───────────────────────────────────────────────────────

    def recent(
        self,
        event_type: VigilEventType | None = None,
        limit: int = 10,
    ) -> list[VigilEvent]:
        """Return recent events (most recent first), optionally of one type."""
        if event_type is not None:
            items = list(self._recent.get(event_type, ()))
        else:
            items = [e for buf in self._recent.values() for e in buf]
            items.sort(key=lambda e: e.timestamp)
        items.reverse()
        return items[:limit]

    # ─── Stats ───────────────────────────────────────────────────────

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_emitted": self._total_emitted,
            "sink_failures": self._total_sink_failures,
            "callback_timeouts": self._total_callback_timeouts,
            "subscriber_count": sum(
                len(v) for v in self._subscribers.values()
            ) + len(self._global_subscribers),
            "recent_buffer_sizes": {
                et.value: len(buf) for et, buf in self._recent.items()
            },
        }
