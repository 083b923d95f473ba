"""
Event bus for live session monitoring.

The pipeline publishes every TraceEvent here. Subscribers receive them through
their own unbounded asyncio.Queue, so publishing never blocks and a slow
consumer never stalls a session.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from llm_consensus.protocol.types import TraceEvent

logger = logging.getLogger(__name__)

EventListener = Callable[[TraceEvent], Any]

_CLOSED = object()


class EventSubscription:
    """Async iterator over the events of one session (or of all sessions).

    Iteration ends when the bound session closes or when :meth:`close` is
    called. Use as ``async for event in bus.subscribe(session.id): ...``.
    """

    def __init__(self, bus: EventBus, session_id: str | None) -> None:
        self._bus = bus
        self.session_id = session_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, item: Any) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    def close(self) -> None:
        """Stop receiving events; pending ones are still drained."""
        if self._closed:
            return
        self._queue.put_nowait(_CLOSED)
        self._closed = True
        self._bus._remove(self)

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> TraceEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        event: TraceEvent = item
        return event

    async def get(self, timeout: float | None = None) -> TraceEvent | None:
        """Return the next event, or None once the subscription has ended."""
        try:
            return await asyncio.wait_for(self.__anext__(), timeout)
        except StopAsyncIteration:
            return None


class EventBus:
    """Fan-out of trace events to queue subscribers and plain callbacks."""

    def __init__(self) -> None:
        self._subscriptions: list[EventSubscription] = []
        self._listeners: list[EventListener] = []

    def subscribe(self, session_id: str | None = None) -> EventSubscription:
        """Subscribe to one session's events, or to every session when None."""
        subscription = EventSubscription(self, session_id)
        self._subscriptions.append(subscription)
        return subscription

    def add_listener(self, listener: EventListener) -> None:
        """Register a synchronous callback invoked for every event."""
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: TraceEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.session_id in (None, event.session_id):
                subscription._deliver(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning("Event listener %r failed", listener, exc_info=True)

    def close_session(self, session_id: str) -> None:
        """End every subscription bound to ``session_id``."""
        for subscription in list(self._subscriptions):
            if subscription.session_id == session_id:
                subscription.close()

    def subscriber_count(self, session_id: str | None = None) -> int:
        if session_id is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions if s.session_id == session_id)

    def _remove(self, subscription: EventSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)


__all__ = ["EventBus", "EventListener", "EventSubscription"]
