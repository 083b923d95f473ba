"""Tests for the event bus."""

from __future__ import annotations

import asyncio

import pytest

from llm_consensus.engine.events import EventBus
from llm_consensus.protocol.types import TraceEvent, TraceEventType


def _event(session_id: str, event_type: TraceEventType = TraceEventType.STAGE_START) -> TraceEvent:
    return TraceEvent(session_id=session_id, type=event_type)


class TestEventBus:
    """Tests for EventBus and EventSubscription."""

    @pytest.mark.asyncio
    async def test_session_subscription_filters(self):
        bus = EventBus()
        subscription = bus.subscribe("s1")

        bus.publish(_event("s2"))
        bus.publish(_event("s1", TraceEventType.SESSION_START))
        bus.close_session("s1")

        received = [event async for event in subscription]
        assert [e.type for e in received] == [TraceEventType.SESSION_START]
        assert subscription.closed

    @pytest.mark.asyncio
    async def test_global_subscription_sees_everything(self):
        bus = EventBus()
        subscription = bus.subscribe()

        bus.publish(_event("s1"))
        bus.publish(_event("s2"))

        first = await subscription.get(timeout=1)
        second = await subscription.get(timeout=1)
        assert (first.session_id, second.session_id) == ("s1", "s2")

        # closing one session does not end a global subscription
        bus.close_session("s1")
        assert not subscription.closed

    @pytest.mark.asyncio
    async def test_get_after_close_returns_none(self):
        bus = EventBus()
        subscription = bus.subscribe("s1")
        subscription.close()

        assert await subscription.get(timeout=1) is None
        assert bus.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_get_times_out(self):
        subscription = EventBus().subscribe("s1")

        with pytest.raises(asyncio.TimeoutError):
            await subscription.get(timeout=0.01)

    @pytest.mark.asyncio
    async def test_close_keeps_pending_events(self):
        bus = EventBus()
        subscription = bus.subscribe("s1")
        bus.publish(_event("s1"))
        subscription.close()
        bus.publish(_event("s1"))

        received = [event async for event in subscription]
        assert len(received) == 1

    def test_listeners(self):
        bus = EventBus()
        seen = []
        bus.add_listener(seen.append)

        bus.publish(_event("s1"))
        bus.remove_listener(seen.append)
        bus.publish(_event("s1"))

        assert len(seen) == 1

    def test_failing_listener_does_not_block_others(self, caplog):
        bus = EventBus()
        seen = []

        def broken(_event):
            raise RuntimeError("listener bug")

        bus.add_listener(broken)
        bus.add_listener(seen.append)
        bus.publish(_event("s1"))

        assert len(seen) == 1
        assert "failed" in caplog.text

    def test_subscriber_count(self):
        bus = EventBus()
        bus.subscribe("s1")
        bus.subscribe("s1")
        bus.subscribe("s2")

        assert bus.subscriber_count() == 3
        assert bus.subscriber_count("s1") == 2
