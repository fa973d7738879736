"""Tests for EventBus and event types."""

from __future__ import annotations

import logging

import pytest

from arbor.events import EventBus, EventType, NodeEvent

# =========================================================================
# Helpers
# =========================================================================


async def _collecting_handler(events: list[NodeEvent], event: NodeEvent) -> None:
    events.append(event)


async def _failing_handler(event: NodeEvent) -> None:
    raise RuntimeError(f"boom on {event.node_ids}")


def _event(event_type: EventType = EventType.NODE_CREATED) -> NodeEvent:
    return NodeEvent(event_type, ("n1",), "alice", 1)


# =========================================================================
# Types
# =========================================================================


class TestEventTypes:
    def test_unique_values(self):
        values = [et.value for et in EventType]
        assert len(values) == len(set(values))

    def test_event_is_frozen(self):
        ev = _event()
        with pytest.raises(AttributeError):
            ev.count = 5  # type: ignore[misc]

    def test_defaults(self):
        ev = NodeEvent(EventType.NODE_PURGED, ("a", "b"))
        assert ev.user_id is None
        assert ev.count == 0


# =========================================================================
# EventBus
# =========================================================================


class TestEventBus:
    async def test_dispatch_by_type(self):
        bus = EventBus()
        created: list[NodeEvent] = []
        trashed: list[NodeEvent] = []
        bus.register(EventType.NODE_CREATED, lambda e: _collecting_handler(created, e))
        bus.register(EventType.NODE_TRASHED, lambda e: _collecting_handler(trashed, e))

        await bus.emit(_event(EventType.NODE_CREATED))
        assert len(created) == 1
        assert trashed == []

    async def test_wildcard_runs_after_typed(self):
        bus = EventBus()
        order: list[str] = []

        async def typed(event: NodeEvent) -> None:
            order.append("typed")

        async def wildcard(event: NodeEvent) -> None:
            order.append("any")

        bus.register(None, wildcard)
        bus.register(EventType.NODE_MOVED, typed)
        await bus.emit(_event(EventType.NODE_MOVED))
        await bus.emit(_event(EventType.NODE_CREATED))
        assert order == ["typed", "any", "any"]

    async def test_unregister_callback(self):
        bus = EventBus()
        seen: list[NodeEvent] = []

        async def handler(event: NodeEvent) -> None:
            seen.append(event)

        remove = bus.register(EventType.NODE_CREATED, handler)
        assert bus.handler_count == 1
        assert remove() is True
        assert remove() is False
        await bus.emit(_event())
        assert seen == []

    async def test_failing_handler_is_logged_not_raised(self, caplog: pytest.LogCaptureFixture):
        bus = EventBus()
        seen: list[NodeEvent] = []
        bus.register(EventType.NODE_CREATED, _failing_handler)
        bus.register(EventType.NODE_CREATED, lambda e: _collecting_handler(seen, e))

        with caplog.at_level(logging.WARNING, logger="arbor.events"):
            await bus.emit(_event())

        assert len(seen) == 1
        assert "failed for node_created" in caplog.text

    def test_clear(self):
        bus = EventBus()
        bus.register(EventType.NODE_CREATED, _failing_handler)
        bus.register(None, _failing_handler)
        bus.clear()
        assert bus.handler_count == 0
