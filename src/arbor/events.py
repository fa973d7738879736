"""EventBus and event types for post-commit notifications."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    Handler = Callable[["NodeEvent"], Awaitable[Any]]

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Node mutations announced after their transaction commits."""

    NODE_CREATED = "node_created"
    NODE_MOVED = "node_moved"
    NODE_TRASHED = "node_trashed"
    NODE_RESTORED = "node_restored"
    NODE_PURGED = "node_purged"
    SHARE_CHANGED = "share_changed"


@dataclass(frozen=True, slots=True)
class NodeEvent:
    """Immutable record of a committed mutation.

    Attributes:
        event_type: The kind of mutation that occurred.
        node_ids: Ids of the nodes the operation targeted.
        user_id: The user who performed it.
        count: Rows affected, including cascaded descendants.
    """

    event_type: EventType
    node_ids: tuple[str, ...]
    user_id: str | None = None
    count: int = 0


class EventBus:
    """Dispatches node events to registered handlers.

    Handlers for a specific type run first, in registration order, then
    handlers registered for every type (``event_type=None``).  A failing
    handler is logged and skipped; the mutation has already committed.
    """

    def __init__(self) -> None:
        self._typed: defaultdict[EventType, list[Handler]] = defaultdict(list)
        self._any: list[Handler] = []

    def _bucket(self, event_type: EventType | None) -> list[Handler]:
        return self._any if event_type is None else self._typed[event_type]

    def register(self, event_type: EventType | None, handler: Handler) -> Callable[[], bool]:
        """Subscribe *handler* to *event_type* (None = all). Returns an unsubscribe callback."""
        self._bucket(event_type).append(handler)
        return partial(self.unregister, event_type, handler)

    def unregister(self, event_type: EventType | None, handler: Handler) -> bool:
        """Drop the first subscription of *handler*; False if it was not subscribed."""
        bucket = self._bucket(event_type)
        if handler not in bucket:
            return False
        bucket.remove(handler)
        return True

    async def emit(self, event: NodeEvent) -> None:
        for handler in (*self._typed.get(event.event_type, ()), *self._any):
            try:
                await handler(event)
            except Exception:
                logger.warning(
                    "Event handler %r failed for %s (nodes: %s)",
                    handler,
                    event.event_type.value,
                    ", ".join(event.node_ids),
                    exc_info=True,
                )

    @property
    def handler_count(self) -> int:
        return len(self._any) + sum(map(len, self._typed.values()))

    def clear(self) -> None:
        self._typed.clear()
        self._any.clear()
