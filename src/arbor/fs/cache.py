"""Signed-URL cache abstraction and an in-process TTL implementation.

Signed URLs are cached per ``(kind, node_id, requester_id)`` for slightly
less than their own validity window, so repeat requests reuse a signature
that is still valid.  A multi-instance deployment plugs a shared cache in
behind the same protocol.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, str]


@runtime_checkable
class UrlCache(Protocol):
    async def get(self, key: CacheKey) -> str | None: ...

    async def set(self, key: CacheKey, url: str, ttl: float) -> None: ...

    async def invalidate_node(self, node_id: str) -> int:
        """Drop every cached URL for *node_id*. Returns the number dropped."""
        ...


class TTLUrlCache:
    """Bounded in-process cache with per-entry expiry.

    Oldest entries are evicted first once ``max_entries`` is reached.
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[CacheKey, tuple[float, str]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: CacheKey) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires, url = entry
        if expires <= self._clock():
            del self._entries[key]
            return None
        logger.debug("URL cache hit for %s/%s", key[0], key[1])
        return url

    async def set(self, key: CacheKey, url: str, ttl: float) -> None:
        if ttl <= 0:
            return
        self._entries.pop(key, None)
        self._entries[key] = (self._clock() + ttl, url)
        self._evict()

    async def invalidate_node(self, node_id: str) -> int:
        stale = [k for k in self._entries if k[1] == node_id]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def _evict(self) -> None:
        now = self._clock()
        for k in [k for k, (exp, _) in self._entries.items() if exp <= now]:
            del self._entries[k]
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
