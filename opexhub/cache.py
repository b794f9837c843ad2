"""Keyed query cache.

Keys are tuples whose first element names the query family, e.g.
``("workflow-transactions", 12)``.  Entries expire after the family's TTL and
are dropped wholesale by ``invalidate`` after a successful mutation.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from typing import Any

log = logging.getLogger(__name__)

Key = tuple[Hashable, ...]


class QueryCache:
    def __init__(self, ttl_for: Callable[[str], float] | None = None, clock: Callable[[], float] = time.monotonic):
        self._ttl_for = ttl_for or (lambda family: 120.0)
        self._clock = clock
        self._entries: dict[Key, tuple[float, Any]] = {}

    def get(self, key: Key) -> Any | None:
        hit = self._entries.get(key)
        if hit is None:
            return None
        expires, value = hit
        if self._clock() >= expires:
            del self._entries[key]
            return None
        return value

    def set(self, key: Key, value: Any) -> None:
        self._entries[key] = (self._clock() + self._ttl_for(str(key[0])), value)

    def __contains__(self, key: Key) -> bool:
        return self.get(key) is not None

    async def get_or_fetch(self, key: Key, fetch: Callable[[], Awaitable[Any]]) -> Any:
        value = self.get(key)
        if value is None:
            value = await fetch()
            self.set(key, value)
        return value

    def invalidate(self, *families: str) -> int:
        """Drop every entry whose family is listed; returns how many were dropped."""
        doomed = [k for k in self._entries if k[0] in families]
        for key in doomed:
            del self._entries[key]
        if doomed:
            log.debug("Invalidated %d cached queries (%s)", len(doomed), ", ".join(families))
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()
