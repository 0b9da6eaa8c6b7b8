"""
Read-through TTL cache with in-flight request sharing.

Used for the MCP tool catalog and the OpenRouter model catalog. A miss or a
stale entry starts exactly one loader call per key; concurrent callers for the
same key await that same call instead of hitting the upstream again. Failed
loads are never cached.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    value: T
    expires_at: float


class TTLCache(Generic[T]):
    """Keyed TTL cache; construct one per cached resource and inject it."""

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._entries: dict[Hashable, _Entry[T]] = {}
        self._in_flight: dict[Hashable, asyncio.Task[T]] = {}

    def get(self, key: Hashable) -> T | None:
        """Return a fresh cached value or ``None`` without loading."""
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry.value

    def put(self, key: Hashable, value: T) -> None:
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + self.ttl_seconds)

    def invalidate(self, key: Hashable | None = None) -> None:
        """Drop one key, or everything when ``key`` is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[T]]) -> T:
        """
        Return the cached value for ``key``, loading it at most once concurrently.

        The load runs in its own task; a cancelled caller stops waiting but
        leaves the load running for everyone else.
        """
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > self._clock():
            logger.debug("%s hit: %s", self.name, key)
            return entry.value

        task = self._in_flight.get(key)
        if task is None:
            logger.debug("%s miss: %s", self.name, key)
            task = asyncio.ensure_future(self._load(key, loader))
            task.add_done_callback(_retrieve_exception)
            self._in_flight[key] = task
        else:
            logger.debug("%s joining in-flight load: %s", self.name, key)
        return await asyncio.shield(task)

    async def _load(self, key: Hashable, loader: Callable[[], Awaitable[T]]) -> T:
        try:
            value = await loader()
            self.put(key, value)
            return value
        finally:
            self._in_flight.pop(key, None)

    def stats(self) -> dict[str, Any]:
        return {"entries": len(self._entries), "in_flight": len(self._in_flight)}


def _retrieve_exception(task: asyncio.Task[Any]) -> None:
    # A load whose callers all went away must not report an unobserved failure
    if not task.cancelled():
        task.exception()
