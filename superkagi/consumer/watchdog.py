"""Stall watchdog for the client stream."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class StallWatchdog:
    """
    Single periodic timer with period ``max(min_period, threshold / 6)``.

    ``watch()`` returns once more than ``threshold`` seconds have passed since
    the last ``touch()``; the caller then cancels the in-flight request.
    """

    def __init__(
        self,
        threshold: float,
        min_period: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        on_stall: Callable[[], None] | None = None,
    ) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.threshold = threshold
        self.period = max(min_period, threshold / 6)
        self._clock = clock
        self._on_stall = on_stall
        self.last_event_at = clock()
        self.stalled = False

    @classmethod
    def for_mode(cls, client_config: dict[str, float], deep_search: bool, **kwargs) -> StallWatchdog:  # type: ignore[no-untyped-def]
        """Watchdog with the normal or the deep-search threshold."""
        key = "deep_search_stall_threshold_seconds" if deep_search else "stall_threshold_seconds"
        return cls(client_config[key], min_period=client_config["min_watchdog_period_seconds"], **kwargs)

    def touch(self) -> None:
        self.last_event_at = self._clock()

    def idle_for(self) -> float:
        return self._clock() - self.last_event_at

    def check(self) -> bool:
        """One tick: True (and fires ``on_stall`` once) when stalled."""
        if not self.stalled and self.idle_for() > self.threshold:
            self.stalled = True
            logger.warning("Stream stalled: no event for %.1fs (threshold %.1fs)", self.idle_for(), self.threshold)
            if self._on_stall is not None:
                self._on_stall()
        return self.stalled

    async def watch(self) -> None:
        while not self.check():
            await asyncio.sleep(self.period)
