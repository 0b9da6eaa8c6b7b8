"""
Stream Consumer

Reads the SSE stream of the chat endpoint and folds every event into the
pending assistant message. Reading, the stall watchdog and an optional caller
cancel race each other; whichever finishes first decides how the message is
finalized:

- ``[DONE]`` with content: finalize normally
- ``[DONE]`` without content: fallback
- ``{error}`` frame: finalize with the error, then fallback
- stream could not be opened: notice, then fallback
- EOF, transport failure, stall or cancel: interrupted when content arrived,
  otherwise fallback
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
from enum import Enum
from typing import Any

import httpx

from superkagi.consumer.fallback import FallbackExecutor, numeric_cost
from superkagi.consumer.notices import NoticeBoard
from superkagi.consumer.thread_store import ThreadMessage, ThreadStore
from superkagi.consumer.watchdog import StallWatchdog

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
INTERRUPTED_NOTE = "content may be incomplete"


class StreamEnd(str, Enum):
    DONE = "done"
    ERROR = "error"
    EOF = "eof"
    OPEN_FAILED = "open_failed"
    TRANSPORT_ERROR = "transport_error"
    STALLED = "stalled"
    CANCELLED = "cancelled"


class SSEDecoder:
    """Incremental UTF-8 decoder that yields the ``data:`` payload of each complete frame."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")
        payloads: list[str] = []
        while "\n\n" in self._buffer:
            frame, self._buffer = self._buffer.split("\n\n", 1)
            data_lines = [line[5:].lstrip(" ") for line in frame.split("\n") if line.startswith("data:")]
            if data_lines:
                payloads.append("\n".join(data_lines))
        return payloads


class PendingReply:
    """Accumulated state of the message being streamed."""

    def __init__(self) -> None:
        self.content = ""
        self.reasoning = ""
        self.reasoning_details: Any = None
        self.cost: float | None = None
        self.received_content = False

    def fold(self, event: dict[str, Any]) -> None:
        meta = event.get("meta")
        if isinstance(meta, dict):
            cost = numeric_cost(meta.get("cost"))
            if cost is not None:
                self.cost = cost
        reasoning = event.get("reasoning")
        if isinstance(reasoning, str):
            self.reasoning += reasoning
        if "reasoning_details" in event:
            self.reasoning_details = event["reasoning_details"]
        content = event.get("content")
        if isinstance(content, str):
            self.content += content
            if content:
                self.received_content = True

    def changes(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "reasoning": self.reasoning or None,
            "reasoning_details": self.reasoning_details,
            "cost": self.cost,
        }


class StreamConsumer:
    """Consumes one streamed reply into the thread store."""

    def __init__(
        self,
        store: ThreadStore,
        notices: NoticeBoard,
        http: httpx.AsyncClient,
        fallback: FallbackExecutor,
        endpoint: str = "/api/chat/stream",
    ) -> None:
        self.store = store
        self.notices = notices
        self.http = http
        self.fallback = fallback
        self.endpoint = endpoint

    async def _read(
        self,
        thread_id: str,
        message_id: str,
        payload: dict[str, Any],
        reply: PendingReply,
        watchdog: StallWatchdog,
    ) -> tuple[StreamEnd, str | None]:
        decoder = SSEDecoder()
        try:
            async with self.http.stream("POST", self.endpoint, json=payload, timeout=None) as response:
                if response.status_code >= 400:
                    return StreamEnd.OPEN_FAILED, str(response.status_code)
                logger.info("← Stream: opened %s", self.endpoint)
                async for chunk in response.aiter_bytes():
                    for data in decoder.feed(chunk):
                        if data == DONE_SENTINEL:
                            return StreamEnd.DONE, None
                        try:
                            event = json.loads(data)
                        except json.JSONDecodeError:
                            logger.warning("Skipping malformed stream event: %s", data[:200])
                            continue
                        if not isinstance(event, dict):
                            continue
                        watchdog.touch()
                        if "error" in event:
                            return StreamEnd.ERROR, str(event["error"])
                        reply.fold(event)
                        self.store.update(thread_id, message_id, **reply.changes())
        except httpx.HTTPError as e:
            return StreamEnd.TRANSPORT_ERROR, str(e) or type(e).__name__
        return StreamEnd.EOF, None

    async def _race(
        self,
        thread_id: str,
        message_id: str,
        payload: dict[str, Any],
        reply: PendingReply,
        watchdog: StallWatchdog,
        cancel: asyncio.Event | None,
    ) -> tuple[StreamEnd, str | None]:
        read_task = asyncio.create_task(self._read(thread_id, message_id, payload, reply, watchdog))
        watch_task = asyncio.create_task(watchdog.watch())
        tasks: set[asyncio.Task[Any]] = {read_task, watch_task}
        cancel_task = None
        if cancel is not None:
            cancel_task = asyncio.create_task(cancel.wait())
            tasks.add(cancel_task)

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if read_task in done:
            return read_task.result()
        if watch_task in done:
            return StreamEnd.STALLED, None
        return StreamEnd.CANCELLED, None

    async def consume(
        self,
        thread_id: str,
        message_id: str,
        payload: dict[str, Any],
        watchdog: StallWatchdog,
        cancel: asyncio.Event | None = None,
    ) -> ThreadMessage:
        """Stream ``payload`` into ``message_id`` and finalize it exactly once."""
        reply = PendingReply()
        end, detail = await self._race(thread_id, message_id, payload, reply, watchdog, cancel)
        logger.info("Stream ended: %s (content received: %s)", end.value, reply.received_content)

        if end is StreamEnd.DONE:
            if reply.received_content:
                return self.store.update(
                    thread_id, message_id, **reply.changes(), pending=False, error=None, interrupted=False
                )
            return await self.fallback.run(thread_id, message_id, payload)

        if end is StreamEnd.ERROR:
            self.store.update(thread_id, message_id, **reply.changes(), pending=False, error=detail)
            return await self.fallback.run(thread_id, message_id, payload)

        if end is StreamEnd.OPEN_FAILED:
            self.notices.post(f"Streaming failed ({detail}), retrying with fallback.")
            return await self.fallback.run(thread_id, message_id, payload)

        if reply.received_content:
            logger.warning("Stream %s after partial content, keeping it", end.value)
            return self.store.update(
                thread_id,
                message_id,
                **reply.changes(),
                pending=False,
                interrupted=True,
                error=INTERRUPTED_NOTE,
            )

        if end is StreamEnd.TRANSPORT_ERROR:
            self.notices.post(f"Streaming failed ({detail}), retrying with fallback.")
        return await self.fallback.run(thread_id, message_id, payload)
