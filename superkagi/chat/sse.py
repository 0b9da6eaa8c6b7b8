"""
Server-sent event emitter.

The tool loop produces ``StreamEvent`` objects into an ``EventChannel``; the
emitter drains the channel as ``data: <json>\\n\\n`` frames. The stream opens
with a ``started`` meta frame, carries a keep-alive ping on a fixed interval
and always ends with ``data: [DONE]\\n\\n``, directly after an ``{error}``
frame when the producer fails.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncGenerator, Awaitable, Callable

from superkagi.chat.models import StreamEvent, StreamMeta
from superkagi.errors import ChannelClosedError

logger = logging.getLogger(__name__)

DONE_FRAME = "data: [DONE]\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
SSE_MEDIA_TYPE = "text/event-stream; charset=utf-8"

Producer = Callable[[Callable[[StreamEvent], Awaitable[None]]], Awaitable[StreamMeta | None]]


def format_frame(event: StreamEvent) -> str:
    return f"data: {event.to_json()}\n\n"


def error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


class EventChannel:
    """Single-consumer frame queue; sending after close raises ``ChannelClosedError``."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, frame: str) -> None:
        if self._closed:
            raise ChannelClosedError("SSE channel is closed")
        self._queue.put_nowait(frame)

    async def send(self, event: StreamEvent) -> None:
        self._put(format_frame(event))

    async def send_done(self) -> None:
        self._put(DONE_FRAME)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def receive(self) -> str | None:
        """Next frame, or ``None`` once the channel is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()


class SSEEmitter:
    """Turns a producer coroutine into a stream of SSE frames."""

    def __init__(
        self,
        producer: Producer,
        ping_interval: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.producer = producer
        self.ping_interval = ping_interval
        self.clock = clock

    async def _produce(self, channel: EventChannel) -> None:
        try:
            meta = await self.producer(channel.send)
            if meta is not None and not meta.is_empty():
                await channel.send(StreamEvent(meta=meta))
            await channel.send_done()
        except ChannelClosedError:
            logger.info("← Frontend: consumer went away, stopping producer")
        except Exception as e:
            logger.error("Streaming producer failed: %s", e)
            with contextlib.suppress(ChannelClosedError):
                await channel.send(StreamEvent(error=error_message(e)))
                await channel.send_done()
        finally:
            channel.close()

    async def _ping(self, channel: EventChannel) -> None:
        while not channel.closed:
            await asyncio.sleep(self.ping_interval)
            try:
                await channel.send(StreamEvent(meta=StreamMeta(ping=int(self.clock() * 1000))))
            except ChannelClosedError:
                return

    async def frames(self) -> AsyncGenerator[str]:
        """Yield encoded frames until the producer finishes or the consumer leaves."""
        channel = EventChannel()
        await channel.send(StreamEvent(meta=StreamMeta(status="started")))

        producer_task = asyncio.create_task(self._produce(channel))
        ping_task = asyncio.create_task(self._ping(channel))
        try:
            while True:
                frame = await channel.receive()
                if frame is None:
                    break
                yield frame
        finally:
            channel.close()
            for task in (producer_task, ping_task):
                task.cancel()
            for task in (producer_task, ping_task):
                with contextlib.suppress(asyncio.CancelledError):
                    await task
