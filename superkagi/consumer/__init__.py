"""
Client-side stream consumption: thread state, stall watchdog, SSE stream
consumer and the synchronous fallback path.
"""

from .fallback import FallbackExecutor
from .notices import NoticeBoard
from .session import ChatSession, ClientSettings
from .stream_consumer import StreamConsumer
from .thread_store import ThreadMessage, ThreadStore
from .watchdog import StallWatchdog

__all__ = [
    "ChatSession",
    "ClientSettings",
    "FallbackExecutor",
    "NoticeBoard",
    "StallWatchdog",
    "StreamConsumer",
    "ThreadMessage",
    "ThreadStore",
]
