"""In-memory thread store mutated by the stream consumer and fallback path."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, Field

from superkagi.chat.models import Content
from superkagi.errors import ThreadStateError

logger = logging.getLogger(__name__)

Listener = Callable[[str, "ThreadMessage"], None]


def new_message_id() -> str:
    return uuid.uuid4().hex


class ThreadMessage(BaseModel):
    """One message of a thread as the client sees it."""

    id: str = Field(default_factory=new_message_id)
    role: Literal["user", "assistant", "tool"] = "user"
    content: Content = ""
    pending: bool = False
    error: str | None = None
    interrupted: bool = False
    created_at: float = Field(default_factory=time.time)
    reasoning: str | None = None
    reasoning_details: Any = None
    cost: float | None = None
    tool_call_id: str | None = None

    def to_request_message(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        return msg


class ThreadStore:
    """
    Ordered messages per thread id.

    Messages are only ever replaced whole; every change notifies the
    subscribers. At most one pending assistant message may exist per thread.
    """

    def __init__(self) -> None:
        self._threads: dict[str, list[ThreadMessage]] = {}
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns the unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, thread_id: str, message: ThreadMessage) -> None:
        for listener in list(self._listeners):
            listener(thread_id, message)

    def thread(self, thread_id: str) -> list[ThreadMessage]:
        return list(self._threads.get(thread_id, []))

    def thread_ids(self) -> list[str]:
        return list(self._threads)

    def get(self, thread_id: str, message_id: str) -> ThreadMessage | None:
        for msg in self._threads.get(thread_id, []):
            if msg.id == message_id:
                return msg
        return None

    def pending_assistant(self, thread_id: str) -> ThreadMessage | None:
        for msg in self._threads.get(thread_id, []):
            if msg.pending and msg.role == "assistant":
                return msg
        return None

    def append(self, thread_id: str, message: ThreadMessage) -> ThreadMessage:
        """
        Append a message.

        Raises:
            ThreadStateError: If it is a pending assistant message and the thread
                already has one.
        """
        if message.pending and message.role == "assistant" and self.pending_assistant(thread_id):
            raise ThreadStateError(f"Thread {thread_id} already has a pending assistant message")
        self._threads.setdefault(thread_id, []).append(message)
        self._notify(thread_id, message)
        return message

    def update(self, thread_id: str, message_id: str, **changes: Any) -> ThreadMessage:
        """
        Replace one message with a copy carrying ``changes``.

        Raises:
            KeyError: If the message does not exist.
        """
        thread = self._threads.get(thread_id, [])
        for index, msg in enumerate(thread):
            if msg.id == message_id:
                replaced = msg.model_copy(update=changes)
                thread[index] = replaced
                self._notify(thread_id, replaced)
                return replaced
        raise KeyError(f"Message {message_id} not found in thread {thread_id}")

    def request_messages(self, thread_id: str) -> list[dict[str, Any]]:
        """Non-pending messages in request shape."""
        return [m.to_request_message() for m in self._threads.get(thread_id, []) if not m.pending]
