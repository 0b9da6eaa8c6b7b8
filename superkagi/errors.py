"""Exception types shared by the chat service and its clients."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for chat pipeline failures."""


class ProviderConfigError(ChatError):
    """Raised when a provider cannot be used with the resolved configuration."""


class ProviderError(ChatError):
    """Raised when the upstream LLM provider fails or answers malformed data."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ToolExecutionError(ChatError):
    """Raised when a tool invocation fails or reports an error result."""


class ChannelClosedError(ChatError):
    """Raised when an event is sent to an already closed SSE channel."""


class ThreadStateError(ChatError):
    """Raised when a thread mutation would leave the thread in an invalid state."""
