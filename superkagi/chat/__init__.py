"""
Chat Service Module

Request normalization, the tool loop (streaming and non-streaming) and the
SSE emitter.
"""

from .chat_orchestrator import ChatOrchestrator
from .models import ChatPayload, ChatResult, StreamEvent, StreamMeta

__all__ = ["ChatOrchestrator", "ChatPayload", "ChatResult", "StreamEvent", "StreamMeta"]
