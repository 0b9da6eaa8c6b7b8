"""
Chat session: turns a user send into a finalized assistant message.

Builds the user message (attachments included), appends it with a pending
assistant message, then drives the stream consumer under a stall watchdog,
with the fallback executor behind it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field

from superkagi.chat.models import ChatPayload, Content
from superkagi.chat.normalizer import normalize_content
from superkagi.config import ChatDefaults, Provider, resolve_provider
from superkagi.consumer.fallback import FallbackExecutor
from superkagi.consumer.notices import NoticeBoard
from superkagi.consumer.stream_consumer import StreamConsumer
from superkagi.consumer.thread_store import ThreadMessage, ThreadStore
from superkagi.consumer.watchdog import StallWatchdog

logger = logging.getLogger(__name__)

DEEP_SEARCH_PROMPT = (
    "\nUse web search/browsing MCP tools to gather and verify up-to-date information. "
    "Prefer calling tools to fetch pages; summarize with concise bullet points and include source names."
)
SEARCH_PREFIX = "Search for: "
ATTACHMENTS_ONLY_QUERY = "information related to the attached files"
_SEARCH_MARKERS = ("search for:", "search:")
_IMAGE_PROVIDERS = {"openrouter", "nanogpt"}


class Attachment(BaseModel):
    """A file or note attached to a user message."""

    kind: Literal["image", "text", "note"]
    name: str = ""
    data_url: str | None = None
    text: str | None = None


class ClientSettings(BaseModel):
    """What the user picked in the client; unset fields fall back to server defaults."""

    model_config = ConfigDict(extra="ignore")

    provider: Provider = "local"
    model: str | None = None
    api_key: str | None = None
    local_url: str | None = None
    system_prompt: str | None = None
    deep_search: bool = False

    @classmethod
    def from_defaults(cls, defaults: ChatDefaults, **overrides: Any) -> ClientSettings:
        provider = resolve_provider(overrides.pop("provider", None) or defaults.provider)
        values: dict[str, Any] = {
            "provider": provider,
            "model": defaults.default_model(provider),
            "local_url": defaults.local_url,
            "system_prompt": defaults.system_prompt,
            "deep_search": defaults.deep_search,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def apply_search_prefix(text: str, has_attachments: bool) -> str:
    """Prefix the query for deep search unless it already reads as one."""
    stripped = text.strip()
    if not stripped:
        return SEARCH_PREFIX + ATTACHMENTS_ONLY_QUERY if has_attachments else text
    if stripped.lower().startswith(_SEARCH_MARKERS):
        return text
    return SEARCH_PREFIX + text


def build_user_content(text: str, attachments: list[Attachment], provider: Provider) -> Content:
    """Text first, then one part per attachment; a lone text part collapses to a string."""
    parts: list[dict[str, Any]] = []
    if text:
        parts.append({"type": "text", "text": text})
    for attachment in attachments:
        if attachment.kind == "image":
            if provider in _IMAGE_PROVIDERS and attachment.data_url:
                parts.append({"type": "image_url", "image_url": {"url": attachment.data_url}})
            else:
                parts.append({"type": "text", "text": f"[Image attached: {attachment.name}]"})
        elif attachment.kind == "text":
            parts.append({"type": "text", "text": f"File {attachment.name}:\n{attachment.text or ''}"})
        else:
            parts.append({"type": "text", "text": attachment.text or ""})
    return normalize_content(parts)


class ChatSession:
    """Client-side send path over one HTTP connection to the chat server."""

    def __init__(
        self,
        store: ThreadStore,
        notices: NoticeBoard,
        http: httpx.AsyncClient,
        settings: ClientSettings,
        client_config: dict[str, Any],
    ) -> None:
        self.store = store
        self.notices = notices
        self.http = http
        self.settings = settings
        self.client_config = client_config
        self.fallback = FallbackExecutor(
            store, notices, http, timeout=client_config.get("fallback_timeout_seconds", 300.0)
        )
        self.consumer = StreamConsumer(store, notices, http, self.fallback)

    def system_prompt(self) -> str | None:
        prompt = self.settings.system_prompt or ""
        if self.settings.deep_search:
            prompt += DEEP_SEARCH_PROMPT
        return prompt or None

    def build_payload(self, thread_id: str) -> dict[str, Any]:
        """Request body for both endpoints from the thread's finalized messages."""
        payload = ChatPayload(
            messages=self.store.request_messages(thread_id),
            provider=self.settings.provider,
            model=self.settings.model,
            api_key=self.settings.api_key,
            local_url=self.settings.local_url,
            system_prompt=self.system_prompt(),
            deep_search=self.settings.deep_search,
        )
        return payload.to_wire()

    async def send(
        self,
        thread_id: str,
        text: str,
        attachments: list[Attachment] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ThreadMessage | None:
        """
        Send one user turn and return the finalized assistant message.

        Never raises: failures end as a finalized message (error set) plus a
        notice. A blank turn with no attachments is ignored and returns None.
        While a reply is still in progress the send is refused with a notice
        and that pending message is returned unchanged.
        """
        attachments = attachments or []
        if not text.strip() and not attachments:
            logger.debug("Ignoring empty send on thread %s", thread_id)
            return None

        existing = self.store.pending_assistant(thread_id)
        if existing is not None:
            self.notices.post("A reply is still in progress.")
            return existing

        if self.settings.deep_search:
            text = apply_search_prefix(text, bool(attachments))

        user = ThreadMessage(role="user", content=build_user_content(text, attachments, self.settings.provider))
        self.store.append(thread_id, user)
        payload = self.build_payload(thread_id)
        pending = self.store.append(thread_id, ThreadMessage(role="assistant", content="", pending=True))

        watchdog = StallWatchdog.for_mode(self.client_config, self.settings.deep_search)
        try:
            return await self.consumer.consume(thread_id, pending.id, payload, watchdog, cancel)
        except Exception as e:
            msg = str(e) or type(e).__name__
            logger.error("Send failed: %s", msg)
            self.notices.post(f"Send failed: {msg}")
            return self.store.update(
                thread_id, pending.id, content=f"Error: {msg}", error=msg, pending=False
            )
