"""
Fallback Executor

One synchronous request to the non-streaming endpoint, used when the stream
failed to produce content. Finalizes the pending message from the single
response, or with an error string plus a notice when that request fails too.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from superkagi.consumer.notices import NoticeBoard
from superkagi.consumer.thread_store import ThreadMessage, ThreadStore
from superkagi.errors import ChatError

logger = logging.getLogger(__name__)


def numeric_cost(value: Any) -> float | None:
    if isinstance(value, int | float) and not isinstance(value, bool):
        return float(value)
    return None


class FallbackExecutor:
    """Runs at most one fallback per message id; repeat calls are refused."""

    def __init__(
        self,
        store: ThreadStore,
        notices: NoticeBoard,
        http: httpx.AsyncClient,
        endpoint: str = "/api/chat",
        timeout: float = 300.0,
    ) -> None:
        self.store = store
        self.notices = notices
        self.http = http
        self.endpoint = endpoint
        self.timeout = timeout
        self._attempted: set[str] = set()

    def attempted(self, message_id: str) -> bool:
        return message_id in self._attempted

    async def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        logger.info("→ Fallback: POST %s", self.endpoint)
        response = await self.http.post(self.endpoint, json=payload, timeout=self.timeout)
        if response.status_code >= 400:
            raise ChatError(f"Fallback request failed with HTTP {response.status_code}")
        body = response.json()
        if not isinstance(body, dict):
            raise ChatError("Fallback response is not a JSON object")
        return body

    async def run(self, thread_id: str, message_id: str, payload: dict[str, Any]) -> ThreadMessage:
        """Finalize ``message_id`` from one non-streaming request."""
        if message_id in self._attempted:
            logger.warning("Fallback already attempted for message %s, not retrying", message_id)
            current = self.store.get(thread_id, message_id)
            if current is None:
                raise KeyError(f"Message {message_id} not found in thread {thread_id}")
            if current.pending:
                current = self.store.update(thread_id, message_id, pending=False)
            return current
        self._attempted.add(message_id)

        try:
            body = await self._request(payload)
        except (httpx.HTTPError, ValueError, ChatError) as e:
            msg = str(e) or type(e).__name__
            logger.error("Fallback failed: %s", msg)
            self.notices.post(f"Fallback failed: {msg}")
            return self.store.update(
                thread_id, message_id, content=f"Error: {msg}", error=msg, pending=False, interrupted=False
            )

        content = body.get("content")
        changes: dict[str, Any] = {
            "content": content if isinstance(content, str) else "",
            "reasoning": body.get("reasoning") if isinstance(body.get("reasoning"), str) else None,
            "reasoning_details": body.get("reasoning_details"),
            "pending": False,
            "interrupted": False,
            "error": None,
        }
        cost = numeric_cost(body.get("cost"))
        if cost is not None:
            changes["cost"] = cost

        error = body.get("error")
        if error:
            changes["error"] = str(error)
            self.notices.post(f"Fallback failed: {error}")
        else:
            logger.info("← Fallback: received %d chars", len(changes["content"]))

        return self.store.update(thread_id, message_id, **changes)
