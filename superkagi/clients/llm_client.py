"""
LLM HTTP client for OpenAI-compatible chat completion APIs.

One client is built per request from a resolved ``ProviderConfig``; it owns an
``httpx.AsyncClient`` (HTTP/2, pooled) and exposes a non-streaming call, a
streaming call that yields raw chunk dicts, and a model listing used by the
connectivity check.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncGenerator
from typing import Any, cast

import httpx

from superkagi.chat.logging_utils import log_http_request
from superkagi.chat.models import (
    AssistantMessage,
    RoundResult,
    TokenUsage,
    ToolDefinition,
)
from superkagi.chat.normalizer import content_to_text
from superkagi.clients.provider import ProviderConfig, build_http_client
from superkagi.errors import ProviderError

logger = logging.getLogger(__name__)

HTTP_OK = 200

_REASONING_FIELDS = ("reasoning", "reasoning_content", "thinking")


def extract_reasoning(container: dict[str, Any]) -> str | None:
    """First non-empty reasoning string found under the common field names."""
    for field in _REASONING_FIELDS:
        value = container.get(field)
        if isinstance(value, str) and value:
            return value
    return None


def _error_detail(body: bytes | str) -> str:
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text.strip()[:500]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
        if isinstance(err, str):
            return err
    return text.strip()[:500]


class LLMClient:
    """HTTP client bound to one provider configuration."""

    def __init__(
        self,
        config: ProviderConfig,
        pool_config: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        extra_params: dict[str, Any] | None = None,
    ) -> None:
        self.config = config
        self.extra_params = extra_params or {}
        self.client: httpx.AsyncClient = build_http_client(config, pool_config, transport)

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def model(self) -> str:
        return self.config.model

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Build the request body, passing through any extra provider parameters."""
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
        }
        if stream:
            payload["stream"] = True
        for key, value in self.extra_params.items():
            if key not in payload and value is not None:
                payload[key] = value
        if tools:
            payload["tools"] = [tool.model_dump(exclude_none=True) for tool in tools]
            payload["tool_choice"] = "auto"
        return payload

    async def get_response_with_tools(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
    ) -> RoundResult:
        """
        One non-streaming completion.

        Raises:
            ProviderError: On transport failure, non-OK status or a response
                without choices.
        """
        payload = self._build_payload(messages, tools, stream=False)

        try:
            start_time = time.monotonic()
            response = await self.client.post("/chat/completions", json=payload)
            log_http_request("POST", "/chat/completions", response.status_code, (time.monotonic() - start_time) * 1000)
        except httpx.HTTPError as e:
            logger.error("HTTP error: %s", e)
            raise ProviderError(f"HTTP error: {e!s}") from e

        if response.status_code != HTTP_OK:
            detail = _error_detail(response.content)
            raise ProviderError(
                f"Provider error {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        try:
            result = cast(dict[str, Any], response.json())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProviderError(f"Unexpected response format: {e!s}") from e

        choices = result.get("choices") if isinstance(result, dict) else None
        if not choices or not isinstance(choices[0], dict):
            raise ProviderError("No choices in API response")

        choice = choices[0]
        message = choice.get("message") or {}
        assistant_msg = AssistantMessage.from_dict(message)

        return RoundResult(
            content=content_to_text(message.get("content")),
            reasoning=extract_reasoning(message) or extract_reasoning(choice),
            reasoning_details=message.get("reasoning_details"),
            tool_calls=assistant_msg.tool_calls or [],
            finish_reason=choice.get("finish_reason"),
            model=result.get("model") or self.config.model,
            usage=TokenUsage.from_raw(result.get("usage")),
        )

    async def get_streaming_response_with_tools(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
    ) -> AsyncGenerator[dict[str, Any]]:
        """
        Stream one completion, yielding raw chunk dicts.

        Malformed chunk JSON is logged and skipped.

        Raises:
            ProviderError: On transport failure, non-OK status or a stream that
                produced no chunks at all.
        """
        payload = self._build_payload(messages, tools, stream=True)

        try:
            async with self.client.stream(
                "POST",
                "/chat/completions",
                json=payload,
                headers={"Accept": "text/event-stream", "Accept-Encoding": "identity"},
            ) as response:
                if response.status_code != HTTP_OK:
                    error_text = await response.aread()
                    raise ProviderError(
                        f"Provider error {response.status_code}: {_error_detail(error_text)}",
                        status_code=response.status_code,
                    )

                content_type = response.headers.get("content-type", "")
                if not any(t in content_type for t in ("text/event-stream", "text/plain", "application/json", "stream")):
                    logger.warning("Unexpected content-type: %s, proceeding anyway", content_type)

                chunk_count = 0
                async for line in response.aiter_lines():
                    if not line.strip() or not line.startswith("data:"):
                        continue

                    data = line[5:].strip()
                    if data == "[DONE]":
                        break

                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError as e:
                        logger.warning("Skipping malformed stream chunk: %s", e)
                        continue

                    if isinstance(chunk, dict):
                        chunk_count += 1
                        if isinstance(chunk.get("error"), dict | str):
                            raise ProviderError(f"Provider stream error: {_error_detail(json.dumps(chunk))}")
                        yield chunk

                if chunk_count == 0:
                    raise ProviderError("No streaming chunks received from API")

        except httpx.HTTPError as e:
            logger.error("HTTP error during streaming (%s): %s", type(e).__name__, e)
            raise ProviderError(f"HTTP error: {e!s}") from e

    async def list_models(self) -> httpx.Response:
        """GET ``<base>/models``; returns the raw response for status reporting."""
        return await self.client.get("/models")

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()
