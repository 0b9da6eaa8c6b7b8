"""
Chat Orchestrator

Thin coordination layer between the HTTP endpoints and the chat handlers:
resolves the provider, normalizes the request, loads tools when deep search
is on, and delegates to the streaming or non-streaming handler. Cost is
computed once the loop is done.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, ConfigDict

from superkagi.chat.logging_utils import log_llm_request_complete, log_llm_request_start
from superkagi.chat.models import (
    ChatPayload,
    ChatResult,
    ConversationHistory,
    StreamMeta,
    ToolDefinition,
)
from superkagi.chat.normalizer import sanitize_messages
from superkagi.chat.simple_chat_handler import SimpleChatHandler
from superkagi.chat.streaming_handler import EmitFn, LoopOutcome, StreamingHandler
from superkagi.chat.tool_executor import ToolExecutor
from superkagi.clients.llm_client import LLMClient
from superkagi.clients.provider import ProviderConfig, resolve_from_configuration

if TYPE_CHECKING:
    from superkagi.config import Configuration
    from superkagi.pricing import CostAccountant
    from superkagi.tool_catalog import ToolSource

logger = logging.getLogger(__name__)


class PreparedRequest(BaseModel):
    """Everything resolved from one incoming payload."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    request_id: str
    provider: ProviderConfig
    messages: list[dict[str, Any]]
    tools: list[ToolDefinition]


class ChatOrchestrator:
    """Coordinates one chat request end to end."""

    def __init__(
        self,
        configuration: Configuration,
        tool_catalog: ToolSource,
        cost_accountant: CostAccountant | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.configuration = configuration
        self.tool_catalog = tool_catalog
        self.cost_accountant = cost_accountant
        self.transport = transport
        self.chat_conf = configuration.get_chat_service_config()

    async def prepare(self, payload: ChatPayload) -> PreparedRequest:
        """
        Resolve provider, messages and tools for a payload.

        Raises:
            ProviderConfigError: If the chosen remote provider has no credential.
        """
        provider = resolve_from_configuration(
            self.configuration,
            provider=payload.provider,
            model=payload.model,
            api_key=payload.api_key,
            local_url=payload.local_url,
            system_prompt=payload.system_prompt,
        )
        messages = sanitize_messages(payload.messages, provider.system_prompt)

        tools: list[ToolDefinition] = []
        if payload.deep_search:
            try:
                tools = [t.to_definition() for t in await self.tool_catalog.list_tools()]
                logger.info("MCP tools loaded: %s", [t.function.name for t in tools])
            except Exception as e:
                logger.warning("MCP tools unavailable: %s", e)

        return PreparedRequest(
            request_id=uuid.uuid4().hex[:12],
            provider=provider,
            messages=messages,
            tools=tools,
        )

    def _llm_client(self, provider: ProviderConfig) -> LLMClient:
        return LLMClient(provider, self.configuration.get_connection_pool_config(), transport=self.transport)

    def _tool_executor(self) -> ToolExecutor:
        return ToolExecutor(
            self.tool_catalog,
            max_tool_hops=self.configuration.get_max_tool_hops(),
            parallel=self.configuration.get_parallel_tool_calls(),
        )

    async def _cost(self, provider: ProviderConfig, outcome: LoopOutcome) -> float | None:
        if self.cost_accountant is None:
            return None
        return await self.cost_accountant(provider, outcome.model, outcome.usage)

    async def stream_chat(self, payload: ChatPayload, emit: EmitFn) -> StreamMeta:
        """Run the streaming loop, emitting events; returns the closing meta."""
        prepared = await self.prepare(payload)
        start = log_llm_request_start(prepared.request_id, prepared.provider.provider, prepared.provider.model)

        async with self._llm_client(prepared.provider) as llm_client:
            handler = StreamingHandler(llm_client, self._tool_executor(), self.chat_conf)
            try:
                outcome = await handler.stream_and_handle_tools(
                    ConversationHistory.from_dicts(prepared.messages), prepared.tools, emit
                )
            except Exception:
                log_llm_request_complete(prepared.request_id, start, success=False)
                raise

        log_llm_request_complete(prepared.request_id, start)
        return StreamMeta(
            cost=await self._cost(prepared.provider, outcome),
            model=outcome.model,
            usage=outcome.usage.model_dump(exclude_none=True) if outcome.usage else None,
        )

    async def run_chat(self, payload: ChatPayload) -> ChatResult:
        """Run the non-streaming loop and return the endpoint body."""
        prepared = await self.prepare(payload)
        start = log_llm_request_start(prepared.request_id, prepared.provider.provider, prepared.provider.model)

        async with self._llm_client(prepared.provider) as llm_client:
            handler = SimpleChatHandler(llm_client, self._tool_executor(), self.chat_conf)
            try:
                outcome = await handler.generate_assistant_response(
                    ConversationHistory.from_dicts(prepared.messages), prepared.tools
                )
            except Exception:
                log_llm_request_complete(prepared.request_id, start, success=False)
                raise

        log_llm_request_complete(prepared.request_id, start)
        return ChatResult(
            content=outcome.content,
            cost=await self._cost(prepared.provider, outcome),
            reasoning=outcome.reasoning,
            reasoning_details=outcome.reasoning_details,
            model=outcome.model,
            usage=outcome.usage.model_dump(exclude_none=True) if outcome.usage else None,
        )

    async def test_connectivity(self, provider: Any = None, api_key: str | None = None, local_url: str | None = None) -> dict[str, Any]:
        """Report whether MCP tools and the selected provider are reachable."""
        report: dict[str, Any] = {}

        try:
            tools = await self.tool_catalog.list_tools()
            report["mcp"] = {"ok": True, "tools": [t.name for t in tools]}
        except Exception as e:
            report["mcp"] = {"ok": False, "error": str(e)}

        try:
            config = resolve_from_configuration(
                self.configuration, provider=provider, api_key=api_key, local_url=local_url
            )
            async with self._llm_client(config) as llm_client:
                resp = await llm_client.list_models()
            report["provider"] = {"ok": resp.is_success, "status": resp.status_code}
            if not resp.is_success:
                report["provider"]["error"] = resp.text[:500]
        except Exception as e:
            report["provider"] = {"ok": False, "status": None, "error": str(e)}

        return report
