"""
Streaming Response Handler

Drives the multi-round tool loop for streaming responses:
- provider round streaming, with content and reasoning forwarded as they arrive
- tool call delta accumulation
- tool execution between rounds, bounded by the hop limit

The loop is an explicit state machine:

    REQUESTING -> EVALUATING -> (TOOL_EXECUTING -> REQUESTING)* -> TERMINAL
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from superkagi.chat.delta_accumulator import ToolCallAccumulator
from superkagi.chat.logging_utils import log_llm_reply
from superkagi.chat.models import (
    AssistantMessage,
    ConversationHistory,
    RoundResult,
    StreamEvent,
    TokenUsage,
    ToolDefinition,
)
from superkagi.chat.normalizer import content_to_text

if TYPE_CHECKING:
    from superkagi.chat.tool_executor import ToolExecutor
    from superkagi.clients.llm_client import LLMClient

logger = logging.getLogger(__name__)

EmitFn = Callable[[StreamEvent], Awaitable[None]]

TOOL_FINISH_REASONS = frozenset({"tool_calls", "function_call"})


class ToolLoopState(str, Enum):
    REQUESTING = "requesting"
    EVALUATING = "evaluating"
    TOOL_EXECUTING = "tool_executing"
    TERMINAL = "terminal"


class LoopOutcome(BaseModel):
    """What the tool loop hands back once it reaches TERMINAL."""

    content: str = ""
    reasoning: str | None = None
    reasoning_details: Any = None
    model: str | None = None
    usage: TokenUsage | None = None
    rounds: int = 0
    tool_rounds: int = 0
    hop_limit_reached: bool = False
    transcript: list[dict[str, Any]] = Field(default_factory=list)


def wants_tools(round_result: RoundResult) -> bool:
    """Tool intent: a tool finish reason and at least one call."""
    return round_result.finish_reason in TOOL_FINISH_REASONS and bool(round_result.tool_calls)


def add_usage(total: TokenUsage | None, usage: TokenUsage | None) -> TokenUsage | None:
    if usage is None:
        return total
    return usage if total is None else total.add(usage)


class StreamingHandler:
    """Handles streaming responses and tool call iterations."""

    def __init__(
        self,
        llm_client: LLMClient,
        tool_executor: ToolExecutor,
        chat_conf: dict[str, Any] | None = None,
    ):
        self.llm_client = llm_client
        self.tool_executor = tool_executor
        self.chat_conf = chat_conf or {}

    async def stream_and_handle_tools(
        self,
        conv: ConversationHistory,
        tools_payload: list[ToolDefinition],
        emit: EmitFn,
    ) -> LoopOutcome:
        """
        Run the loop to TERMINAL, emitting content/reasoning events as they arrive.

        ``conv`` is extended in place with every assistant message and
        tool result, so it holds the full working transcript afterwards.
        """
        state = ToolLoopState.REQUESTING
        outcome = LoopOutcome()
        current: RoundResult | None = None

        while state is not ToolLoopState.TERMINAL:
            if state is ToolLoopState.REQUESTING:
                current = await self.stream_round(conv, tools_payload, emit, hop_number=outcome.tool_rounds)
                outcome.rounds += 1
                outcome.content += current.content
                outcome.usage = add_usage(outcome.usage, current.usage)
                outcome.model = current.model or outcome.model
                if current.reasoning:
                    outcome.reasoning = current.reasoning
                if current.reasoning_details is not None:
                    outcome.reasoning_details = current.reasoning_details
                state = ToolLoopState.EVALUATING

            elif state is ToolLoopState.EVALUATING:
                assert current is not None
                state = ToolLoopState.TOOL_EXECUTING if wants_tools(current) else ToolLoopState.TERMINAL

            elif state is ToolLoopState.TOOL_EXECUTING:
                assert current is not None
                should_stop, warning_msg = self.tool_executor.check_tool_hop_limit(outcome.tool_rounds)
                if should_stop and warning_msg:
                    text = "\n\n" + warning_msg
                    outcome.content += text
                    outcome.hop_limit_reached = True
                    current = current.model_copy(update={"content": current.content + text, "tool_calls": []})
                    await emit(StreamEvent(content=text))
                    state = ToolLoopState.TERMINAL
                    continue

                logger.info("Starting tool call iteration %d", outcome.tool_rounds + 1)
                conv.add_message(AssistantMessage(content=current.content, tool_calls=current.tool_calls))
                for tool_msg in await self.tool_executor.execute_tool_calls(current.tool_calls):
                    conv.add_message(tool_msg)
                outcome.tool_rounds += 1
                logger.info("→ LLM: requesting follow-up response for hop %d", outcome.tool_rounds)
                state = ToolLoopState.REQUESTING

        if current is not None:
            conv.add_message(AssistantMessage(content=current.content))
        outcome.transcript = conv.get_dict_format()
        logger.info(
            "← Frontend: streaming response completed (rounds=%d, tool rounds=%d)",
            outcome.rounds,
            outcome.tool_rounds,
        )
        return outcome

    async def stream_round(
        self,
        conv: ConversationHistory,
        tools_payload: list[ToolDefinition],
        emit: EmitFn,
        hop_number: int = 0,
    ) -> RoundResult:
        """
        Stream one provider round.

        Content and reasoning fragments are emitted in arrival order; tool call
        fragments are accumulated and only returned once the stream ends.
        """
        logger.info("→ LLM: starting streaming request (hop %d)", hop_number)

        message_parts: list[str] = []
        reasoning_parts: list[str] = []
        reasoning_details: Any = None
        accumulator = ToolCallAccumulator()
        finish_reason: str | None = None
        model: str | None = None
        usage: TokenUsage | None = None

        async for chunk in self.llm_client.get_streaming_response_with_tools(conv.get_dict_format(), tools_payload):
            if isinstance(chunk.get("model"), str):
                model = chunk["model"]
            chunk_usage = TokenUsage.from_raw(chunk.get("usage"))
            if chunk_usage is not None:
                usage = chunk_usage

            choices = chunk.get("choices")
            if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                continue

            choice: dict[str, Any] = choices[0]
            delta = choice.get("delta")
            if not isinstance(delta, dict):
                delta = {}

            content = delta.get("content")
            if isinstance(content, str) and content:
                message_parts.append(content)
                logger.debug("→ Frontend: streaming content delta, length=%d", len(content))
                await emit(StreamEvent(content=content))

            reasoning = delta.get("reasoning") or delta.get("reasoning_content")
            if isinstance(reasoning, str) and reasoning:
                reasoning_parts.append(reasoning)
                await emit(StreamEvent(reasoning=reasoning))

            if delta.get("reasoning_details") is not None:
                reasoning_details = delta["reasoning_details"]
                await emit(StreamEvent(reasoning_details=reasoning_details))

            if isinstance(delta.get("tool_calls"), list):
                accumulator.add_many(delta["tool_calls"])

            if choice.get("finish_reason"):
                finish_reason = choice["finish_reason"]

        logger.info("← LLM: streaming completed (hop %d), finish_reason=%s", hop_number, finish_reason)

        result = RoundResult(
            content="".join(message_parts),
            reasoning="".join(reasoning_parts) or None,
            reasoning_details=reasoning_details,
            tool_calls=accumulator.complete_calls(),
            finish_reason=finish_reason,
            model=model or self.llm_client.model,
            usage=usage,
        )
        self.log_round(result, f"streaming hop {hop_number}")
        return result

    def log_round(self, result: RoundResult, context: str) -> None:
        reply_data: dict[str, Any] = {
            "message": {
                "content": content_to_text(result.content),
                "tool_calls": [tc.model_dump() for tc in result.tool_calls],
            },
            "model": result.model,
            "reasoning": result.reasoning,
        }
        log_llm_reply(reply_data, context, self.chat_conf)
