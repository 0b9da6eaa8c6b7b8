"""
Simple Chat Handler

Non-streaming counterpart of the tool loop: the same states, one complete
provider response per round. Used by the fallback endpoint.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from superkagi.chat.logging_utils import log_llm_reply
from superkagi.chat.models import AssistantMessage, ConversationHistory, RoundResult, ToolDefinition
from superkagi.chat.streaming_handler import LoopOutcome, ToolLoopState, add_usage, wants_tools

if TYPE_CHECKING:
    from superkagi.chat.tool_executor import ToolExecutor
    from superkagi.clients.llm_client import LLMClient

logger = logging.getLogger(__name__)

NO_CONTENT = "[No content returned]"


class SimpleChatHandler:
    """Handles non-streaming chat operations."""

    def __init__(
        self,
        llm_client: LLMClient,
        tool_executor: ToolExecutor,
        chat_conf: dict[str, Any] | None = None,
    ):
        self.llm_client = llm_client
        self.tool_executor = tool_executor
        self.chat_conf = chat_conf or {}

    async def generate_assistant_response(
        self,
        conv: ConversationHistory,
        tools_payload: list[ToolDefinition],
    ) -> LoopOutcome:
        """
        Run the loop and return the final round's content.

        Unlike streaming, only the terminal round's text is the answer;
        text that accompanied tool calls in earlier rounds stays in the
        transcript.
        """
        logger.info("→ LLM: requesting non-streaming response")

        state = ToolLoopState.REQUESTING
        outcome = LoopOutcome()
        reply: RoundResult | None = None

        while state is not ToolLoopState.TERMINAL:
            if state is ToolLoopState.REQUESTING:
                reply = await self.llm_client.get_response_with_tools(conv.get_dict_format(), tools_payload)
                outcome.rounds += 1
                outcome.usage = add_usage(outcome.usage, reply.usage)
                outcome.model = reply.model or outcome.model
                outcome.reasoning = reply.reasoning
                outcome.reasoning_details = reply.reasoning_details
                self._log_reply(reply, outcome.rounds)
                state = ToolLoopState.EVALUATING

            elif state is ToolLoopState.EVALUATING:
                assert reply is not None
                state = ToolLoopState.TOOL_EXECUTING if wants_tools(reply) else ToolLoopState.TERMINAL

            elif state is ToolLoopState.TOOL_EXECUTING:
                assert reply is not None
                should_stop, warning_msg = self.tool_executor.check_tool_hop_limit(outcome.tool_rounds)
                if should_stop and warning_msg:
                    outcome.hop_limit_reached = True
                    reply = reply.model_copy(
                        update={"content": f"{reply.content}\n\n{warning_msg}".lstrip(), "tool_calls": []}
                    )
                    state = ToolLoopState.TERMINAL
                    continue

                conv.add_message(AssistantMessage(content=reply.content, tool_calls=reply.tool_calls))
                for tool_msg in await self.tool_executor.execute_tool_calls(reply.tool_calls):
                    conv.add_message(tool_msg)
                outcome.tool_rounds += 1
                state = ToolLoopState.REQUESTING

        assert reply is not None
        outcome.content = reply.content or NO_CONTENT
        conv.add_message(AssistantMessage(content=reply.content))
        outcome.transcript = conv.get_dict_format()
        logger.info("← LLM: non-streaming response completed (rounds=%d)", outcome.rounds)
        return outcome

    def _log_reply(self, reply: RoundResult, round_number: int) -> None:
        reply_data: dict[str, Any] = {
            "message": {
                "content": reply.content,
                "tool_calls": [tc.model_dump() for tc in reply.tool_calls],
            },
            "model": reply.model,
            "reasoning": reply.reasoning,
        }
        log_llm_reply(reply_data, f"non-streaming round {round_number}", self.chat_conf)
