"""
Tool Execution Handler

Executes one round of tool calls through the tool catalog and turns every
outcome into a tool-role message tagged with the originating call id. A
failing tool never aborts the round: its message carries ``Error: <msg>``.
Result messages always come back in call order, also when the calls run
concurrently.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING

from mcp import McpError, types

from superkagi.chat.logging_utils import (
    log_tool_args_error,
    log_tool_arguments,
    log_tool_execution_error,
    log_tool_execution_start,
    log_tool_execution_success,
    log_tool_results,
)
from superkagi.chat.models import ToolCall, ToolMessage

if TYPE_CHECKING:
    from superkagi.tool_catalog import ToolSource

logger = logging.getLogger("superkagi.mcp")


def serialize_tool_result(result: types.CallToolResult) -> str:
    """JSON array of the result's content items, as handed to the model."""
    return json.dumps(
        [item.model_dump(mode="json", exclude_none=True) for item in result.content],
        ensure_ascii=False,
    )


def error_message(error: BaseException) -> str:
    if isinstance(error, McpError):
        return error.error.message
    return str(error) or type(error).__name__


class ToolExecutor:
    """Runs tool calls and formats their results for the next provider round."""

    def __init__(self, catalog: ToolSource, max_tool_hops: int = 8, parallel: bool = False) -> None:
        self.catalog = catalog
        self.max_tool_hops = max_tool_hops
        self.parallel = parallel

    async def execute_tool_calls(self, calls: list[ToolCall]) -> list[ToolMessage]:
        """
        Execute one round of tool calls.

        Returns exactly one ``ToolMessage`` per call, in call order.
        """
        logger.info("→ MCP: executing %d tool calls", len(calls))

        if self.parallel and len(calls) > 1:
            results = await asyncio.gather(
                *(self._execute_one(call, i, len(calls)) for i, call in enumerate(calls))
            )
            messages = list(results)
        else:
            messages = []
            for i, call in enumerate(calls):
                messages.append(await self._execute_one(call, i, len(calls)))

        logger.info("← MCP: completed all tool executions")
        return messages

    async def _execute_one(self, call: ToolCall, index: int, total: int) -> ToolMessage:
        tool_name = call.function.name

        try:
            args = json.loads(call.function.arguments or "{}")
            if not isinstance(args, dict):
                args = {}
        except json.JSONDecodeError as e:
            log_tool_args_error(tool_name, e)
            args = {}

        log_tool_arguments(tool_name, args, f"call {index + 1}/{total}")
        log_tool_execution_start(tool_name, index, total)

        try:
            result = await self.catalog.invoke(tool_name, args)
        except Exception as e:
            msg = error_message(e)
            log_tool_execution_error(tool_name, msg)
            return ToolMessage(content=f"Error: {msg}", tool_call_id=call.id)

        content = serialize_tool_result(result)
        log_tool_execution_success(tool_name, len(content))
        log_tool_results(tool_name, content, f"call {index + 1}/{total}")
        return ToolMessage(content=content, tool_call_id=call.id)

    def check_tool_hop_limit(self, hops: int) -> tuple[bool, str | None]:
        """
        Check if the tool round limit has been reached.

        Returns:
            tuple: (should_stop, warning_message)
        """
        if hops >= self.max_tool_hops:
            warning_msg = (
                f"⚠️ Reached maximum tool call limit ({self.max_tool_hops}). Stopping to prevent infinite recursion."
            )
            logger.warning("Maximum tool hops (%d) reached, stopping recursion", self.max_tool_hops)
            return True, warning_msg
        return False, None
