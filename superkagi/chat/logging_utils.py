"""
Chat Logging Utilities

Shared logging helpers with per-module feature flags, used by the streaming
and non-streaming handlers and by the tool executor.
"""

from __future__ import annotations

import logging
import time
from typing import Any

logger = logging.getLogger(__name__)

# module name -> feature name -> enabled; filled from the YAML at start-up
_module_features: dict[str, dict[str, bool]] = {}


def set_module_features(features: dict[str, dict[str, bool]]) -> None:
    """Replace the feature flag table (called by logging configuration)."""
    _module_features.clear()
    for module, flags in features.items():
        _module_features[module] = {k: bool(v) for k, v in (flags or {}).items()}


def should_log_feature(module: str, feature: str) -> bool:
    """Check if a specific logging feature is enabled for a module."""
    return _module_features.get(module, {}).get(feature, False)


def _truncate(text: str, length: int) -> str:
    if text and len(text) > length:
        return text[:length] + "..."
    return text


def log_llm_reply(reply: dict[str, Any], context: str, chat_conf: dict[str, Any]) -> None:
    """
    LLM reply logging with feature control and configuration-based truncation.

    Args:
        reply: dict with ``message``, ``model`` and optional ``reasoning``
        context: Descriptive context for the log entry
        chat_conf: Chat service configuration containing logging settings
    """
    if not should_log_feature("chat", "llm_replies"):
        return

    message = reply.get("message", {})
    content = message.get("content") or ""
    if not isinstance(content, str):
        content = str(content)
    tool_calls = message.get("tool_calls") or []
    reasoning = reply.get("reasoning") or ""

    truncate_length = chat_conf.get("logging", {}).get("llm_reply", 500)

    log_parts = [f"LLM Reply ({context}):"]
    if reasoning:
        log_parts.append(f"Reasoning: {_truncate(reasoning, truncate_length)}")
    if content:
        log_parts.append(f"Content: {_truncate(content, truncate_length)}")
    if tool_calls:
        log_parts.append(f"Tool calls: {len(tool_calls)}")
        for i, call in enumerate(tool_calls):
            name = call.get("function", {}).get("name", "unknown")
            log_parts.append(f"  [{i}] {name}")

    log_parts.append(f"Model: {reply.get('model', 'unknown')}")
    logger.info(" | ".join(log_parts))


def log_tool_execution_start(tool_name: str, call_index: int = 0, total_calls: int = 1) -> None:
    if total_calls > 1:
        logger.info("→ MCP[%s]: executing tool call %d/%d", tool_name, call_index + 1, total_calls)
    else:
        logger.info("→ MCP[%s]: executing tool", tool_name)


def log_tool_execution_success(tool_name: str, content_length: int) -> None:
    logger.info("← MCP[%s]: success, content length: %d", tool_name, content_length)


def log_tool_execution_error(tool_name: str, error_msg: str) -> None:
    logger.error("← MCP[%s]: failed with error: %s", tool_name, error_msg)


def log_tool_args_error(tool_name: str, error: Exception) -> None:
    logger.error("Malformed JSON arguments for %s: %s", tool_name, error)


def log_tool_arguments(tool_name: str, arguments: dict[str, Any], context: str, truncate_length: int = 500) -> None:
    """Log tool arguments being sent to the MCP server when enabled."""
    if not should_log_feature("mcp", "tool_arguments"):
        return
    logger.info("→ MCP[%s]: arguments (%s): %s", tool_name, context, _truncate(str(arguments), truncate_length))


def log_tool_results(tool_name: str, results: Any, context: str, truncate_length: int = 200) -> None:
    """Log tool results received from the MCP server when enabled."""
    if not should_log_feature("mcp", "tool_results"):
        return
    logger.info("← MCP[%s]: results (%s): %s", tool_name, context, _truncate(str(results), truncate_length))


def log_llm_request_start(request_id: str, provider: str, model: str) -> float:
    """Log the start of an LLM request and return start time."""
    start_time = time.monotonic()
    logger.info("→ LLM: request started: request_id=%s, provider=%s, model=%s", request_id, provider, model)
    return start_time


def log_llm_request_complete(request_id: str, start_time: float, success: bool = True) -> None:
    elapsed_ms = (time.monotonic() - start_time) * 1000
    status = "completed" if success else "failed"
    logger.info("← LLM: request %s: request_id=%s, elapsed=%.2fms", status, request_id, elapsed_ms)


def log_http_request(method: str, url: str, status_code: int, duration_ms: float) -> None:
    """HTTP request logging for provider calls, gated by the connection_pool feature."""
    if not should_log_feature("connection_pool", "http_requests"):
        return
    logging.getLogger("superkagi.connection_pool").info(
        "HTTP %s %s -> %d (%.1fms)", method, url, status_code, duration_ms
    )
