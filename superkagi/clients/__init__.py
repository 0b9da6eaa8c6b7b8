"""Clients package containing the LLM, MCP and OpenRouter catalog clients."""

from __future__ import annotations

from .llm_client import LLMClient
from .mcp_client import MCPClient
from .openrouter import OpenRouterCatalog

__all__ = ["LLMClient", "MCPClient", "OpenRouterCatalog"]
