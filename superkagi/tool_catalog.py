"""Tool catalog over MCP servers.

Lists invocable tools (cached with a TTL, shared in-flight refresh) and routes
tool calls back to the server that owns them. Tool input schemas are coerced
into a fixed JSON-schema shape before they are offered to the model.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from mcp import McpError, types

from superkagi.cache import TTLCache
from superkagi.chat.models import ToolDescriptor, ToolFunctionParameters
from superkagi.errors import ToolExecutionError

if TYPE_CHECKING:
    from superkagi.config import Configuration

logger = logging.getLogger(__name__)

_CACHE_KEY = "tools"


class ToolServer(Protocol):
    """The subset of ``MCPClient`` the catalog relies on."""

    name: str

    async def list_tools(self) -> list[types.Tool]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> types.CallToolResult: ...

    async def close(self) -> None: ...


class ToolSource(Protocol):
    """What the tool loop needs from a catalog."""

    async def list_tools(self) -> list[ToolDescriptor]: ...

    async def invoke(self, name: str, arguments: dict[str, Any]) -> types.CallToolResult: ...


def sanitize_schema(schema: Any, description: str | None = None) -> ToolFunctionParameters:
    """
    Coerce an MCP input schema to ``{type, properties, required,
    additionalProperties, description?}``; non-dict schemas become the empty
    object schema.
    """
    if not isinstance(schema, dict):
        schema = {}

    properties = schema.get("properties")
    required = schema.get("required")
    schema_description = schema.get("description")
    return ToolFunctionParameters(
        type=schema.get("type") if isinstance(schema.get("type"), str) else "object",
        properties=properties if isinstance(properties, dict) else {},
        required=[r for r in required if isinstance(r, str)] if isinstance(required, list) else [],
        additionalProperties=False,
        description=schema_description if isinstance(schema_description, str) else description,
    )


def describe_tool(tool: types.Tool | dict[str, Any], registry_name: str | None = None) -> ToolDescriptor:
    """Build a descriptor from an MCP tool (model or raw dict)."""
    if isinstance(tool, dict):
        name = tool.get("name") or ""
        description = tool.get("description") or ""
        schema = tool.get("inputSchema", tool.get("input_schema"))
    else:
        name = tool.name
        description = tool.description or ""
        schema = tool.inputSchema

    return ToolDescriptor(
        name=registry_name or name,
        description=description,
        parameters_schema=sanitize_schema(schema, description or None),
    )


def result_error_text(result: types.CallToolResult) -> str:
    texts = [item.text for item in result.content if isinstance(item, types.TextContent)]
    return "\n".join(texts) or "Tool reported an error"


class ToolCatalog:
    """
    Registry of tools across MCP servers.

    Name conflicts are resolved by prefixing the later tool with its server name.
    """

    def __init__(self, servers: list[ToolServer], cache: TTLCache[list[ToolDescriptor]]) -> None:
        self.servers = servers
        self.cache = cache
        self._routes: dict[str, tuple[ToolServer, str]] = {}

    @classmethod
    def from_configuration(cls, configuration: Configuration) -> ToolCatalog:
        from superkagi.clients.mcp_client import MCPClient

        connection = configuration.get_mcp_connection_config()
        timeout = configuration.get_tool_call_timeout()
        servers: list[ToolServer] = [
            MCPClient(name, server, connection, call_timeout=timeout)
            for name, server in configuration.get_mcp_servers().items()
        ]
        return cls(servers, TTLCache(configuration.get_tool_cache_ttl(), name="tool-cache"))

    async def list_tools(self) -> list[ToolDescriptor]:
        """Cached tool descriptors; refreshes at most once concurrently."""
        return await self.cache.get_or_load(_CACHE_KEY, self._load)

    async def _load(self) -> list[ToolDescriptor]:
        descriptors: list[ToolDescriptor] = []
        routes: dict[str, tuple[ToolServer, str]] = {}

        for server in self.servers:
            tools = await server.list_tools()
            for tool in tools:
                registry_name = tool.name
                if registry_name in routes:
                    logger.warning("Tool name conflict: '%s' already exists", registry_name)
                    registry_name = f"{server.name}_{registry_name}"
                routes[registry_name] = (server, tool.name)
                descriptors.append(describe_tool(tool, registry_name))
            logger.info("Registered %d tools from server '%s'", len(tools), server.name)

        self._routes = routes
        return descriptors

    async def invoke(self, name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        """
        Call a tool by registry name.

        Raises:
            McpError: If no server provides the tool.
            ToolExecutionError: If the tool reports an error result.
        """
        if name not in self._routes:
            await self.list_tools()
        route = self._routes.get(name)
        if route is None:
            raise McpError(error=types.ErrorData(code=types.INVALID_PARAMS, message=f"Tool '{name}' not found"))

        server, tool_name = route
        result = await server.call_tool(tool_name, arguments)
        if result.isError:
            raise ToolExecutionError(result_error_text(result))
        return result

    async def close(self) -> None:
        for server in self.servers:
            await server.close()
