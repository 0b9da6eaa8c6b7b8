"""
MCP client for stdio tool servers (the Kagi search server by default).

Connects lazily on first use with exponential-backoff retries, following the
official SDK patterns. Connection parameters come from the ``mcp.connection``
section of the YAML configuration.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any

from mcp import ClientSession, McpError, StdioServerParameters, types
from mcp.client.stdio import stdio_client

logger = logging.getLogger(__name__)


class MCPClient:
    """One stdio MCP server connection."""

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        connection_config: dict[str, Any] | None = None,
        call_timeout: float = 300.0,
    ) -> None:
        self.name: str = name
        self.config: dict[str, Any] = config
        self.session: ClientSession | None = None
        self.exit_stack: AsyncExitStack = AsyncExitStack()
        self._connect_lock: asyncio.Lock = asyncio.Lock()
        self._is_connected: bool = False
        self.client_version = "0.1.0"
        self.call_timeout = call_timeout

        conn_config = connection_config or {}
        self._max_reconnect_attempts: int = conn_config.get("max_reconnect_attempts", 3)
        self._initial_reconnect_delay: float = conn_config.get("initial_reconnect_delay", 1.0)
        self._max_reconnect_delay: float = conn_config.get("max_reconnect_delay", 10.0)
        self._connection_timeout: float = conn_config.get("connection_timeout", 30.0)

        logger.info(
            "MCP client '%s' configured with: max_attempts=%d, initial_delay=%ss, max_delay=%ss, "
            "connection_timeout=%ss",
            name,
            self._max_reconnect_attempts,
            self._initial_reconnect_delay,
            self._max_reconnect_delay,
            self._connection_timeout,
        )

    def _resolve_command(self) -> str | None:
        """Resolve the configured command to an executable path, or None."""
        command = self.config.get("command")
        if not command:
            return None
        if os.path.isabs(command):
            return command if os.path.exists(command) else None
        return shutil.which(command)

    async def connect(self) -> None:
        """
        Connect with exponential backoff.

        Raises:
            Exception: The last connection error once all attempts fail.
        """
        delay = self._initial_reconnect_delay
        attempt = 0
        while True:
            try:
                await self._attempt_connection()
                self._is_connected = True
                return
            except Exception as e:
                attempt += 1
                self._is_connected = False
                await self._reset_stack()
                if attempt >= self._max_reconnect_attempts:
                    logger.error("Failed to connect to %s after %d attempts: %s", self.name, attempt, e)
                    raise
                logger.warning(
                    "Connection attempt %d failed for %s: %s. Retrying in %ss...", attempt, self.name, e, delay
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_reconnect_delay)

    async def _attempt_connection(self) -> None:
        command = self._resolve_command()
        if not command:
            raise ValueError(f"Command '{self.config.get('command')}' not found in PATH")

        env = self.config.get("env") or {}
        server_params = StdioServerParameters(
            command=command,
            args=self.config.get("args", []),
            env={**os.environ, **env} if env else None,
        )

        read_stream, write_stream = await self.exit_stack.enter_async_context(stdio_client(server_params))
        client_info = types.Implementation(name=self.name, version=self.client_version)
        self.session = await self.exit_stack.enter_async_context(
            ClientSession(read_stream, write_stream, client_info=client_info)
        )
        await asyncio.wait_for(self.session.initialize(), timeout=self._connection_timeout)
        logger.info("MCP client '%s' connected successfully", self.name)

    async def _ensure_session(self) -> ClientSession:
        async with self._connect_lock:
            if self.session is None or not self._is_connected:
                await self.connect()
        if self.session is None:
            raise McpError(
                error=types.ErrorData(code=types.INTERNAL_ERROR, message=f"Client {self.name} not connected")
            )
        return self.session

    async def list_tools(self) -> list[types.Tool]:
        session = await self._ensure_session()
        try:
            result = await session.list_tools()
            return result.tools
        except McpError as e:
            logger.error("MCP error listing tools from %s: %s", self.name, e.error.message)
            raise
        except Exception as e:
            logger.error("Error listing tools from %s: %s", self.name, e)
            raise McpError(
                error=types.ErrorData(code=types.INTERNAL_ERROR, message=f"Failed to list tools: {e!s}")
            ) from e

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> types.CallToolResult:
        session = await self._ensure_session()
        try:
            logger.info("Calling tool '%s' on client '%s'", name, self.name)
            return await session.call_tool(
                name, arguments, read_timeout_seconds=timedelta(seconds=self.call_timeout)
            )
        except McpError as e:
            logger.error("MCP error calling tool '%s': %s", name, e.error.message)
            raise
        except Exception as e:
            logger.error("Error calling tool '%s': %s", name, e)
            raise McpError(
                error=types.ErrorData(code=types.INTERNAL_ERROR, message=f"Tool call failed: {e!s}")
            ) from e

    async def _reset_stack(self) -> None:
        try:
            await self.exit_stack.aclose()
        except Exception as e:
            logger.debug("Ignoring cleanup error for %s: %s", self.name, e)
        self.exit_stack = AsyncExitStack()
        self.session = None

    async def close(self) -> None:
        """Close the client connection and clean up resources."""
        async with self._connect_lock:
            self._is_connected = False
            await self._reset_stack()
            logger.info("MCP client '%s' disconnected", self.name)

    @property
    def is_connected(self) -> bool:
        return self._is_connected
