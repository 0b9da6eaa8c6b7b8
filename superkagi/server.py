"""
HTTP server for SuperKagi.

Thin communication layer: parses requests, delegates to the chat orchestrator
and frames responses. The streaming endpoint speaks server-sent events; the
non-streaming endpoint is the client's fallback path.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from superkagi.chat import ChatOrchestrator, ChatPayload, ChatResult
from superkagi.chat.sse import SSE_HEADERS, SSE_MEDIA_TYPE, SSEEmitter
from superkagi.clients.openrouter import OpenRouterCatalog
from superkagi.config import Configuration
from superkagi.errors import ProviderConfigError, ProviderError
from superkagi.pricing import DefaultCostAccountant
from superkagi.tool_catalog import ToolCatalog, ToolSource

logger = logging.getLogger(__name__)


class ConnectivityPayload(BaseModel):
    """Body of the connectivity check."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    provider: str | None = None
    api_key: str | None = Field(default=None, alias="apiKey")
    local_url: str | None = Field(default=None, alias="localUrl")


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return {}


def parse_chat_payload(body: Any) -> ChatPayload:
    """Validate a request body; a non-object body is an empty request."""
    return ChatPayload.model_validate(body if isinstance(body, dict) else {})


class ChatServer:
    """Owns the orchestrator, the catalogs and the FastAPI app."""

    def __init__(
        self,
        configuration: Configuration,
        tool_catalog: ToolSource | None = None,
        model_catalog: OpenRouterCatalog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.configuration = configuration
        self.tool_catalog = tool_catalog or ToolCatalog.from_configuration(configuration)
        self.model_catalog = model_catalog or OpenRouterCatalog.from_configuration(configuration, transport)
        self.orchestrator = ChatOrchestrator(
            configuration,
            self.tool_catalog,
            cost_accountant=DefaultCostAccountant(self.model_catalog),
            transport=transport,
        )
        self.ping_interval = configuration.get_streaming_config()["ping_interval_seconds"]
        self.app = self._create_app()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        logger.info("SuperKagi server starting")
        try:
            yield
        finally:
            close = getattr(self.tool_catalog, "close", None)
            if close is not None:
                await close()
            logger.info("SuperKagi server stopped")

    def _create_app(self) -> FastAPI:
        app = FastAPI(title="SuperKagi Chat Server", lifespan=self._lifespan)

        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.get("/")
        async def root():  # type: ignore
            return {"message": "SuperKagi Chat Server"}

        @app.get("/health")
        async def health():  # type: ignore
            return {"status": "healthy"}

        @app.post("/api/chat/stream")
        async def chat_stream(request: Request):  # type: ignore
            body = await _read_json(request)

            async def producer(emit):  # type: ignore
                payload = parse_chat_payload(body)
                logger.info("→ Frontend: stream request with %d messages", len(payload.messages))
                return await self.orchestrator.stream_chat(payload, emit)

            emitter = SSEEmitter(producer, ping_interval=self.ping_interval)
            return StreamingResponse(emitter.frames(), media_type=SSE_MEDIA_TYPE, headers=SSE_HEADERS)

        @app.post("/api/chat")
        async def chat(request: Request):  # type: ignore
            body = await _read_json(request)
            try:
                result = await self.orchestrator.run_chat(parse_chat_payload(body))
            except Exception as e:
                logger.error("Chat error: %s", e)
                message = str(e) or type(e).__name__
                result = ChatResult(content=f"Error: {message}", error=message)
            return result.model_dump(exclude_none=True)

        @app.get("/api/config-defaults")
        async def config_defaults():  # type: ignore
            return self.configuration.defaults.public_defaults()

        @app.get("/api/openrouter/models")
        async def openrouter_models(apiKey: str | None = None):  # type: ignore  # noqa: N803
            try:
                models = await self.model_catalog.fetch_models(apiKey)
            except ProviderConfigError as e:
                return JSONResponse({"error": str(e)}, status_code=400)
            except ProviderError as e:
                return JSONResponse({"error": str(e)}, status_code=e.status_code or 502)
            return {"models": models}

        @app.post("/api/test")
        async def connectivity_test(request: Request):  # type: ignore
            body = await _read_json(request)
            check = ConnectivityPayload.model_validate(body if isinstance(body, dict) else {})
            return await self.orchestrator.test_connectivity(check.provider, check.api_key, check.local_url)

        return app


def create_app(configuration: Configuration | None = None) -> FastAPI:
    """Application factory used by uvicorn."""
    return ChatServer(configuration or Configuration()).app
