"""Tests for provider resolution and the LLM HTTP client."""

import httpx
import pytest
from fakes import ProviderStub, content_chunk, stream_response

from superkagi.chat.models import ToolDescriptor, ToolFunctionParameters
from superkagi.clients.llm_client import LLMClient
from superkagi.clients.provider import (
    LOCAL_API_KEY,
    ProviderConfig,
    normalize_base_url,
    resolve_provider_config,
)
from superkagi.config import ChatDefaults
from superkagi.errors import ProviderConfigError, ProviderError


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("http://localhost:11434/v1/", "http://localhost:11434/v1"),
        ("http://localhost:11434/v1/chat/completions", "http://localhost:11434/v1"),
        ("http://localhost:11434/v1/chat/completions/", "http://localhost:11434/v1"),
        ("  http://host:8080//  ", "http://host:8080"),
    ],
)
def test_normalize_base_url(raw, expected):
    assert normalize_base_url(raw) == expected


class TestResolveProviderConfig:
    def test_local_defaults(self):
        config = resolve_provider_config(ChatDefaults.from_env({}))
        assert config.provider == "local"
        assert config.model == "llama3"
        assert config.api_key is None
        assert config.base_url == "http://host.docker.internal:11434/v1"

    def test_unknown_provider_falls_back_to_local(self):
        config = resolve_provider_config(
            ChatDefaults.from_env({}), provider="mystery", local_url="http://box:1234/v1/chat/completions"
        )
        assert config.provider == "local"
        assert config.base_url == "http://box:1234/v1"

    def test_openrouter_uses_env_key_and_headers(self):
        defaults = ChatDefaults.from_env({"OPENROUTER_API_KEY": "sk-env", "APP_ORIGIN": "http://app"})
        config = resolve_provider_config(defaults, provider="openrouter", model="  ")
        assert config.api_key == "sk-env"
        assert config.model == "openrouter/auto"
        assert config.base_url == "https://openrouter.ai/api/v1"
        assert config.headers == {"HTTP-Referer": "http://app", "X-Title": "SuperKagi"}

    def test_caller_key_wins(self):
        defaults = ChatDefaults.from_env({"NANOGPT_API_KEY": "env-key"})
        config = resolve_provider_config(defaults, provider="nanogpt", api_key="caller-key")
        assert config.api_key == "caller-key"
        assert config.base_url == "https://nano-gpt.com/api/v1"
        assert config.headers == {}

    @pytest.mark.parametrize("provider", ["openrouter", "nanogpt"])
    def test_remote_provider_without_key_fails(self, provider):
        with pytest.raises(ProviderConfigError):
            resolve_provider_config(ChatDefaults.from_env({}), provider=provider)

    def test_system_prompt_from_caller_or_env(self):
        defaults = ChatDefaults.from_env({"SYSTEM_PROMPT": "env prompt"})
        assert resolve_provider_config(defaults).system_prompt == "env prompt"
        assert resolve_provider_config(defaults, system_prompt="").system_prompt == ""


def local_config():
    return ProviderConfig(provider="local", model="llama3", base_url="http://llm.test/v1")


def search_tool():
    return ToolDescriptor(name="search", parameters_schema=ToolFunctionParameters()).to_definition()


class TestLLMClient:
    async def test_streaming_request_shape(self):
        stub = ProviderStub(stream_response(content_chunk("hi")))
        async with LLMClient(local_config(), transport=stub.transport) as client:
            chunks = [c async for c in client.get_streaming_response_with_tools([{"role": "user", "content": "x"}], [search_tool()])]

        assert len(chunks) == 1
        request = stub.requests[0]
        assert request.url == "http://llm.test/v1/chat/completions"
        assert request.headers["Authorization"] == f"Bearer {LOCAL_API_KEY}"
        body = stub.bodies()[0]
        assert body["stream"] is True
        assert body["tool_choice"] == "auto"
        assert body["tools"][0]["function"]["name"] == "search"

    async def test_no_tools_means_no_tool_choice(self):
        stub = ProviderStub(stream_response(content_chunk("hi")))
        async with LLMClient(local_config(), transport=stub.transport) as client:
            [_ async for _ in client.get_streaming_response_with_tools([], [])]
        assert "tools" not in stub.bodies()[0]
        assert "tool_choice" not in stub.bodies()[0]

    async def test_malformed_chunks_are_skipped(self):
        stub = ProviderStub(stream_response("{broken", content_chunk("ok")))
        async with LLMClient(local_config(), transport=stub.transport) as client:
            chunks = [c async for c in client.get_streaming_response_with_tools([], None)]
        assert chunks == [content_chunk("ok")]

    async def test_empty_stream_is_an_error(self):
        stub = ProviderStub(stream_response())
        async with LLMClient(local_config(), transport=stub.transport) as client:
            with pytest.raises(ProviderError, match="No streaming chunks"):
                [_ async for _ in client.get_streaming_response_with_tools([], None)]

    async def test_error_chunk_raises(self):
        stub = ProviderStub(stream_response({"error": {"message": "rate limited"}}))
        async with LLMClient(local_config(), transport=stub.transport) as client:
            with pytest.raises(ProviderError, match="rate limited"):
                [_ async for _ in client.get_streaming_response_with_tools([], None)]

    async def test_non_ok_status_carries_detail(self):
        stub = ProviderStub(httpx.Response(401, json={"error": {"message": "bad key"}}))
        async with LLMClient(local_config(), transport=stub.transport) as client:
            with pytest.raises(ProviderError) as excinfo:
                [_ async for _ in client.get_streaming_response_with_tools([], None)]
        assert excinfo.value.status_code == 401
        assert "bad key" in str(excinfo.value)

    async def test_non_streaming_response(self):
        stub = ProviderStub(
            httpx.Response(
                200,
                json={
                    "model": "llama3:8b",
                    "choices": [
                        {
                            "message": {
                                "content": "Hello",
                                "reasoning_content": "pondered",
                                "tool_calls": [
                                    {"id": "c1", "type": "function", "function": {"name": "search", "arguments": "{}"}}
                                ],
                            },
                            "finish_reason": "tool_calls",
                        }
                    ],
                    "usage": {"input_tokens": 4, "output_tokens": 6},
                },
            )
        )
        async with LLMClient(local_config(), transport=stub.transport) as client:
            result = await client.get_response_with_tools([{"role": "user", "content": "hi"}])

        assert result.content == "Hello"
        assert result.reasoning == "pondered"
        assert result.finish_reason == "tool_calls"
        assert result.tool_calls[0].function.name == "search"
        assert result.model == "llama3:8b"
        assert (result.usage.prompt_tokens, result.usage.completion_tokens) == (4, 6)
        assert "stream" not in stub.bodies()[0]

    async def test_non_streaming_without_choices(self):
        stub = ProviderStub(httpx.Response(200, json={"choices": []}))
        async with LLMClient(local_config(), transport=stub.transport) as client:
            with pytest.raises(ProviderError, match="No choices"):
                await client.get_response_with_tools([])
