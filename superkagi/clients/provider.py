"""
Provider Client Adapter

Resolves a partially specified provider selection into a complete
``ProviderConfig`` and builds the matching HTTP client.

| provider   | base URL                  | credential            | extra headers           |
|------------|---------------------------|-----------------------|-------------------------|
| local      | caller-supplied local URL | none                  | none                    |
| openrouter | fixed public endpoint     | required (env backup) | HTTP-Referer, X-Title   |
| nanogpt    | configurable base URL     | required (env backup) | none                    |
"""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx
from pydantic import BaseModel, Field

from superkagi.config import ChatDefaults, Configuration, Provider, resolve_provider
from superkagi.errors import ProviderConfigError

logger = logging.getLogger(__name__)

LOCAL_API_KEY = "no-key-needed"

_CHAT_COMPLETIONS_SUFFIX = re.compile(r"/chat/completions/?$", re.IGNORECASE)


class ProviderConfig(BaseModel):
    """Fully resolved provider selection; never partially specified."""

    provider: Provider
    model: str
    api_key: str | None = None
    base_url: str
    system_prompt: str = ""
    headers: dict[str, str] = Field(default_factory=dict)


def normalize_base_url(url: str) -> str:
    """Strip trailing slashes and a trailing ``/chat/completions``."""
    cleaned = (url or "").strip().rstrip("/")
    cleaned = _CHAT_COMPLETIONS_SUFFIX.sub("", cleaned)
    return cleaned.rstrip("/")


def resolve_provider_config(
    defaults: ChatDefaults,
    *,
    provider: Any = None,
    model: str | None = None,
    api_key: str | None = None,
    local_url: str | None = None,
    system_prompt: str | None = None,
    openrouter_base_url: str = "https://openrouter.ai/api/v1",
    app_title: str = "SuperKagi",
) -> ProviderConfig:
    """
    Apply defaults to a caller's provider selection.

    Unknown providers become ``local``; a missing model becomes the provider's
    default; remote providers fall back to the server-side key.

    Raises:
        ProviderConfigError: If a remote provider ends up without a credential.
    """
    resolved = resolve_provider(provider if provider is not None else defaults.provider)
    resolved_model = (model or "").strip() or defaults.default_model(resolved)
    prompt = defaults.system_prompt if system_prompt is None else system_prompt

    if resolved == "local":
        return ProviderConfig(
            provider="local",
            model=resolved_model,
            api_key=None,
            base_url=normalize_base_url(local_url or defaults.local_url),
            system_prompt=prompt,
        )

    if resolved == "openrouter":
        key = api_key or defaults.openrouter_api_key
        if not key:
            raise ProviderConfigError("Missing OpenRouter API key")
        return ProviderConfig(
            provider="openrouter",
            model=resolved_model,
            api_key=key,
            base_url=normalize_base_url(openrouter_base_url),
            system_prompt=prompt,
            headers={"HTTP-Referer": defaults.app_origin, "X-Title": app_title},
        )

    key = api_key or defaults.nanogpt_api_key
    if not key:
        raise ProviderConfigError("Missing NanoGPT API key")
    return ProviderConfig(
        provider="nanogpt",
        model=resolved_model,
        api_key=key,
        base_url=normalize_base_url(defaults.nanogpt_base_url),
        system_prompt=prompt,
    )


def resolve_from_configuration(configuration: Configuration, **selection: Any) -> ProviderConfig:
    llm = configuration.get_llm_config()
    return resolve_provider_config(
        configuration.defaults,
        openrouter_base_url=llm["openrouter_base_url"],
        app_title=llm["app_title"],
        **selection,
    )


def build_http_client(
    config: ProviderConfig,
    pool: dict[str, Any] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create an ``httpx.AsyncClient`` bound to the provider's base URL and headers."""
    pool = pool or {}
    headers = {"Content-Type": "application/json", **config.headers}
    headers["Authorization"] = f"Bearer {config.api_key or LOCAL_API_KEY}"

    kwargs: dict[str, Any] = {
        "base_url": config.base_url,
        "headers": headers,
        "timeout": pool.get("request_timeout_seconds", 300.0),
        "trust_env": False,
    }
    if transport is not None:
        kwargs["transport"] = transport
    else:
        kwargs["http2"] = True
        kwargs["limits"] = httpx.Limits(
            max_connections=pool.get("max_connections", 50),
            max_keepalive_connections=pool.get("max_keepalive_connections", 10),
            keepalive_expiry=pool.get("keepalive_expiry_seconds", 30.0),
        )

    logger.debug("Built HTTP client for provider=%s base_url=%s", config.provider, config.base_url)
    return httpx.AsyncClient(**kwargs)
