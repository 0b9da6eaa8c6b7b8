"""OpenRouter model catalog, cached per API key."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from superkagi.cache import TTLCache
from superkagi.errors import ProviderConfigError, ProviderError

if TYPE_CHECKING:
    from superkagi.config import Configuration

logger = logging.getLogger(__name__)

_MATCH_FIELDS = ("id", "model", "name", "canonical_slug")


class OpenRouterCatalog:
    """Lists OpenRouter models and looks up per-model pricing."""

    def __init__(
        self,
        cache: TTLCache[list[dict[str, Any]]],
        base_url: str = "https://openrouter.ai/api/v1",
        default_api_key: str = "",
        app_origin: str = "http://localhost:3545",
        app_title: str = "SuperKagi",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.default_api_key = default_api_key
        self.app_origin = app_origin
        self.app_title = app_title
        self._transport = transport

    @classmethod
    def from_configuration(
        cls, configuration: Configuration, transport: httpx.AsyncBaseTransport | None = None
    ) -> OpenRouterCatalog:
        llm = configuration.get_llm_config()
        defaults = configuration.defaults
        return cls(
            TTLCache(llm["model_cache_ttl_seconds"], name="openrouter-models"),
            base_url=llm["openrouter_base_url"],
            default_api_key=defaults.openrouter_api_key,
            app_origin=defaults.app_origin,
            app_title=llm["app_title"],
            transport=transport,
        )

    def _resolve_key(self, api_key: str | None) -> str:
        key = (api_key or "").strip() or self.default_api_key
        if not key:
            raise ProviderConfigError("Missing OpenRouter API key")
        return key

    async def fetch_models(self, api_key: str | None = None) -> list[dict[str, Any]]:
        """
        Model list for ``api_key`` (or the server key).

        Raises:
            ProviderConfigError: Without any usable key.
            ProviderError: If OpenRouter answers with a non-OK status.
        """
        key = self._resolve_key(api_key)
        return await self.cache.get_or_load(key, lambda: self._download(key))

    async def _download(self, key: str) -> list[dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {key}",
            "HTTP-Referer": self.app_origin,
            "X-Title": self.app_title,
        }
        logger.info("→ OpenRouter: fetching model catalog")
        async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
            try:
                resp = await client.get(f"{self.base_url}/models", headers=headers)
            except httpx.HTTPError as e:
                raise ProviderError(f"OpenRouter model fetch failed: {e!s}") from e

        try:
            data: Any = resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            data = resp.text

        if resp.status_code != 200:
            raise ProviderError(
                f"OpenRouter model fetch failed ({resp.status_code}): {json.dumps(data)}",
                status_code=resp.status_code,
            )

        models = data.get("data") if isinstance(data, dict) else None
        result = [m for m in models if isinstance(m, dict)] if isinstance(models, list) else []
        logger.info("← OpenRouter: %d models", len(result))
        return result

    async def find_model(self, model_id: str, api_key: str | None = None) -> dict[str, Any] | None:
        """Case-insensitive match on id, model, name or canonical_slug."""
        if not model_id:
            return None
        target = model_id.lower()
        for model in await self.fetch_models(api_key):
            for field in _MATCH_FIELDS:
                value = model.get(field)
                if isinstance(value, str) and value.lower() == target:
                    return model
        return None

    async def get_pricing(self, model_id: str, api_key: str | None = None) -> dict[str, Any] | None:
        model = await self.find_model(model_id, api_key)
        pricing = model.get("pricing") if model else None
        return pricing if isinstance(pricing, dict) else None
