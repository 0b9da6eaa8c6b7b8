"""
Post-hoc cost accounting.

The chat pipeline hands the resolved provider, the model and the summed token
usage to a cost accountant once a response is complete; the accountant returns
a cost number or ``None``. Failures never reach the caller.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any, Protocol

from superkagi.chat.models import TokenUsage

if TYPE_CHECKING:
    from superkagi.clients.openrouter import OpenRouterCatalog
    from superkagi.clients.provider import ProviderConfig

logger = logging.getLogger(__name__)

_NON_NUMERIC = re.compile(r"[^0-9.eE+-]")


class CostAccountant(Protocol):
    async def __call__(self, config: ProviderConfig, model: str | None, usage: TokenUsage | None) -> float | None: ...


def to_price(value: Any) -> float | None:
    """Non-negative price from a number or a numeric string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value) if value >= 0 else None
    if isinstance(value, str):
        try:
            parsed = float(_NON_NUMERIC.sub("", value))
        except ValueError:
            return None
        return parsed if parsed >= 0 and parsed != float("inf") else None
    return None


def _first_price(pricing: dict[str, Any], *fields: str) -> float | None:
    for field in fields:
        price = to_price(pricing.get(field))
        if price is not None:
            return price
    return None


def calculate_openrouter_cost(usage: TokenUsage | None, pricing: dict[str, Any] | None) -> float | None:
    """
    ``request + prompt_tokens * prompt + completion_tokens * completion``.

    When only ``total_tokens`` is known it is split in half between prompt and
    completion.
    """
    if usage is None or not isinstance(pricing, dict):
        return None

    prompt_tokens, completion_tokens = usage.prompt_tokens, usage.completion_tokens
    if not prompt_tokens and not completion_tokens:
        half = usage.total_tokens // 2
        prompt_tokens, completion_tokens = half, usage.total_tokens - half

    prompt = _first_price(pricing, "prompt", "input", "1k_input")
    completion = _first_price(pricing, "completion", "output", "1k_output")
    request = to_price(pricing.get("request"))
    if prompt is None and completion is None and request is None:
        return None

    return (
        (request or 0.0)
        + (prompt_tokens * prompt if prompt is not None else 0.0)
        + (completion_tokens * completion if completion is not None else 0.0)
    )


class DefaultCostAccountant:
    """Reported ``usage.cost`` first, OpenRouter catalog pricing second."""

    def __init__(self, catalog: OpenRouterCatalog | None = None) -> None:
        self.catalog = catalog

    async def __call__(self, config: ProviderConfig, model: str | None, usage: TokenUsage | None) -> float | None:
        if usage is None:
            return None
        if usage.cost is not None:
            return usage.cost
        if config.provider != "openrouter" or self.catalog is None or not model:
            return None

        try:
            pricing = await self.catalog.get_pricing(model, config.api_key)
            return calculate_openrouter_cost(usage, pricing)
        except Exception as e:
            logger.warning("Failed to compute OpenRouter cost for %s: %s", model, e)
            return None
