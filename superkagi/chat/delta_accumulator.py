"""
Streaming tool-call reassembly.

Providers stream tool calls as fragments keyed by a positional index. Names
and argument strings arrive in pieces and must be concatenated per index in
arrival order; fragments for different indices may interleave freely.
"""

from __future__ import annotations

import logging
from typing import Any

from superkagi.chat.models import FunctionCall, FunctionCallDelta, ToolCall, ToolCallDelta

logger = logging.getLogger(__name__)


def _typed(value: Any, kind: type) -> Any:
    # bool is an int subclass but never a valid index
    if isinstance(value, bool) or not isinstance(value, kind):
        return None
    return value


def coerce_delta(raw: dict[str, Any]) -> ToolCallDelta:
    """
    Build a delta from an untrusted provider fragment.

    Fields of the wrong type are dropped rather than failing the round.
    """
    function = raw.get("function")
    fn: FunctionCallDelta | None = None
    if isinstance(function, dict):
        fn = FunctionCallDelta(
            name=_typed(function.get("name"), str),
            arguments=_typed(function.get("arguments"), str),
        )
    elif function is not None:
        logger.warning("Ignoring tool call function of type %s", type(function).__name__)

    return ToolCallDelta(
        index=_typed(raw.get("index"), int),
        id=_typed(raw.get("id"), str),
        type=_typed(raw.get("type"), str),
        function=fn,
    )


class ToolCallAccumulator:
    """Collects tool-call deltas for one provider round."""

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def add(self, delta: ToolCallDelta | dict[str, Any]) -> None:
        """
        Fold one fragment into the call at its index.

        Name and argument fragments are appended, never overwritten. An explicit
        id replaces the current one. A missing index means index 0.
        """
        tcd = delta if isinstance(delta, ToolCallDelta) else coerce_delta(delta)
        index = tcd.index if tcd.index is not None else 0

        current = self._calls.get(index)
        if current is None:
            current = {"id": "", "type": "function", "name": "", "arguments": ""}
            self._calls[index] = current

        if tcd.id:
            current["id"] = tcd.id
        if tcd.type:
            current["type"] = tcd.type
        if tcd.function is not None:
            if tcd.function.name:
                current["name"] += tcd.function.name
            if tcd.function.arguments:
                current["arguments"] += tcd.function.arguments

    def add_many(self, deltas: list[Any] | None) -> None:
        for delta in deltas or []:
            if isinstance(delta, dict | ToolCallDelta):
                self.add(delta)

    def complete_calls(self) -> list[ToolCall]:
        """
        Dense list of invocable calls ordered by index.

        Entries without a name cannot be invoked and are dropped. A call that
        never received an id gets a synthetic one so its tool result can still
        be tagged.
        """
        calls: list[ToolCall] = []
        for index in sorted(self._calls):
            entry = self._calls[index]
            if not entry["name"]:
                logger.warning("Dropping tool call at index %d without a function name", index)
                continue
            calls.append(
                ToolCall(
                    id=entry["id"] or f"call_{index}",
                    function=FunctionCall(name=entry["name"], arguments=entry["arguments"] or "{}"),
                )
            )
        return calls
