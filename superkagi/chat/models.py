"""
Chat Service Data Models

Data structures for the chat pipeline: incoming request payloads, LLM API
message types, tool definitions, streaming deltas and the SSE wire events.
All strongly typed with Pydantic for validation and type safety.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ==============================================================================
# CONTENT
# ==============================================================================


# Canonical content is either a bare string or a list of parts, each
# {"type": "text", "text": ...} or {"type": "image_url", "image_url": {"url": ...}}
Content = str | list[dict[str, Any]]


# ==============================================================================
# REQUEST PAYLOAD
# ==============================================================================


class IncomingMessage(BaseModel):
    """A message as sent by the browser; content shape is not trusted."""

    model_config = ConfigDict(extra="ignore")

    role: str = "user"
    content: Any = None
    pending: bool = False
    tool_call_id: str | None = None

    @field_validator("pending", mode="before")
    @classmethod
    def coerce_pending(cls, v: Any) -> bool:
        return bool(v)


class ChatPayload(BaseModel):
    """Request body accepted by both chat endpoints."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: list[IncomingMessage] = Field(default_factory=list)
    provider: Any = None
    model: str | None = None
    api_key: str | None = Field(default=None, alias="apiKey")
    local_url: str | None = Field(default=None, alias="localUrl")
    system_prompt: str | None = Field(default=None, alias="systemPrompt")
    deep_search: bool = Field(default=False, alias="deepSearch")

    @field_validator("messages", mode="before")
    @classmethod
    def drop_non_objects(cls, v: Any) -> list[Any]:
        """Ignore anything in the message list that is not an object."""
        if not isinstance(v, list):
            return []
        return [m for m in v if isinstance(m, dict | IncomingMessage)]

    @field_validator("deep_search", mode="before")
    @classmethod
    def coerce_deep_search(cls, v: Any) -> bool:
        return bool(v)

    def to_wire(self) -> dict[str, Any]:
        """Serialize with the browser's camelCase field names."""
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"messages": {"__all__": {"pending"}}})


# ==============================================================================
# LLM API MESSAGES
# ==============================================================================


class SystemMessage(BaseModel):
    """System message for setting context."""

    role: Literal["system"] = "system"
    content: str


class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    content: Content


class FunctionCall(BaseModel):
    """Function call within a tool call."""

    name: str
    arguments: str = Field(default="{}")  # JSON string


class ToolCall(BaseModel):
    """Tool call from LLM."""

    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class AssistantMessage(BaseModel):
    """Assistant message with optional tool calls."""

    role: Literal["assistant"] = "assistant"
    content: Content | None = None
    tool_calls: list[ToolCall] | None = None

    @field_validator("tool_calls")
    @classmethod
    def validate_tool_calls(cls, v: list[ToolCall] | None) -> list[ToolCall] | None:
        """Convert empty tool_calls list to None to avoid API errors."""
        if v is not None and len(v) == 0:
            return None
        return v

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AssistantMessage:
        """Create AssistantMessage from a raw provider ``message`` object."""
        tool_calls = None
        if data.get("tool_calls"):
            tool_calls = [
                ToolCall(
                    id=tc.get("id") or "",
                    type="function",
                    function=FunctionCall(
                        name=(tc.get("function") or {}).get("name") or "",
                        arguments=(tc.get("function") or {}).get("arguments") or "{}",
                    ),
                )
                for tc in data["tool_calls"]
                if isinstance(tc, dict)
            ]

        return cls(
            content=data.get("content"),
            tool_calls=tool_calls,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict format, omitting tool_calls when absent."""
        result: dict[str, Any] = {
            "role": self.role,
            "content": self.content if self.content is not None else "",
        }
        if self.tool_calls:
            result["tool_calls"] = [tc.model_dump() for tc in self.tool_calls]
        return result


class ToolMessage(BaseModel):
    """Tool response message."""

    role: Literal["tool"] = "tool"
    content: str
    tool_call_id: str


# Union of all message types for conversation
ChatCompletionMessage = SystemMessage | UserMessage | AssistantMessage | ToolMessage


class ConversationHistory(BaseModel):
    """Working transcript for one request, extended in place by the tool loop."""

    messages: list[ChatCompletionMessage] = Field(default_factory=list)  # type: ignore

    @classmethod
    def from_dicts(cls, messages: list[dict[str, Any]]) -> ConversationHistory:
        """Build from normalized ``{role, content}`` dicts."""
        history = cls()
        for msg in messages:
            role = msg.get("role")
            content = msg.get("content")
            if role == "system":
                history.add_message(SystemMessage(content=content if isinstance(content, str) else ""))
            elif role == "assistant":
                history.add_message(AssistantMessage(content=content))
            elif role == "tool":
                history.add_message(
                    ToolMessage(
                        content=content if isinstance(content, str) else json.dumps(content),
                        tool_call_id=msg.get("tool_call_id") or "",
                    )
                )
            else:
                history.add_message(UserMessage(content=content if content is not None else ""))
        return history

    def add_message(self, message: ChatCompletionMessage) -> None:
        self.messages.append(message)

    def get_dict_format(self) -> list[dict[str, Any]]:
        """Get conversation in dictionary format for the provider API."""
        result: list[dict[str, Any]] = []
        for msg in self.messages:
            if isinstance(msg, AssistantMessage):
                result.append(msg.to_dict())
            else:
                result.append(msg.model_dump())
        return result


# ==============================================================================
# TOOL DEFINITIONS AND SCHEMAS
# ==============================================================================


class ToolFunctionParameters(BaseModel):
    """Function parameters schema for tools."""

    model_config = ConfigDict(extra="allow")

    type: str = "object"
    properties: dict[str, Any] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)
    additionalProperties: bool | dict[str, Any] = False
    description: str | None = None


class ToolFunctionDefinition(BaseModel):
    name: str
    description: str = ""
    parameters: ToolFunctionParameters


class ToolDefinition(BaseModel):
    """Complete tool definition for OpenAI-compatible APIs."""

    type: Literal["function"] = "function"
    function: ToolFunctionDefinition


class ToolDescriptor(BaseModel):
    """An invocable tool as listed by the tool catalog."""

    name: str
    description: str = ""
    parameters_schema: ToolFunctionParameters

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(
            function=ToolFunctionDefinition(
                name=self.name,
                description=self.description,
                parameters=self.parameters_schema,
            )
        )


# ==============================================================================
# STREAMING MODELS
# ==============================================================================


class FunctionCallDelta(BaseModel):
    """Partial function call data in streaming response."""

    name: str | None = None
    arguments: str | None = None


class ToolCallDelta(BaseModel):
    """Partial tool call data in streaming response."""

    model_config = ConfigDict(extra="ignore")

    index: int | None = None
    id: str | None = None
    type: str | None = None
    function: FunctionCallDelta | None = None


class TokenUsage(BaseModel):
    """Token counters reported by a provider, summed across tool rounds."""

    model_config = ConfigDict(extra="allow")

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> TokenUsage | None:
        if not isinstance(raw, dict):
            return None
        prompt = raw.get("prompt_tokens", raw.get("input_tokens", 0))
        completion = raw.get("completion_tokens", raw.get("output_tokens", 0))
        total = raw.get("total_tokens", 0)
        cost = raw.get("cost")
        return cls(
            prompt_tokens=prompt if isinstance(prompt, int) else 0,
            completion_tokens=completion if isinstance(completion, int) else 0,
            total_tokens=total if isinstance(total, int) else 0,
            cost=float(cost) if isinstance(cost, int | float) and not isinstance(cost, bool) else None,
        )

    def add(self, other: TokenUsage | None) -> TokenUsage:
        if other is None:
            return self
        cost = None
        if self.cost is not None or other.cost is not None:
            cost = (self.cost or 0.0) + (other.cost or 0.0)
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cost=cost,
        )


class RoundResult(BaseModel):
    """Everything one provider round produced once its stream ended."""

    content: str = ""
    reasoning: str | None = None
    reasoning_details: Any = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    finish_reason: str | None = None
    model: str | None = None
    usage: TokenUsage | None = None


# ==============================================================================
# SSE WIRE EVENTS
# ==============================================================================


class StreamMeta(BaseModel):
    """Side-channel data; only ``cost`` replaces, everything else is informative."""

    status: str | None = None
    ping: int | None = None
    cost: float | None = None
    model: str | None = None
    usage: dict[str, Any] | None = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class StreamEvent(BaseModel):
    """One ``data:`` frame on the SSE stream; exactly one field is set."""

    content: str | None = None
    reasoning: str | None = None
    reasoning_details: Any = None
    meta: StreamMeta | None = None
    error: str | None = None

    def to_json(self) -> str:
        return json.dumps(self.model_dump(exclude_none=True), ensure_ascii=False)


class ChatResult(BaseModel):
    """Body of the non-streaming endpoint."""

    content: str
    cost: float | None = None
    reasoning: str | None = None
    reasoning_details: Any = None
    model: str | None = None
    usage: dict[str, Any] | None = None
    error: str | None = None
