"""
Request Normalizer

Converts the browser's heterogeneous message list into canonical, role-tagged
messages ready for provider submission. Never raises: malformed content
parts degrade to empty text parts.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from superkagi.chat.models import Content, IncomingMessage

logger = logging.getLogger(__name__)

_TEXT_TYPES = {"text", "input_text"}


def _image_url_of(part: dict[str, Any]) -> str:
    image_url = part.get("image_url")
    if isinstance(image_url, dict):
        url = image_url.get("url")
    else:
        url = image_url if isinstance(image_url, str) else part.get("url")
    return url if isinstance(url, str) else ""


def normalize_part(part: Any) -> dict[str, Any]:
    """Map one loosely-shaped content part onto a text or image_url part."""
    if part is None:
        return {"type": "text", "text": ""}
    if isinstance(part, str):
        return {"type": "text", "text": part}
    if not isinstance(part, dict):
        return {"type": "text", "text": str(part)}

    part_type = part.get("type")
    if part_type == "image_url":
        return {"type": "image_url", "image_url": {"url": _image_url_of(part)}}

    text = part.get("text")
    if part_type not in _TEXT_TYPES:
        logger.debug("Degrading unknown content part type %r to text", part_type)
    return {"type": "text", "text": text if isinstance(text, str) else ""}


def normalize_content(content: Any) -> Content:
    """
    Canonicalize a content value.

    Strings pass through, ``None`` becomes ``""``, lists are mapped part by
    part, and a list holding exactly one text part collapses to its string.
    Applying this twice yields the same value as applying it once.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        content = [content]
    if not isinstance(content, list | tuple):
        return str(content)

    parts = [normalize_part(p) for p in content]
    if not parts:
        return ""
    if len(parts) == 1 and parts[0]["type"] == "text":
        return parts[0]["text"]
    return parts


def content_to_text(content: Any) -> str:
    """Flatten canonical content to the text a human would read."""
    normalized = normalize_content(content)
    if isinstance(normalized, str):
        return normalized
    return "".join(p.get("text", "") for p in normalized if p.get("type") == "text")


def sanitize_messages(
    messages: Iterable[IncomingMessage | dict[str, Any]],
    system_prompt: str | None = None,
) -> list[dict[str, Any]]:
    """
    Build the canonical provider message list.

    Drops pending messages, normalizes content and prepends one system message
    when ``system_prompt`` is non-blank.
    """
    result: list[dict[str, Any]] = []

    for raw in messages:
        msg = raw if isinstance(raw, IncomingMessage) else IncomingMessage.model_validate(raw)
        if msg.pending:
            continue
        entry: dict[str, Any] = {"role": msg.role, "content": normalize_content(msg.content)}
        if msg.role == "tool" and msg.tool_call_id:
            entry["tool_call_id"] = msg.tool_call_id
        result.append(entry)

    prompt = (system_prompt or "").strip()
    if prompt:
        result.insert(0, {"role": "system", "content": prompt})

    logger.debug("Normalized %d messages (system prompt: %s)", len(result), bool(prompt))
    return result
