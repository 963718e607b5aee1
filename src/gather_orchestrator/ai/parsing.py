"""Parsing helpers for model output.

The conversation prompt asks the model for ``{"message": ..., "actions": [...]}``
but output arrives as plain text, fenced JSON, or (while streaming) a JSON
object that has not been closed yet. These helpers extract what is usable.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from ..errors import ResponseParseError

logger = logging.getLogger(__name__)

_CODE_BLOCK = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)
_MESSAGE_FIELD = re.compile(r'"message"\s*:\s*"((?:[^"\\]|\\[\s\S])*)"')
_CITE_TAG = re.compile(r"<cite[^>]*>.*?</cite>", re.DOTALL)

_ESCAPES = {'"': '"', "n": "\n", "t": "\t", "r": "\r", "\\": "\\"}


@dataclass
class ParsedReply:
    """A conversational reply split into display text and proposed actions."""

    message: str
    actions: list[Any] = field(default_factory=list)
    raw: str = ""


def parse_json_response(response: str) -> Any:
    """Extract JSON from model output, handling markdown code blocks.

    Args:
        response: Raw response text.

    Returns:
        Parsed JSON data.

    Raises:
        ResponseParseError: If no JSON can be extracted.
    """
    response = response.strip()

    try:
        return json.loads(response)
    except json.JSONDecodeError:
        pass

    match = _CODE_BLOCK.search(response)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError as e:
            raise ResponseParseError(
                f"JSON in code block is invalid: {e}\nContent: {match.group(1)[:200]}"
            ) from e

    array_match = re.search(r"\[.*\]", response, re.DOTALL)
    if array_match:
        try:
            return json.loads(array_match.group(0))
        except json.JSONDecodeError:
            pass

    object_match = re.search(r"\{.*\}", response, re.DOTALL)
    if object_match:
        try:
            return json.loads(object_match.group(0))
        except json.JSONDecodeError:
            pass

    raise ResponseParseError(f"Could not parse JSON from response: {response[:200]}...")


def unescape_json_string(value: str) -> str:
    """Unescape the body of a JSON string literal (``\\\\`` handled first)."""
    if not value:
        return ""
    return (
        value.replace("\\\\", "\u0000")
        .replace('\\"', '"')
        .replace("\\n", "\n")
        .replace("\\t", "\t")
        .replace("\\r", "\r")
        .replace("\u0000", "\\")
    )


def strip_cite_tags(text: str) -> str:
    """Remove ``<cite>`` attribution tags from display text."""
    if not text:
        return ""
    return _CITE_TAG.sub("", text).strip()


def parse_ai_message(text: str) -> str:
    """Return the display message from a complete reply.

    Falls back to the trimmed raw text when the reply is not JSON-shaped.
    """
    if not text:
        return ""
    trimmed = text.strip()

    if trimmed.startswith("{") and '"message"' in trimmed:
        try:
            parsed = json.loads(trimmed)
            if isinstance(parsed, dict) and isinstance(parsed.get("message"), str):
                return parsed["message"]
        except json.JSONDecodeError:
            pass
        match = _MESSAGE_FIELD.search(trimmed)
        if match:
            return unescape_json_string(match.group(1))

    return trimmed


def parse_ai_response_full(text: str) -> ParsedReply:
    """Split a complete reply into message and raw action list."""
    if not text:
        return ParsedReply(message="", actions=[], raw="")

    trimmed = text.strip()
    result = ParsedReply(message=trimmed, actions=[], raw=trimmed)

    object_match = re.search(r"\{.*\}", trimmed, re.DOTALL)
    if object_match:
        try:
            parsed = json.loads(object_match.group(0))
        except json.JSONDecodeError:
            message_match = _MESSAGE_FIELD.search(trimmed)
            if message_match:
                result.message = unescape_json_string(message_match.group(1))
            return result
        if isinstance(parsed, dict):
            if isinstance(parsed.get("message"), str):
                result.message = parsed["message"]
            if isinstance(parsed.get("actions"), list):
                result.actions = parsed["actions"]

    return result


def parse_streaming_message(text: str) -> str:
    """Extract whatever message content is available from a partial reply.

    While streaming, the model output may be an unterminated JSON object such as
    ``{"message":"Working on it``; the partial value is returned unescaped.
    """
    if not text:
        return ""
    trimmed = text.strip()

    if not trimmed.startswith("{"):
        return trimmed
    if '"message"' not in trimmed:
        return ""

    key_at = trimmed.find('"message"')
    colon_at = trimmed.find(":", key_at)
    if colon_at == -1:
        return ""
    quote_at = trimmed.find('"', colon_at + 1)
    if quote_at == -1:
        return ""

    chars: list[str] = []
    i = quote_at + 1
    while i < len(trimmed):
        char = trimmed[i]
        if char == "\\" and i + 1 < len(trimmed):
            nxt = trimmed[i + 1]
            chars.append(_ESCAPES.get(nxt, nxt))
            i += 2
        elif char == '"':
            break
        else:
            chars.append(char)
            i += 1
    return "".join(chars)
