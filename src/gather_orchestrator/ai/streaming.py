"""Streaming response consumer.

Reads a Server-Sent Events body frame by frame, translates each frame into a
typed ``StreamEvent`` and drives ``StreamCallbacks``. Both the engine's own
event vocabulary (``token``, ``sources``, ``actions``, ``done``, ``error``)
and the provider's native streaming events are understood.

A response that is not an event stream is treated as a single terminal
``done`` event built from its body, so callers must not assume that
streaming actually occurred.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError

from ..models import SourceRef
from .schemas import ProviderResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SSEFrame:
    """One dispatched Server-Sent Events frame; ``data`` lines are joined with newlines."""

    data: str
    event: str | None = None
    id: str | None = None
    retry: int | None = None


class SSEParser:
    """Incremental SSE line parser.

    Feed lines without their terminators; a blank line dispatches the frame
    collected so far. Comment lines (leading ``:``) are ignored.
    """

    def __init__(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self._data: list[str] = []
        self._event: str | None = None
        self._id: str | None = None
        self._retry: int | None = None

    def feed(self, line: str) -> SSEFrame | None:
        line = line.rstrip("\r")
        if not line:
            return self.flush()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._id = value
        elif name == "retry":
            try:
                self._retry = int(value)
            except ValueError:
                logger.debug("Ignoring invalid retry field: %r", value)
        else:
            logger.debug("Ignoring unknown SSE field: %r", name)
        return None

    def flush(self) -> SSEFrame | None:
        """Dispatch any pending frame (used at end of stream)."""
        if not self._data and self._event is None:
            self._reset()
            return None
        frame = SSEFrame(
            data="\n".join(self._data), event=self._event, id=self._id, retry=self._retry
        )
        self._reset()
        return frame


def parse_sse_lines(lines: Iterable[str]) -> Iterator[SSEFrame]:
    """Parse an iterable of lines into SSE frames."""
    parser = SSEParser()
    for line in lines:
        event = parser.feed(line)
        if event is not None:
            yield event
    tail = parser.flush()
    if tail is not None:
        yield tail


async def aiter_sse(lines: AsyncIterable[str]) -> AsyncIterator[SSEFrame]:
    """Async counterpart of parse_sse_lines()."""
    parser = SSEParser()
    async for line in lines:
        event = parser.feed(line)
        if event is not None:
            yield event
    tail = parser.flush()
    if tail is not None:
        yield tail


class StreamEventType(Enum):
    TOKEN = "token"
    SOURCES = "sources"
    ACTIONS = "actions"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """A typed stream event.

    Attributes:
        type: Event kind.
        text: Token text or error message.
        payload: Structured data (sources, actions, or the final ``done`` payload).
    """

    type: StreamEventType
    text: str = ""
    payload: Any = None


# Provider lifecycle events that carry nothing the consumer needs
_IGNORED_NATIVE = frozenset(
    {
        "ping",
        "message_start",
        "message_delta",
        "content_block_start",
        "content_block_stop",
    }
)


def to_stream_event(frame: SSEFrame) -> StreamEvent | None:
    """Translate an SSE frame into a typed event.

    Returns ``None`` for frames that are malformed or carry nothing useful.
    """
    raw = frame.data.strip()
    if raw == "[DONE]":
        return StreamEvent(StreamEventType.DONE)
    if not raw:
        return None

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream frame: %r", raw[:200])
        return None
    if not isinstance(data, dict):
        logger.debug("Skipping non-object stream frame: %r", raw[:200])
        return None

    name = frame.event or data.get("type")

    if name == "token":
        text = data.get("text", data.get("content", ""))
        return StreamEvent(StreamEventType.TOKEN, text=str(text)) if text else None
    if name == "sources":
        sources = data.get("sources", [])
        return StreamEvent(StreamEventType.SOURCES, payload=sources if isinstance(sources, list) else [])
    if name in ("actions", "action", "tool_use"):
        actions = data.get("actions")
        if actions is None and name != "actions":
            actions = [data.get("action", data.get("input", data))]
        return StreamEvent(StreamEventType.ACTIONS, payload=actions if isinstance(actions, list) else [])
    if name == "done":
        return StreamEvent(StreamEventType.DONE, payload=data)
    if name == "error":
        error = data.get("error")
        if isinstance(error, dict):
            message = error.get("message", "Stream error")
        else:
            message = error or data.get("message") or "Stream error"
        return StreamEvent(StreamEventType.ERROR, text=str(message))

    if name == "content_block_delta":
        delta = data.get("delta")
        if not isinstance(delta, dict):
            logger.debug("Skipping content_block_delta without a delta object: %r", raw[:200])
            return None
        if delta.get("type") == "text_delta" and delta.get("text"):
            return StreamEvent(StreamEventType.TOKEN, text=str(delta["text"]))
        return None
    if name == "message_stop":
        return StreamEvent(StreamEventType.DONE)
    if name in _IGNORED_NATIVE:
        return None

    logger.debug("Skipping unknown stream event: %r", name)
    return None


@dataclass
class StreamResult:
    """Final outcome of a consumed stream."""

    text: str = ""
    sources: list[SourceRef] = field(default_factory=list)
    actions: list[Any] = field(default_factory=list)
    streamed: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class StreamCallbacks:
    """Optional hooks invoked while consuming a stream.

    ``on_token`` receives the new token and the accumulated text.
    """

    on_token: Callable[[str, str], None] | None = None
    on_sources: Callable[[list[SourceRef]], None] | None = None
    on_actions: Callable[[list[Any]], None] | None = None
    on_done: Callable[[StreamResult], None] | None = None
    on_error: Callable[[str], None] | None = None


def _to_sources(items: Any) -> list[SourceRef]:
    if not isinstance(items, list):
        return []
    return [SourceRef.from_dict(item) for item in items if isinstance(item, dict) and item.get("url")]


class StreamConsumer:
    """Consumes typed events and drives callbacks. Never retries."""

    def __init__(self, callbacks: StreamCallbacks | None = None) -> None:
        self._callbacks = callbacks or StreamCallbacks()

    async def consume(self, events: AsyncIterable[StreamEvent]) -> StreamResult:
        """Consume events until ``done``, ``error`` or end of input.

        Args:
            events: Typed events in arrival order.

        Returns:
            The accumulated result. ``error`` is set when the stream failed.
        """
        cb = self._callbacks
        result = StreamResult(streamed=True)
        buffer: list[str] = []
        done_payload: Any = None

        try:
            async for event in events:
                if event.type is StreamEventType.TOKEN:
                    buffer.append(event.text)
                    if cb.on_token:
                        cb.on_token(event.text, "".join(buffer))
                elif event.type is StreamEventType.SOURCES:
                    result.sources = _to_sources(event.payload)
                    if cb.on_sources:
                        cb.on_sources(result.sources)
                elif event.type is StreamEventType.ACTIONS:
                    result.actions.extend(event.payload or [])
                    if cb.on_actions:
                        cb.on_actions(result.actions)
                elif event.type is StreamEventType.ERROR:
                    return self._fail(result, buffer, event.text or "Stream error")
                elif event.type is StreamEventType.DONE:
                    done_payload = event.payload
                    break
        except (httpx.HTTPError, OSError) as e:
            logger.warning("Stream transport error: %s", e)
            return self._fail(result, buffer, str(e) or "Connection lost")

        result.text = "".join(buffer)
        self._apply_done_payload(result, done_payload)
        if cb.on_done:
            cb.on_done(result)
        return result

    async def consume_response(self, response: httpx.Response) -> StreamResult:
        """Consume an httpx response, degrading to a single ``done`` for plain bodies.

        The response is closed before returning.
        """
        try:
            content_type = response.headers.get("content-type", "")
            if "text/event-stream" in content_type:
                return await self.consume(self._events_from(response))
            return await self._consume_body(response)
        finally:
            await response.aclose()

    async def _events_from(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        async for frame in aiter_sse(response.aiter_lines()):
            event = to_stream_event(frame)
            if event is not None:
                yield event

    async def _consume_body(self, response: httpx.Response) -> StreamResult:
        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        except (httpx.HTTPError, OSError) as e:
            logger.warning("Failed to read response body: %s", e)
            return self._fail(StreamResult(), [], str(e) or "Connection lost")

        try:
            payload: Any = json.loads(body) if body.strip() else {}
        except json.JSONDecodeError:
            payload = {"text": body}

        result = StreamResult(streamed=False)
        if isinstance(payload, dict) and isinstance(payload.get("content"), list):
            # Plain provider message body; anything else falls through as a done payload
            try:
                message = ProviderResponse.model_validate(payload)
            except ValidationError as e:
                logger.debug("Body has a content list but is not a provider message: %s", e)
            else:
                payload = {"text": message.text(), "sources": message.sources()}
        self._apply_done_payload(result, payload)

        if self._callbacks.on_done:
            self._callbacks.on_done(result)
        return result

    def _apply_done_payload(self, result: StreamResult, payload: Any) -> None:
        """Final payload fields supersede what was accumulated."""
        if not isinstance(payload, dict):
            return
        text = payload.get("response", payload.get("text"))
        if isinstance(text, str) and text:
            result.text = text
        if isinstance(payload.get("actions"), list):
            result.actions = list(payload["actions"])
        if isinstance(payload.get("sources"), list):
            result.sources = _to_sources(payload["sources"])

    def _fail(self, result: StreamResult, buffer: list[str], message: str) -> StreamResult:
        result.text = "".join(buffer)
        result.error = message
        if self._callbacks.on_error:
            self._callbacks.on_error(message)
        return result
