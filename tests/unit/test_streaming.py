"""Tests for SSE parsing and the streaming response consumer."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest

from gather_orchestrator.ai.streaming import (
    SSEFrame,
    StreamCallbacks,
    StreamConsumer,
    StreamEvent,
    StreamEventType,
    parse_sse_lines,
    to_stream_event,
)
from gather_orchestrator.models import SourceRef


async def _events(*events: StreamEvent) -> AsyncIterator[StreamEvent]:
    for event in events:
        yield event


def _sse_response(*frames: str) -> httpx.Response:
    body = "".join(frames)
    return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})


def _frame(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class Recorder:
    def __init__(self) -> None:
        self.tokens: list[tuple[str, str]] = []
        self.errors: list[str] = []
        self.done: list[Any] = []
        self.sources: list[list[SourceRef]] = []

    def callbacks(self) -> StreamCallbacks:
        return StreamCallbacks(
            on_token=lambda token, text: self.tokens.append((token, text)),
            on_sources=self.sources.append,
            on_done=self.done.append,
            on_error=self.errors.append,
        )


# ---------------------------------------------------------------------------
# SSE wire format
# ---------------------------------------------------------------------------


class TestSSEParser:
    def test_fields_and_multiline_data(self) -> None:
        lines = ["id: 7", "event: token", "retry: 1000", "data: a", "data: b", ""]
        (frame,) = list(parse_sse_lines(lines))
        assert frame == SSEFrame(data="a\nb", event="token", id="7", retry=1000)

    def test_unterminated_frame_is_flushed(self) -> None:
        (frame,) = list(parse_sse_lines(["data: tail"]))
        assert frame == SSEFrame(data="tail")

    def test_comments_and_blank_frames_are_skipped(self) -> None:
        frames = list(parse_sse_lines([": keepalive", "", "data: x", ""]))
        assert [f.data for f in frames] == ["x"]


class TestToStreamEvent:
    def test_done_marker(self) -> None:
        event = to_stream_event(SSEFrame(data="[DONE]"))
        assert event is not None and event.type is StreamEventType.DONE

    def test_malformed_frame_is_skipped(self) -> None:
        assert to_stream_event(SSEFrame(data="{not json")) is None

    @pytest.mark.parametrize("delta", ["oops", None, ["text_delta"], 3])
    def test_delta_that_is_not_an_object_is_skipped(self, delta: Any) -> None:
        data = {"type": "content_block_delta", "delta": delta}
        assert to_stream_event(SSEFrame(data=json.dumps(data))) is None

    def test_named_token_event(self) -> None:
        event = to_stream_event(SSEFrame(data='{"text": "Hi"}', event="token"))
        assert event == StreamEvent(StreamEventType.TOKEN, text="Hi")

    def test_native_text_delta(self) -> None:
        data = {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}}
        event = to_stream_event(SSEFrame(data=json.dumps(data)))
        assert event == StreamEvent(StreamEventType.TOKEN, text="Hel")

    def test_native_lifecycle_events_ignored(self) -> None:
        assert to_stream_event(SSEFrame(data='{"type": "ping"}')) is None
        assert to_stream_event(SSEFrame(data='{"type": "message_start"}')) is None

    def test_native_error(self) -> None:
        data = {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
        event = to_stream_event(SSEFrame(data=json.dumps(data)))
        assert event == StreamEvent(StreamEventType.ERROR, text="Overloaded")


# ---------------------------------------------------------------------------
# StreamConsumer.consume
# ---------------------------------------------------------------------------


async def test_tokens_accumulate_in_order() -> None:
    recorder = Recorder()
    result = await StreamConsumer(recorder.callbacks()).consume(
        _events(
            StreamEvent(StreamEventType.TOKEN, text="Hel"),
            StreamEvent(StreamEventType.TOKEN, text="lo"),
            StreamEvent(StreamEventType.DONE),
        )
    )
    assert result.ok
    assert result.text == "Hello"
    assert recorder.tokens == [("Hel", "Hel"), ("lo", "Hello")]
    assert recorder.done == [result]


async def test_done_payload_supersedes_tokens() -> None:
    result = await StreamConsumer().consume(
        _events(
            StreamEvent(StreamEventType.TOKEN, text="partial"),
            StreamEvent(
                StreamEventType.DONE,
                payload={
                    "response": "final answer",
                    "actions": [{"type": "show_sources"}],
                    "sources": [{"title": "IRS", "url": "https://irs.gov"}],
                },
            ),
        )
    )
    assert result.text == "final answer"
    assert result.actions == [{"type": "show_sources"}]
    assert result.sources == [SourceRef(title="IRS", url="https://irs.gov")]


async def test_events_after_done_are_not_read() -> None:
    result = await StreamConsumer().consume(
        _events(
            StreamEvent(StreamEventType.TOKEN, text="a"),
            StreamEvent(StreamEventType.DONE),
            StreamEvent(StreamEventType.TOKEN, text="b"),
        )
    )
    assert result.text == "a"


async def test_error_event_ends_consumption() -> None:
    recorder = Recorder()
    result = await StreamConsumer(recorder.callbacks()).consume(
        _events(
            StreamEvent(StreamEventType.TOKEN, text="half"),
            StreamEvent(StreamEventType.ERROR, text="upstream failed"),
            StreamEvent(StreamEventType.TOKEN, text="never"),
        )
    )
    assert not result.ok
    assert result.error == "upstream failed"
    assert result.text == "half"
    assert recorder.errors == ["upstream failed"]
    assert recorder.done == []


async def test_transport_error_invokes_on_error() -> None:
    async def broken() -> AsyncIterator[StreamEvent]:
        yield StreamEvent(StreamEventType.TOKEN, text="x")
        raise httpx.ReadError("connection reset")

    recorder = Recorder()
    result = await StreamConsumer(recorder.callbacks()).consume(broken())
    assert result.error == "connection reset"
    assert recorder.errors == ["connection reset"]


async def test_sources_event_reported() -> None:
    recorder = Recorder()
    result = await StreamConsumer(recorder.callbacks()).consume(
        _events(
            StreamEvent(StreamEventType.SOURCES, payload=[{"title": "DMV", "url": "https://dmv.ca.gov"}]),
            StreamEvent(StreamEventType.DONE),
        )
    )
    assert result.sources == [SourceRef(title="DMV", url="https://dmv.ca.gov")]
    assert recorder.sources == [result.sources]


# ---------------------------------------------------------------------------
# StreamConsumer.consume_response
# ---------------------------------------------------------------------------


async def test_consume_native_event_stream() -> None:
    response = _sse_response(
        _frame("message_start", {"type": "message_start"}),
        _frame("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": '{"message":"Hi'}}),
        "data: {broken\n\n",
        _frame("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": ' there"}'}}),
        _frame("message_stop", {"type": "message_stop"}),
    )
    result = await StreamConsumer().consume_response(response)
    assert result.ok
    assert result.streamed is True
    assert result.text == '{"message":"Hi there"}'
    assert response.is_closed


async def test_malformed_delta_does_not_end_stream() -> None:
    recorder = Recorder()
    response = _sse_response(
        _frame("content_block_delta", {"type": "content_block_delta", "delta": "oops"}),
        _frame("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "hi"}}),
        _frame("message_stop", {"type": "message_stop"}),
    )
    result = await StreamConsumer(recorder.callbacks()).consume_response(response)
    assert result.ok
    assert result.text == "hi"
    assert recorder.errors == []


async def test_content_list_that_is_not_a_provider_message() -> None:
    response = httpx.Response(200, json={"content": [{"text": "hi"}], "text": "hello"})
    recorder = Recorder()
    result = await StreamConsumer(recorder.callbacks()).consume_response(response)
    assert result.ok
    assert result.text == "hello"
    assert recorder.done == [result]


async def test_plain_json_body_degrades_to_done() -> None:
    response = httpx.Response(200, json={"response": "All set", "actions": []})
    recorder = Recorder()
    result = await StreamConsumer(recorder.callbacks()).consume_response(response)
    assert result.text == "All set"
    assert result.streamed is False
    assert recorder.tokens == []
    assert recorder.done == [result]


async def test_provider_message_body_is_unwrapped(message_body: Any) -> None:
    body = message_body("Answer", sources=[{"title": "Gov", "url": "https://gov.example"}])
    result = await StreamConsumer().consume_response(httpx.Response(200, json=body))
    assert result.text == "Answer"
    assert result.sources == [SourceRef(title="Gov", url="https://gov.example")]


async def test_text_body_used_verbatim() -> None:
    result = await StreamConsumer().consume_response(httpx.Response(200, text="just words"))
    assert result.text == "just words"


@pytest.mark.parametrize("frame", ["data: [DONE]\n\n", _frame("done", {"type": "done"})])
async def test_terminal_frames(frame: str) -> None:
    response = _sse_response(_frame("token", {"text": "ok"}), frame)
    result = await StreamConsumer().consume_response(response)
    assert result.text == "ok"
