"""Tests for the provider retry client."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import httpx
import pytest

from gather_orchestrator.ai.retry_client import (
    AIResult,
    RetryClient,
    classify_exception,
    classify_status,
    retry_delay,
)
from gather_orchestrator.ai.schemas import ProviderMessage, ProviderRequest
from gather_orchestrator.ai.streaming import StreamCallbacks, StreamConsumer
from gather_orchestrator.config import AIConfig
from gather_orchestrator.errors import AIError, ErrorKind, ProviderError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _request() -> ProviderRequest:
    return ProviderRequest(
        model="test-model",
        max_tokens=100,
        messages=[ProviderMessage(role="user", content="hello")],
    )


def _make_client(
    handler: Any,
    sleep: Callable[[float], Awaitable[None]],
    api_key: str | None = "test-key",
    config: AIConfig | None = None,
) -> RetryClient:
    return RetryClient(api_key, config, transport=httpx.MockTransport(handler), sleep=sleep)


def _sequence(*responses: httpx.Response) -> tuple[Any, list[httpx.Request]]:
    """Handler that returns ``responses`` in order and records requests."""
    seen: list[httpx.Request] = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return queue.pop(0)

    return handler, seen


# ---------------------------------------------------------------------------
# classify_status
# ---------------------------------------------------------------------------


class TestClassifyStatus:
    def test_rate_limit_uses_default_wait(self) -> None:
        error = classify_status(429)
        assert error.kind is ErrorKind.RATE_LIMIT
        assert error.retryable is True
        assert error.retry_after == 5.0

    def test_retry_after_header_overrides_default(self) -> None:
        error = classify_status(429, headers={"retry-after": "12"})
        assert error.retry_after == 12.0

    def test_non_numeric_retry_after_is_ignored(self) -> None:
        error = classify_status(429, headers={"retry-after": "soon"})
        assert error.retry_after == 5.0

    def test_529_is_overloaded(self) -> None:
        error = classify_status(529)
        assert error.kind is ErrorKind.OVERLOADED
        assert error.retry_after == 10.0

    def test_overloaded_body_wins_over_server(self) -> None:
        body = json.dumps({"error": {"type": "overloaded_error", "message": "Overloaded"}})
        error = classify_status(503, body)
        assert error.kind is ErrorKind.OVERLOADED
        assert error.message == "Overloaded"

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_is_not_retryable(self, status: int) -> None:
        error = classify_status(status)
        assert error.kind is ErrorKind.AUTH
        assert error.retryable is False
        assert error.retry_after is None

    def test_bad_request_is_invalid(self) -> None:
        body = json.dumps({"error": {"message": "max_tokens too large"}})
        error = classify_status(400, body)
        assert error.kind is ErrorKind.INVALID_REQUEST
        assert error.retryable is False
        assert error.message == "max_tokens too large"

    @pytest.mark.parametrize("status", [413, 422])
    def test_unprocessable_requests_are_invalid(self, status: int) -> None:
        error = classify_status(status)
        assert error.kind is ErrorKind.INVALID_REQUEST
        assert error.retryable is False

    @pytest.mark.parametrize("status", [404, 408, 409])
    def test_other_client_errors_are_retried(self, status: int) -> None:
        error = classify_status(status)
        assert error.kind is ErrorKind.NETWORK
        assert error.retryable is True
        assert error.retry_after is None

    def test_server_error_waits_two_seconds(self) -> None:
        error = classify_status(500, "boom")
        assert error.kind is ErrorKind.SERVER
        assert error.retry_after == 2.0
        assert error.message == "boom"


class TestClassifyException:
    def test_timeout(self) -> None:
        error = classify_exception(httpx.ReadTimeout("slow"))
        assert error.kind is ErrorKind.TIMEOUT
        assert error.retryable is True

    def test_network(self) -> None:
        error = classify_exception(httpx.ConnectError("refused"))
        assert error.kind is ErrorKind.NETWORK
        assert error.retry_after is None


def test_retry_delay_follows_schedule_without_hint() -> None:
    error = AIError(kind=ErrorKind.NETWORK, message="x", retryable=True)
    assert [retry_delay(error, attempt) for attempt in range(5)] == [1, 2, 4, 4, 4]


class TestAIResultUnwrap:
    def test_success_returns_data(self) -> None:
        assert AIResult(data="body").unwrap() == "body"

    def test_failure_raises_provider_error(self) -> None:
        error = AIError(kind=ErrorKind.AUTH, message="API key not configured", retryable=False)
        with pytest.raises(ProviderError, match="auth: API key not configured") as excinfo:
            AIResult(error=error).unwrap()
        assert excinfo.value.error is error

    def test_empty_result_raises(self) -> None:
        with pytest.raises(ProviderError, match="Empty result"):
            AIResult().unwrap()


# ---------------------------------------------------------------------------
# RetryClient.call
# ---------------------------------------------------------------------------


async def test_success_after_two_rate_limits(
    fake_sleep: Any, sleeps: list[float], message_body: Any
) -> None:
    handler, seen = _sequence(
        httpx.Response(429),
        httpx.Response(429),
        httpx.Response(200, json=message_body("hi there")),
    )
    async with _make_client(handler, fake_sleep) as client:
        result = await client.call(_request())

    assert result.ok
    assert result.data is not None
    assert result.data.text() == "hi there"
    assert len(seen) == 3
    assert sleeps == [5.0, 5.0]


async def test_auth_error_makes_one_attempt(fake_sleep: Any, sleeps: list[float]) -> None:
    handler, seen = _sequence(httpx.Response(401, json={"error": {"message": "bad key"}}))
    async with _make_client(handler, fake_sleep) as client:
        result = await client.call(_request())

    assert not result.ok
    assert result.error is not None
    assert result.error.kind is ErrorKind.AUTH
    assert len(seen) == 1
    assert sleeps == []


async def test_missing_api_key_fails_without_request(fake_sleep: Any) -> None:
    handler, seen = _sequence()
    async with _make_client(handler, fake_sleep, api_key=None) as client:
        result = await client.call(_request())

    assert result.error is not None
    assert result.error.kind is ErrorKind.AUTH
    assert seen == []


async def test_gives_up_after_max_retries(fake_sleep: Any, sleeps: list[float]) -> None:
    handler, seen = _sequence(*(httpx.Response(500) for _ in range(4)))
    async with _make_client(handler, fake_sleep) as client:
        result = await client.call(_request())

    assert result.error is not None
    assert result.error.kind is ErrorKind.SERVER
    assert len(seen) == 4
    assert sleeps == [2.0, 2.0, 2.0]


async def test_max_retries_is_configurable(fake_sleep: Any) -> None:
    handler, seen = _sequence(httpx.Response(500), httpx.Response(500))
    async with _make_client(handler, fake_sleep, config=AIConfig(max_retries=1)) as client:
        result = await client.call(_request())

    assert not result.ok
    assert len(seen) == 2


async def test_network_errors_use_schedule(
    fake_sleep: Any, sleeps: list[float], message_body: Any
) -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json=message_body("ok"))

    async with _make_client(handler, fake_sleep) as client:
        result = await client.call(_request())

    assert result.ok
    assert sleeps == [1, 2]


async def test_unreadable_body_is_retried(
    fake_sleep: Any, sleeps: list[float], message_body: Any
) -> None:
    handler, seen = _sequence(
        httpx.Response(200, text="not json"),
        httpx.Response(200, json=message_body("ok")),
    )
    async with _make_client(handler, fake_sleep) as client:
        result = await client.call(_request())

    assert result.ok
    assert len(seen) == 2


async def test_request_headers_and_body(fake_sleep: Any, message_body: Any) -> None:
    handler, seen = _sequence(httpx.Response(200, json=message_body("ok")))
    async with _make_client(handler, fake_sleep) as client:
        await client.call(_request())

    request = seen[0]
    assert request.headers["x-api-key"] == "test-key"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.content)
    assert body["model"] == "test-model"
    assert body["messages"] == [{"role": "user", "content": "hello"}]
    assert "stream" not in body
    assert "tools" not in body


# ---------------------------------------------------------------------------
# RetryClient.open_stream
# ---------------------------------------------------------------------------


async def test_open_stream_retries_before_body(fake_sleep: Any, sleeps: list[float]) -> None:
    handler, seen = _sequence(
        httpx.Response(529),
        httpx.Response(200, text="data: [DONE]\n\n", headers={"content-type": "text/event-stream"}),
    )
    async with _make_client(handler, fake_sleep) as client:
        result = await client.open_stream(_request())
        assert result.ok
        assert result.data is not None
        await result.data.aclose()

    assert sleeps == [10.0]
    assert json.loads(seen[-1].content)["stream"] is True


async def test_open_stream_returns_classified_error(fake_sleep: Any) -> None:
    handler, _ = _sequence(httpx.Response(400, json={"error": {"message": "bad"}}))
    async with _make_client(handler, fake_sleep) as client:
        result = await client.open_stream(_request())

    assert result.error is not None
    assert result.error.kind is ErrorKind.INVALID_REQUEST
    assert result.error.message == "bad"


class StalledStream(httpx.AsyncByteStream):
    """Body that sends one frame and then never sends another byte."""

    def __init__(self) -> None:
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield b'event: token\ndata: {"text": "Hel"}\n\n'
        await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


async def test_stalled_stream_times_out(fake_sleep: Any) -> None:
    body = StalledStream()
    handler, _ = _sequence(
        httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=body)
    )
    errors: list[str] = []
    config = AIConfig(timeout_seconds=0.2)

    async with _make_client(handler, fake_sleep, config=config) as client:
        result = await client.open_stream(_request())
        assert result.data is not None
        consumer = StreamConsumer(StreamCallbacks(on_error=errors.append))
        streamed = await asyncio.wait_for(consumer.consume_response(result.data), timeout=5.0)

    assert not streamed.ok
    assert streamed.text == "Hel"
    assert errors == [streamed.error]
    assert "No data received" in (streamed.error or "")
    assert body.closed
