"""Async client for the provider Messages API with classified retries.

Every provider call in the engine goes through ``RetryClient``. Failures are
classified into an ``AIError`` and returned inside an ``AIResult`` rather than
raised, so callers above this layer only ever see success or a final
classified error.

Usage::

    async with RetryClient(api_key, AIConfig()) as client:
        result = await client.call(request)
        if result.ok:
            print(result.data.text())
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import httpx
from pydantic import ValidationError

from ..config import AIConfig
from ..errors import RETRYABLE_KINDS, AIError, ErrorKind, ProviderError
from .schemas import ProviderRequest, ProviderResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Escalating wait for failures that carry no server or kind-specific hint
RETRY_SCHEDULE: tuple[float, ...] = (1.0, 2.0, 4.0)

DEFAULT_WAITS: dict[ErrorKind, float] = {
    ErrorKind.RATE_LIMIT: 5.0,
    ErrorKind.OVERLOADED: 10.0,
    ErrorKind.SERVER: 2.0,
}

# 4xx statuses that cannot succeed on a retry; other 4xx are treated as transient
NON_RETRYABLE_STATUSES = frozenset({400, 413, 422})

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class AIResult(Generic[T]):
    """Outcome of a provider call: exactly one of ``data`` or ``error`` is set."""

    data: T | None = None
    error: AIError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return ``data``, or raise the classified failure.

        Raises:
            ProviderError: If the call failed.
        """
        if self.error is not None:
            raise ProviderError(self.error)
        if self.data is None:
            raise ProviderError(AIError(kind=ErrorKind.UNKNOWN, message="Empty result", retryable=False))
        return self.data


def classify_status(
    status_code: int,
    body: str = "",
    headers: httpx.Headers | dict[str, str] | None = None,
) -> AIError:
    """Classify a non-2xx response.

    Args:
        status_code: HTTP status of the response.
        body: Raw response body, used for the message and overload detection.
        headers: Response headers; ``Retry-After`` overrides the default wait.

    Returns:
        The classified error.
    """
    message = _extract_message(body) or f"HTTP {status_code}"

    if status_code == 429:
        kind = ErrorKind.RATE_LIMIT
    elif status_code == 529 or "overloaded" in body.lower():
        kind = ErrorKind.OVERLOADED
    elif status_code in (401, 403):
        kind = ErrorKind.AUTH
    elif status_code in NON_RETRYABLE_STATUSES:
        kind = ErrorKind.INVALID_REQUEST
    elif status_code >= 500:
        kind = ErrorKind.SERVER
    else:
        kind = ErrorKind.NETWORK

    retryable = kind in RETRYABLE_KINDS
    retry_after = None
    if retryable:
        retry_after = _parse_retry_after(headers)
        if retry_after is None:
            retry_after = DEFAULT_WAITS.get(kind)

    return AIError(
        kind=kind,
        message=message,
        retryable=retryable,
        retry_after=retry_after,
        status_code=status_code,
    )


def classify_exception(exc: BaseException) -> AIError:
    """Classify a transport-level failure raised before a response arrived."""
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return AIError(kind=ErrorKind.TIMEOUT, message="Request timed out", retryable=True)
    return AIError(
        kind=ErrorKind.NETWORK,
        message=str(exc) or type(exc).__name__,
        retryable=True,
    )


def retry_delay(error: AIError, attempt: int) -> float:
    """Seconds to wait after the failed ``attempt`` (zero-based)."""
    if error.retry_after is not None:
        return error.retry_after
    return RETRY_SCHEDULE[min(attempt, len(RETRY_SCHEDULE) - 1)]


def _parse_retry_after(headers: httpx.Headers | dict[str, str] | None) -> float | None:
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        logger.debug("Ignoring non-numeric Retry-After header: %r", value)
        return None
    return max(seconds, 0.0)


def _extract_message(body: str) -> str:
    """Pull ``error.message`` out of a provider error body, else the raw text."""
    if not body:
        return ""
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip()[:500]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return body.strip()[:500]


class IdleTimeoutStream(httpx.AsyncByteStream):
    """Response body that raises ``httpx.ReadTimeout`` when a chunk is overdue.

    Args:
        stream: The body being wrapped.
        timeout: Seconds allowed between chunks.
        request: Request attached to the raised timeout.
    """

    def __init__(self, stream: httpx.AsyncByteStream, timeout: float, request: httpx.Request) -> None:
        self._stream = stream
        self._timeout = timeout
        self._request = request

    async def __aiter__(self) -> AsyncIterator[bytes]:
        chunks = self._stream.__aiter__()
        while True:
            try:
                chunk = await asyncio.wait_for(chunks.__anext__(), timeout=self._timeout)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as e:
                raise httpx.ReadTimeout(
                    f"No data received for {self._timeout:.1f}s", request=self._request
                ) from e
            yield chunk

    async def aclose(self) -> None:
        await self._stream.aclose()


class RetryClient:
    """Provider client with timeout, classification and backoff.

    Args:
        api_key: Provider API key. ``None`` makes every call fail with ``auth``.
        config: Provider settings (endpoint, retries, timeout).
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
        sleep: Awaitable sleep used between attempts.
    """

    def __init__(
        self,
        api_key: str | None,
        config: AIConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._api_key = api_key
        self._config = config or AIConfig()
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(self._config.timeout_seconds),
        )

    @property
    def config(self) -> AIConfig:
        return self._config

    async def __aenter__(self) -> RetryClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def call(self, request: ProviderRequest) -> AIResult[ProviderResponse]:
        """Send a non-streaming request, retrying retryable failures.

        Args:
            request: The provider request.

        Returns:
            AIResult holding the parsed response or the last classified error.
        """
        request = request.model_copy(update={"stream": False})
        return await self._with_retries(request, self._attempt_call)

    async def open_stream(self, request: ProviderRequest) -> AIResult[httpx.Response]:
        """Open a streaming response, retrying failures that occur before the body.

        The returned response is open; the caller must ``aclose()`` it. Once the
        body starts flowing, no retry happens.
        """
        request = request.model_copy(update={"stream": True})
        return await self._with_retries(request, self._attempt_stream)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _with_retries(
        self,
        request: ProviderRequest,
        attempt_fn: Callable[[ProviderRequest], Awaitable[AIResult[T]]],
    ) -> AIResult[T]:
        if not self._api_key:
            return AIResult(
                error=AIError(
                    kind=ErrorKind.AUTH,
                    message="API key not configured",
                    retryable=False,
                )
            )

        max_retries = self._config.max_retries
        last_error: AIError | None = None

        for attempt in range(max_retries + 1):
            result = await attempt_fn(request)
            error = result.error
            if error is None:
                if attempt > 0:
                    logger.info("Provider call succeeded after %d retries", attempt)
                return result

            last_error = error
            if not last_error.retryable:
                logger.warning(
                    "Provider call failed with non-retryable %s: %s",
                    last_error.kind.value,
                    last_error.message,
                )
                return result

            if attempt >= max_retries:
                break

            delay = retry_delay(last_error, attempt)
            logger.warning(
                "Provider call failed (attempt %d/%d, %s): %s; retrying in %.1fs",
                attempt + 1,
                max_retries + 1,
                last_error.kind.value,
                last_error.message,
                delay,
            )
            await self._sleep(delay)

        logger.warning("Provider call failed after %d attempts", max_retries + 1)
        return AIResult(error=last_error)

    def _build_request(self, request: ProviderRequest) -> httpx.Request:
        headers = {
            "content-type": "application/json",
            "x-api-key": self._api_key or "",
            "anthropic-version": self._config.api_version,
        }
        return self._client.build_request(
            "POST", self._config.api_url, json=request.to_body(), headers=headers
        )

    async def _attempt_call(self, request: ProviderRequest) -> AIResult[ProviderResponse]:
        try:
            response = await asyncio.wait_for(
                self._client.send(self._build_request(request)),
                timeout=self._config.timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.HTTPError, OSError) as e:
            return AIResult(error=classify_exception(e))

        if response.status_code >= 400:
            return AIResult(
                error=classify_status(response.status_code, response.text, response.headers)
            )

        try:
            data = ProviderResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning("Provider returned an unreadable body: %s", e)
            return AIResult(
                error=AIError(
                    kind=ErrorKind.SERVER,
                    message="Invalid response body",
                    retryable=True,
                    status_code=response.status_code,
                )
            )
        return AIResult(data=data)

    async def _attempt_stream(self, request: ProviderRequest) -> AIResult[httpx.Response]:
        try:
            response = await asyncio.wait_for(
                self._client.send(self._build_request(request), stream=True),
                timeout=self._config.timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.HTTPError, OSError) as e:
            return AIResult(error=classify_exception(e))

        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            return AIResult(error=classify_status(response.status_code, body, response.headers))

        # Bound the wait for each chunk, whatever the transport
        response.stream = IdleTimeoutStream(response.stream, self._config.timeout_seconds, response.request)
        return AIResult(data=response)
