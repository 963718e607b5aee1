"""Error taxonomy for the conversation orchestration engine.

Provider failures are classified into an ``AIError`` value by the retry
client and handed upward inside an ``AIResult``. The exception classes below
are raised only where a caller is expected to branch on them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(Enum):
    """Classified provider failure kinds."""

    RATE_LIMIT = "rate_limit"
    OVERLOADED = "overloaded"
    AUTH = "auth"
    INVALID_REQUEST = "invalid_request"
    SERVER = "server"
    NETWORK = "network"
    TIMEOUT = "timeout"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMIT,
        ErrorKind.OVERLOADED,
        ErrorKind.SERVER,
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
    }
)


@dataclass(frozen=True)
class AIError:
    """A classified provider failure.

    Attributes:
        kind: The failure category.
        message: Human-readable description.
        retryable: Whether another attempt may succeed.
        retry_after: Seconds to wait before retrying, if the failure carries a hint.
        status_code: HTTP status when the failure came from a response.
    """

    kind: ErrorKind
    message: str
    retryable: bool
    retry_after: float | None = None
    status_code: int | None = None


class GatherError(Exception):
    """Base exception for all orchestration engine errors."""

    pass


class ProviderError(GatherError):
    """Raised when a provider call ends in a classified error.

    Attributes:
        error: The classified error returned by the retry client.
    """

    def __init__(self, error: AIError) -> None:
        self.error = error
        super().__init__(f"{error.kind.value}: {error.message}")


class ResponseParseError(GatherError):
    """Raised when model output cannot be parsed into the expected shape."""

    pass


class IntentClassificationError(GatherError):
    """Raised when intent analysis fails or returns unusable output."""

    pass


class GatheringStateError(GatherError):
    """Raised when a context-gathering call is invalid for the current state."""

    pass


class SessionExpiredError(GatheringStateError):
    """Raised when a timed-out context-gathering session is touched again."""

    pass


class ConfigError(GatherError):
    """Raised on invalid configuration files or values."""

    pass
