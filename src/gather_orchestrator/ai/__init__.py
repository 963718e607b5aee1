"""Provider access layer.

Public API:
    - RetryClient: Messages API client with classified retries
    - AIResult: Success-or-error result returned by the client
    - StreamConsumer: Drives callbacks from a streaming response
    - StreamCallbacks / StreamResult: Consumer hooks and final result
    - ProviderRequest / ProviderResponse: Wire models
    - IntentAnalysis: Parsed intent-analysis payload
"""

from __future__ import annotations

from .parsing import (
    ParsedReply,
    parse_ai_message,
    parse_ai_response_full,
    parse_json_response,
    parse_streaming_message,
    strip_cite_tags,
)
from .retry_client import AIResult, RetryClient, classify_exception, classify_status
from .schemas import IntentAnalysis, IntentQuestion, ProviderRequest, ProviderResponse
from .streaming import (
    SSEFrame,
    StreamCallbacks,
    StreamConsumer,
    StreamEvent,
    StreamEventType,
    StreamResult,
)

__all__ = [
    "AIResult",
    "IntentAnalysis",
    "IntentQuestion",
    "ParsedReply",
    "ProviderRequest",
    "ProviderResponse",
    "RetryClient",
    "SSEFrame",
    "StreamCallbacks",
    "StreamConsumer",
    "StreamEvent",
    "StreamEventType",
    "StreamResult",
    "classify_exception",
    "classify_status",
    "parse_ai_message",
    "parse_ai_response_full",
    "parse_json_response",
    "parse_streaming_message",
    "strip_cite_tags",
]
