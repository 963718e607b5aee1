"""Root conftest.py for pytest configuration.

Adds project root to sys.path so test modules are importable by dotted path.

Shared fixtures for provider traffic.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest

project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by a RetryClient wired to ``fake_sleep``."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]) -> Callable[[float], Awaitable[None]]:
    """Sleep replacement that records delays instead of waiting."""

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def message_body() -> Callable[..., dict[str, Any]]:
    """Factory for a Messages API response body with one text block."""

    def _build(text: str | Any, sources: list[dict[str, str]] | None = None) -> dict[str, Any]:
        if not isinstance(text, str):
            text = json.dumps(text)
        content: list[dict[str, Any]] = []
        if sources:
            content.append(
                {
                    "type": "web_search_tool_result",
                    "content": [{"type": "web_search_result", **s} for s in sources],
                }
            )
        content.append({"type": "text", "text": text})
        return {
            "content": content,
            "stop_reason": "end_turn",
            "model": "test-model",
            "usage": {"input_tokens": 10, "output_tokens": 20},
        }

    return _build

