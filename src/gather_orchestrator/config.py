"""Configuration for the conversation orchestration engine.

Defaults live on frozen dataclasses. A TOML file with ``[ai]`` and
``[conversation]`` tables may override them via load_config(); the provider
API key is read from the environment only.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .errors import ConfigError

logger = logging.getLogger(__name__)

API_KEY_ENV = "ANTHROPIC_API_KEY"

# Fast model for low-latency classification, standard model for reasoning
MODEL_FAST = "claude-3-haiku-20240307"
MODEL_STANDARD = "claude-sonnet-4-20250514"


@dataclass(frozen=True)
class AIConfig:
    """Provider settings.

    Attributes:
        api_url: Messages endpoint.
        api_version: Value of the ``anthropic-version`` header.
        models: Model id per use case.
        max_tokens: Maximum output tokens per use case.
        temperatures: Sampling temperature per use case.
        max_retries: Retries after the first attempt.
        timeout_seconds: Per-attempt client-side timeout.
        enable_web_search: Attach the provider web-search tool to step generation.
    """

    api_url: str = "https://api.anthropic.com/v1/messages"
    api_version: str = "2023-06-01"
    models: dict[str, str] = field(
        default_factory=lambda: {
            "intent_analysis": MODEL_FAST,
            "task_breakdown": MODEL_STANDARD,
            "conversation": MODEL_STANDARD,
        }
    )
    max_tokens: dict[str, int] = field(
        default_factory=lambda: {
            "intent_analysis": 2048,
            "task_breakdown": 4096,
            "conversation": 2048,
        }
    )
    temperatures: dict[str, float] = field(
        default_factory=lambda: {
            "intent_analysis": 0.3,
            "task_breakdown": 0.5,
            "conversation": 0.7,
        }
    )
    max_retries: int = 3
    timeout_seconds: float = 30.0
    enable_web_search: bool = True

    def model_for(self, use_case: str) -> str:
        return self.models.get(use_case, MODEL_STANDARD)

    def max_tokens_for(self, use_case: str) -> int:
        return self.max_tokens.get(use_case, 2048)

    def temperature_for(self, use_case: str) -> float | None:
        return self.temperatures.get(use_case)


@dataclass(frozen=True)
class ConversationConfig:
    """Conversation behaviour settings.

    Attributes:
        history_limit: Maximum turns kept for follow-up context.
        inactivity_timeout_seconds: Idle time before a gathering session expires.
        auto_dismiss_seconds: Delay before a task-created card clears in compact view.
        compact_view: Whether the compact (stack) view is active.
        max_questions: Upper bound on clarifying questions per session.
    """

    history_limit: int = 20
    inactivity_timeout_seconds: float = 300.0
    auto_dismiss_seconds: float = 3.0
    compact_view: bool = False
    max_questions: int = 5


@dataclass(frozen=True)
class GatherConfig:
    """Top-level engine configuration."""

    ai: AIConfig = field(default_factory=AIConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    api_key: str | None = None


DEFAULT_CONFIG = GatherConfig()


def load_config(path: Path | None = None, environ: dict[str, str] | None = None) -> GatherConfig:
    """Load configuration from an optional TOML file and the environment.

    Args:
        path: TOML file to read. ``None`` uses built-in defaults.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Parsed GatherConfig.

    Raises:
        ConfigError: If the file is missing, empty, invalid TOML, or has wrong types.
    """
    env = os.environ if environ is None else environ
    data: dict[str, Any] = {}

    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        content = path.read_text(encoding="utf-8")
        if not content.strip():
            raise ConfigError(f"Config file is empty: {path}")
        try:
            data = tomllib.loads(content)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    config = _parse_config(data)
    api_key = env.get(API_KEY_ENV) or None
    if api_key is None:
        logger.debug("%s not set; provider calls will fail with auth errors", API_KEY_ENV)
    return replace(config, api_key=api_key)


def _parse_config(data: dict[str, Any]) -> GatherConfig:
    """Parse raw TOML data into a GatherConfig.

    Unknown keys are ignored for forward compatibility.
    """
    ai_data = data.get("ai", {})
    if not isinstance(ai_data, dict):
        raise ConfigError("[ai] section must be a table")

    conversation_data = data.get("conversation", {})
    if not isinstance(conversation_data, dict):
        raise ConfigError("[conversation] section must be a table")

    ai = _apply_overrides(AIConfig(), ai_data, "ai")
    conversation = _apply_overrides(ConversationConfig(), conversation_data, "conversation")

    if ai.max_retries < 0:
        raise ConfigError("ai.max_retries must be >= 0")
    if ai.timeout_seconds <= 0:
        raise ConfigError("ai.timeout_seconds must be > 0")
    if conversation.history_limit < 1:
        raise ConfigError("conversation.history_limit must be >= 1")

    return GatherConfig(ai=ai, conversation=conversation)


def _apply_overrides(base: Any, overrides: dict[str, Any], section: str) -> Any:
    """Return ``base`` with known keys replaced, type-checked against defaults."""
    known = {f.name: getattr(base, f.name) for f in fields(base)}
    changes: dict[str, Any] = {}

    for key, value in overrides.items():
        if key not in known:
            logger.debug("Ignoring unknown config key %s.%s", section, key)
            continue
        default = known[key]
        if isinstance(default, dict):
            if not isinstance(value, dict):
                raise ConfigError(f"{section}.{key} must be a table")
            changes[key] = {**default, **value}
        elif isinstance(default, bool):
            if not isinstance(value, bool):
                raise ConfigError(f"{section}.{key} must be a boolean")
            changes[key] = value
        elif isinstance(default, (int, float)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{section}.{key} must be a number")
            changes[key] = type(default)(value)
        else:
            if not isinstance(value, str):
                raise ConfigError(f"{section}.{key} must be a string")
            changes[key] = value

    return replace(base, **changes)
