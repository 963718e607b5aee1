"""Fuzzy duplicate-task detection.

A fresh submission is compared against existing task titles before any
provider call. When the user explicitly chooses to create a new task anyway,
``DuplicateGuard`` hands out a one-shot ``BypassToken`` that suppresses the
check for the immediately following resubmission of that input.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..models import Task

logger = logging.getLogger(__name__)

# Both normalized strings must be at least this long for substring matching
MIN_SUBSTRING_LENGTH = 8
MIN_SHARED_TOKENS = 2
MIN_SHARED_RATIO = 0.6

STOPWORDS = frozenset(
    {
        "a", "about", "an", "and", "are", "as", "at", "be", "by", "can", "do",
        "for", "from", "get", "go", "have", "i", "in", "into", "is", "it", "me",
        "my", "need", "of", "on", "or", "our", "please", "should", "so", "some",
        "soon", "that", "the", "this", "to", "today", "tomorrow", "up", "want",
        "we", "will", "with", "you", "your",
    }
)  # fmt: skip

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_for_match(text: str) -> str:
    """Lowercase, replace non-alphanumerics with spaces, collapse whitespace."""
    return " ".join(_NON_ALNUM.sub(" ", text.lower()).split())


def meaningful_tokens(normalized: str) -> set[str]:
    return {token for token in normalized.split() if token not in STOPWORDS}


def _tokens_overlap(input_tokens: set[str], title_tokens: set[str]) -> bool:
    if not input_tokens or not title_tokens:
        return False
    shared = len(input_tokens & title_tokens)
    smaller = min(len(input_tokens), len(title_tokens))
    return shared >= MIN_SHARED_TOKENS and shared >= MIN_SHARED_RATIO * smaller


def find_duplicate_task(text: str, tasks: Iterable[Task]) -> Task | None:
    """Return the first existing task whose title matches ``text``.

    Rules are checked per candidate in order: exact normalized equality,
    substring containment either way (both strings long enough), then
    stopword-filtered token overlap.

    Args:
        text: The user's raw input.
        tasks: Existing tasks in display order.

    Returns:
        The first matching task, or None.
    """
    input_norm = normalize_for_match(text)
    if not input_norm:
        return None
    input_tokens = meaningful_tokens(input_norm)

    for task in tasks:
        title_norm = normalize_for_match(task.title)
        if not title_norm:
            continue

        if input_norm == title_norm:
            return task

        if len(input_norm) >= MIN_SUBSTRING_LENGTH and len(title_norm) >= MIN_SUBSTRING_LENGTH:
            if input_norm in title_norm or title_norm in input_norm:
                return task

        if _tokens_overlap(input_tokens, meaningful_tokens(title_norm)):
            return task

    return None


@dataclass(frozen=True)
class DuplicatePrompt:
    """A pending duplicate choice shown to the user."""

    task_id: str
    task_title: str
    original_input: str


@dataclass(frozen=True)
class BypassToken:
    """One-shot permission to skip duplicate detection for ``text``."""

    text: str
    value: str = field(default_factory=lambda: uuid.uuid4().hex)


class DuplicateGuard:
    """Issues and redeems bypass tokens."""

    def __init__(self) -> None:
        self._issued: set[str] = set()

    def issue(self, prompt: DuplicatePrompt) -> BypassToken:
        token = BypassToken(text=prompt.original_input)
        self._issued.add(token.value)
        logger.debug("Issued duplicate bypass for %r", prompt.original_input)
        return token

    def redeem(self, token: BypassToken | None, text: str) -> bool:
        """Consume ``token`` if it was issued for ``text``.

        Returns:
            True when duplicate detection should be skipped for this submission.
        """
        if token is None or token.value not in self._issued:
            return False
        self._issued.discard(token.value)
        if normalize_for_match(token.text) != normalize_for_match(text):
            logger.debug("Bypass token for %r discarded on different input", token.text)
            return False
        return True
