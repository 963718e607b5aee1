"""Bounded conversation history used for follow-up context."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterator

from ..models import ConversationTurn, Role

logger = logging.getLogger(__name__)


class ConversationHistory:
    """Ordered log of the most recent turns; oldest turns are evicted first."""

    def __init__(self, limit: int = 20) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._turns: deque[ConversationTurn] = deque(maxlen=limit)

    @property
    def limit(self) -> int:
        return self._turns.maxlen or 0

    def append(self, role: Role, content: str) -> ConversationTurn:
        turn = ConversationTurn(role=role, content=content)
        if len(self._turns) == self._turns.maxlen:
            logger.debug("History full; evicting oldest turn")
        self._turns.append(turn)
        return turn

    def add_exchange(self, user_text: str, assistant_text: str) -> None:
        """Record a user message and the assistant's reply."""
        self.append("user", user_text)
        self.append("assistant", assistant_text)

    def turns(self) -> list[ConversationTurn]:
        return list(self._turns)

    def to_messages(self) -> list[dict[str, str]]:
        """Return the turns in provider message format."""
        return [turn.to_message() for turn in self._turns]

    def clear(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(self._turns)
