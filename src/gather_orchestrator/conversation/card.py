"""Card state machine.

The card is the single representation of what the engine wants the user to
see. Every transition replaces the whole state except streaming tokens, which
append to the current ``StreamingCard``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Union

from ..models import PendingAction, SourceRef, Task

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdleCard:
    pass


@dataclass(frozen=True)
class ThinkingCard:
    """Work is in progress; on follow-ups the previous message stays visible."""

    preserved_message: str | None = None
    status: str | None = None


@dataclass(frozen=True)
class StreamingCard:
    partial_text: str = ""


@dataclass(frozen=True)
class QuestionCard:
    """A clarifying question (``index`` is zero-based)."""

    text: str
    index: int
    total: int
    options: tuple[str, ...] = ()
    saved_answer: str | None = None
    task_name: str | None = None
    awaiting_free_text: bool = False


@dataclass(frozen=True)
class MessageCard:
    text: str
    sources: tuple[SourceRef, ...] = ()
    actions: tuple[PendingAction, ...] = ()
    quick_replies: tuple[str, ...] = ()


@dataclass(frozen=True)
class TaskCreatedCard:
    task: Task
    message: str = "Here's your plan."
    sources: tuple[SourceRef, ...] = ()


@dataclass(frozen=True)
class ErrorCard:
    text: str
    retry_options: tuple[str, ...] = ()


CardState = Union[
    IdleCard,
    ThinkingCard,
    StreamingCard,
    QuestionCard,
    MessageCard,
    TaskCreatedCard,
    ErrorCard,
]

Observer = Callable[[CardState], None]


@dataclass
class _DismissTimer:
    handle: asyncio.TimerHandle | None = None
    generation: int = field(default=0)


class CardStateMachine:
    """Single mutable slot holding the current CardState.

    Args:
        auto_dismiss_seconds: Delay before a task-created card reverts to idle.
        compact_view: Whether auto-dismiss is active.
    """

    def __init__(self, auto_dismiss_seconds: float = 3.0, compact_view: bool = False) -> None:
        self._state: CardState = IdleCard()
        self._observers: list[Observer] = []
        self._auto_dismiss_seconds = auto_dismiss_seconds
        self.compact_view = compact_view
        self._timer = _DismissTimer()

    @property
    def state(self) -> CardState:
        return self._state

    @property
    def auto_dismiss_pending(self) -> bool:
        return self._timer.handle is not None

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def set(self, state: CardState) -> None:
        """Replace the current state."""
        self._cancel_auto_dismiss()
        self._state = state
        logger.debug("Card -> %s", type(state).__name__)
        self._notify()

        if isinstance(state, TaskCreatedCard) and self.compact_view:
            self._schedule_auto_dismiss()

    def append_token(self, text: str) -> None:
        """Append streamed text, entering the streaming state if needed."""
        current = self._state
        if isinstance(current, StreamingCard):
            self._state = StreamingCard(partial_text=current.partial_text + text)
            self._notify()
        else:
            self.set(StreamingCard(partial_text=text))

    def replace_stream_text(self, text: str) -> None:
        """Set the visible partial text (used when display text is re-derived)."""
        if isinstance(self._state, StreamingCard):
            self._state = StreamingCard(partial_text=text)
            self._notify()
        else:
            self.set(StreamingCard(partial_text=text))

    def reset(self) -> None:
        self.set(IdleCard())

    def close(self) -> None:
        """Cancel any pending timer."""
        self._cancel_auto_dismiss()

    def _notify(self) -> None:
        for observer in list(self._observers):
            observer(self._state)

    def _schedule_auto_dismiss(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; auto-dismiss skipped")
            return
        self._timer.generation += 1
        generation = self._timer.generation
        self._timer.handle = loop.call_later(
            self._auto_dismiss_seconds, self._auto_dismiss, generation
        )

    def _auto_dismiss(self, generation: int) -> None:
        if generation != self._timer.generation:
            return
        self._timer.handle = None
        if isinstance(self._state, TaskCreatedCard):
            logger.debug("Auto-dismissing task-created card")
            self._state = IdleCard()
            self._notify()

    def _cancel_auto_dismiss(self) -> None:
        if self._timer.handle is not None:
            self._timer.handle.cancel()
            self._timer.handle = None
            self._timer.generation += 1
