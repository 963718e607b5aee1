"""Context gathering state machine.

Drives the bounded clarifying-question dialogue that runs before a task is
created. Each question may be answered from its options, answered in free
text after choosing ``Other (I will specify)``, or revisited with go_back().

The session self-destructs after a period without mutating calls. Expiry is
enforced twice: a cancellable timer on the running event loop (so observers
learn about it promptly) and a clock check on every access (so an expired
session can never be resumed even if the timer did not fire).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from ..ai.prompts import OTHER_OPTION
from ..errors import GatheringStateError, SessionExpiredError

logger = logging.getLogger(__name__)

INACTIVITY_TIMEOUT_SECONDS = 300.0


class GatheringState(Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    AWAITING_FREE_TEXT = "awaiting_free_text"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


_LIVE_STATES = frozenset({GatheringState.ACTIVE, GatheringState.AWAITING_FREE_TEXT})


@dataclass(frozen=True)
class GatheringQuestion:
    """A clarifying question.

    Attributes:
        key: Answer key, also used as the preference key.
        text: Question text shown to the user.
        options: Suggested answers (may include the "Other" option).
    """

    key: str
    text: str
    options: tuple[str, ...] = ()


@dataclass
class GatheringSession:
    questions: list[GatheringQuestion]
    task_name: str
    current_index: int = 0
    answers: dict[str, str] = field(default_factory=dict)
    awaiting_free_text_for: str | None = None


@dataclass(frozen=True)
class GatheringStep:
    """Result of answering a question.

    Attributes:
        has_more: True while questions remain (or free text is awaited).
        next_question: The question to show next, if any.
        all_answers: Every answer collected so far.
        awaiting_free_text: True when the user picked "Other" and must type.
    """

    has_more: bool
    next_question: GatheringQuestion | None = None
    all_answers: dict[str, str] = field(default_factory=dict)
    awaiting_free_text: bool = False


def is_other_option(answer: str) -> bool:
    return OTHER_OPTION.lower() in answer.lower()


class ContextGathering:
    """Clarifying-question session with back-navigation and inactivity expiry.

    Args:
        timeout_seconds: Inactivity limit between mutating calls.
        clock: Monotonic clock, injectable for tests.
        on_timeout: Called once when the session expires.
    """

    def __init__(
        self,
        timeout_seconds: float = INACTIVITY_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        on_timeout: Callable[[], None] | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._clock = clock
        self._on_timeout = on_timeout
        self._state = GatheringState.NOT_STARTED
        self._session: GatheringSession | None = None
        self._last_activity = clock()
        self._timer: asyncio.TimerHandle | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> GatheringState:
        self._check_expired()
        return self._state

    @property
    def is_active(self) -> bool:
        return self.state in _LIVE_STATES

    @property
    def task_name(self) -> str | None:
        return self._session.task_name if self.is_active and self._session else None

    @property
    def answers(self) -> dict[str, str]:
        return dict(self._session.answers) if self._session else {}

    @property
    def can_go_back(self) -> bool:
        if not self.is_active or self._session is None:
            return False
        return self._state is GatheringState.AWAITING_FREE_TEXT or self._session.current_index > 0

    def current_question(self) -> GatheringQuestion | None:
        if not self.is_active or self._session is None:
            return None
        return self._session.questions[self._session.current_index]

    def progress(self) -> tuple[int, int] | None:
        """Return ``(current, total)`` with ``current`` one-based."""
        if not self.is_active or self._session is None:
            return None
        return self._session.current_index + 1, len(self._session.questions)

    def context_description(self) -> str:
        """Answers joined with `` · ``, excluding unresolved "Other" picks."""
        values = [v for v in self.answers.values() if v and not is_other_option(v)]
        return " · ".join(values)

    def clarifying_answers(self) -> list[tuple[str, str]]:
        """Question text and answer pairs, in question order."""
        if self._session is None:
            return []
        pairs = []
        for question in self._session.questions:
            answer = self._session.answers.get(question.key)
            if answer and not is_other_option(answer):
                pairs.append((question.text, answer))
        return pairs

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self, questions: list[GatheringQuestion], task_name: str) -> GatheringQuestion:
        """Begin a session at the first question.

        Raises:
            GatheringStateError: If ``questions`` is empty.
        """
        if not questions:
            raise GatheringStateError("Cannot start gathering without questions")
        self._session = GatheringSession(questions=list(questions), task_name=task_name)
        self._state = GatheringState.ACTIVE
        self._touch()
        logger.debug("Gathering started for %r with %d questions", task_name, len(questions))
        return questions[0]

    def record_answer(self, answer: str) -> GatheringStep:
        """Answer the current question and advance.

        Choosing the "Other" option enters free-text mode without advancing.
        While free text is awaited, the answer is taken as that free text.
        """
        session = self._require_live()
        if self._state is GatheringState.AWAITING_FREE_TEXT:
            return self.submit_free_text(answer)
        if is_other_option(answer):
            self.select_other()
            return GatheringStep(
                has_more=True,
                next_question=self.current_question(),
                all_answers=dict(session.answers),
                awaiting_free_text=True,
            )

        question = session.questions[session.current_index]
        session.answers[question.key] = answer
        return self._advance(session)

    def select_other(self) -> GatheringQuestion:
        """Enter free-text mode for the current question."""
        session = self._require_live()
        question = session.questions[session.current_index]
        session.awaiting_free_text_for = question.key
        self._state = GatheringState.AWAITING_FREE_TEXT
        self._touch()
        return question

    def submit_free_text(self, text: str) -> GatheringStep:
        """Store free text for the awaited question, then advance once.

        Raises:
            GatheringStateError: If free text is not being awaited.
        """
        session = self._require_live()
        if self._state is not GatheringState.AWAITING_FREE_TEXT or session.awaiting_free_text_for is None:
            raise GatheringStateError("Not awaiting free text")
        session.answers[session.awaiting_free_text_for] = text
        session.awaiting_free_text_for = None
        self._state = GatheringState.ACTIVE
        return self._advance(session)

    def go_back(self) -> GatheringQuestion | None:
        """Leave free-text mode, or return to the previous question.

        Returns:
            The question to show, or None when already at the first question.
        """
        session = self._require_live()

        if self._state is GatheringState.AWAITING_FREE_TEXT:
            key = session.awaiting_free_text_for
            if key is not None:
                session.answers.pop(key, None)
            session.awaiting_free_text_for = None
            self._state = GatheringState.ACTIVE
            self._touch()
            return session.questions[session.current_index]

        if session.current_index == 0:
            return None

        leaving = session.questions[session.current_index]
        session.answers.pop(leaving.key, None)
        session.current_index -= 1
        self._touch()
        return session.questions[session.current_index]

    def cancel(self) -> None:
        if self._state in _LIVE_STATES:
            logger.debug("Gathering cancelled")
            self._finish(GatheringState.CANCELLED)

    def close(self) -> None:
        """Cancel the inactivity timer without changing state."""
        self._cancel_timer()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _advance(self, session: GatheringSession) -> GatheringStep:
        if session.current_index < len(session.questions) - 1:
            session.current_index += 1
            self._touch()
            return GatheringStep(
                has_more=True,
                next_question=session.questions[session.current_index],
                all_answers=dict(session.answers),
            )

        answers = dict(session.answers)
        self._finish(GatheringState.COMPLETE)
        return GatheringStep(has_more=False, all_answers=answers)

    def _require_live(self) -> GatheringSession:
        state = self.state
        if state is GatheringState.TIMED_OUT:
            raise SessionExpiredError("Gathering session expired after inactivity")
        if state not in _LIVE_STATES or self._session is None:
            raise GatheringStateError(f"No active gathering session (state: {state.value})")
        return self._session

    def _finish(self, state: GatheringState) -> None:
        self._cancel_timer()
        self._state = state
        if state is not GatheringState.COMPLETE:
            self._session = None

    def _touch(self) -> None:
        self._last_activity = self._clock()
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.call_later(self._timeout, self._expire_from_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire_from_timer(self) -> None:
        self._timer = None
        if self._state in _LIVE_STATES:
            self._expire()

    def _check_expired(self) -> None:
        if self._state in _LIVE_STATES and self._clock() - self._last_activity >= self._timeout:
            self._expire()

    def _expire(self) -> None:
        logger.info("Gathering session timed out after %.0fs of inactivity", self._timeout)
        self._finish(GatheringState.TIMED_OUT)
        if self._on_timeout is not None:
            self._on_timeout()
