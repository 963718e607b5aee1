"""Text heuristics over user input.

Cheap, deterministic checks that steer routing before any provider call:
whether input is a question, whether it asks for more steps, and whether it
reports that something was already done.
"""

from __future__ import annotations

import logging
from datetime import date

from ..ai.prompts import OTHER_OPTION
from ..ai.schemas import IntentQuestion
from ..models import StepDraft, Task

logger = logging.getLogger(__name__)

QUESTION_PREFIXES: tuple[str, ...] = (
    "how ",
    "what ",
    "when ",
    "where ",
    "why ",
    "can ",
    "is ",
    "are ",
    "do ",
    "does ",
    "will ",
    "should ",
    "could ",
    "would ",
    "need ",
    "did ",
    "am ",
)

STEP_REQUEST_PHRASES: tuple[str, ...] = (
    "add step",
    "more steps",
    "break down",
    "break it down",
    "subtask",
    "checklist",
    "outline",
    "step-by-step",
    "step by step",
    "steps",
    "plan for",
    "plan this",
)

# Trigger word in the user's message -> words to look for in step text
COMPLETION_KEYWORD_MAP: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("passport", ("passport", "identity document", "birth certificate", "proof of identity", "id document")),
    ("birth certificate", ("birth certificate", "identity document", "proof of identity")),
    ("social security", ("social security", "ssn", "social security card", "ss card")),
    ("license", ("license", "driver", "dl", "id card")),
    ("w-2", ("w-2", "w2", "tax form", "income")),
    ("appointment", ("appointment", "schedule", "book", "reserved", "slot")),
    ("called", ("call", "phone", "spoke", "talked")),
    ("emailed", ("email", "sent", "message", "contacted")),
    ("paid", ("fee", "payment", "pay", "cost", "charge", "paid")),
    ("signed", ("sign", "signature", "signed up", "registered")),
    ("filled", ("fill", "form", "application", "submit")),
    ("downloaded", ("download", "form", "pdf", "document")),
    ("booked", ("book", "reservation", "schedule", "appointment")),
)

COMPLETION_SIGNALS: tuple[str, ...] = (
    "i have",
    "i got",
    "i found",
    "i already",
    "i completed",
    "i finished",
    "i submitted",
    "i sent",
    "i did",
    "i made",
    "done with",
    "just did",
    "i called",
    "i emailed",
    "i booked",
    "i scheduled",
    "i paid",
    "i signed up",
    "i filled out",
    "i registered",
    "i downloaded",
    "i printed",
    "called them",
    "already did",
)

NEGATION_PATTERNS: tuple[str, ...] = (
    "i have not",
    "i haven't",
    "i did not",
    "i didn't",
    "not yet",
    "haven't yet",
)


def is_question(text: str) -> bool:
    """Return True for ``?`` endings and interrogative openings."""
    lower = text.lower().strip()
    if not lower:
        return False
    return lower.endswith("?") or lower.startswith(QUESTION_PREFIXES)


def is_step_request(text: str) -> bool:
    """Return True when the user asks for steps to be added or expanded."""
    lower = text.lower().strip()
    return any(phrase in lower for phrase in STEP_REQUEST_PHRASES)


def detect_completion_intent(message: str) -> bool:
    """Return True when the message reports something as done.

    Any negation ("I haven't called them yet") wins over a completion phrase.
    """
    normalized = message.lower()
    if any(pattern in normalized for pattern in NEGATION_PATTERNS):
        return False
    return any(phrase in normalized for phrase in COMPLETION_SIGNALS)


def find_matching_step(message: str, steps: list[StepDraft]) -> StepDraft | None:
    """Find the first undone step that the message most likely refers to."""
    normalized = message.lower()
    triggered = next(
        (hints for trigger, hints in COMPLETION_KEYWORD_MAP if trigger in normalized),
        None,
    )
    words = [word for word in normalized.split() if len(word) > 3]

    for step in steps:
        if step.done:
            continue
        haystack = f"{step.text} {step.summary or ''} {step.detail or ''}".lower()
        if triggered is not None:
            if any(hint in haystack for hint in triggered):
                return step
        elif any(word in haystack for word in words):
            return step
    return None


def sanitize_questions(
    task_name: str,
    questions: list[IntentQuestion],
    today: date | None = None,
) -> list[IntentQuestion]:
    """Fix up model-proposed questions that age badly or confuse users.

    Tax-year options are pinned to the two most recent filing years, and Real ID
    status questions are replaced by the visible-star check.
    """
    today = today or date.today()
    cleaned: list[IntentQuestion] = []

    for question in questions:
        text = question.question.lower()
        if question.key == "tax_year":
            filing_year = today.year - 1
            question = question.model_copy(
                update={"options": [str(filing_year), str(filing_year - 1), OTHER_OPTION]}
            )
        elif "real id" in task_name.lower() and "real id" in text and "current" in text:
            question = question.model_copy(
                update={
                    "question": "Do you already have a star on your driver's license?",
                    "options": ["Yes, I see a star", "No or I'm not sure"],
                }
            )
        cleaned.append(question)
    return cleaned


def build_task_context(task: Task, focused_step: StepDraft | None = None) -> str:
    """Render a task (and optional focused step) as plain text for prompts."""
    parts = [f"Task: {task.title}"]
    if task.description:
        parts.append(f"Description: {task.description}")
    if task.context_text:
        parts.append(f"Context: {task.context_text}")
    if task.steps:
        lines = [
            f"{i}. {step.text}{' (done)' if step.done else ''}"
            for i, step in enumerate(task.steps, start=1)
        ]
        parts.append("Steps:\n" + "\n".join(lines))

    if focused_step is not None:
        parts.append(f'\nFocused step: "{focused_step.text}"')
        if focused_step.detail:
            parts.append(f"Detail: {focused_step.detail}")
        if focused_step.summary:
            parts.append(f"Summary: {focused_step.summary}")

    return "\n".join(parts)
