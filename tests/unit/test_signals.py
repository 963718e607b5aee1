"""Tests for input heuristics: questions, step requests and completion signals."""

from __future__ import annotations

from datetime import date

import pytest

from gather_orchestrator.ai.prompts import OTHER_OPTION
from gather_orchestrator.ai.schemas import IntentQuestion
from gather_orchestrator.conversation.signals import (
    build_task_context,
    detect_completion_intent,
    find_matching_step,
    is_question,
    is_step_request,
    sanitize_questions,
)
from gather_orchestrator.models import StepDraft, Task


@pytest.mark.parametrize(
    "text",
    [
        "Is this right?",
        "how do I renew my passport",
        "What documents do I need",
        "can you help",
        "should I call first",
        "am I eligible",
        "did they reply",
    ],
)
def test_is_question_true(text: str) -> None:
    assert is_question(text)


@pytest.mark.parametrize(
    "text",
    ["Renew my passport", "call mom", "book dentist appointment", "", "   "],
)
def test_is_question_false(text: str) -> None:
    assert not is_question(text)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("add steps for booking", True),
        ("can you break it down more", True),
        ("give me a checklist", True),
        ("what's the fee", False),
    ],
)
def test_is_step_request(text: str, expected: bool) -> None:
    assert is_step_request(text) is expected


class TestCompletionIntent:
    @pytest.mark.parametrize(
        "text",
        [
            "I have my birth certificate",
            "I already booked the appointment",
            "I called them this morning",
            "just did the form",
        ],
    )
    def test_positive(self, text: str) -> None:
        assert detect_completion_intent(text)

    @pytest.mark.parametrize(
        "text",
        [
            "I haven't called them yet",
            "I did not pay the fee",
            "not yet, I have to find it",
        ],
    )
    def test_negation_wins(self, text: str) -> None:
        assert not detect_completion_intent(text)

    def test_plain_statement(self) -> None:
        assert not detect_completion_intent("where do I find the form")


class TestFindMatchingStep:
    @pytest.fixture
    def steps(self) -> list[StepDraft]:
        return [
            StepDraft(text="Download form DS-82", id="s1"),
            StepDraft(text="Get a passport photo taken", id="s2"),
            StepDraft(text="Pay the $130 fee", id="s3"),
        ]

    def test_keyword_map(self, steps: list[StepDraft]) -> None:
        match = find_matching_step("I paid already", steps)
        assert match is not None and match.id == "s3"

    def test_trigger_uses_hint_words(self, steps: list[StepDraft]) -> None:
        match = find_matching_step("I have my passport photo", steps)
        assert match is not None and match.id == "s2"

    def test_skips_done_steps(self, steps: list[StepDraft]) -> None:
        steps[0].done = True
        match = find_matching_step("I downloaded it", steps)
        assert match is None

    def test_word_overlap_without_trigger(self, steps: list[StepDraft]) -> None:
        match = find_matching_step("finished the photo", steps)
        assert match is not None and match.id == "s2"


class TestSanitizeQuestions:
    def test_tax_year_options_pinned(self) -> None:
        questions = [IntentQuestion(key="tax_year", question="Which year?", options=["2019"])]
        (cleaned,) = sanitize_questions("File taxes", questions, today=date(2026, 10, 17))
        assert cleaned.options == ["2025", "2024", OTHER_OPTION]

    def test_real_id_question_simplified(self) -> None:
        questions = [
            IntentQuestion(key="status", question="Is your current license a Real ID?", options=["Yes", "No"])
        ]
        (cleaned,) = sanitize_questions("Get Real ID", questions)
        assert "star" in cleaned.question
        assert cleaned.options == ["Yes, I see a star", "No or I'm not sure"]

    def test_other_questions_untouched(self) -> None:
        questions = [IntentQuestion(key="state", question="What state are you in?", options=["CA"])]
        assert sanitize_questions("Renew passport", questions) == questions


def test_build_task_context_includes_focus() -> None:
    task = Task(
        id="t1",
        title="Renew passport",
        context_text="California",
        steps=[StepDraft(text="Fill DS-82", id="s1", done=True), StepDraft(text="Mail it", id="s2", detail="Use tracking")],
    )
    text = build_task_context(task, task.steps[1])
    assert "Task: Renew passport" in text
    assert "Context: California" in text
    assert "1. Fill DS-82 (done)" in text
    assert 'Focused step: "Mail it"' in text
    assert "Detail: Use tracking" in text
