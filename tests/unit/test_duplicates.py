"""Tests for duplicate-task detection and the bypass guard."""

from __future__ import annotations

import pytest

from gather_orchestrator.conversation.duplicates import (
    DuplicateGuard,
    DuplicatePrompt,
    find_duplicate_task,
    normalize_for_match,
)
from gather_orchestrator.models import Task


@pytest.fixture
def tasks() -> list[Task]:
    return [
        Task(id="t1", title="Renew my passport"),
        Task(id="t2", title="Call the dentist"),
    ]


def test_normalize_for_match() -> None:
    assert normalize_for_match("  Renew  my PASSPORT!! ") == "renew my passport"


class TestFindDuplicateTask:
    def test_exact_match_ignores_case_and_punctuation(self, tasks: list[Task]) -> None:
        assert find_duplicate_task("renew my passport.", tasks) is tasks[0]

    def test_substring_match(self, tasks: list[Task]) -> None:
        assert find_duplicate_task("I need to renew my passport soon", tasks) is tasks[0]

    def test_token_overlap(self, tasks: list[Task]) -> None:
        assert find_duplicate_task("renew passport please", tasks) is tasks[0]

    def test_unrelated_input(self, tasks: list[Task]) -> None:
        assert find_duplicate_task("Buy groceries", tasks) is None

    def test_empty_task_list(self) -> None:
        assert find_duplicate_task("Renew my passport", []) is None

    def test_short_strings_skip_substring_rule(self) -> None:
        assert find_duplicate_task("call", [Task(id="t1", title="Call mom")]) is None

    def test_single_shared_token_is_not_enough(self, tasks: list[Task]) -> None:
        assert find_duplicate_task("passport photos", tasks) is None

    def test_first_candidate_wins(self) -> None:
        candidates = [Task(id="a", title="Renew passport"), Task(id="b", title="Renew passport")]
        match = find_duplicate_task("renew passport", candidates)
        assert match is not None and match.id == "a"


class TestDuplicateGuard:
    @pytest.fixture
    def prompt(self) -> DuplicatePrompt:
        return DuplicatePrompt(task_id="t1", task_title="Renew my passport", original_input="renew passport")

    def test_token_redeems_once(self, prompt: DuplicatePrompt) -> None:
        guard = DuplicateGuard()
        token = guard.issue(prompt)
        assert guard.redeem(token, "renew passport") is True
        assert guard.redeem(token, "renew passport") is False

    def test_token_bound_to_input(self, prompt: DuplicatePrompt) -> None:
        guard = DuplicateGuard()
        token = guard.issue(prompt)
        assert guard.redeem(token, "something else") is False
        assert guard.redeem(token, "renew passport") is False

    def test_no_token(self) -> None:
        assert DuplicateGuard().redeem(None, "renew passport") is False

    def test_foreign_token_rejected(self, prompt: DuplicatePrompt) -> None:
        token = DuplicateGuard().issue(prompt)
        assert DuplicateGuard().redeem(token, "renew passport") is False
