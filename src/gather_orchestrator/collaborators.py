"""External collaborator contracts and in-memory implementations.

The engine does not own persistence. It talks to a task store, a preference
store and a memory store through the protocols below; the in-memory versions
back the CLI and the test suite.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, runtime_checkable

from .models import ConversationTurn, Task

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset({"title", "category", "description", "context_text", "due_date", "steps"})


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of a task update."""

    ok: bool
    task: Task | None = None
    error: str | None = None


@dataclass(frozen=True)
class MemoryEntry:
    """Something worth remembering about the user (e.g. a created task)."""

    type: str
    task_title: str | None = None
    context: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class TaskStore(Protocol):
    """Protocol for the task persistence layer. All calls may fail."""

    async def add_task(self, title: str, category: str = "soon", **fields: Any) -> Task: ...

    async def update_task(self, task_id: str, **changes: Any) -> UpdateResult: ...

    async def toggle_step(self, task_id: str, step_id: str) -> None: ...

    async def get_task(self, task_id: str) -> Task | None: ...

    async def list_tasks(self) -> list[Task]: ...


@runtime_checkable
class PreferenceStore(Protocol):
    def get_preference(self, key: str) -> str | None: ...

    def set_preference(self, key: str, value: str) -> None: ...


@runtime_checkable
class MemoryStore(Protocol):
    def get_relevant_memory(self, task_title: str) -> str: ...

    def get_memory_for_ai(self) -> list[ConversationTurn]: ...

    def add_entry(self, entry: MemoryEntry) -> None: ...


class InMemoryTaskStore:
    """Dict-backed TaskStore. Returned tasks are copies."""

    def __init__(self, tasks: list[Task] | None = None) -> None:
        self._tasks: dict[str, Task] = {}
        for task in tasks or []:
            self._tasks[task.id] = task

    async def add_task(self, title: str, category: str = "soon", **fields: Any) -> Task:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        task = Task(id=f"task-{uuid.uuid4().hex[:8]}", title=title, category=category, **fields)
        self._tasks[task.id] = task
        logger.debug("Added task %s: %r", task.id, title)
        return self._copy(task)

    async def update_task(self, task_id: str, **changes: Any) -> UpdateResult:
        task = self._tasks.get(task_id)
        if task is None:
            return UpdateResult(ok=False, error=f"Task not found: {task_id}")
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            return UpdateResult(ok=False, error=f"Unknown task fields: {sorted(unknown)}")
        if "steps" in changes:
            changes["steps"] = [replace(step) for step in changes["steps"]]
        updated = replace(task, **changes)
        self._tasks[task_id] = updated
        return UpdateResult(ok=True, task=self._copy(updated))

    async def toggle_step(self, task_id: str, step_id: str) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(task_id)
        step = task.find_step(step_id)
        if step is None:
            raise KeyError(step_id)
        step.done = not step.done

    async def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return self._copy(task) if task else None

    async def list_tasks(self) -> list[Task]:
        return [self._copy(task) for task in self._tasks.values()]

    @staticmethod
    def _copy(task: Task) -> Task:
        return replace(task, steps=[replace(step) for step in task.steps])


class InMemoryPreferenceStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values = dict(initial or {})

    def get_preference(self, key: str) -> str | None:
        return self._values.get(key)

    def set_preference(self, key: str, value: str) -> None:
        self._values[key] = value


class InMemoryMemoryStore:
    """Keeps entries and renders them as short memory text."""

    def __init__(self, turns: list[ConversationTurn] | None = None) -> None:
        self._turns = list(turns or [])
        self.entries: list[MemoryEntry] = []

    def get_relevant_memory(self, task_title: str) -> str:
        words = {w for w in task_title.lower().split() if len(w) > 3}
        lines = []
        for entry in self.entries:
            title = (entry.task_title or "").lower()
            if words and any(word in title for word in words):
                details = ", ".join(f"{k}: {v}" for k, v in entry.context.items())
                line = f"Previously created task: {entry.task_title}"
                lines.append(f"{line} ({details})" if details else line)
        return "\n".join(lines)

    def get_memory_for_ai(self) -> list[ConversationTurn]:
        return list(self._turns)

    def add_entry(self, entry: MemoryEntry) -> None:
        self.entries.append(entry)
