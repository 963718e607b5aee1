"""Domain models for the conversation orchestration engine.

Tasks and steps are owned by the task store; the engine only produces
``StepDraft`` values and reads ``Task`` snapshots handed back by the store.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

Role = Literal["user", "assistant"]


class ActionType(Enum):
    """Side effects the model is allowed to propose."""

    MARK_STEP_DONE = "mark_step_done"
    FOCUS_STEP = "focus_step"
    CREATE_TASK = "create_task"
    SHOW_SOURCES = "show_sources"


@dataclass(frozen=True)
class ConversationTurn:
    """A single exchange entry kept for follow-up context."""

    role: Role
    content: str

    def to_message(self) -> dict[str, str]:
        """Return the provider message representation."""
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class SourceRef:
    """A web source cited by the model."""

    title: str
    url: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceRef:
        url = str(data.get("url", ""))
        return cls(title=str(data.get("title") or data.get("name") or url), url=url)

    def to_dict(self) -> dict[str, str]:
        return {"title": self.title, "url": self.url}


def new_step_id() -> str:
    """Generate a unique step identifier."""
    return f"step-{uuid.uuid4().hex[:12]}"


@dataclass
class StepDraft:
    """A generated task step.

    Attributes:
        text: The actionable step text.
        id: Unique identifier within the task.
        summary: One-line summary shown under the step.
        detail: Extended explanation.
        time: Time estimate such as "10 min".
        source: Optional ``{"name", "url"}`` reference.
        action: Optional ``{"text", "url"}`` call to action.
        done: Completion flag; generated steps always start undone.
    """

    text: str
    id: str = field(default_factory=new_step_id)
    summary: str | None = None
    detail: str | None = None
    time: str | None = None
    source: dict[str, str] | None = None
    action: dict[str, str] | None = None
    done: bool = False

    @classmethod
    def from_ai_item(cls, item: Any) -> StepDraft:
        """Build a step from a model-produced item (string or mapping)."""
        if isinstance(item, str):
            return cls(text=item)
        if not isinstance(item, dict):
            return cls(text=str(item))
        source = item.get("source")
        action = item.get("action")
        return cls(
            text=str(item.get("text") or ""),
            summary=item.get("summary"),
            detail=item.get("detail"),
            time=item.get("time"),
            source=source if isinstance(source, dict) else None,
            action=action if isinstance(action, dict) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "text": self.text,
            "summary": self.summary,
            "detail": self.detail,
            "time": self.time,
            "source": self.source,
            "action": self.action,
            "done": self.done,
        }


@dataclass
class Task:
    """Snapshot of a task as returned by the task store."""

    id: str
    title: str
    category: str = "soon"
    description: str | None = None
    context_text: str | None = None
    due_date: str | None = None
    steps: list[StepDraft] = field(default_factory=list)

    def find_step(self, step_id: Any) -> StepDraft | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


@dataclass(frozen=True)
class PendingAction:
    """A model-proposed side effect. Never executed before validation."""

    type: ActionType
    step_id: str | None = None
    title: str | None = None
    context: str | None = None
    label: str | None = None
