"""Validation of model-proposed actions.

This is the only path by which model output becomes an executable side
effect. Anything outside the allowlist, referencing a step the current task
does not have, or otherwise malformed is dropped without being reported.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from ..models import ActionType, PendingAction, Task

logger = logging.getLogger(__name__)

ALLOWED_ACTIONS = frozenset(ActionType)

DEFAULT_LABELS: dict[ActionType, str] = {
    ActionType.MARK_STEP_DONE: "Mark step complete",
    ActionType.FOCUS_STEP: "Jump to step",
    ActionType.CREATE_TASK: "Create task",
    ActionType.SHOW_SOURCES: "Show sources",
}

_STEP_ACTIONS = frozenset({ActionType.MARK_STEP_DONE, ActionType.FOCUS_STEP})


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value if isinstance(value, str) else None


def _coerce(raw: Any) -> PendingAction | None:
    """Convert a raw mapping (or an existing PendingAction) into a PendingAction."""
    if isinstance(raw, PendingAction):
        return raw
    if not isinstance(raw, dict):
        return None
    try:
        action_type = ActionType(raw.get("type"))
    except ValueError:
        return None

    step_id = raw.get("step_id", raw.get("stepId"))
    return PendingAction(
        type=action_type,
        step_id=_optional_str(step_id),
        title=_optional_str(raw.get("title")),
        context=_optional_str(raw.get("context")),
        label=_optional_str(raw.get("label")),
    )


def filter_actions(actions: Iterable[Any] | None, task: Task | None) -> list[PendingAction]:
    """Return the actions that are safe to offer for ``task``.

    Args:
        actions: Raw action mappings from the model (or already-typed actions).
        task: The task currently in context, if any.

    Returns:
        Validated actions in their original order.
    """
    if not actions:
        return []

    valid_step_ids = {step.id for step in task.steps} if task is not None else set()
    accepted: list[PendingAction] = []

    for raw in actions:
        action = _coerce(raw)
        if action is None or action.type not in ALLOWED_ACTIONS:
            logger.debug("Dropping malformed or disallowed action: %r", raw)
            continue

        if action.type in _STEP_ACTIONS and action.step_id not in valid_step_ids:
            logger.debug("Dropping %s for unknown step %r", action.type.value, action.step_id)
            continue

        if action.type is ActionType.CREATE_TASK and not (action.title or "").strip():
            logger.debug("Dropping create_task without a title")
            continue

        accepted.append(action)

    return accepted


def label_for(action: PendingAction) -> str:
    """The model's label, or the default label for the action type."""
    if action.label and action.label.strip():
        return action.label
    return DEFAULT_LABELS[action.type]
