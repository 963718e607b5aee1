"""Gather conversation orchestration engine.

Turns a free-text utterance into clarifying questions, a task with generated
steps, or a streamed answer, while coordinating a rate-limited remote model.
"""

from __future__ import annotations

from .ai import AIResult, RetryClient
from .collaborators import (
    InMemoryMemoryStore,
    InMemoryPreferenceStore,
    InMemoryTaskStore,
    MemoryEntry,
    MemoryStore,
    PreferenceStore,
    TaskStore,
    UpdateResult,
)
from .config import GatherConfig, load_config
from .conversation import ConversationOrchestrator
from .errors import AIError, ErrorKind, GatherError
from .models import PendingAction, SourceRef, StepDraft, Task

__version__ = "0.1.0"

__all__ = [
    "AIError",
    "AIResult",
    "ConversationOrchestrator",
    "ErrorKind",
    "GatherConfig",
    "GatherError",
    "InMemoryMemoryStore",
    "InMemoryPreferenceStore",
    "InMemoryTaskStore",
    "MemoryEntry",
    "MemoryStore",
    "PendingAction",
    "PreferenceStore",
    "RetryClient",
    "SourceRef",
    "StepDraft",
    "Task",
    "TaskStore",
    "UpdateResult",
    "__version__",
]
