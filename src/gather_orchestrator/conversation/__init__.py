"""Conversation flow: signals, gathering, cards and the orchestrator.

Public API:
    - ConversationOrchestrator: End-to-end submission flow
    - CardStateMachine and card types: The single visible conversation card
    - ContextGathering: Clarifying-question session
    - TaskBreakdownGenerator: Step generation with deterministic fallback
    - IntentClassifier: Utterance analysis
    - find_duplicate_task / DuplicateGuard: Duplicate detection and bypass
    - filter_actions: Validation of model-proposed actions
"""

from __future__ import annotations

from .actions import filter_actions, label_for
from .breakdown import BreakdownResult, TaskBreakdownGenerator, create_fallback_steps
from .card import (
    CardState,
    CardStateMachine,
    ErrorCard,
    IdleCard,
    MessageCard,
    QuestionCard,
    StreamingCard,
    TaskCreatedCard,
    ThinkingCard,
)
from .duplicates import BypassToken, DuplicateGuard, DuplicatePrompt, find_duplicate_task
from .gathering import ContextGathering, GatheringQuestion, GatheringState, GatheringStep
from .history import ConversationHistory
from .intent import IntentClassifier
from .orchestrator import ConversationOrchestrator, ConversationState, TurnSnapshot
from .signals import detect_completion_intent, find_matching_step, is_question, is_step_request

__all__ = [
    "BreakdownResult",
    "BypassToken",
    "CardState",
    "CardStateMachine",
    "ContextGathering",
    "ConversationHistory",
    "ConversationOrchestrator",
    "ConversationState",
    "DuplicateGuard",
    "DuplicatePrompt",
    "ErrorCard",
    "GatheringQuestion",
    "GatheringState",
    "GatheringStep",
    "IdleCard",
    "IntentClassifier",
    "MessageCard",
    "QuestionCard",
    "StreamingCard",
    "TaskBreakdownGenerator",
    "TaskCreatedCard",
    "ThinkingCard",
    "TurnSnapshot",
    "create_fallback_steps",
    "detect_completion_intent",
    "filter_actions",
    "find_duplicate_task",
    "find_matching_step",
    "is_question",
    "is_step_request",
    "label_for",
]
