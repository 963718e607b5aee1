"""Conversation orchestrator.

Composes duplicate detection, intent classification, context gathering, step
generation, streaming replies and action validation into the end-to-end flow,
and writes the outcome of each stage to the card state machine.

All shared mutable state (card, history, gathering session, view) lives on the
orchestrator. Submissions are not cancelled by later ones: the card is
last-write-wins. Each submission captures its starting facts in a frozen
``TurnSnapshot`` and re-reads the view and task store when it resumes after a
provider call, never relying on values captured before the await.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from ..ai.parsing import parse_ai_response_full, parse_streaming_message, strip_cite_tags
from ..ai.prompts import CHAT_SYSTEM_PROMPT, build_chat_context, build_chat_user_message
from ..ai.retry_client import RetryClient
from ..ai.schemas import IntentAnalysis, ProviderMessage, ProviderRequest
from ..ai.streaming import StreamCallbacks, StreamConsumer
from ..collaborators import MemoryEntry, MemoryStore, PreferenceStore, TaskStore
from ..config import DEFAULT_CONFIG, GatherConfig
from ..errors import IntentClassificationError, ProviderError, SessionExpiredError
from ..models import ActionType, PendingAction, SourceRef, StepDraft, Task
from .actions import filter_actions, label_for
from .breakdown import WEB_SEARCH_TOOL, TaskBreakdownGenerator, create_fallback_steps
from .card import (
    CardState,
    CardStateMachine,
    ErrorCard,
    MessageCard,
    QuestionCard,
    StreamingCard,
    TaskCreatedCard,
    ThinkingCard,
)
from .duplicates import BypassToken, DuplicateGuard, DuplicatePrompt, find_duplicate_task
from .gathering import ContextGathering, GatheringQuestion, is_other_option
from .history import ConversationHistory
from .intent import IntentClassifier
from .signals import (
    build_task_context,
    detect_completion_intent,
    find_matching_step,
    is_question,
    is_step_request,
)

logger = logging.getLogger(__name__)

TRY_AGAIN = "Try again"
ADD_WITH_BASIC_STEPS = "Add with basic steps"
UPDATE_EXISTING = "Update existing"
CREATE_NEW_ANYWAY = "Create new anyway"

PLAN_READY = "Here's your plan."
STATUS_UNDERSTANDING = "Understanding what you need..."
STATUS_RESEARCHING = "Researching the best steps for you..."
STATUS_RESEARCHING_CONTEXT = "Got it. Researching specific steps for your situation..."
STATUS_BREAKING_DOWN = "Breaking this down for you..."

INTENT_FAILED = "I couldn't analyze that right now. You can try again or I'll add it with basic steps."
REPLY_FAILED = "Sorry, I couldn't get an answer. Try rephrasing your question."
CREATE_FAILED = "I couldn't create the task. Want to try again?"
GENERIC_FAILURE = "Something went wrong. Please try again."

COMPLETION_LABEL_LIMIT = 40


def duplicate_question(title: str) -> str:
    return (
        f'You already have a task called "{title}". '
        "Would you like to update that task instead, or create a new one?"
    )


def completion_reply(step_text: str) -> str:
    """Quick-reply label offering to complete a step."""
    if len(step_text) > COMPLETION_LABEL_LIMIT:
        step_text = step_text[:COMPLETION_LABEL_LIMIT] + "..."
    return f'Mark "{step_text}" complete'


@dataclass
class ConversationState:
    """Mutable view state owned by the orchestrator.

    Attributes:
        current_task_id: Task shown in task view; None on the home view.
        focused_step_id: Step the user is focused on inside the task.
        pending_input: Most recent submitted text (used by "Try again").
        pending_task_name: Task name awaiting creation.
        duplicate_prompt: Unresolved duplicate choice, if any.
        completion_offers: Quick-reply label to ``(task_id, step_id)``.
        generation: Incremented on every new turn.
    """

    current_task_id: str | None = None
    focused_step_id: str | None = None
    pending_input: str | None = None
    pending_task_name: str | None = None
    duplicate_prompt: DuplicatePrompt | None = None
    completion_offers: dict[str, tuple[str, str]] = field(default_factory=dict)
    generation: int = 0


@dataclass(frozen=True)
class TurnSnapshot:
    """Facts captured when a turn starts; passed through its continuation."""

    generation: int
    text: str
    task_id: str | None
    focused_step_id: str | None
    is_follow_up: bool
    previous_message: str | None = None


class ConversationOrchestrator:
    """Top-level conversation state machine.

    Args:
        client: Provider client shared by all remote calls.
        tasks: Task store.
        preferences: Preference store used to pre-fill and save answers.
        memory: Memory store feeding intent analysis.
        config: Engine configuration.
        intent: Intent classifier (built from ``client`` when omitted).
        breakdown: Step generator (built from ``client`` when omitted).
        clock: Monotonic clock for the gathering inactivity timeout.
    """

    def __init__(
        self,
        client: RetryClient,
        tasks: TaskStore,
        preferences: PreferenceStore | None = None,
        memory: MemoryStore | None = None,
        config: GatherConfig | None = None,
        intent: IntentClassifier | None = None,
        breakdown: TaskBreakdownGenerator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or DEFAULT_CONFIG
        conversation = self.config.conversation

        self.client = client
        self.tasks = tasks
        self.preferences = preferences
        self.memory = memory
        self.intent = intent or IntentClassifier(client, memory, self.config.ai)
        self.breakdown = breakdown or TaskBreakdownGenerator(client, self.config.ai)

        self.card = CardStateMachine(
            auto_dismiss_seconds=conversation.auto_dismiss_seconds,
            compact_view=conversation.compact_view,
        )
        self.history = ConversationHistory(conversation.history_limit)
        self.gathering = ContextGathering(
            timeout_seconds=conversation.inactivity_timeout_seconds,
            clock=clock,
            on_timeout=self._on_gathering_timeout,
        )
        self.guard = DuplicateGuard()
        self.state = ConversationState()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, text: str, bypass: BypassToken | None = None) -> CardState:
        """Handle free-text input.

        Args:
            text: What the user typed.
            bypass: Token from choosing "Create new anyway"; skips duplicate detection once.

        Returns:
            The card state after the submission settles.
        """
        text = text.strip()
        if not text:
            return self.card.state

        current = self.card.state
        if self.gathering.is_active and isinstance(current, QuestionCard):
            return await self._answer_question(text)

        is_follow_up = isinstance(current, MessageCard)
        snapshot = self._begin_turn(
            text,
            is_follow_up=is_follow_up,
            previous_message=current.text if isinstance(current, MessageCard) else None,
        )
        self.state.pending_input = text
        skip_duplicates = self.guard.redeem(bypass, text)

        try:
            task = await self._load_task(snapshot.task_id)

            if task is None and not is_follow_up and not skip_duplicates and not is_question(text):
                duplicate = find_duplicate_task(text, await self.tasks.list_tasks())
                if duplicate is not None:
                    self._offer_duplicate(duplicate, text)
                    return self.card.state
            self.state.duplicate_prompt = None

            self._write(snapshot, ThinkingCard(preserved_message=snapshot.previous_message))

            if task is not None:
                await self._handle_task_view(snapshot, task)
            elif is_follow_up or is_question(text):
                await self._stream_reply(snapshot, task=None)
            else:
                await self._classify_and_create(snapshot)
        except Exception:
            logger.exception("Submission failed for %r", text)
            self._write(snapshot, ErrorCard(text=GENERIC_FAILURE, retry_options=(TRY_AGAIN,)))

        return self.card.state

    async def handle_quick_reply(self, reply: str) -> CardState:
        """Handle a tapped quick reply or question option."""
        if reply == TRY_AGAIN and self.state.pending_input:
            pending = self.state.pending_input
            self.card.reset()
            return await self.submit(pending)

        if reply == ADD_WITH_BASIC_STEPS:
            return await self._create_with_basic_steps()

        offer = self.state.completion_offers.pop(reply, None)
        if offer is not None:
            task_id, step_id = offer
            await self.tasks.toggle_step(task_id, step_id)
            logger.info("Marked step %s complete from quick reply", step_id)
            self.card.reset()
            return self.card.state

        prompt = self.state.duplicate_prompt
        if prompt is not None:
            if reply == UPDATE_EXISTING:
                self.state.duplicate_prompt = None
                self.state.pending_input = None
                self.card.reset()
                self.focus(prompt.task_id)
                return self.card.state
            if reply == CREATE_NEW_ANYWAY:
                token = self.guard.issue(prompt)
                self.state.duplicate_prompt = None
                self.card.reset()
                return await self.submit(prompt.original_input, bypass=token)

        if self.gathering.is_active:
            return await self._answer_question(reply)

        return await self.submit(reply)

    def go_back(self) -> CardState:
        """Step back in the clarifying-question dialogue."""
        if not self.gathering.is_active:
            return self.card.state
        question = self.gathering.go_back()
        if question is not None:
            self.card.set(self._question_card(question))
        return self.card.state

    def focus(self, task_id: str | None, step_id: str | None = None) -> None:
        """Switch to a task (or back to the home view with ``None``)."""
        self.state.current_task_id = task_id
        self.state.focused_step_id = step_id if task_id else None
        self.state.completion_offers.clear()

    async def execute_action(self, action: PendingAction) -> CardState:
        """Run a validated action chosen by the user."""
        task = await self._load_task(self.state.current_task_id)

        if action.type is ActionType.MARK_STEP_DONE:
            if task is not None and task.find_step(action.step_id) is not None:
                await self.tasks.toggle_step(task.id, action.step_id or "")
        elif action.type is ActionType.FOCUS_STEP:
            if task is not None and task.find_step(action.step_id) is not None:
                self.state.focused_step_id = action.step_id
        elif action.type is ActionType.CREATE_TASK and action.title:
            snapshot = self._begin_turn(action.title, is_follow_up=False)
            await self._create_task(
                snapshot,
                action.title,
                create_fallback_steps(action.title),
                context_text=action.context,
                message=f'Created "{action.title}".',
            )
        elif action.type is ActionType.SHOW_SOURCES:
            logger.debug("Sources requested for current card")
        return self.card.state

    def dismiss(self) -> None:
        """Close the card and forget the conversation."""
        self.clear_conversation()
        self.state.duplicate_prompt = None

    def clear_conversation(self) -> None:
        """Reset conversation state (used on navigation)."""
        self.card.reset()
        self.state.pending_input = None
        self.state.pending_task_name = None
        self.state.completion_offers.clear()
        self.history.clear()
        self.gathering.cancel()

    def close(self) -> None:
        """Cancel outstanding timers."""
        self.card.close()
        self.gathering.close()

    # ------------------------------------------------------------------
    # Turn bookkeeping
    # ------------------------------------------------------------------

    def _begin_turn(
        self,
        text: str,
        is_follow_up: bool,
        previous_message: str | None = None,
    ) -> TurnSnapshot:
        self.state.generation += 1
        return TurnSnapshot(
            generation=self.state.generation,
            text=text,
            task_id=self.state.current_task_id,
            focused_step_id=self.state.focused_step_id,
            is_follow_up=is_follow_up,
            previous_message=previous_message,
        )

    def _write(self, snapshot: TurnSnapshot, state: CardState) -> None:
        """Write the card. Writes from superseded turns still land (last-write-wins)."""
        if snapshot.generation != self.state.generation:
            logger.debug(
                "Turn %d writing %s after turn %d started",
                snapshot.generation,
                type(state).__name__,
                self.state.generation,
            )
        self.card.set(state)

    def _write_stream(self, snapshot: TurnSnapshot, display_text: str) -> None:
        current = self.card.state
        if snapshot.generation != self.state.generation:
            logger.debug("Turn %d streaming after turn %d started", snapshot.generation, self.state.generation)
        if isinstance(current, StreamingCard) and display_text.startswith(current.partial_text):
            delta = display_text[len(current.partial_text) :]
            if delta:
                self.card.append_token(delta)
        else:
            self.card.replace_stream_text(display_text)

    async def _load_task(self, task_id: str | None) -> Task | None:
        if task_id is None:
            return None
        return await self.tasks.get_task(task_id)

    def _on_gathering_timeout(self) -> None:
        if isinstance(self.card.state, QuestionCard):
            self.card.reset()

    # ------------------------------------------------------------------
    # Duplicate detection
    # ------------------------------------------------------------------

    def _offer_duplicate(self, task: Task, text: str) -> None:
        logger.info("Input %r looks like existing task %s", text, task.id)
        self.state.duplicate_prompt = DuplicatePrompt(task_id=task.id, task_title=task.title, original_input=text)
        self.card.set(
            QuestionCard(
                text=duplicate_question(task.title),
                index=0,
                total=1,
                options=(UPDATE_EXISTING, CREATE_NEW_ANYWAY),
            )
        )

    # ------------------------------------------------------------------
    # Task view
    # ------------------------------------------------------------------

    async def _handle_task_view(self, snapshot: TurnSnapshot, task: Task) -> None:
        if not is_step_request(snapshot.text):
            await self._stream_reply(snapshot, task=task)
            return

        result = await self.breakdown.generate_steps(
            task.title,
            description=task.description,
            existing_step_texts=[step.text for step in task.steps],
            notes=snapshot.text,
        )

        # Re-read so steps toggled while generating are not lost
        fresh = await self._load_task(task.id) or task
        update = await self.tasks.update_task(fresh.id, steps=[*fresh.steps, *result.steps])
        if not update.ok:
            logger.warning("Could not append steps to %s: %s", fresh.id, update.error)
            self._write(snapshot, ErrorCard(text=GENERIC_FAILURE, retry_options=(TRY_AGAIN,)))
            return

        count = len(result.steps)
        self._write(
            snapshot,
            MessageCard(
                text=f"Added {count} more step{'s' if count != 1 else ''}.",
                sources=tuple(result.sources),
            ),
        )

    # ------------------------------------------------------------------
    # Streaming replies
    # ------------------------------------------------------------------

    def _chat_request(self, snapshot: TurnSnapshot, task: Task | None) -> ProviderRequest:
        ai = self.config.ai
        focused = task.find_step(snapshot.focused_step_id) if task is not None else None
        system = CHAT_SYSTEM_PROMPT
        if task is not None:
            system += "\n\nCurrent task:\n" + build_task_context(task, focused)

        context = build_chat_context(
            task,
            snapshot.focused_step_id,
            view="task" if task is not None else "home",
            has_card=snapshot.is_follow_up,
            pending_task_name=self.state.pending_task_name,
        )
        history = self.history.to_messages() if snapshot.is_follow_up else []
        messages = [ProviderMessage(role=m["role"], content=m["content"]) for m in history]
        messages.append(ProviderMessage(role="user", content=build_chat_user_message(snapshot.text, context)))

        return ProviderRequest(
            model=ai.model_for("conversation"),
            max_tokens=ai.max_tokens_for("conversation"),
            temperature=ai.temperature_for("conversation"),
            system=system,
            messages=messages,
            tools=[WEB_SEARCH_TOOL] if ai.enable_web_search else None,
        )

    async def _stream_reply(self, snapshot: TurnSnapshot, task: Task | None) -> None:
        try:
            response = (await self.client.open_stream(self._chat_request(snapshot, task))).unwrap()
        except ProviderError as e:
            logger.warning("Reply failed: %s", e)
            self._write(snapshot, ErrorCard(text=REPLY_FAILED, retry_options=(TRY_AGAIN,)))
            return

        self._write(snapshot, StreamingCard())
        consumer = StreamConsumer(
            StreamCallbacks(
                on_token=lambda _token, text: self._write_stream(snapshot, parse_streaming_message(text)),
            )
        )
        result = await consumer.consume_response(response)
        if not result.ok:
            self._write(snapshot, ErrorCard(text=result.error or REPLY_FAILED, retry_options=(TRY_AGAIN,)))
            return

        parsed = parse_ai_response_full(result.text)
        message = strip_cite_tags(parsed.message)
        raw_actions = result.actions or parsed.actions

        # Validate against the task as it is now, not as it was when the turn began
        fresh = await self._load_task(snapshot.task_id)
        actions = tuple(replace(a, label=label_for(a)) for a in filter_actions(raw_actions, fresh))

        quick_replies: tuple[str, ...] = ()
        if not actions and fresh is not None:
            quick_replies = self._completion_offer(snapshot.text, fresh)

        self.history.add_exchange(snapshot.text, message)
        self._write(
            snapshot,
            MessageCard(text=message, sources=tuple(result.sources), actions=actions, quick_replies=quick_replies),
        )

    def _completion_offer(self, text: str, task: Task) -> tuple[str, ...]:
        if not task.steps or not detect_completion_intent(text):
            return ()
        step = find_matching_step(text, task.steps)
        if step is None:
            return ()
        label = completion_reply(step.text)
        self.state.completion_offers[label] = (task.id, step.id)
        return (label,)

    # ------------------------------------------------------------------
    # Home view: intent -> gather -> create
    # ------------------------------------------------------------------

    async def _classify_and_create(self, snapshot: TurnSnapshot) -> None:
        text = snapshot.text
        self._write(snapshot, ThinkingCard(status=STATUS_UNDERSTANDING))

        try:
            analysis = await self.intent.classify(text)
        except IntentClassificationError as e:
            logger.warning("Intent classification failed: %s", e)
            self.state.pending_task_name = text
            self._write(snapshot, ErrorCard(text=INTENT_FAILED, retry_options=(TRY_AGAIN, ADD_WITH_BASIC_STEPS)))
            return

        self.history.add_exchange(text, analysis.understanding or "Asked clarifying questions")
        task_name = analysis.task_name or text
        self.state.pending_task_name = task_name

        if analysis.needs_clarification:
            limit = self.config.conversation.max_questions
            questions = [
                GatheringQuestion(key=q.key, text=q.question, options=tuple(q.options))
                for q in analysis.questions[:limit]
            ]
            first = self.gathering.start(questions, task_name)
            self._write(snapshot, self._question_card(first))
            return

        await self._create_from_analysis(snapshot, analysis, task_name)

    async def _create_from_analysis(
        self, snapshot: TurnSnapshot, analysis: IntentAnalysis, task_name: str
    ) -> None:
        context_summary = analysis.context_summary
        notes = ", ".join(f"{k}: {v}" for k, v in analysis.extracted_context.items()) or None

        if analysis.steps:
            self._write(snapshot, ThinkingCard(status=STATUS_RESEARCHING))
            result = await self.breakdown.generate_steps(task_name, description=context_summary or None, notes=notes)
            steps = result.steps
            if result.used_fallback:
                # The intent answer already carried tailored steps
                steps = [
                    StepDraft(text=s.text, summary=s.summary, detail=s.detail, time=s.time)
                    for s in analysis.steps
                ]
        else:
            self._write(snapshot, ThinkingCard(status=STATUS_BREAKING_DOWN))
            result = await self.breakdown.generate_steps(task_name, notes=notes)
            steps = result.steps

        await self._create_task(
            snapshot,
            task_name,
            steps,
            sources=result.sources,
            context_text=context_summary or None,
            due_date=analysis.deadline_date,
        )

    async def _create_task(
        self,
        snapshot: TurnSnapshot,
        title: str,
        steps: list[StepDraft],
        sources: list[SourceRef] | None = None,
        context_text: str | None = None,
        due_date: str | None = None,
        memory_context: dict[str, str] | None = None,
        message: str = PLAN_READY,
    ) -> None:
        created = await self.tasks.add_task(title, "soon")
        changes: dict[str, Any] = {"steps": steps}
        if context_text:
            changes["context_text"] = context_text
        if due_date:
            changes["due_date"] = due_date

        update = await self.tasks.update_task(created.id, **changes)
        if update.ok and update.task is not None:
            task = update.task
        else:
            logger.warning("Task %s created but update failed: %s", created.id, update.error)
            task = replace(created, **changes)

        if self.memory is not None:
            self.memory.add_entry(MemoryEntry(type="task_created", task_title=title, context=memory_context or {}))

        self.state.pending_task_name = None
        logger.info("Created task %s %r with %d steps", task.id, title, len(task.steps))
        self._write(snapshot, TaskCreatedCard(task=task, message=message, sources=tuple(sources or ())))

    async def _create_with_basic_steps(self) -> CardState:
        title = self.state.pending_task_name or self.state.pending_input or "New task"
        snapshot = self._begin_turn(title, is_follow_up=False)
        try:
            await self._create_task(snapshot, title, create_fallback_steps(title))
        except Exception:
            logger.exception("Could not add %r with basic steps", title)
            self._write(snapshot, ErrorCard(text=GENERIC_FAILURE, retry_options=(TRY_AGAIN,)))
        return self.card.state

    # ------------------------------------------------------------------
    # Clarifying questions
    # ------------------------------------------------------------------

    def _question_card(self, question: GatheringQuestion, awaiting_free_text: bool = False) -> QuestionCard:
        progress = self.gathering.progress() or (1, 1)
        saved = None
        if self.preferences is not None and not awaiting_free_text:
            saved = self.preferences.get_preference(question.key)
        return QuestionCard(
            text=question.text,
            index=progress[0] - 1,
            total=progress[1],
            options=question.options,
            saved_answer=saved,
            task_name=self.gathering.task_name,
            awaiting_free_text=awaiting_free_text,
        )

    async def _answer_question(self, answer: str) -> CardState:
        question = self.gathering.current_question()
        task_name = self.gathering.task_name or self.state.pending_task_name or answer
        was_free_text = self.card.state.awaiting_free_text if isinstance(self.card.state, QuestionCard) else False

        try:
            step = self.gathering.record_answer(answer)
        except SessionExpiredError:
            logger.info("Answer arrived after the gathering session expired")
            self.card.reset()
            return self.card.state

        if step.awaiting_free_text and step.next_question is not None:
            self.card.set(self._question_card(step.next_question, awaiting_free_text=True))
            return self.card.state

        if question is not None and self.preferences is not None and not was_free_text:
            if not is_other_option(answer):
                self.preferences.set_preference(question.key, answer)

        if step.has_more and step.next_question is not None:
            self.card.set(self._question_card(step.next_question))
            return self.card.state

        return await self._create_from_answers(task_name, step.all_answers)

    async def _create_from_answers(self, task_name: str, answers: dict[str, str]) -> CardState:
        snapshot = self._begin_turn(task_name, is_follow_up=False)
        description = ", ".join(f"{k}: {v}" for k, v in answers.items() if v and not is_other_option(v))
        # A new gathering session may start while steps are generated
        clarifying = self.gathering.clarifying_answers()
        context_text = self.gathering.context_description() or None

        self._write(snapshot, ThinkingCard(status=STATUS_RESEARCHING_CONTEXT))
        try:
            self.history.append("user", f"Context: {description}")
            result = await self.breakdown.generate_steps(
                task_name,
                description=description or None,
                clarifying_answers=clarifying,
            )
            await self._create_task(
                snapshot,
                task_name,
                result.steps,
                sources=result.sources,
                context_text=context_text,
                memory_context=answers,
            )
        except Exception:
            logger.exception("Could not create %r after gathering", task_name)
            self.state.pending_task_name = task_name
            self._write(snapshot, ErrorCard(text=CREATE_FAILED, retry_options=(TRY_AGAIN, ADD_WITH_BASIC_STEPS)))
        return self.card.state
