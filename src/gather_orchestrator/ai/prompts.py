"""Prompt builders for intent analysis, step generation and conversation."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from ..models import Task

OTHER_OPTION = "Other (I will specify)"

CHAT_SYSTEM_PROMPT = """You answer questions for someone who needs things kept short.

RESPONSE FORMAT
Return ONLY a JSON object:
{"message":"...","actions":[{"type":"mark_step_done","stepId":"...","label":"..."}]}

Allowed action types: mark_step_done, focus_step, create_task, show_sources.
Only include actions that are clearly relevant and safe to execute.
mark_step_done and focus_step MUST use a stepId that appears in the context.
create_task needs a "title" (and optional "context").
If the user asks for proof or sources, suggest {"type":"show_sources","label":"Show sources"}.

WHEN THE USER IS STUCK
Acknowledge it briefly, then give one concrete thing to do in the next two
minutes (a URL, a phone number, or the exact words to say). Offer an action
button when it helps.

RULES
- 1 to 3 sentences, no markdown, no headers, no disclaimers
- Use web search for factual or procedural answers; prefer official sources
- If you don't know, say "I don't know"
- If a task is in context and the question is unrelated, say:
  "That seems unrelated to this task. What do you need help with for it?"
"""

TASK_BREAKDOWN_SYSTEM_PROMPT = """You help someone complete a task by writing specific, actionable steps.

Adapt to the task type:
- Bureaucratic (forms, cancellations, appointments): search for exact URLs,
  phone numbers, fees and required documents; cite official sources.
- Personal or social: use the names and preferences from the context, include
  draft messages ready to send.
- Learning, creative, habit: no search needed; give timed practice or process
  steps with a clear "good enough" checkpoint.
- Simple tasks (one email, one call): at most 3 steps, focused on deciding
  what to say rather than mechanics.

Step rules:
- The first step must take under 5 minutes.
- Every step has a time estimate such as "10 min".
- Never write vague steps like "Research the requirements" or
  "Contact customer service"; say exactly where and what.
- Keep to 3-8 steps. Never fabricate URLs, phone numbers or fees; omit
  source/action when unknown.

Return ONLY a JSON array:
[
  {
    "text": "specific instruction",
    "summary": "why this matters, 5-10 words",
    "detail": "optional expanded instructions",
    "time": "X min",
    "source": {"name": "Official source", "url": "https://..."},
    "action": {"text": "Button text", "url": "https://..."}
  }
]
No markdown, no explanation."""


def build_intent_system_prompt(now: datetime | None = None, relevant_memory: str = "") -> str:
    """Build the intent-analysis system prompt.

    Args:
        now: Current time, embedded so the model resolves relative dates.
        relevant_memory: Free text from the memory store appended as context.
    """
    now = now or datetime.now()
    prompt = f"""You help people turn what they type into a concrete task with doable steps.

Current date: {now.isoformat()}.

Ask clarifying questions ONLY when the answer materially changes the steps.

Task types:
- Bureaucratic (DMV, passport, taxes, cancellations): steps vary by location,
  so ask which state they are in unless they said so; ask about current status
  (first time, renewal, expired) when it matters.
- Personal or social (parties, gifts): ask for the person's name and what
  they like.
- Learning, creative, habit, project: ask about level, scope or deadline only
  if the task is vague.
- Quick tasks ("buy milk", "email boss"): no questions, just steps.

Extract everything already present in the input (company, place, dates,
"I already have X") into extractedContext and do not ask about it again.

Question rules: 0-3 questions; options are the 3-4 most likely answers plus
"{OTHER_OPTION}".

Detect deadlines: explicit ("by Friday") or commonly inferred (tax day).

Return ONLY valid JSON:
{{
  "taskName": "short name",
  "understanding": "one sentence",
  "extractedContext": {{"key": "value"}},
  "deadline": {{"date": "YYYY-MM-DD or null"}},
  "needsMoreInfo": true,
  "questions": [
    {{"question": "...", "key": "answer_key", "options": ["...", "{OTHER_OPTION}"]}}
  ],
  "ifComplete": {{
    "steps": [{{"text": "...", "summary": "...", "time": "X min"}}],
    "contextSummary": "key context"
  }}
}}
Years: use {now.year} or later unless the user said otherwise."""
    if relevant_memory:
        prompt += f"\n\nWhat you already know about this user:\n{relevant_memory}"
    return prompt


def build_breakdown_user_prompt(
    title: str,
    description: str | None = None,
    existing_step_texts: list[str] | None = None,
    clarifying_answers: list[tuple[str, str]] | None = None,
    notes: str | None = None,
) -> str:
    """Build the user message for step generation."""
    lines = [f'Task: "{title}"']
    if description:
        lines.append(f"Description: {description}")
    if notes:
        lines.append(f"Notes: {notes}")
    if clarifying_answers:
        lines.append("")
        lines.append("Context from user:")
        for question, answer in clarifying_answers:
            lines.append(f"Q: {question}")
            lines.append(f"A: {answer}")
    if existing_step_texts:
        lines.append("")
        lines.append("Already added steps (do not repeat these):")
        lines.extend(f"- {text}" for text in existing_step_texts)
        lines.append("")
        lines.append("Suggest additional steps that come next.")
    return "\n".join(lines)


def build_chat_context(
    task: Task | None,
    focused_step_id: str | None,
    view: str,
    has_card: bool,
    pending_task_name: str | None = None,
) -> dict[str, Any]:
    """Build the structured context attached to a conversational request."""
    context: dict[str, Any] = {
        "ui": {"view": view, "has_ai_card": has_card},
    }
    if task is not None:
        steps = [
            {"id": step.id, "text": step.text, "done": step.done, "summary": step.summary}
            for step in task.steps
        ]
        focused = next((s for s in steps if s["id"] == focused_step_id), None)
        context["task"] = {
            "id": task.id,
            "title": task.title,
            "context_text": task.context_text,
            "steps": steps,
            "focused_step": focused,
        }
    if pending_task_name:
        context["pending_task_name"] = pending_task_name
    return context


def build_chat_user_message(message: str, context: dict[str, Any]) -> str:
    """Combine the user's message with its JSON context block."""
    return f"{message}\n\nContext:\n{json.dumps(context, indent=2)}"
