"""Task breakdown generation.

Steps are requested from the provider first (with web search enabled so the
model can cite official sources). If the call fails for any reason, or the
answer cannot be turned into at least one step, a deterministic keyword-driven
template is used instead, so callers always receive a usable list.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from ..ai.parsing import parse_json_response, strip_cite_tags
from ..ai.prompts import TASK_BREAKDOWN_SYSTEM_PROMPT, build_breakdown_user_prompt
from ..ai.retry_client import RetryClient
from ..ai.schemas import ProviderMessage, ProviderRequest
from ..config import AIConfig
from ..errors import ProviderError, ResponseParseError
from ..models import SourceRef, StepDraft

logger = logging.getLogger(__name__)

USE_CASE = "task_breakdown"

WEB_SEARCH_TOOL: dict[str, Any] = {
    "type": "web_search_20250305",
    "name": "web_search",
    "max_uses": 5,
}

# (pattern, [(text, summary, time), ...]); first matching category wins
_FALLBACK_TEMPLATES: tuple[tuple[re.Pattern[str], tuple[tuple[str, str, str], ...]], ...] = (
    (
        re.compile(r"\bcancel"),
        (
            ("Find the contact info or online form for cancellation", "Locate the cancellation method", "5 min"),
            ('Call or use online chat and say "I want to cancel my account"', "A direct request works best", "10 min"),
            ("Get a confirmation number or email and save it", "Proof of cancellation", "2 min"),
        ),
    ),
    (
        re.compile(r"\b(pay|bill)"),
        (
            ("Find the bill or invoice and check the amount due", "Know what you owe and when", "5 min"),
            ("Pay online or through your bank's bill pay", "Fastest way to get it done", "10 min"),
            ("Save the payment confirmation", "Proof in case of disputes", "2 min"),
        ),
    ),
    (
        re.compile(r"\b(clean|organi[sz]|tidy|declutter)"),
        (
            ("Set a timer for 15 minutes and start with one spot", "Small scope beats overwhelm", "15 min"),
            ("Put away or toss everything that is out of place", "Clear the surfaces first", "15 min"),
            ("Wipe down surfaces and take out the trash", "Finish with a visible win", "10 min"),
        ),
    ),
    (
        re.compile(r"\b(call|calls|calling|phone)\b"),
        (
            ("Write down what you need to say in 2-3 bullet points", "A script makes the call easier", "3 min"),
            ("Find the phone number and the best time to call", "Avoid hold queues", "3 min"),
            ("Make the call and note any reference numbers", "Capture what was agreed", "10 min"),
        ),
    ),
    (
        re.compile(r"\b(buy|shop|order|purchase)"),
        (
            ("Write down exactly what you need, with quantities", "A list prevents extra trips", "5 min"),
            ("Pick one store or site and check it has everything", "Fewer stops, less friction", "5 min"),
            ("Place the order or go get it", "Done beats perfect", "20 min"),
        ),
    ),
    (
        re.compile(r"\b(fix|repair|broken)"),
        (
            ("Describe the problem in one sentence and take a photo", "Clear problem, faster fix", "3 min"),
            ("Search the exact problem or find a repair service", "Decide DIY or pro", "10 min"),
            ("Do the fix or book the repair", "Get it moving", "30 min"),
        ),
    ),
    (
        re.compile(r"\b(learn|practi[cs]e|study)"),
        (
            ("Decide on one specific skill to focus on this week", "Narrow focus means faster progress", "5 min"),
            ("Do 20 minutes of deliberate practice", "Quality over quantity", "20 min"),
            ("Note what felt hard and what clicked", "Builds self-awareness", "5 min"),
        ),
    ),
    (
        re.compile(r"\b(write|draft|create)"),
        (
            ("Write down 5 bullet points of what you want to say", "Raw material first", "10 min"),
            ("Turn 2-3 bullets into full sentences", "Just get words down", "15 min"),
            ("Read it out loud and fix anything that sounds off", "Your ear catches what eyes miss", "10 min"),
        ),
    ),
    (
        re.compile(r"\b(appointment|schedule|book)"),
        (
            ("Search for online booking or the phone number", "Find the booking method", "5 min"),
            ("Check your calendar for 2-3 possible times", "Be ready with options", "3 min"),
            ("Book it and add it to your calendar right away", "Lock it in", "5 min"),
        ),
    ),
    (
        re.compile(r"\b(email|message|contact|text)"),
        (
            ("Write the main point in one sentence", "Clarity first", "3 min"),
            ("Add any necessary context and keep it short", "Respect their time", "5 min"),
            ("Read it once, fix obvious issues, then send", "Done beats perfect", "3 min"),
        ),
    ),
)


def create_fallback_steps(title: str) -> list[StepDraft]:
    """Deterministic three-step plan chosen by keyword category.

    Args:
        title: Task title.

    Returns:
        Three undone steps with unique ids and time estimates.
    """
    lower = title.lower()
    for pattern, template in _FALLBACK_TEMPLATES:
        if pattern.search(lower):
            return [StepDraft(text=text, summary=summary, time=time) for text, summary, time in template]

    return [
        StepDraft(text=f'Search for how to "{title}"', summary="Find the actual process", time="5 min"),
        StepDraft(text="Write down the 3 main things you need to do", summary="Capture the key steps", time="5 min"),
        StepDraft(text="Do the first thing on your list right now", summary="Momentum matters most", time="15 min"),
    ]


@dataclass
class BreakdownResult:
    """Generated steps plus the sources the model cited."""

    steps: list[StepDraft]
    sources: list[SourceRef] = field(default_factory=list)
    used_fallback: bool = False


def parse_steps(text: str) -> list[StepDraft]:
    """Parse a model answer into steps.

    Accepts a bare JSON array or an object wrapping it under ``steps`` or
    ``subtasks``. Items without text are dropped.

    Raises:
        ResponseParseError: If the answer holds no step list.
    """
    data = parse_json_response(text)
    if isinstance(data, dict):
        data = data.get("steps", data.get("subtasks"))
    if not isinstance(data, list):
        raise ResponseParseError("Step response is not a list")

    steps = []
    for item in data:
        step = StepDraft.from_ai_item(item)
        step.text = strip_cite_tags(step.text)
        if step.text:
            steps.append(step)
    return steps


class TaskBreakdownGenerator:
    """Remote-first step generator with a deterministic fallback.

    Args:
        client: Provider client.
        config: Provider settings; defaults to the client's configuration.
    """

    def __init__(self, client: RetryClient, config: AIConfig | None = None) -> None:
        self._client = client
        self._config = config or client.config

    async def generate_steps(
        self,
        title: str,
        description: str | None = None,
        existing_step_texts: list[str] | None = None,
        clarifying_answers: list[tuple[str, str]] | None = None,
        notes: str | None = None,
    ) -> BreakdownResult:
        """Generate steps for a task. Never raises.

        Args:
            title: Task title.
            description: Extra description, such as gathered context.
            existing_step_texts: Steps already on the task; the model adds new ones.
            clarifying_answers: Question and answer pairs from context gathering.
            notes: Free-form user notes.

        Returns:
            BreakdownResult; ``used_fallback`` is set when the template was used.
        """
        request = ProviderRequest(
            model=self._config.model_for(USE_CASE),
            max_tokens=self._config.max_tokens_for(USE_CASE),
            temperature=self._config.temperature_for(USE_CASE),
            system=TASK_BREAKDOWN_SYSTEM_PROMPT,
            messages=[
                ProviderMessage(
                    role="user",
                    content=build_breakdown_user_prompt(
                        title, description, existing_step_texts, clarifying_answers, notes
                    ),
                )
            ],
            tools=[WEB_SEARCH_TOOL] if self._config.enable_web_search else None,
        )

        try:
            response = (await self._client.call(request)).unwrap()
            steps = parse_steps(response.text())
            if not steps:
                logger.warning("Step generation returned no steps; using fallback for %r", title)
                return self._fallback(title)

            sources = [SourceRef.from_dict(s) for s in response.sources()]
            logger.info("Generated %d steps for %r", len(steps), title)
            return BreakdownResult(steps=steps, sources=sources)
        except ProviderError as e:
            logger.warning("Step generation failed (%s); using fallback steps for %r", e, title)
            return self._fallback(title)
        except ResponseParseError as e:
            logger.warning("Could not parse generated steps for %r: %s", title, e)
            return self._fallback(title)
        except Exception:
            logger.exception("Unexpected error generating steps for %r", title)
            return self._fallback(title)

    @staticmethod
    def _fallback(title: str) -> BreakdownResult:
        return BreakdownResult(steps=create_fallback_steps(title), used_fallback=True)
