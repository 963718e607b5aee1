"""Intent classification.

Asks the fast model whether an utterance is ready to become a task or needs
clarifying questions first, and returns the parsed ``IntentAnalysis``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from pydantic import ValidationError

from ..ai.parsing import parse_json_response
from ..ai.prompts import build_intent_system_prompt
from ..ai.retry_client import RetryClient
from ..ai.schemas import IntentAnalysis, ProviderMessage, ProviderRequest
from ..collaborators import MemoryStore
from ..config import AIConfig
from ..errors import IntentClassificationError, ProviderError, ResponseParseError
from .signals import sanitize_questions

logger = logging.getLogger(__name__)

USE_CASE = "intent_analysis"


class IntentClassifier:
    """Classifies user input via the provider.

    Args:
        client: Provider client.
        memory: Optional memory store supplying prior turns and relevant notes.
        config: Provider settings; defaults to the client's configuration.
        now: Clock for the date embedded in the prompt.
    """

    def __init__(
        self,
        client: RetryClient,
        memory: MemoryStore | None = None,
        config: AIConfig | None = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._client = client
        self._memory = memory
        self._config = config or client.config
        self._now = now

    def build_request(self, text: str) -> ProviderRequest:
        relevant = ""
        messages: list[ProviderMessage] = []
        if self._memory is not None:
            relevant = self._memory.get_relevant_memory(text)
            messages = [
                ProviderMessage(role=turn.role, content=turn.content)
                for turn in self._memory.get_memory_for_ai()
                if turn.content
            ]
        messages.append(ProviderMessage(role="user", content=text))

        return ProviderRequest(
            model=self._config.model_for(USE_CASE),
            max_tokens=self._config.max_tokens_for(USE_CASE),
            temperature=self._config.temperature_for(USE_CASE),
            system=build_intent_system_prompt(self._now(), relevant),
            messages=messages,
        )

    async def classify(self, text: str) -> IntentAnalysis:
        """Analyze ``text``.

        Args:
            text: The user's utterance.

        Returns:
            Parsed analysis with questions sanitized.

        Raises:
            IntentClassificationError: On provider failure or unusable output.
        """
        try:
            response = (await self._client.call(self.build_request(text))).unwrap()
        except ProviderError as e:
            raise IntentClassificationError(f"Intent analysis failed ({e})") from e

        try:
            data = parse_json_response(response.text())
            analysis = IntentAnalysis.model_validate(data)
        except (ResponseParseError, ValidationError) as e:
            raise IntentClassificationError(f"Unusable intent analysis: {e}") from e

        task_name = analysis.task_name or text.strip()
        analysis = analysis.model_copy(
            update={
                "task_name": task_name,
                "questions": sanitize_questions(task_name, analysis.questions),
            }
        )
        logger.info(
            "Intent for %r: %d questions, %d steps",
            task_name,
            len(analysis.questions),
            len(analysis.steps),
        )
        return analysis
