"""Provider wire models.

Pydantic models for the Messages API request/response pair and for the JSON
payload returned by intent analysis. Model output is loosely shaped, so the
intent models accept both camelCase and snake_case keys and coerce common
variations before validation.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ContentBlock(BaseModel):
    """A single response content block (text, tool use, or search result)."""

    model_config = ConfigDict(extra="allow")

    type: str
    text: str | None = None
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] | None = None
    content: Any = None


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ProviderMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str | list[dict[str, Any]]


class ProviderRequest(BaseModel):
    """Request body for the Messages endpoint."""

    model: str
    max_tokens: int
    messages: list[ProviderMessage]
    system: str | None = None
    temperature: float | None = None
    tools: list[dict[str, Any]] | None = None
    stream: bool = False

    def to_body(self) -> dict[str, Any]:
        """Serialize, omitting unset optional fields."""
        body = self.model_dump(exclude_none=True)
        if not self.tools:
            body.pop("tools", None)
        if not self.stream:
            body.pop("stream", None)
        return body


class ProviderResponse(BaseModel):
    """Response body from the Messages endpoint."""

    model_config = ConfigDict(extra="allow")

    content: list[ContentBlock] = Field(default_factory=list)
    stop_reason: str | None = None
    model: str | None = None
    usage: Usage = Field(default_factory=Usage)

    def text(self) -> str:
        """Concatenate all text blocks."""
        return "".join(block.text or "" for block in self.content if block.type == "text")

    def sources(self) -> list[dict[str, str]]:
        """Collect web-search results as ``{"title", "url"}`` dicts, deduplicated by URL."""
        seen: set[str] = set()
        found: list[dict[str, str]] = []
        for block in self.content:
            if block.type != "web_search_tool_result" or not isinstance(block.content, list):
                continue
            for result in block.content:
                if not isinstance(result, dict):
                    continue
                url = result.get("url")
                if not url or url in seen:
                    continue
                seen.add(url)
                found.append({"title": str(result.get("title") or url), "url": str(url)})
        return found


class IntentQuestion(BaseModel):
    """A clarifying question proposed by intent analysis."""

    model_config = ConfigDict(extra="ignore")

    key: str
    question: str = ""
    options: list[str] = Field(default_factory=list)

    @field_validator("options", mode="before")
    @classmethod
    def coerce_options(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return [str(item) for item in v]


class IntentStep(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str
    summary: str | None = None
    detail: str | None = None
    time: str | None = None


class IntentCompletion(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    steps: list[IntentStep] = Field(default_factory=list)
    context_summary: str = Field(default="", alias="contextSummary")


class IntentDeadline(BaseModel):
    model_config = ConfigDict(extra="ignore")

    date: str | None = None


class IntentAnalysis(BaseModel):
    """Structured result of intent analysis."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    task_name: str | None = Field(default=None, alias="taskName")
    understanding: str | None = None
    needs_more_info: bool | None = Field(default=None, alias="needsMoreInfo")
    questions: list[IntentQuestion] = Field(default_factory=list)
    if_complete: IntentCompletion | None = Field(default=None, alias="ifComplete")
    deadline: IntentDeadline | None = None
    extracted_context: dict[str, Any] = Field(default_factory=dict, alias="extractedContext")

    @field_validator("questions", mode="before")
    @classmethod
    def normalize_questions(cls, v: Any) -> list[Any]:
        """Accept ``text`` as an alias of ``question`` and drop keyless entries."""
        if not isinstance(v, list):
            return []
        normalized: list[Any] = []
        for item in v:
            if not isinstance(item, dict) or not item.get("key"):
                continue
            if not item.get("question") and item.get("text"):
                item = {**item, "question": item["text"]}
            normalized.append(item)
        return normalized

    @field_validator("extracted_context", mode="before")
    @classmethod
    def coerce_context(cls, v: Any) -> dict[str, Any]:
        return v if isinstance(v, dict) else {}

    @property
    def steps(self) -> list[IntentStep]:
        return self.if_complete.steps if self.if_complete else []

    @property
    def context_summary(self) -> str:
        return self.if_complete.context_summary if self.if_complete else ""

    @property
    def deadline_date(self) -> str | None:
        return self.deadline.date if self.deadline else None

    @property
    def needs_clarification(self) -> bool:
        """True when questions should be asked before creating the task."""
        wants_more = self.needs_more_info is not False or len(self.steps) < 2
        return wants_more and len(self.questions) > 0
