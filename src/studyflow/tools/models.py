"""Tool configuration, parameter and result models.

These dataclasses describe the four metered study tools, the
tool-specific parameters sent with each invocation, and the result
a successful run produces.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Protocol, Union


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


class ToolId(str, Enum):
    """Identifiers of the metered tools, matching the backend's tool ids."""

    SUMMARY = "summary"
    QUESTIONS = "questions"
    EXPLAIN = "explain"
    REWRITE = "rewrite"


class ToolState(Enum):
    """Lifecycle states of a :class:`ToolInvocationController`.

    Values:
        IDLE: Nothing in progress; ready to submit.
        VALIDATING: Checking input and attachments locally.
        BLOCKED: Submission refused because a cooldown is running.
        CHECKING_CREDITS: Comparing the mirrored balance with the cost.
        INSUFFICIENT_CREDITS: Not enough credits (client or server verdict).
        SUBMITTING: The metered call is in flight.
        SUCCEEDED: A result is available.
        RATE_LIMITED: The server rejected the call with a cooldown.
        FAILED: The call failed for any other reason.
        COMMITTING: The result is being saved to history.
        COMMITTED: The result has been saved to history.
    """

    IDLE = "idle"
    VALIDATING = "validating"
    BLOCKED = "blocked"
    CHECKING_CREDITS = "checking_credits"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    COMMITTING = "committing"
    COMMITTED = "committed"


@dataclass(slots=True, frozen=True)
class ToolConfig:
    """Static configuration for one tool.

    Attributes:
        tool_id: Which tool this configures.
        name: Display name.
        endpoint: Backend path of the metered operation.
        output_key: Key of the generated output inside the response data.
        credit_cost: Nominal credits charged per run (used for the pre-check).
        max_length: Maximum length of the combined input text.
        cooldown_seconds: Fallback cooldown when a 429 carries no hint.
        enabled: Disabled tools refuse submissions locally.
    """

    tool_id: ToolId
    name: str
    endpoint: str
    output_key: str
    credit_cost: int
    max_length: int
    cooldown_seconds: int = 0
    enabled: bool = True

    def merge_remote(self, remote: Mapping[str, Any] | None) -> "ToolConfig":
        """Overlay a server-side tool config row onto these defaults."""

        if not remote:
            return self
        updates: dict[str, Any] = {}
        max_chars = _non_negative_int(remote.get("max_chars"))
        if max_chars:
            updates["max_length"] = max_chars
        cooldown = _non_negative_int(remote.get("cooldown_seconds"))
        if cooldown is not None:
            updates["cooldown_seconds"] = cooldown
        if "enabled" in remote and remote["enabled"] is not None:
            updates["enabled"] = bool(remote["enabled"])
        name = remote.get("tool_name")
        if isinstance(name, str) and name.strip():
            updates["name"] = name.strip()
        return replace(self, **updates) if updates else self

    def with_cost(self, cost: Any) -> "ToolConfig":
        value = _non_negative_int(cost)
        if value is None:
            return self
        return replace(self, credit_cost=value)


DEFAULT_TOOL_CONFIGS: dict[ToolId, ToolConfig] = {
    ToolId.SUMMARY: ToolConfig(
        tool_id=ToolId.SUMMARY,
        name="AI summary",
        endpoint="/api/ai/summary",
        output_key="summary",
        credit_cost=1,
        max_length=10_000,
    ),
    ToolId.QUESTIONS: ToolConfig(
        tool_id=ToolId.QUESTIONS,
        name="AI question generator",
        endpoint="/api/ai/questions",
        output_key="questions",
        credit_cost=2,
        max_length=8_000,
    ),
    ToolId.EXPLAIN: ToolConfig(
        tool_id=ToolId.EXPLAIN,
        name="AI explain",
        endpoint="/api/ai/explain",
        output_key="explanation",
        credit_cost=1,
        max_length=5_000,
    ),
    ToolId.REWRITE: ToolConfig(
        tool_id=ToolId.REWRITE,
        name="AI rewrite",
        endpoint="/api/ai/rewrite",
        output_key="rewrittenText",
        credit_cost=1,
        max_length=5_000,
    ),
}


# ---------------------------------------------------------------------------
# Tool parameters
# ---------------------------------------------------------------------------


class ToolParams(Protocol):
    """Protocol implemented by the per-tool parameter dataclasses."""

    tool_id: ToolId

    def as_payload(self) -> dict[str, Any]:
        """Return the fields sent alongside the text on the wire."""
        ...

    def as_settings(self) -> dict[str, Any]:
        """Return the settings recorded with a history entry."""
        ...


SUMMARY_MODES: tuple[str, ...] = ("key_points", "easy_read", "bullet_list", "ultra_short")
QUESTION_TYPES: tuple[str, ...] = ("mcq", "short", "true_false", "fill_blank")
QUESTION_COUNTS: tuple[int, ...] = (3, 5, 7, 10)
EXPLAIN_MODES: tuple[str, ...] = ("easy", "exam", "friend", "deep_analysis")
REWRITE_STYLES: tuple[str, ...] = ("simple", "academic", "student", "practical")


def _require_choice(name: str, value: Any, choices: tuple[Any, ...]) -> None:
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(map(str, choices))}; got {value!r}")


@dataclass(slots=True, frozen=True)
class SummaryParams:
    mode: str = "key_points"

    tool_id = ToolId.SUMMARY

    def __post_init__(self) -> None:
        _require_choice("mode", self.mode, SUMMARY_MODES)

    def as_payload(self) -> dict[str, Any]:
        return {"mode": self.mode}

    def as_settings(self) -> dict[str, Any]:
        return {"mode": self.mode}


@dataclass(slots=True, frozen=True)
class QuestionsParams:
    question_type: str = "mcq"
    count: int = 5

    tool_id = ToolId.QUESTIONS

    def __post_init__(self) -> None:
        _require_choice("question_type", self.question_type, QUESTION_TYPES)
        _require_choice("count", self.count, QUESTION_COUNTS)

    def as_payload(self) -> dict[str, Any]:
        return {"questionType": self.question_type, "count": self.count}

    def as_settings(self) -> dict[str, Any]:
        return {"questionType": self.question_type, "questionCount": self.count}


@dataclass(slots=True, frozen=True)
class ExplainParams:
    mode: str = "easy"
    with_examples: bool = True

    tool_id = ToolId.EXPLAIN

    def __post_init__(self) -> None:
        _require_choice("mode", self.mode, EXPLAIN_MODES)

    def as_payload(self) -> dict[str, Any]:
        return {"mode": self.mode, "withExamples": self.with_examples}

    def as_settings(self) -> dict[str, Any]:
        return {"mode": self.mode, "withExamples": self.with_examples}


@dataclass(slots=True, frozen=True)
class RewriteParams:
    style: str = "student"
    word_limit: int | None = None

    tool_id = ToolId.REWRITE

    def __post_init__(self) -> None:
        _require_choice("style", self.style, REWRITE_STYLES)
        if self.word_limit is not None and self.word_limit <= 0:
            raise ValueError("word_limit must be positive")

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"style": self.style}
        if self.word_limit is not None:
            payload["wordLimit"] = self.word_limit
        return payload

    def as_settings(self) -> dict[str, Any]:
        return self.as_payload()


AnyToolParams = Union[SummaryParams, QuestionsParams, ExplainParams, RewriteParams]

_DEFAULT_PARAMS: dict[ToolId, type] = {
    ToolId.SUMMARY: SummaryParams,
    ToolId.QUESTIONS: QuestionsParams,
    ToolId.EXPLAIN: ExplainParams,
    ToolId.REWRITE: RewriteParams,
}


def default_params(tool_id: ToolId) -> AnyToolParams:
    """Return the default parameter object for ``tool_id``."""
    return _DEFAULT_PARAMS[ToolId(tool_id)]()


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Question:
    """A generated review question."""

    question: str
    answer: str
    options: tuple[str, ...] = ()
    explanation: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Question":
        options = payload.get("options") or ()
        explanation = payload.get("explanation")
        return cls(
            question=str(payload.get("question") or ""),
            answer=str(payload.get("answer") or ""),
            options=tuple(str(option) for option in options),
            explanation=str(explanation) if explanation else None,
        )


@dataclass(slots=True)
class InvocationResponse:
    """Normalized response of one metered invocation, as returned by the service."""

    output_text: str = ""
    questions: tuple[Question, ...] = ()
    credits_used: int | None = None
    remaining_credits: int | None = None
    processing_time: float | None = None


@dataclass(slots=True)
class InvocationResult:
    """The outcome of a successful run, kept until the next run or reset.

    Attributes:
        tool_id: The tool that produced the result.
        input_text: The combined text that was sent.
        output_text: Generated text (rendered questions for the question tool).
        parameters: Settings recorded with the history entry.
        credits_used: Server-reported charge, or the nominal cost if omitted.
        questions: Structured questions for the question tool.
        committed: True once the result has been saved to history.
        created_at: When the result was received.
    """

    tool_id: ToolId
    input_text: str
    output_text: str
    parameters: dict[str, Any]
    credits_used: int
    questions: tuple[Question, ...] = ()
    committed: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True, frozen=True)
class ToolStatus:
    """Read-only snapshot of a controller for front ends to render.

    Attributes:
        tool_id: The tool this status belongs to.
        state: Current controller state.
        error: Current user-facing error message, if any.
        cooldown_seconds: Seconds left in the cooldown (0 when not blocking).
        credits: Mirrored credit balance.
        result: The current result, if any.
        required_credits: Credits needed, when state is INSUFFICIENT_CREDITS.
        available_credits: Credits available, when state is INSUFFICIENT_CREDITS.
    """

    tool_id: ToolId
    state: ToolState
    error: str | None
    cooldown_seconds: int
    credits: int
    result: InvocationResult | None = None
    required_credits: int | None = None
    available_credits: int | None = None

    @property
    def committed(self) -> bool:
        return bool(self.result and self.result.committed)


def _non_negative_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number >= 0 else None


__all__ = [
    "ToolId",
    "ToolState",
    "ToolConfig",
    "DEFAULT_TOOL_CONFIGS",
    "ToolParams",
    "AnyToolParams",
    "SummaryParams",
    "QuestionsParams",
    "ExplainParams",
    "RewriteParams",
    "SUMMARY_MODES",
    "QUESTION_TYPES",
    "QUESTION_COUNTS",
    "EXPLAIN_MODES",
    "REWRITE_STYLES",
    "default_params",
    "Question",
    "InvocationResponse",
    "InvocationResult",
    "ToolStatus",
]
