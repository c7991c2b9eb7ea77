"""Pure transition logic for a tool run.

Every decision the controller makes is computed here from an immutable
snapshot, returning the next state plus the side effects to execute.
Nothing in this module performs I/O, so the rules can be tested without
an event loop or any service fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence, Union

from ..services.errors import ApiError, InsufficientCreditsError, RateLimitedError
from .formatting import format_questions
from .models import InvocationResponse, InvocationResult, ToolId, ToolState

GENERIC_FAILURE_MESSAGE = "Something went wrong. Please try again."
PENDING_ATTACHMENTS_MESSAGE = "Please wait until all attachments have finished processing."
EMPTY_INPUT_MESSAGE = "Please enter some text or attach a file."


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class InvokeTool:
    """Send the metered call with ``text``."""

    text: str


@dataclass(slots=True, frozen=True)
class RefreshCredits:
    """Re-read the credit balance without blocking the result."""


@dataclass(slots=True, frozen=True)
class ClearAttachments:
    """Drop every attachment and release its preview."""


@dataclass(slots=True, frozen=True)
class ArmCooldown:
    seconds: int


Command = Union[InvokeTool, RefreshCredits, ClearAttachments, ArmCooldown]


@dataclass(slots=True, frozen=True)
class Transition:
    """Outcome of one decision.

    Attributes:
        state: Next state, or ``None`` to keep the current one (local refusals).
        error: User-facing message to show, if any.
        required_credits: Set for insufficient-credit outcomes.
        available_credits: Set for insufficient-credit outcomes.
        result: The new result on success.
        commands: Side effects to run, in order.
    """

    state: ToolState | None
    error: str | None = None
    required_credits: int | None = None
    available_credits: int | None = None
    result: InvocationResult | None = None
    commands: tuple[Command, ...] = ()

    @property
    def refused(self) -> bool:
        return not any(isinstance(command, InvokeTool) for command in self.commands)


@dataclass(slots=True, frozen=True)
class SubmissionSnapshot:
    """Everything ``plan_submission`` needs to know about the world."""

    tool_name: str
    typed_text: str
    extracted_texts: tuple[str, ...] = ()
    failed_files: tuple[str, ...] = ()
    attachments_pending: bool = False
    enabled: bool = True
    max_length: int = 0
    nominal_cost: int = 0
    cooldown_remaining: int = 0
    credits: int = 0

    @property
    def combined_text(self) -> str:
        return combine_text(self.typed_text, self.extracted_texts)


def combine_text(typed_text: str, extracted_texts: Sequence[str]) -> str:
    """Join the typed text and extracted texts with blank lines."""

    parts = [typed_text.strip()] if typed_text and typed_text.strip() else []
    parts.extend(text.strip() for text in extracted_texts if text and text.strip())
    return "\n\n".join(parts)


def cooldown_message(seconds: int) -> str:
    unit = "second" if seconds == 1 else "seconds"
    return f"Please wait {seconds} {unit} before trying again."


def insufficient_credits_message(required: int, available: int) -> str:
    return f"Not enough credits: {required} required, {available} available."


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


def plan_submission(snapshot: SubmissionSnapshot) -> Transition:
    """Decide whether a submission may go out.

    Local validation refusals keep the current state and only set an
    error. A running cooldown moves to ``BLOCKED`` and a short balance
    to ``INSUFFICIENT_CREDITS``. Otherwise the plan is a single
    ``InvokeTool`` command.
    """

    if snapshot.attachments_pending:
        return Transition(state=None, error=PENDING_ATTACHMENTS_MESSAGE)
    if not snapshot.enabled:
        return Transition(state=None, error=f"{snapshot.tool_name} is currently disabled.")

    text = snapshot.combined_text
    if not text:
        if snapshot.failed_files and not snapshot.typed_text.strip():
            names = ", ".join(snapshot.failed_files)
            return Transition(
                state=None,
                error=f"Could not extract text from: {names}. Remove these files or type your text.",
            )
        return Transition(state=None, error=EMPTY_INPUT_MESSAGE)
    if snapshot.max_length and len(text) > snapshot.max_length:
        return Transition(
            state=None,
            error=(
                f"Text is too long ({len(text)} characters). "
                f"The maximum is {snapshot.max_length} characters."
            ),
        )

    if snapshot.cooldown_remaining > 0:
        return Transition(state=ToolState.BLOCKED, error=cooldown_message(snapshot.cooldown_remaining))

    if snapshot.credits < snapshot.nominal_cost:
        return Transition(
            state=ToolState.INSUFFICIENT_CREDITS,
            error=insufficient_credits_message(snapshot.nominal_cost, snapshot.credits),
            required_credits=snapshot.nominal_cost,
            available_credits=snapshot.credits,
        )

    return Transition(state=ToolState.SUBMITTING, commands=(InvokeTool(text=text),))


def resolve_success(
    tool_id: ToolId,
    input_text: str,
    parameters: Mapping[str, Any],
    response: InvocationResponse,
    *,
    nominal_cost: int,
) -> Transition:
    """Build the result of a successful call; the server's charge wins."""

    credits_used = response.credits_used if response.credits_used is not None else nominal_cost
    output_text = response.output_text
    if response.questions and not output_text:
        output_text = format_questions(response.questions)
    result = InvocationResult(
        tool_id=tool_id,
        input_text=input_text,
        output_text=output_text,
        parameters=dict(parameters),
        credits_used=credits_used,
        questions=response.questions,
    )
    return Transition(
        state=ToolState.SUCCEEDED,
        result=result,
        commands=(ClearAttachments(), RefreshCredits()),
    )


def resolve_failure(
    error: BaseException,
    *,
    fallback_cooldown: int = 0,
    nominal_cost: int = 0,
    credits: int = 0,
) -> Transition:
    """Map a failed call to its typed outcome.

    An insufficient-credits refusal that omits the amounts falls back to
    the tool's ``nominal_cost`` and the locally known ``credits``.
    """

    if isinstance(error, RateLimitedError):
        seconds = error.remaining_seconds
        if seconds is None:
            seconds = fallback_cooldown
        if seconds > 0:
            return Transition(
                state=ToolState.RATE_LIMITED,
                error=cooldown_message(seconds),
                commands=(ArmCooldown(seconds=seconds),),
            )
        return Transition(
            state=ToolState.FAILED,
            error=error.message or "Too many requests. Please try again later.",
        )
    if isinstance(error, InsufficientCreditsError):
        required = error.required if error.required is not None else nominal_cost
        available = error.available if error.available is not None else credits
        return Transition(
            state=ToolState.INSUFFICIENT_CREDITS,
            error=insufficient_credits_message(required, available),
            required_credits=required,
            available_credits=available,
            commands=(RefreshCredits(),),
        )
    if isinstance(error, ApiError):
        return Transition(state=ToolState.FAILED, error=error.message or GENERIC_FAILURE_MESSAGE)
    return Transition(state=ToolState.FAILED, error=GENERIC_FAILURE_MESSAGE)


__all__ = [
    "GENERIC_FAILURE_MESSAGE",
    "PENDING_ATTACHMENTS_MESSAGE",
    "EMPTY_INPUT_MESSAGE",
    "InvokeTool",
    "RefreshCredits",
    "ClearAttachments",
    "ArmCooldown",
    "Command",
    "Transition",
    "SubmissionSnapshot",
    "combine_text",
    "cooldown_message",
    "insufficient_credits_message",
    "plan_submission",
    "resolve_success",
    "resolve_failure",
]
