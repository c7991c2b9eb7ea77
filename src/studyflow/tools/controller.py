"""Tool invocation controller.

One controller drives one metered tool: it validates the input, gates on
the cooldown and the mirrored credit balance, sends the metered call at
most once per user action, reconciles the outcome, and offers a separate
commit-to-history step. Every state change is published on the event bus.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Generic, Protocol, TypeVar

from ..events import (
    CooldownTicked,
    EventBus,
    NoticePosted,
    ResultCommitted,
    ToolStateChanged,
)
from ..services.errors import ApiError
from ..services.history import HistoryEntry
from .attachments import AttachmentSet
from .cooldown import CooldownTimer, Scheduler
from .credits import CreditLedgerView
from .models import (
    InvocationResponse,
    InvocationResult,
    ToolConfig,
    ToolId,
    ToolParams,
    ToolState,
    ToolStatus,
    default_params,
)
from .transitions import (
    GENERIC_FAILURE_MESSAGE,
    ArmCooldown,
    ClearAttachments,
    Command,
    InvokeTool,
    RefreshCredits,
    SubmissionSnapshot,
    Transition,
    cooldown_message,
    plan_submission,
    resolve_failure,
    resolve_success,
)

LOGGER = logging.getLogger(__name__)

NO_RESULT_MESSAGE = "There is no result to save."
CANCELLED_MESSAGE = "The request was cancelled."
NOT_SAVABLE_MESSAGE = "Only a successful result can be saved."

P = TypeVar("P", bound=ToolParams)


class ToolInvoker(Protocol):
    async def invoke(self, tool_id: ToolId, text: str, params: ToolParams) -> InvocationResponse: ...


class HistoryCommitter(Protocol):
    async def save(self, entry: HistoryEntry) -> None: ...


class ToolInvocationController(Generic[P]):
    """State machine for one metered tool.

    Events Emitted:
        - ToolStateChanged: On every state change.
        - CooldownTicked: Once per second while a cooldown runs.
        - ResultCommitted: When a result has been saved to history.
        - NoticePosted: When saving to history fails.
    """

    def __init__(
        self,
        config: ToolConfig,
        invoker: ToolInvoker,
        ledger: CreditLedgerView,
        attachments: AttachmentSet,
        *,
        committer: HistoryCommitter | None = None,
        params: P | None = None,
        scheduler: Scheduler | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._invoker = invoker
        self._ledger = ledger
        self._attachments = attachments
        self._committer = committer
        self._bus = event_bus
        self._params: P = params if params is not None else default_params(config.tool_id)  # type: ignore[assignment]
        self._check_params(self._params)

        self._text = ""
        self._state = ToolState.IDLE
        self._error: str | None = None
        self._required: int | None = None
        self._available: int | None = None
        self._result: InvocationResult | None = None
        self._in_flight = False
        self._epoch = 0
        self._committing = False
        self._disposed = False
        self._background: set[asyncio.Task[Any]] = set()
        self._cooldown = CooldownTimer(
            scheduler,
            on_tick=self._on_cooldown_tick,
            on_expired=self._on_cooldown_expired,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def tool_id(self) -> ToolId:
        return self._config.tool_id

    @property
    def config(self) -> ToolConfig:
        return self._config

    @config.setter
    def config(self, config: ToolConfig) -> None:
        if config.tool_id is not self._config.tool_id:
            raise ValueError(f"Config for {config.tool_id.value} cannot drive {self.tool_id.value}")
        self._config = config

    @property
    def state(self) -> ToolState:
        return self._state

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def text(self) -> str:
        return self._text

    @text.setter
    def text(self, value: str) -> None:
        self._text = value or ""

    @property
    def params(self) -> P:
        return self._params

    @params.setter
    def params(self, value: P) -> None:
        self._check_params(value)
        self._params = value

    @property
    def attachments(self) -> AttachmentSet:
        return self._attachments

    @property
    def ledger(self) -> CreditLedgerView:
        return self._ledger

    @property
    def result(self) -> InvocationResult | None:
        return self._result

    @property
    def cooldown_seconds(self) -> int:
        return self._cooldown.remaining_seconds

    @property
    def credits(self) -> int:
        return self._ledger.current()

    def is_submitting(self) -> bool:
        return self._in_flight

    def status(self) -> ToolStatus:
        return ToolStatus(
            tool_id=self.tool_id,
            state=self._state,
            error=self._error,
            cooldown_seconds=self._cooldown.remaining_seconds,
            credits=self._ledger.current(),
            result=self._result,
            required_credits=self._required,
            available_credits=self._available,
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def submit(self) -> ToolStatus:
        """Run the tool once over the current text and attachments.

        A call made while another submission is outstanding is ignored.
        Failures never raise; they are reflected in the returned status.
        If :meth:`reset` runs while the call is outstanding, its outcome
        only refreshes credits and arms any cooldown; the result, state
        and attachments belong to the fresh session.
        """
        if self._disposed:
            raise RuntimeError("Controller has been disposed")
        if self._in_flight:
            LOGGER.debug("%s: submission already in flight; ignoring", self.tool_id.value)
            return self.status()

        resting = (self._state, self._required, self._available)
        self._set_state(ToolState.VALIDATING)
        plan = plan_submission(self._snapshot())
        if plan.state is None:
            LOGGER.debug("%s: submission refused: %s", self.tool_id.value, plan.error)
            self._set_state(resting[0], plan.error)
            self._required, self._available = resting[1], resting[2]
            return self.status()
        if plan.state in (ToolState.SUBMITTING, ToolState.INSUFFICIENT_CREDITS):
            self._set_state(ToolState.CHECKING_CREDITS)
        if plan.refused:
            self._apply(plan)
            return self.status()

        invoke = next(command for command in plan.commands if isinstance(command, InvokeTool))
        params = self._params
        epoch = self._epoch
        self._in_flight = True
        self._result = None
        self._apply(plan)
        try:
            response = await self._invoker.invoke(self.tool_id, invoke.text, params)
        except asyncio.CancelledError:
            self._in_flight = False
            if epoch == self._epoch:
                self._set_state(ToolState.FAILED, CANCELLED_MESSAGE)
            raise
        except ApiError as exc:
            LOGGER.warning(
                "%s: invocation failed: %s (status=%s, code=%s)",
                self.tool_id.value,
                exc,
                exc.status_code,
                exc.error_code,
            )
            outcome = resolve_failure(
                exc,
                fallback_cooldown=self._config.cooldown_seconds,
                nominal_cost=self._config.credit_cost,
                credits=self._ledger.current(),
            )
        except Exception as exc:
            LOGGER.exception("%s: unexpected error during invocation", self.tool_id.value)
            outcome = resolve_failure(exc)
        else:
            LOGGER.debug(
                "%s: succeeded (credits_used=%s, remaining=%s)",
                self.tool_id.value,
                response.credits_used,
                response.remaining_credits,
            )
            outcome = resolve_success(
                self.tool_id,
                invoke.text,
                params.as_settings(),
                response,
                nominal_cost=self._config.credit_cost,
            )
        self._in_flight = False
        if epoch != self._epoch:
            LOGGER.debug("%s: reset while in flight; dropping the outcome", self.tool_id.value)
            for command in outcome.commands:
                if isinstance(command, (RefreshCredits, ArmCooldown)):
                    self._run(command)
            return self.status()
        self._apply(outcome)
        return self.status()

    async def commit(self) -> ToolStatus:
        """Save the current result to history.

        Only a result the tool is resting on after a success can be saved,
        so a held result is no longer offered once a later submission was
        refused. Saving an already saved result is a no-op. A failure
        leaves the result untouched and only sets a transient error.
        """
        if self._committing:
            LOGGER.debug("%s: commit already in flight; ignoring", self.tool_id.value)
            return self.status()
        result = self._result
        if result is None:
            self._set_error(NO_RESULT_MESSAGE)
            return self.status()
        if result.committed:
            return self.status()
        if self._state is not ToolState.SUCCEEDED:
            self._set_error(NOT_SAVABLE_MESSAGE)
            return self.status()
        if self._committer is None:
            self._set_error("Saving to history is not available.")
            return self.status()

        entry = HistoryEntry(
            tool_id=result.tool_id.value,
            input_text=result.input_text,
            output_text=result.output_text,
            parameters=result.parameters,
            credits_used=result.credits_used,
        )
        resting = self._state
        self._committing = True
        self._set_state(ToolState.COMMITTING)
        try:
            await self._committer.save(entry)
        except asyncio.CancelledError:
            self._committing = False
            if self._result is result:
                self._set_state(resting)
            raise
        except ApiError as exc:
            LOGGER.warning("%s: failed to save result to history: %s", self.tool_id.value, exc)
            failure: str | None = f"Could not save to history: {exc.message or GENERIC_FAILURE_MESSAGE}"
        except Exception:
            LOGGER.exception("%s: unexpected error while saving to history", self.tool_id.value)
            failure = f"Could not save to history: {GENERIC_FAILURE_MESSAGE}"
        else:
            failure = None
        self._committing = False

        if failure is None:
            result.committed = True
        if self._result is not result:
            LOGGER.debug("%s: result was replaced while saving", self.tool_id.value)
            return self.status()

        if failure is None:
            self._set_state(ToolState.COMMITTED)
            self._publish(ResultCommitted(tool_id=self.tool_id.value, credits_used=result.credits_used))
        else:
            self._set_state(resting, failure)
            self._publish(NoticePosted(message=failure, level="error"))
        return self.status()

    def reset(self) -> ToolStatus:
        """Clear text, attachments, result and error; the cooldown keeps running."""
        self._epoch += 1
        self._text = ""
        self._attachments.clear()
        self._result = None
        self._set_state(ToolState.IDLE)
        return self.status()

    async def drain(self) -> None:
        """Wait for background credit refreshes to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def dispose(self) -> None:
        """Stop the cooldown, release attachments and cancel background work."""
        if self._disposed:
            return
        self._disposed = True
        self._cooldown.dispose()
        self._attachments.clear()
        for task in list(self._background):
            task.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _snapshot(self) -> SubmissionSnapshot:
        return SubmissionSnapshot(
            tool_name=self._config.name,
            typed_text=self._text,
            extracted_texts=self._attachments.extracted_texts(),
            failed_files=tuple(item.original_name for item in self._attachments.failed()),
            attachments_pending=self._attachments.any_pending(),
            enabled=self._config.enabled,
            max_length=self._config.max_length,
            nominal_cost=self._config.credit_cost,
            cooldown_remaining=self._cooldown.remaining_seconds,
            credits=self._ledger.current(),
        )

    def _apply(self, transition: Transition) -> None:
        if transition.result is not None:
            self._result = transition.result
        self._required = transition.required_credits
        self._available = transition.available_credits
        if transition.state is not None:
            self._set_state(transition.state, transition.error)
        for command in transition.commands:
            self._run(command)

    def _run(self, command: Command) -> None:
        if isinstance(command, RefreshCredits):
            self._spawn(self._ledger.refresh())
        elif isinstance(command, ClearAttachments):
            self._attachments.clear()
        elif isinstance(command, ArmCooldown):
            self._cooldown.arm(command.seconds)
        # InvokeTool is awaited directly by submit()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("%s: background task failed", self.tool_id.value, exc_info=exc)

    def _set_state(self, state: ToolState, error: str | None = None) -> None:
        previous = self._state
        self._state = state
        self._error = error
        if state is not ToolState.INSUFFICIENT_CREDITS:
            self._required = None
            self._available = None
        LOGGER.debug("%s: %s -> %s", self.tool_id.value, previous.value, state.value)
        self._publish(ToolStateChanged(tool_id=self.tool_id.value, state=state.value, error=error))

    def _set_error(self, error: str) -> None:
        self._error = error
        self._publish(ToolStateChanged(tool_id=self.tool_id.value, state=self._state.value, error=error))

    def _on_cooldown_tick(self, remaining: int) -> None:
        if self._state in (ToolState.RATE_LIMITED, ToolState.BLOCKED):
            self._error = cooldown_message(remaining)
        self._publish(CooldownTicked(tool_id=self.tool_id.value, remaining_seconds=remaining))

    def _on_cooldown_expired(self) -> None:
        self._publish(CooldownTicked(tool_id=self.tool_id.value, remaining_seconds=0))
        if self._state in (ToolState.RATE_LIMITED, ToolState.BLOCKED):
            self._set_state(ToolState.IDLE)

    def _check_params(self, params: ToolParams) -> None:
        if params.tool_id is not self._config.tool_id:
            raise ValueError(
                f"{type(params).__name__} cannot be used with the {self.tool_id.value} tool"
            )

    def _publish(self, event: Any) -> None:
        if self._bus is not None:
            self._bus.publish(event)


__all__ = [
    "ToolInvoker",
    "HistoryCommitter",
    "ToolInvocationController",
    "NO_RESULT_MESSAGE",
    "CANCELLED_MESSAGE",
    "NOT_SAVABLE_MESSAGE",
]
