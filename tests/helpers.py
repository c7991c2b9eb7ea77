"""Shared test helpers and stub classes.

This module contains reusable fakes for the tool pipeline's collaborators.
Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable

from studyflow.events import EventBus
from studyflow.services.history import HistoryEntry
from studyflow.tools.attachments import AttachmentExtractor, AttachmentSet, UploadFile
from studyflow.tools.controller import ToolInvocationController
from studyflow.tools.credits import CreditLedgerView
from studyflow.tools.models import DEFAULT_TOOL_CONFIGS, InvocationResponse, ToolConfig, ToolId


class FakeTimerHandle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Deterministic scheduler; callbacks only run when :meth:`advance` is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = 0
        self._pending: list[tuple[float, int, Callable[[], None], FakeTimerHandle]] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimerHandle:
        handle = FakeTimerHandle()
        self._seq += 1
        self._pending.append((self.now + delay, self._seq, callback, handle))
        return handle

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [entry for entry in self._pending if entry[0] <= target and not entry[3].cancelled]
            if not due:
                break
            entry = min(due, key=lambda item: (item[0], item[1]))
            self._pending.remove(entry)
            self.now = entry[0]
            entry[2]()
        self.now = target
        self._pending = [entry for entry in self._pending if not entry[3].cancelled]

    @property
    def pending(self) -> int:
        return sum(1 for entry in self._pending if not entry[3].cancelled)


class FakeExtractionBackend:
    """Extraction backend whose per-file outcome and timing tests control."""

    def __init__(self, results: dict[str, str | BaseException] | None = None) -> None:
        self.results: dict[str, str | BaseException] = dict(results or {})
        self.calls: list[tuple[str, str]] = []
        self._gates: dict[str, asyncio.Event] = {}

    def hold(self, name: str) -> None:
        self._gates[name] = asyncio.Event()

    def release(self, name: str) -> None:
        self._gates[name].set()

    async def extract_from_image(self, upload: UploadFile) -> str:
        return await self._extract("image", upload)

    async def extract_from_document(self, upload: UploadFile) -> str:
        return await self._extract("document", upload)

    async def _extract(self, route: str, upload: UploadFile) -> str:
        self.calls.append((route, upload.name))
        gate = self._gates.get(upload.name)
        if gate is not None:
            await gate.wait()
        outcome = self.results.get(upload.name, f"text of {upload.name}")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeInvoker:
    """Metered-invocation fake returning queued outcomes in order."""

    def __init__(self, *outcomes: InvocationResponse | BaseException) -> None:
        self.outcomes: list[InvocationResponse | BaseException] = list(outcomes)
        self.calls: list[tuple[ToolId, str, Any]] = []
        self._gate: asyncio.Event | None = None

    def hold(self) -> None:
        self._gate = asyncio.Event()

    def release(self) -> None:
        assert self._gate is not None
        self._gate.set()

    async def invoke(self, tool_id: ToolId, text: str, params: Any) -> InvocationResponse:
        self.calls.append((tool_id, text, params))
        if self._gate is not None:
            await self._gate.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else InvocationResponse(output_text="done")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeBalanceSource:
    def __init__(self, balance: int = 10) -> None:
        self.balance = balance
        self.error: BaseException | None = None
        self.calls = 0
        self._gate: asyncio.Event | None = None

    def hold(self) -> None:
        self._gate = asyncio.Event()

    def release(self) -> None:
        assert self._gate is not None
        self._gate.set()

    async def get_balance(self) -> int:
        self.calls += 1
        balance = self.balance
        if self._gate is not None:
            await self._gate.wait()
        if self.error is not None:
            raise self.error
        return balance


class FakeCommitter:
    def __init__(self) -> None:
        self.entries: list[HistoryEntry] = []
        self.error: BaseException | None = None
        self._gate: asyncio.Event | None = None

    def hold(self) -> None:
        self._gate = asyncio.Event()

    def release(self) -> None:
        assert self._gate is not None
        self._gate.set()

    async def save(self, entry: HistoryEntry) -> None:
        if self._gate is not None:
            await self._gate.wait()
        if self.error is not None:
            raise self.error
        self.entries.append(entry)


class RecordingPreview:
    def __init__(self) -> None:
        self.release_count = 0

    def release(self) -> None:
        self.release_count += 1


@dataclass
class ControllerHarness:
    controller: ToolInvocationController[Any]
    invoker: FakeInvoker
    backend: FakeExtractionBackend
    balance: FakeBalanceSource
    ledger: CreditLedgerView
    committer: FakeCommitter
    scheduler: FakeScheduler
    bus: EventBus
    previews: list[RecordingPreview] = field(default_factory=list)


def build_controller(
    *,
    tool_id: ToolId = ToolId.SUMMARY,
    config: ToolConfig | None = None,
    invoker: FakeInvoker | None = None,
    backend: FakeExtractionBackend | None = None,
    credits: int = 10,
) -> ControllerHarness:
    """Wire a controller to fakes; must be called inside a running event loop."""

    bus = EventBus()
    scheduler = FakeScheduler()
    backend = backend or FakeExtractionBackend()
    invoker = invoker or FakeInvoker()
    balance = FakeBalanceSource(credits)
    ledger = CreditLedgerView(balance, initial=credits, event_bus=bus)
    committer = FakeCommitter()
    previews: list[RecordingPreview] = []

    def _preview_factory(upload: UploadFile, kind: Any) -> RecordingPreview:
        preview = RecordingPreview()
        previews.append(preview)
        return preview

    attachments = AttachmentSet(
        AttachmentExtractor(backend),
        preview_factory=_preview_factory,
        event_bus=bus,
    )
    controller: ToolInvocationController[Any] = ToolInvocationController(
        config or DEFAULT_TOOL_CONFIGS[tool_id],
        invoker,
        ledger,
        attachments,
        committer=committer,
        scheduler=scheduler,
        event_bus=bus,
    )
    return ControllerHarness(
        controller=controller,
        invoker=invoker,
        backend=backend,
        balance=balance,
        ledger=ledger,
        committer=committer,
        scheduler=scheduler,
        bus=bus,
        previews=previews,
    )


def upload(name: str, content: bytes = b"data", mime_type: str = "") -> UploadFile:
    return UploadFile(name=name, content=content, mime_type=mime_type)
