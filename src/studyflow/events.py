"""Event bus infrastructure for decoupled front-end communication.

Controllers, the credit ledger and attachment sets publish typed events
here so that any front end (CLI, web bridge, desktop shell) can render the
tool pipeline without polling component state.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Generic,
    TypeVar,
    TYPE_CHECKING,
)
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

# Type variable for event types
E = TypeVar("E", bound="Event")

# Handler type: a callable that takes an event and returns None
Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events in the system.

    Example::

        @dataclass(slots=True)
        class CreditsUpdated(Event):
            total_credits: int
            previous: int
    """

    pass


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Tool Events
# =============================================================================


@dataclass(slots=True)
class ToolStateChanged(Event):
    """Emitted whenever a tool controller moves to a new state.

    Attributes:
        tool_id: The tool whose controller changed state (e.g. "summary").
        state: The new state value (see ``ToolState``).
        error: The user-facing error message attached to the state, if any.
    """

    tool_id: str
    state: str
    error: str | None = None


@dataclass(slots=True)
class CooldownTicked(Event):
    """Emitted once per second while a tool is cooling down.

    Attributes:
        tool_id: The tool being rate limited.
        remaining_seconds: Seconds left before submissions are accepted again.
    """

    tool_id: str
    remaining_seconds: int


_QUIET_EVENT_TYPES.add(CooldownTicked)


@dataclass(slots=True)
class ResultCommitted(Event):
    """Emitted when a generated result has been saved to history.

    Attributes:
        tool_id: The tool that produced the result.
        credits_used: Credits the server charged for the run.
    """

    tool_id: str
    credits_used: int


# =============================================================================
# Credit & Attachment Events
# =============================================================================


@dataclass(slots=True)
class CreditsUpdated(Event):
    """Emitted when the mirrored credit balance changes.

    Attributes:
        total_credits: The newly mirrored balance.
        previous: The balance before the refresh.
    """

    total_credits: int
    previous: int


@dataclass(slots=True)
class AttachmentUpdated(Event):
    """Emitted when an attachment changes extraction state or is removed.

    Attributes:
        attachment_id: The attachment's opaque identifier.
        name: Original file name.
        status: The extraction status value, or "removed".
        error: Failure reason when extraction failed.
    """

    attachment_id: str
    name: str
    status: str
    error: str | None = None


@dataclass(slots=True)
class NoticePosted(Event):
    """Emitted for transient, non-blocking messages (e.g. a failed save).

    Attributes:
        message: The notice text.
        level: "info" or "error".
    """

    message: str
    level: str = "info"


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus for decoupled communication.

    Handlers are stored as weak references where possible to prevent
    memory leaks.

    Example::

        bus = EventBus()

        def on_credits(event: CreditsUpdated) -> None:
            print(f"Balance: {event.total_credits}")

        bus.subscribe(CreditsUpdated, on_credits)
        bus.publish(CreditsUpdated(total_credits=5, previous=7))
        bus.unsubscribe(CreditsUpdated, on_credits)

    Thread Safety:
        This implementation is NOT thread-safe. All operations should be
        performed from the thread running the asyncio event loop.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register a handler to receive events of the specified type.

        Subscribing the same handler twice results in two invocations
        per published event.
        """
        handler_ref = _HandlerRef.create(handler)
        self._handlers[event_type].append(handler_ref)
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler`` for ``event_type``."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return

        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Broadcast an event to all registered handlers.

        Handlers are invoked synchronously in registration order. A handler
        that raises is logged and the remaining handlers still run.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if handlers is None:
            if not is_quiet:
                logger.debug("No handlers for event type %s", event_type.__name__)
            return

        if not is_quiet:
            logger.debug(
                "Publishing %s to %d handler(s)",
                event_type.__name__,
                len(handlers),
            )

        dead_indices: list[int] = []

        for i, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(i)
                continue

            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for i in reversed(dead_indices):
            handlers.pop(i)

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Return the number of handlers for ``event_type``, or overall."""
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Wrapper for handler references supporting both weak and strong refs.

    Bound methods are held through ``WeakMethod`` so they disappear with
    their owner; plain functions and lambdas are held strongly.
    """

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                # Some callables can't be weakly referenced
                pass

        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler[Any]) -> str:
    """Get a human-readable name for a handler for logging purposes."""
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        cls_name = type(handler.__self__).__name__
        return f"{cls_name}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "ToolStateChanged",
    "CooldownTicked",
    "ResultCommitted",
    "CreditsUpdated",
    "AttachmentUpdated",
    "NoticePosted",
]
