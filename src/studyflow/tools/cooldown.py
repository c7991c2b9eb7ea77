"""Single-flight 1 Hz countdown gating submissions after a rate limit."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

LOGGER = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Minimal clock abstraction so countdowns can be driven by tests."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Schedules callbacks on the running asyncio event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class CooldownTimer:
    """Counts ``remaining_seconds`` down to 0, one step per interval.

    Only one countdown is active at a time: re-arming replaces the
    previous countdown, and ticks scheduled by a replaced countdown are
    ignored. ``on_tick`` receives every positive remaining value after a
    decrement; ``on_expired`` fires once when the countdown reaches 0.
    """

    def __init__(
        self,
        scheduler: Scheduler | None = None,
        *,
        on_tick: Callable[[int], None] | None = None,
        on_expired: Callable[[], None] | None = None,
        interval: float = 1.0,
    ) -> None:
        self._scheduler = scheduler or LoopScheduler()
        self._on_tick = on_tick
        self._on_expired = on_expired
        self._interval = interval
        self._remaining = 0
        self._generation = 0
        self._handle: TimerHandle | None = None
        self._disposed = False

    @property
    def remaining_seconds(self) -> int:
        return self._remaining

    def is_blocking(self) -> bool:
        return self._remaining > 0

    def arm(self, seconds: int) -> None:
        if self._disposed:
            raise RuntimeError("CooldownTimer has been disposed")
        self._cancel_pending()
        self._generation += 1
        self._remaining = max(0, int(seconds))
        LOGGER.debug("Cooldown armed for %ds", self._remaining)
        if self._remaining:
            self._schedule(self._generation)

    def dispose(self) -> None:
        """Stop the countdown for good; later ticks are ignored."""
        self._cancel_pending()
        self._generation += 1
        self._remaining = 0
        self._disposed = True

    def _schedule(self, generation: int) -> None:
        self._handle = self._scheduler.call_later(self._interval, lambda: self._tick(generation))

    def _tick(self, generation: int) -> None:
        if generation != self._generation or self._disposed:
            return
        self._handle = None
        self._remaining = max(0, self._remaining - 1)
        if self._remaining > 0:
            self._schedule(generation)
            if self._on_tick is not None:
                self._on_tick(self._remaining)
            return
        LOGGER.debug("Cooldown expired")
        if self._on_expired is not None:
            self._on_expired()

    def _cancel_pending(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


__all__ = ["TimerHandle", "Scheduler", "LoopScheduler", "CooldownTimer"]
