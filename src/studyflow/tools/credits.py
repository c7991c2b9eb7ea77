"""Read-only local mirror of the user's credit balance."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from ..events import CreditsUpdated, EventBus
from ..services.errors import ApiError, AuthenticationError

LOGGER = logging.getLogger(__name__)


class BalanceSource(Protocol):
    async def get_balance(self) -> int: ...


class CreditLedgerView:
    """Last-known credit balance shared by every tool controller.

    The balance is never decremented locally. It only changes through
    :meth:`refresh`, which re-reads the authoritative value. A refresh
    never settles on a read that began before it was requested: callers
    arriving while a read is in flight share a single follow-up read
    that starts once the current one finishes.
    """

    def __init__(
        self,
        source: BalanceSource,
        *,
        initial: int = 0,
        event_bus: EventBus | None = None,
    ) -> None:
        self._source = source
        self._balance = max(0, int(initial))
        self._bus = event_bus
        self._inflight: asyncio.Task[int] | None = None
        self._queued: asyncio.Task[int] | None = None

    def current(self) -> int:
        return self._balance

    def has_enough_for(self, cost: int) -> bool:
        return self._balance >= cost

    async def refresh(self) -> int:
        """Re-fetch the balance; failures keep the previous value.

        An authentication failure forces the balance to 0 so a broken
        session never shows a stale positive balance.
        """
        loop = asyncio.get_running_loop()
        if self._queued is not None:
            task = self._queued
        elif self._inflight is not None and not self._inflight.done():
            task = self._queued = loop.create_task(self._fetch_after(self._inflight))
        else:
            task = self._inflight = loop.create_task(self._fetch())
        return await asyncio.shield(task)

    async def _fetch_after(self, previous: asyncio.Task[int]) -> int:
        await asyncio.wait({previous})
        self._queued = None
        self._inflight = asyncio.current_task()  # type: ignore[assignment]
        return await self._fetch()

    async def _fetch(self) -> int:
        try:
            balance = await self._source.get_balance()
        except AuthenticationError as exc:
            LOGGER.warning("Credit refresh rejected (%s); clearing balance", exc)
            self._apply(0)
        except ApiError as exc:
            LOGGER.warning("Credit refresh failed: %s", exc)
        else:
            self._apply(max(0, int(balance)))
        return self._balance

    def _apply(self, balance: int) -> None:
        previous = self._balance
        self._balance = balance
        if balance == previous:
            return
        LOGGER.debug("Credit balance %d -> %d", previous, balance)
        if self._bus is not None:
            self._bus.publish(CreditsUpdated(total_credits=balance, previous=previous))


__all__ = ["BalanceSource", "CreditLedgerView"]
