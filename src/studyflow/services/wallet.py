"""Credit balance and per-tool cost lookups."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .api_client import ApiClient
from .errors import ApiError, ErrorCode

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class WalletInfo:
    """Authoritative credit balance as reported by the backend."""

    total_credits: int
    free_credits: int = 0
    paid_credits: int = 0
    used_today: int = 0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WalletInfo":
        return cls(
            total_credits=max(0, _int(payload.get("totalCredits"))),
            free_credits=_int(payload.get("freeCredits")),
            paid_credits=_int(payload.get("paidCredits")),
            used_today=_int(payload.get("usedToday")),
        )


class WalletService:
    """Read-only access to the user's wallet."""

    def __init__(self, client: ApiClient) -> None:
        self._client = client

    async def get_wallet(self) -> WalletInfo:
        data = await self._client.get("/api/wallet")
        if not isinstance(data, Mapping):
            raise ApiError("Invalid wallet response", error_code=ErrorCode.INVALID_RESPONSE)
        return WalletInfo.from_payload(data)

    async def get_balance(self) -> int:
        wallet = await self.get_wallet()
        return wallet.total_credits

    async def get_credit_costs(self) -> dict[str, int]:
        """Return the nominal credit cost of each tool keyed by tool id."""

        data = await self._client.get("/api/wallet/costs")
        if not isinstance(data, Mapping):
            raise ApiError("Invalid credit cost response", error_code=ErrorCode.INVALID_RESPONSE)
        costs: dict[str, int] = {}
        for tool_id, value in data.items():
            try:
                costs[str(tool_id)] = int(value)
            except (TypeError, ValueError):
                LOGGER.debug("Ignoring non-numeric cost for %s: %r", tool_id, value)
        return costs


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


__all__ = ["WalletInfo", "WalletService"]
