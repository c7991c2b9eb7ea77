"""History persistence: saving generated results and browsing past runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .api_client import ApiClient
from .errors import ApiError, ErrorCode

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    """Payload committed to history after a successful run."""

    tool_id: str
    input_text: str
    output_text: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    credits_used: int = 0

    def as_payload(self) -> dict[str, Any]:
        return {
            "toolType": self.tool_id,
            "inputText": self.input_text,
            "outputText": self.output_text,
            "settings": dict(self.parameters),
            "creditsUsed": self.credits_used,
        }


@dataclass(slots=True, frozen=True)
class HistoryItem:
    """A stored history record (preview fields when listed, full text when fetched)."""

    item_id: int
    tool_id: str
    input_text: str
    output_text: str
    credits_used: int
    created_at: str
    settings: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "HistoryItem":
        settings = payload.get("settings")
        return cls(
            item_id=int(payload.get("id") or 0),
            tool_id=str(payload.get("tool_type") or ""),
            input_text=str(payload.get("input_text") or payload.get("input_preview") or ""),
            output_text=str(payload.get("output_text") or payload.get("output_preview") or ""),
            credits_used=int(payload.get("credits_used") or 0),
            created_at=str(payload.get("created_at") or ""),
            settings=dict(settings) if isinstance(settings, Mapping) else {},
        )


@dataclass(slots=True, frozen=True)
class HistoryPage:
    items: tuple[HistoryItem, ...]
    page: int
    limit: int
    total: int
    total_pages: int


class HistoryService:
    """Client for the history endpoints.

    ``save`` is the history committer used by the tool controllers; the
    remaining calls back the CLI's ``history`` command.
    """

    def __init__(self, client: ApiClient) -> None:
        self._client = client

    async def save(self, entry: HistoryEntry) -> None:
        LOGGER.debug("Saving %s result to history (%d credits)", entry.tool_id, entry.credits_used)
        await self._client.post("/api/history/save", json=entry.as_payload())

    async def list(self, page: int = 1, limit: int = 20) -> HistoryPage:
        data = await self._client.get("/api/history", params={"page": page, "limit": limit})
        if not isinstance(data, Mapping):
            raise ApiError("Invalid history response", error_code=ErrorCode.INVALID_RESPONSE)
        items = tuple(
            HistoryItem.from_payload(item)
            for item in data.get("items") or []
            if isinstance(item, Mapping)
        )
        pagination = data.get("pagination") or {}
        return HistoryPage(
            items=items,
            page=int(pagination.get("page") or page),
            limit=int(pagination.get("limit") or limit),
            total=int(pagination.get("total") or len(items)),
            total_pages=int(pagination.get("totalPages") or 1),
        )

    async def get(self, item_id: int) -> HistoryItem:
        data = await self._client.get(f"/api/history/{int(item_id)}")
        if not isinstance(data, Mapping):
            raise ApiError("Invalid history response", error_code=ErrorCode.INVALID_RESPONSE)
        return HistoryItem.from_payload(data)

    async def delete(self, item_id: int) -> None:
        await self._client.delete(f"/api/history/{int(item_id)}")

    async def delete_all(self) -> None:
        await self._client.delete("/api/history")


__all__ = ["HistoryEntry", "HistoryItem", "HistoryPage", "HistoryService"]
