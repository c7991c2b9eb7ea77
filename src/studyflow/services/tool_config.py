"""Server-side tool configuration with a short-lived in-memory cache."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Mapping

from .api_client import ApiClient
from .errors import ApiError

LOGGER = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 300.0


class ToolConfigService:
    """Fetches ``/api/ai/tools/config`` and caches the rows by tool id.

    A failed fetch is logged and yields an empty mapping so callers keep
    their built-in defaults; failures are not cached.
    """

    def __init__(
        self,
        client: ApiClient,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._ttl = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._cache: Dict[str, Dict[str, Any]] | None = None
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()

    async def get_configs(self, *, force_refresh: bool = False) -> Dict[str, Dict[str, Any]]:
        if not force_refresh and self._is_fresh():
            return dict(self._cache or {})

        async with self._lock:
            if not force_refresh and self._is_fresh():
                return dict(self._cache or {})
            try:
                rows = await self._client.get("/api/ai/tools/config")
            except ApiError as exc:
                LOGGER.warning("Failed to fetch tool configs: %s (status=%s)", exc, exc.status_code)
                return {}
            configs: Dict[str, Dict[str, Any]] = {}
            for row in rows if isinstance(rows, list) else []:
                if isinstance(row, Mapping) and row.get("tool_id"):
                    configs[str(row["tool_id"])] = dict(row)
            self._cache = configs
            self._fetched_at = self._clock()
            LOGGER.debug("Cached %d tool config row(s)", len(configs))
            return dict(configs)

    async def get_config(self, tool_id: str) -> Dict[str, Any] | None:
        configs = await self.get_configs()
        return configs.get(str(tool_id))

    def invalidate(self) -> None:
        self._cache = None
        self._fetched_at = 0.0

    def _is_fresh(self) -> bool:
        if self._cache is None:
            return False
        return (self._clock() - self._fetched_at) < self._ttl


__all__ = ["ToolConfigService", "DEFAULT_CACHE_TTL"]
