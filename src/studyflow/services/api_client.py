"""Async HTTP transport for the studyflow backend built on httpx."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import (
    ApiError,
    AuthenticationError,
    ErrorCode,
    InsufficientCreditsError,
    NetworkError,
    RateLimitedError,
)

LOGGER = logging.getLogger(__name__)
_PREVIEW_CHARS = 200


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the API client."""

    base_url: str
    access_token: str = ""
    request_timeout: float | None = 30.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class ApiClient:
    """Thin JSON client that unwraps the backend's ``{success, data}`` envelope.

    Every failure is converted into the :mod:`studyflow.services.errors`
    hierarchy. Only idempotent reads are retried; writes go out exactly once.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: httpx.AsyncClient | None = None,
        token_provider: Callable[[], str | None] | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._token_provider = token_provider or (lambda: self._settings.access_token)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def get(self, path: str, *, params: Mapping[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params, idempotent=True)

    async def post(
        self,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        files: Mapping[str, Any] | None = None,
    ) -> Any:
        return await self.request("POST", path, json=json, files=files)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        files: Mapping[str, Any] | None = None,
        idempotent: bool = False,
    ) -> Any:
        """Send a request and return the unwrapped ``data`` payload."""

        if not idempotent:
            return await self._send(method, path, json=json, params=params, files=files)

        async for attempt in self._retrying():
            with attempt:
                return await self._send(method, path, json=json, params=params, files=files)
        raise AssertionError("unreachable")  # pragma: no cover - tenacity reraises

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None,
        params: Mapping[str, Any] | None,
        files: Mapping[str, Any] | None,
    ) -> Any:
        LOGGER.debug("%s %s", method, path)
        try:
            response = await self._client.request(
                method,
                path,
                json=dict(json) if json is not None else None,
                params=dict(params) if params is not None else None,
                files=dict(files) if files is not None else None,
                headers=self._auth_headers(),
            )
        except httpx.TimeoutException as exc:
            raise NetworkError("The server took too long to respond. Please try again.") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Network error - please check your connection ({exc})") from exc

        LOGGER.debug("%s %s -> %s", method, path, response.status_code)
        if self._settings.debug_logging:
            LOGGER.debug("Response body: %s", response.text[:_PREVIEW_CHARS])
        return self._unwrap(response)

    def _unwrap(self, response: httpx.Response) -> Any:
        payload = _decode_json(response)
        if not response.is_success:
            raise _error_for_response(response, payload if isinstance(payload, Mapping) else {})
        if payload is None:
            reason = response.reason_phrase or "Not JSON"
            raise ApiError(
                f"Invalid server response: {reason}",
                status_code=response.status_code,
                error_code=ErrorCode.INVALID_RESPONSE,
            )
        if isinstance(payload, Mapping):
            if payload.get("success") is False:
                message = str(payload.get("message") or "Request failed")
                raise ApiError(message, status_code=response.status_code)
            if "data" in payload:
                return payload["data"]
        return payload

    def _auth_headers(self) -> Dict[str, str]:
        token = (self._token_provider() or "").strip()
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    def _build_client(self, settings: ClientSettings) -> httpx.AsyncClient:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            headers=headers,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
        )

    async def aclose(self) -> None:
        """Close the underlying httpx client to release connections."""

        await self._client.aclose()


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ApiError) and exc.retryable


def _decode_json(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        LOGGER.debug("Response from %s is not JSON", response.request.url)
        return None


def _error_for_response(response: httpx.Response, payload: Mapping[str, Any]) -> ApiError:
    status = response.status_code
    message = str(
        payload.get("message") or payload.get("error") or f"Request failed with status {status}"
    )
    code = payload.get("code") or payload.get("error")

    if status in (401, 403):
        LOGGER.warning("Permission denied (%s): %s", status, message)
        return AuthenticationError(message, status_code=status)
    if status == 402 or code == ErrorCode.INSUFFICIENT_CREDITS:
        return InsufficientCreditsError(
            message,
            status_code=status,
            required=_coerce_int(_lookup(payload, "required")),
            available=_coerce_int(_lookup(payload, "available")),
        )
    if status == 429:
        remaining = _coerce_int(_lookup(payload, "remainingSeconds"))
        if remaining is None:
            remaining = _coerce_int(response.headers.get("Retry-After"))
        return RateLimitedError(message, status_code=status, remaining_seconds=remaining)
    LOGGER.warning("HTTP %s from %s: %s", status, response.request.url, message)
    return ApiError(message, status_code=status)


def _lookup(payload: Mapping[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]
    nested = payload.get("data")
    if isinstance(nested, Mapping):
        return nested.get(key)
    return None


def _coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


__all__ = ["ApiClient", "ClientSettings"]
