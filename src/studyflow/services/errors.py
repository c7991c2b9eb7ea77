"""Typed errors raised by the studyflow service layer.

Every failure that crosses the HTTP boundary is converted into one of
these classes by :class:`~studyflow.services.api_client.ApiClient`, so
callers never see raw transport exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar


class ErrorCode:
    """Machine-readable error identifiers."""

    NETWORK = "network_error"
    INVALID_RESPONSE = "invalid_response"
    UNAUTHORIZED = "unauthorized"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    RATE_LIMITED = "rate_limited"
    REQUEST_FAILED = "request_failed"
    EXTRACTION_FAILED = "extraction_failed"


@dataclass(eq=False)
class ApiError(Exception):
    """Base exception for failures reported by (or on the way to) the backend.

    Attributes:
        message: Human-readable description, usually the server's own text.
        status_code: HTTP status, or 0 when no response was received.
        error_code: Machine-readable identifier (see :class:`ErrorCode`).
    """

    message: str
    status_code: int = 0
    error_code: str = ErrorCode.REQUEST_FAILED

    retryable: ClassVar[bool] = False

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
        }


@dataclass(eq=False)
class NetworkError(ApiError):
    """Raised when the request never produced an HTTP response."""

    error_code: str = ErrorCode.NETWORK

    retryable: ClassVar[bool] = True


@dataclass(eq=False)
class AuthenticationError(ApiError):
    """Raised on 401/403: the session is missing, expired or revoked."""

    status_code: int = 401
    error_code: str = ErrorCode.UNAUTHORIZED


@dataclass(eq=False)
class InsufficientCreditsError(ApiError):
    """Raised when the server refuses a metered call for lack of credits."""

    status_code: int = 402
    error_code: str = ErrorCode.INSUFFICIENT_CREDITS
    required: int | None = None
    available: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = ApiError.to_dict(self)
        payload.update({"required": self.required, "available": self.available})
        return payload


@dataclass(eq=False)
class RateLimitedError(ApiError):
    """Raised on HTTP 429; ``remaining_seconds`` is None when the server gave no hint."""

    status_code: int = 429
    error_code: str = ErrorCode.RATE_LIMITED
    remaining_seconds: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = ApiError.to_dict(self)
        payload["remaining_seconds"] = self.remaining_seconds
        return payload


@dataclass(eq=False)
class ExtractionError(ApiError):
    """Raised when an extraction call succeeded but produced no usable text."""

    error_code: str = ErrorCode.EXTRACTION_FAILED


__all__ = [
    "ErrorCode",
    "ApiError",
    "NetworkError",
    "AuthenticationError",
    "InsufficientCreditsError",
    "RateLimitedError",
    "ExtractionError",
]
