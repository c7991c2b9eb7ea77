"""Metered AI tool invocation and text-extraction endpoints."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping

from ..tools.models import (
    DEFAULT_TOOL_CONFIGS,
    InvocationResponse,
    Question,
    ToolConfig,
    ToolId,
    ToolParams,
)
from .api_client import ApiClient
from .errors import ApiError, ErrorCode, ExtractionError

if TYPE_CHECKING:  # pragma: no cover
    from ..tools.attachments import UploadFile

LOGGER = logging.getLogger(__name__)

_EXTRACT_IMAGE_PATH = "/api/ai/extract-text"
_EXTRACT_DOCUMENT_PATH = "/api/ai/extract-document"


class AIService:
    """Client for the backend's metered tool endpoints.

    ``invoke`` is the only call in the package that spends credits; it is
    sent exactly once per call and never retried.
    """

    def __init__(
        self,
        client: ApiClient,
        *,
        configs: Mapping[ToolId, ToolConfig] | None = None,
    ) -> None:
        self._client = client
        self._configs = dict(configs or DEFAULT_TOOL_CONFIGS)

    async def invoke(self, tool_id: ToolId, text: str, params: ToolParams) -> InvocationResponse:
        """Run a metered tool over ``text`` and normalize the response."""

        config = self._configs[ToolId(tool_id)]
        payload: dict[str, Any] = {"text": text}
        payload.update(params.as_payload())
        LOGGER.debug(
            "Invoking %s (%d chars, params=%s)", config.tool_id.value, len(text), sorted(payload)
        )
        data = await self._client.post(config.endpoint, json=payload)
        return _parse_invocation(config, data)

    async def extract_from_image(self, upload: "UploadFile") -> str:
        """OCR an image attachment."""

        data = await self._client.post(
            _EXTRACT_IMAGE_PATH,
            files={"image": upload.as_multipart()},
        )
        return _extracted_text(data, upload.name)

    async def extract_from_document(self, upload: "UploadFile") -> str:
        """Extract text from a PDF, Word or plain-text attachment."""

        data = await self._client.post(
            _EXTRACT_DOCUMENT_PATH,
            files={"document": upload.as_multipart()},
        )
        return _extracted_text(data, upload.name)


def _parse_invocation(config: ToolConfig, data: Any) -> InvocationResponse:
    if not isinstance(data, Mapping):
        raise ApiError(
            f"Invalid server response for {config.tool_id.value}",
            error_code=ErrorCode.INVALID_RESPONSE,
        )
    response = InvocationResponse(
        credits_used=_optional_int(data.get("creditsUsed")),
        remaining_credits=_optional_int(data.get("remainingCredits")),
        processing_time=_optional_float(data.get("processingTime")),
    )
    raw_output = data.get(config.output_key)
    if config.tool_id is ToolId.QUESTIONS:
        items = raw_output if isinstance(raw_output, list) else []
        response.questions = tuple(
            Question.from_payload(item) for item in items if isinstance(item, Mapping)
        )
    else:
        response.output_text = str(raw_output or "")
    return response


def _extracted_text(data: Any, name: str) -> str:
    text = data.get("text") if isinstance(data, Mapping) else None
    if not isinstance(text, str) or not text.strip():
        raise ExtractionError(f"Could not extract any text from {name}")
    return text


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


__all__ = ["AIService"]
