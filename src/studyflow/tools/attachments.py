"""Attachments: bounded, asynchronously extracted file inputs for a tool run.

Each attachment moves ``PENDING -> EXTRACTING -> EXTRACTED | FAILED``
exactly once. Extractions run as independent asyncio tasks; a completion
only ever touches its own attachment, and results for attachments that
were removed in the meantime are discarded.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import tempfile
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Protocol

from ..events import AttachmentUpdated, EventBus

LOGGER = logging.getLogger(__name__)

MAX_ATTACHMENTS = 5
IMAGE_SIZE_LIMIT = 5 * 1024 * 1024
DEFAULT_SIZE_LIMIT = 10 * 1024 * 1024

_IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp", "svg"}
_DOC_MIME_TYPES = {
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


class AttachmentKind(str, Enum):
    IMAGE = "image"
    PDF = "pdf"
    DOC = "doc"
    TEXT = "text"
    OTHER = "other"


class ExtractionStatus(Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    FAILED = "failed"


class RejectReason(Enum):
    LIMIT_EXCEEDED = "limit_exceeded"
    TOO_LARGE = "too_large"


class AttachmentRejected(ValueError):
    """Raised by :meth:`AttachmentSet.add` when a file cannot be attached."""

    def __init__(self, reason: RejectReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


def detect_kind(mime_type: str | None, name: str) -> AttachmentKind:
    """Classify a file by MIME type, falling back to its extension."""

    mime = (mime_type or "").strip().lower()
    if mime.startswith("image/"):
        return AttachmentKind.IMAGE
    if mime == "application/pdf":
        return AttachmentKind.PDF
    if mime in _DOC_MIME_TYPES:
        return AttachmentKind.DOC
    if mime == "text/plain":
        return AttachmentKind.TEXT

    extension = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    if extension in _IMAGE_EXTENSIONS:
        return AttachmentKind.IMAGE
    if extension == "pdf":
        return AttachmentKind.PDF
    if extension in {"doc", "docx"}:
        return AttachmentKind.DOC
    if extension == "txt":
        return AttachmentKind.TEXT
    return AttachmentKind.OTHER


def size_limit_for(kind: AttachmentKind) -> int:
    return IMAGE_SIZE_LIMIT if kind is AttachmentKind.IMAGE else DEFAULT_SIZE_LIMIT


@dataclass(slots=True, frozen=True)
class UploadFile:
    """Raw file selected by the user."""

    name: str
    content: bytes
    mime_type: str = ""

    @property
    def size(self) -> int:
        return len(self.content)

    @classmethod
    def from_path(cls, path: Path | str) -> "UploadFile":
        target = Path(path).expanduser()
        mime_type, _ = mimetypes.guess_type(target.name)
        return cls(name=target.name, content=target.read_bytes(), mime_type=mime_type or "")

    def as_multipart(self) -> tuple[str, bytes, str]:
        return (self.name, self.content, self.mime_type or "application/octet-stream")


class PreviewResource(Protocol):
    """Locally held preview (thumbnail file, object URL, ...) owned by one attachment."""

    def release(self) -> None:
        """Free the resource; calling it again must be a no-op."""
        ...


class TemporaryPreview:
    """Image preview materialized as a temporary file, deleted on release."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._released = False

    @classmethod
    def create(cls, upload: UploadFile, kind: AttachmentKind) -> "TemporaryPreview | None":
        if kind is not AttachmentKind.IMAGE:
            return None
        suffix = Path(upload.name).suffix
        with tempfile.NamedTemporaryFile(prefix="studyflow-preview-", suffix=suffix, delete=False) as handle:
            handle.write(upload.content)
        return cls(Path(handle.name))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._path.unlink(missing_ok=True)


PreviewFactory = Callable[[UploadFile, AttachmentKind], "PreviewResource | None"]


@dataclass(slots=True, eq=False)
class Attachment:
    """One attached file and its extraction lifecycle."""

    upload: UploadFile
    kind: AttachmentKind
    attachment_id: str = field(default_factory=lambda: f"att-{uuid.uuid4().hex[:12]}")
    status: ExtractionStatus = ExtractionStatus.PENDING
    text: str | None = None
    error: str | None = None
    preview: PreviewResource | None = None

    @property
    def original_name(self) -> str:
        return self.upload.name

    @property
    def size_bytes(self) -> int:
        return self.upload.size

    @property
    def is_pending(self) -> bool:
        return self.status in (ExtractionStatus.PENDING, ExtractionStatus.EXTRACTING)

    def mark_extracting(self) -> None:
        self._expect(ExtractionStatus.PENDING)
        self.status = ExtractionStatus.EXTRACTING

    def mark_extracted(self, text: str) -> None:
        self._expect(ExtractionStatus.EXTRACTING)
        self.status = ExtractionStatus.EXTRACTED
        self.text = text

    def mark_failed(self, reason: str) -> None:
        self._expect(ExtractionStatus.EXTRACTING)
        self.status = ExtractionStatus.FAILED
        self.error = reason

    def release_preview(self) -> None:
        if self.preview is not None:
            self.preview.release()

    def _expect(self, status: ExtractionStatus) -> None:
        if self.status is not status:
            raise RuntimeError(
                f"Attachment {self.attachment_id} is {self.status.value}, expected {status.value}"
            )


class ExtractionBackend(Protocol):
    async def extract_from_image(self, upload: UploadFile) -> str: ...

    async def extract_from_document(self, upload: UploadFile) -> str: ...


class AttachmentExtractor:
    """Routes a file to OCR or document extraction depending on its kind."""

    def __init__(self, backend: ExtractionBackend) -> None:
        self._backend = backend

    async def extract(self, upload: UploadFile, kind: AttachmentKind) -> str:
        if kind is AttachmentKind.IMAGE:
            return await self._backend.extract_from_image(upload)
        return await self._backend.extract_from_document(upload)


class AttachmentSet:
    """Owns up to ``max_attachments`` attachments and their extraction tasks.

    ``add`` must be called from a running event loop; it returns as soon
    as the extraction task is scheduled.
    """

    def __init__(
        self,
        extractor: AttachmentExtractor,
        *,
        max_attachments: int = MAX_ATTACHMENTS,
        preview_factory: PreviewFactory | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._extractor = extractor
        self._max = max(1, int(max_attachments))
        self._preview_factory = preview_factory
        self._bus = event_bus
        self._members: dict[str, Attachment] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._members)

    def __iter__(self) -> Iterator[Attachment]:
        return iter(list(self._members.values()))

    @property
    def attachments(self) -> tuple[Attachment, ...]:
        return tuple(self._members.values())

    def get(self, attachment_id: str) -> Attachment | None:
        return self._members.get(attachment_id)

    def any_pending(self) -> bool:
        return any(member.is_pending for member in self._members.values())

    def failed(self) -> tuple[Attachment, ...]:
        return tuple(m for m in self._members.values() if m.status is ExtractionStatus.FAILED)

    def extracted_texts(self) -> tuple[str, ...]:
        return tuple(
            m.text
            for m in self._members.values()
            if m.status is ExtractionStatus.EXTRACTED and m.text
        )

    def combined_extracted_text(self) -> str:
        """Join extracted texts in insertion order, skipping failures."""
        return "\n\n".join(text.strip() for text in self.extracted_texts() if text.strip())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, upload: UploadFile) -> Attachment:
        """Attach ``upload`` and start extracting it in the background.

        Raises:
            AttachmentRejected: If the set is full or the file is too large.
        """
        if len(self._members) >= self._max:
            raise AttachmentRejected(
                RejectReason.LIMIT_EXCEEDED,
                f"You can attach at most {self._max} files or images.",
            )
        kind = detect_kind(upload.mime_type, upload.name)
        limit = size_limit_for(kind)
        if upload.size > limit:
            raise AttachmentRejected(
                RejectReason.TOO_LARGE,
                f"{upload.name} is larger than {limit // (1024 * 1024)}MB.",
            )

        attachment = Attachment(upload=upload, kind=kind)
        if self._preview_factory is not None:
            attachment.preview = self._preview_factory(upload, kind)
        self._members[attachment.attachment_id] = attachment
        attachment.mark_extracting()
        self._publish(attachment)
        LOGGER.debug(
            "Attachment %s added (%s, %d bytes, kind=%s)",
            attachment.attachment_id,
            upload.name,
            upload.size,
            kind.value,
        )

        task = asyncio.get_running_loop().create_task(self._run_extraction(attachment))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return attachment

    def remove(self, attachment_id: str) -> bool:
        """Drop an attachment; its in-flight extraction result will be ignored."""
        attachment = self._members.pop(attachment_id, None)
        if attachment is None:
            return False
        attachment.release_preview()
        LOGGER.debug("Attachment %s removed (status=%s)", attachment_id, attachment.status.value)
        self._publish_removed(attachment)
        return True

    def clear(self) -> None:
        """Remove every attachment and release all preview resources."""
        members = list(self._members.values())
        self._members.clear()
        for attachment in members:
            attachment.release_preview()
            self._publish_removed(attachment)
        if members:
            LOGGER.debug("Cleared %d attachment(s)", len(members))

    async def wait_idle(self) -> None:
        """Wait until every scheduled extraction has completed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_extraction(self, attachment: Attachment) -> None:
        try:
            text = await self._extractor.extract(attachment.upload, attachment.kind)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = str(exc) or exc.__class__.__name__
            if not self._is_member(attachment):
                LOGGER.debug("Discarding failed extraction for removed %s", attachment.attachment_id)
                return
            attachment.mark_failed(reason)
            LOGGER.warning("Extraction failed for %s: %s", attachment.original_name, reason)
            self._publish(attachment)
            return

        if not self._is_member(attachment):
            LOGGER.debug("Discarding extraction result for removed %s", attachment.attachment_id)
            return
        attachment.mark_extracted(text)
        LOGGER.debug("Extracted %d chars from %s", len(text), attachment.original_name)
        self._publish(attachment)

    def _is_member(self, attachment: Attachment) -> bool:
        return self._members.get(attachment.attachment_id) is attachment

    def _publish(self, attachment: Attachment) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            AttachmentUpdated(
                attachment_id=attachment.attachment_id,
                name=attachment.original_name,
                status=attachment.status.value,
                error=attachment.error,
            )
        )

    def _publish_removed(self, attachment: Attachment) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            AttachmentUpdated(
                attachment_id=attachment.attachment_id,
                name=attachment.original_name,
                status="removed",
            )
        )


__all__ = [
    "MAX_ATTACHMENTS",
    "IMAGE_SIZE_LIMIT",
    "DEFAULT_SIZE_LIMIT",
    "AttachmentKind",
    "ExtractionStatus",
    "RejectReason",
    "AttachmentRejected",
    "detect_kind",
    "size_limit_for",
    "UploadFile",
    "PreviewResource",
    "TemporaryPreview",
    "Attachment",
    "ExtractionBackend",
    "AttachmentExtractor",
    "AttachmentSet",
]
