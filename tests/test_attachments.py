"""Tests for attachments and their extraction lifecycle."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from studyflow.events import AttachmentUpdated, EventBus
from studyflow.services.errors import ApiError
from studyflow.tools.attachments import (
    IMAGE_SIZE_LIMIT,
    Attachment,
    AttachmentExtractor,
    AttachmentKind,
    AttachmentRejected,
    AttachmentSet,
    ExtractionStatus,
    RejectReason,
    TemporaryPreview,
    UploadFile,
    detect_kind,
)

from tests.helpers import FakeExtractionBackend, RecordingPreview, upload


def _set(backend: FakeExtractionBackend, **kwargs) -> AttachmentSet:
    return AttachmentSet(AttachmentExtractor(backend), **kwargs)


class TestDetectKind:
    @pytest.mark.parametrize(
        "mime, name, expected",
        [
            ("image/png", "x.bin", AttachmentKind.IMAGE),
            ("application/pdf", "x", AttachmentKind.PDF),
            ("application/msword", "x", AttachmentKind.DOC),
            (
                "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
                "x",
                AttachmentKind.DOC,
            ),
            ("text/plain", "x", AttachmentKind.TEXT),
            ("", "photo.JPEG", AttachmentKind.IMAGE),
            ("", "paper.pdf", AttachmentKind.PDF),
            ("application/octet-stream", "essay.docx", AttachmentKind.DOC),
            (None, "notes.txt", AttachmentKind.TEXT),
            ("", "archive.zip", AttachmentKind.OTHER),
            ("", "README", AttachmentKind.OTHER),
        ],
    )
    def test_mime_then_extension(self, mime, name, expected) -> None:
        assert detect_kind(mime, name) is expected


class TestUploadFile:
    def test_from_path_guesses_mime(self, tmp_path: Path) -> None:
        target = tmp_path / "lecture.pdf"
        target.write_bytes(b"%PDF-1.4")

        loaded = UploadFile.from_path(target)

        assert loaded.name == "lecture.pdf"
        assert loaded.mime_type == "application/pdf"
        assert loaded.size == 8

    def test_multipart_defaults_mime(self) -> None:
        assert upload("blob").as_multipart() == ("blob", b"data", "application/octet-stream")


class TestAttachmentLifecycle:
    def test_transitions_happen_once(self) -> None:
        attachment = Attachment(upload=upload("a.txt"), kind=AttachmentKind.TEXT)
        assert attachment.attachment_id.startswith("att-")

        attachment.mark_extracting()
        attachment.mark_extracted("text")

        assert attachment.status is ExtractionStatus.EXTRACTED
        with pytest.raises(RuntimeError):
            attachment.mark_failed("late")
        with pytest.raises(RuntimeError):
            attachment.mark_extracting()


class TestAttachmentSetAdd:
    @pytest.mark.asyncio
    async def test_add_starts_extraction_without_blocking(self) -> None:
        backend = FakeExtractionBackend({"notes.pdf": "pdf text"})
        attachments = _set(backend)

        attachment = attachments.add(upload("notes.pdf"))

        assert attachment.status is ExtractionStatus.EXTRACTING
        assert attachments.any_pending()
        await attachments.wait_idle()
        assert attachment.status is ExtractionStatus.EXTRACTED
        assert attachment.text == "pdf text"
        assert not attachments.any_pending()

    @pytest.mark.asyncio
    async def test_routes_by_kind(self) -> None:
        backend = FakeExtractionBackend()
        attachments = _set(backend)

        attachments.add(upload("photo.png"))
        attachments.add(upload("paper.pdf"))
        attachments.add(upload("essay.docx"))
        attachments.add(upload("notes.txt"))
        await attachments.wait_idle()

        assert sorted(backend.calls) == [
            ("document", "essay.docx"),
            ("document", "notes.txt"),
            ("document", "paper.pdf"),
            ("image", "photo.png"),
        ]

    @pytest.mark.asyncio
    async def test_sixth_attachment_is_rejected(self) -> None:
        attachments = _set(FakeExtractionBackend())
        for index in range(5):
            attachments.add(upload(f"f{index}.txt"))

        with pytest.raises(AttachmentRejected) as excinfo:
            attachments.add(upload("extra.txt"))

        assert excinfo.value.reason is RejectReason.LIMIT_EXCEEDED
        assert len(attachments) == 5
        await attachments.wait_idle()

    @pytest.mark.asyncio
    async def test_size_caps_depend_on_kind(self) -> None:
        attachments = _set(FakeExtractionBackend())
        oversized_image = upload("big.png", b"x" * (IMAGE_SIZE_LIMIT + 1))

        with pytest.raises(AttachmentRejected) as excinfo:
            attachments.add(oversized_image)
        assert excinfo.value.reason is RejectReason.TOO_LARGE
        assert "5MB" in excinfo.value.message

        attachments.add(upload("big.pdf", b"x" * (IMAGE_SIZE_LIMIT + 1)))
        assert len(attachments) == 1
        await attachments.wait_idle()

    @pytest.mark.asyncio
    async def test_limit_is_checked_before_size(self) -> None:
        attachments = _set(FakeExtractionBackend(), max_attachments=1)
        attachments.add(upload("a.txt"))

        with pytest.raises(AttachmentRejected) as excinfo:
            attachments.add(upload("big.png", b"x" * (IMAGE_SIZE_LIMIT + 1)))

        assert excinfo.value.reason is RejectReason.LIMIT_EXCEEDED
        await attachments.wait_idle()


class TestExtractionOutcomes:
    @pytest.mark.asyncio
    async def test_failure_is_scoped_to_one_attachment(self) -> None:
        backend = FakeExtractionBackend({"bad.png": ApiError("ocr error"), "good.pdf": "good text"})
        attachments = _set(backend)

        bad = attachments.add(upload("bad.png"))
        good = attachments.add(upload("good.pdf"))
        await attachments.wait_idle()

        assert bad.status is ExtractionStatus.FAILED
        assert bad.error == "ocr error"
        assert good.status is ExtractionStatus.EXTRACTED
        assert attachments.failed() == (bad,)
        assert attachments.combined_extracted_text() == "good text"

    @pytest.mark.asyncio
    async def test_completions_out_of_order_keep_insertion_order(self) -> None:
        backend = FakeExtractionBackend({"first.txt": "one", "second.txt": "two"})
        backend.hold("first.txt")
        attachments = _set(backend)
        attachments.add(upload("first.txt"))
        attachments.add(upload("second.txt"))

        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert attachments.any_pending()
        backend.release("first.txt")
        await attachments.wait_idle()

        assert attachments.combined_extracted_text() == "one\n\ntwo"

    @pytest.mark.asyncio
    async def test_removed_attachment_result_is_discarded(self) -> None:
        backend = FakeExtractionBackend({"slow.pdf": "late text"})
        backend.hold("slow.pdf")
        attachments = _set(backend)
        attachment = attachments.add(upload("slow.pdf"))

        assert attachments.remove(attachment.attachment_id) is True
        backend.release("slow.pdf")
        await attachments.wait_idle()

        assert attachment.status is ExtractionStatus.EXTRACTING
        assert attachments.combined_extracted_text() == ""
        assert len(attachments) == 0

    @pytest.mark.asyncio
    async def test_events_track_each_attachment(self, event_bus: EventBus) -> None:
        events: list[AttachmentUpdated] = []
        event_bus.subscribe(AttachmentUpdated, events.append)
        backend = FakeExtractionBackend({"bad.png": ApiError("ocr error")})
        attachments = _set(backend, event_bus=event_bus)

        attachment = attachments.add(upload("bad.png"))
        await attachments.wait_idle()
        attachments.remove(attachment.attachment_id)

        assert [(event.status, event.error) for event in events] == [
            ("extracting", None),
            ("failed", "ocr error"),
            ("removed", None),
        ]


class TestPreviews:
    @pytest.mark.asyncio
    async def test_remove_and_clear_release_previews_once(self) -> None:
        previews: list[RecordingPreview] = []

        def factory(file: UploadFile, kind: AttachmentKind) -> RecordingPreview:
            preview = RecordingPreview()
            previews.append(preview)
            return preview

        attachments = _set(FakeExtractionBackend(), preview_factory=factory)
        first = attachments.add(upload("a.png"))
        attachments.add(upload("b.png"))
        await attachments.wait_idle()

        attachments.remove(first.attachment_id)
        assert attachments.remove(first.attachment_id) is False
        attachments.clear()
        attachments.clear()

        assert [preview.release_count for preview in previews] == [1, 1]

    def test_temporary_preview_release_is_idempotent(self) -> None:
        preview = TemporaryPreview.create(upload("pic.png", b"\x89PNG"), AttachmentKind.IMAGE)
        assert preview is not None
        assert preview.path.exists()
        assert preview.path.suffix == ".png"

        preview.release()
        preview.release()

        assert preview.released
        assert not preview.path.exists()

    def test_temporary_preview_only_for_images(self) -> None:
        assert TemporaryPreview.create(upload("doc.pdf"), AttachmentKind.PDF) is None
