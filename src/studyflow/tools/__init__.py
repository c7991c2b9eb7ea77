"""Tool invocation pipeline: attachments, credits, cooldowns and the controller."""

from .attachments import (
    Attachment,
    AttachmentExtractor,
    AttachmentKind,
    AttachmentRejected,
    AttachmentSet,
    ExtractionStatus,
    RejectReason,
    TemporaryPreview,
    UploadFile,
)
from .controller import ToolInvocationController
from .cooldown import CooldownTimer, LoopScheduler, Scheduler
from .credits import CreditLedgerView
from .models import (
    ExplainParams,
    InvocationResult,
    QuestionsParams,
    RewriteParams,
    SummaryParams,
    ToolConfig,
    ToolId,
    ToolState,
    ToolStatus,
)

__all__ = [
    "Attachment",
    "AttachmentExtractor",
    "AttachmentKind",
    "AttachmentRejected",
    "AttachmentSet",
    "ExtractionStatus",
    "RejectReason",
    "TemporaryPreview",
    "UploadFile",
    "ToolInvocationController",
    "CooldownTimer",
    "LoopScheduler",
    "Scheduler",
    "CreditLedgerView",
    "ExplainParams",
    "InvocationResult",
    "QuestionsParams",
    "RewriteParams",
    "SummaryParams",
    "ToolConfig",
    "ToolId",
    "ToolState",
    "ToolStatus",
]
