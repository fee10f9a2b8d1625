"""Approval request types.

Approval requests are raised by executors before a risky action (running a
command, writing files, calling an external service). The gate only lets
the action through on an exact-match approved request.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ApprovalActionType(StrEnum):
    COMMAND_EXECUTION = "command_execution"
    FILE_CHANGE = "file_change"
    EXTERNAL_CALL = "external_call"
    UNKNOWN = "unknown"


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class ApprovalDecision(StrEnum):
    """A user's answer to an approval request."""

    ACCEPT = "accept"
    ACCEPT_FOR_SESSION = "accept_for_session"
    DECLINE = "decline"
    CANCEL = "cancel"

    @classmethod
    def _missing_(cls, value: object) -> "ApprovalDecision | None":
        # camelCase alias
        if value == "acceptForSession":
            return cls.ACCEPT_FOR_SESSION
        return None

    def to_status(self) -> ApprovalStatus:
        if self in (ApprovalDecision.ACCEPT, ApprovalDecision.ACCEPT_FOR_SESSION):
            return ApprovalStatus.APPROVED
        if self == ApprovalDecision.DECLINE:
            return ApprovalStatus.DECLINED
        return ApprovalStatus.CANCELLED


class ApprovalSource(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"


class ApprovalRequest(BaseModel):
    request_id: str
    task_id: str
    action_type: ApprovalActionType = ApprovalActionType.UNKNOWN
    preview: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime | None = None
    source: ApprovalSource = ApprovalSource.REMOTE
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


class GateDecision(BaseModel):
    """Result of evaluating the approval gate for one action."""

    allowed: bool
    reason: str
    matched_request_id: str | None = None


class ApprovalQueueSummary(BaseModel):
    total: int = 0
    pending: int = 0
    approved: int = 0
    declined: int = 0
    cancelled: int = 0
    gate: GateDecision | None = None
