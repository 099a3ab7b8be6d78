"""Scan record models for tracking a single analysis request.

Each ``ScanRecord`` moves along ``queued -> running -> (succeeded | failed)``.
Terminal states are never left.  A scan cancelled by its owner ends in
``failed`` with ``error_code == CANCELLED`` and stays there even if the
background run later completes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from scan_engine.models.quota import PrincipalKind

CANCELLED_MESSAGE = "Scan cancelled by user"


class ScanStatus(str, Enum):
    """Lifecycle state of a scan."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ScanStatus.SUCCEEDED, ScanStatus.FAILED)


ACTIVE_STATUSES: tuple[ScanStatus, ...] = (ScanStatus.QUEUED, ScanStatus.RUNNING)


class ScanErrorCode(str, Enum):
    """Why a scan ended in ``failed``."""

    CLONE_FAILED = "CLONE_FAILED"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


class ScanRecord(BaseModel):
    """Persisted state of one scan request.

    Validation enforces the per-document invariants so that a row which
    violates them surfaces as an error at the store boundary instead of
    propagating to callers.
    """

    model_config = ConfigDict(from_attributes=True)

    scan_id: str = Field(..., min_length=1, description="Unique scan identifier.")
    principal_id: str = Field(..., min_length=1, description="Owning principal id.")
    principal_kind: PrincipalKind = Field(..., description="Whether the owner was authenticated.")
    repo_id: str = Field(..., min_length=16, max_length=16, description="Stable repository key.")
    repo_url: str = Field(..., min_length=1, description="Repository URL as submitted.")
    repo_full_name: str | None = Field(default=None, description="``owner/name`` of the repository.")
    status: ScanStatus = Field(default=ScanStatus.QUEUED)
    progress: int = Field(default=0, ge=0, le=100)
    error_code: ScanErrorCode | None = None
    error_message: str | None = None
    queued_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _check_lifecycle_invariants(self) -> Self:
        if (self.status == ScanStatus.FAILED) != (self.error_code is not None):
            raise ValueError("error_code must be set if and only if status is failed")
        if self.status == ScanStatus.SUCCEEDED and self.progress != 100:
            raise ValueError("succeeded scans must report progress 100")
        if self.status.terminal and self.finished_at is None:
            raise ValueError("terminal scans must carry finished_at")
        if not self.status.terminal and self.finished_at is not None:
            raise ValueError("active scans cannot carry finished_at")
        if self.status == ScanStatus.RUNNING and self.started_at is None:
            raise ValueError("running scans must carry started_at")
        if self.status == ScanStatus.QUEUED and self.started_at is not None:
            raise ValueError("queued scans cannot carry started_at")
        return self

    @property
    def is_cancelled(self) -> bool:
        return self.status == ScanStatus.FAILED and self.error_code == ScanErrorCode.CANCELLED
