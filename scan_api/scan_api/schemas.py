"""Request and response models for the gitscope HTTP API.

Bodies are snake_case.  The cached analysis payload keeps the field names
of :class:`~scan_engine.models.analysis.AnalysisResult`.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator
from scan_engine.git.urls import validate_repo_url
from scan_engine.models.quota import PrincipalKind, QuotaState
from scan_engine.models.scan import ScanErrorCode, ScanRecord, ScanStatus

# ---------------------------------------------------------------------------
# Scans
# ---------------------------------------------------------------------------


class ScanRequest(BaseModel):
    """Body of ``POST /api/v1/scans``."""

    repo_url: str = Field(..., description="HTTPS URL of a GitHub, GitLab or Bitbucket repository.")

    @field_validator("repo_url", mode="before")
    @classmethod
    def _validate_repo_url(cls, value: object) -> str:
        if not isinstance(value, str):
            raise ValueError("Repository URL must be a string")
        return validate_repo_url(value)


class ScanSubmitResponse(BaseModel):
    """Returned with ``202 Accepted`` once a scan is queued."""

    scan_id: str
    repo_id: str
    status: ScanStatus


class QuotaExceededResponse(BaseModel):
    detail: str
    used: int
    limit: int


class ScanResponse(BaseModel):
    """Public view of a scan document."""

    scan_id: str
    repo_id: str
    repo_url: str
    repo_full_name: str | None = None
    principal_kind: PrincipalKind
    status: ScanStatus
    progress: int
    error_code: ScanErrorCode | None = None
    error_message: str | None = None
    queued_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: ScanRecord) -> ScanResponse:
        return cls.model_validate(record.model_dump(exclude={"principal_id"}))


class ScanListResponse(BaseModel):
    items: list[ScanResponse] = Field(default_factory=list)
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Identity and quota
# ---------------------------------------------------------------------------


class AnonymousIdResponse(BaseModel):
    """Anonymous identifier derived from the caller's address."""

    uid: str


class QuotaResponse(BaseModel):
    """Caller's current allowance.  ``used == 0`` before the first scan."""

    used: int
    limit: int
    reset_at: datetime | None = None
    unlimited: bool

    @classmethod
    def from_state(cls, state: QuotaState) -> QuotaResponse:
        return cls(used=state.used, limit=state.limit, reset_at=state.reset_at, unlimited=state.unlimited)
