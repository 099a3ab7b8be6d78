"""Principal and quota ledger models.

A ``Principal`` is the identity a scan is attributed to: either an
authenticated user id or the salted hash of an anonymous client's IP.
Each principal owns at most one ``QuotaState`` row, created lazily on
its first scan attempt.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Sentinel limit meaning "never blocks".
UNLIMITED = -1


class PrincipalKind(str, Enum):
    """Origin of a principal's identity."""

    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


class Principal(BaseModel):
    """Identity a request is attributed to."""

    model_config = ConfigDict(frozen=True)

    kind: PrincipalKind
    id: str = Field(..., min_length=1, description="User id, or salted IP hash for anonymous callers.")

    @property
    def is_authenticated(self) -> bool:
        return self.kind == PrincipalKind.AUTHENTICATED


class QuotaState(BaseModel):
    """A principal's current allowance.

    ``limit == UNLIMITED`` never blocks and never consults ``reset_at``.
    A finite limit must carry a ``reset_at`` boundary; a row without one
    is malformed.
    """

    used: int = Field(..., ge=0, description="Scans consumed in the current window.")
    limit: int = Field(..., ge=UNLIMITED, description="Scans allowed per window, or -1 for unlimited.")
    reset_at: datetime | None = Field(
        default=None,
        description="Instant at which the window resets (finite limits only).",
    )

    @model_validator(mode="after")
    def _finite_limit_has_boundary(self) -> Self:
        if self.limit != UNLIMITED and self.reset_at is None:
            raise ValueError("finite quota limit requires reset_at")
        return self

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED


class QuotaDecision(BaseModel):
    """Outcome of a single gate check."""

    allowed: bool
    error: str | None = None
    used: int | None = None
    limit: int | None = None

    @classmethod
    def allow(cls, used: int, limit: int) -> QuotaDecision:
        return cls(allowed=True, used=used, limit=limit)

    @classmethod
    def deny(cls, error: str, used: int, limit: int) -> QuotaDecision:
        return cls(allowed=False, error=error, used=used, limit=limit)
