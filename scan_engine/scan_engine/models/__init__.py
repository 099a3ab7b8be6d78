"""Domain models for the gitscope scan engine."""

from scan_engine.models.analysis import (
    AnalysisResult,
    CachedRepositoryAnalysis,
    CodeQuality,
    Complexity,
    FileStats,
    ProjectStructure,
    RepoProvider,
    RepositoryMetadata,
    TechStackItem,
)
from scan_engine.models.quota import (
    UNLIMITED,
    Principal,
    PrincipalKind,
    QuotaDecision,
    QuotaState,
)
from scan_engine.models.scan import (
    ACTIVE_STATUSES,
    CANCELLED_MESSAGE,
    ScanErrorCode,
    ScanRecord,
    ScanStatus,
)

__all__ = [
    "ACTIVE_STATUSES",
    "AnalysisResult",
    "CANCELLED_MESSAGE",
    "CachedRepositoryAnalysis",
    "CodeQuality",
    "Complexity",
    "FileStats",
    "Principal",
    "PrincipalKind",
    "ProjectStructure",
    "QuotaDecision",
    "QuotaState",
    "RepoProvider",
    "RepositoryMetadata",
    "ScanErrorCode",
    "ScanRecord",
    "ScanStatus",
    "TechStackItem",
    "UNLIMITED",
]
