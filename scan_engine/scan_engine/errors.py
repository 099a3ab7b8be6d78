"""Exception hierarchy shared by the scan engine and the API layer.

Every failure the analysis pipeline can produce derives from
:class:`ScanEngineError` so that callers can classify errors by their
origin rather than by inspecting message text.
"""

from __future__ import annotations


class ScanEngineError(Exception):
    """Base class for all scan engine failures."""


# ---------------------------------------------------------------------------
# Git source provider
# ---------------------------------------------------------------------------


class GitClientError(ScanEngineError):
    """Raised when a git operation fails or the repository is invalid."""


class CloneError(GitClientError):
    """Raised when a repository cannot be cloned (not found, private, network)."""


class MetadataError(GitClientError):
    """Raised when repository metadata cannot be read from the provider API."""


# ---------------------------------------------------------------------------
# Language model
# ---------------------------------------------------------------------------


class AnalysisError(ScanEngineError):
    """Raised when the model call fails or its output cannot be parsed."""


class LLMDisabledError(AnalysisError):
    """Raised when an analysis is requested but no model client is configured."""


# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------


class LedgerStateError(ScanEngineError):
    """Raised when a quota ledger row is malformed or cannot be resolved."""


class ScanStateError(ScanEngineError):
    """Raised when a persisted scan row violates the scan invariants."""


class CacheStateError(ScanEngineError):
    """Raised when a repository cache entry cannot be decoded."""
