"""Git source provider and repository URL helpers."""

from scan_engine.git.git_client import GitRepositoryProvider
from scan_engine.git.urls import (
    RepoCoordinates,
    generate_repo_id,
    normalize_repo_url,
    parse_repo_url,
    validate_repo_url,
)

__all__ = [
    "GitRepositoryProvider",
    "RepoCoordinates",
    "generate_repo_id",
    "normalize_repo_url",
    "parse_repo_url",
    "validate_repo_url",
]
