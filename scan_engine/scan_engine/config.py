"""Scan engine configuration loaded from environment variables."""

from __future__ import annotations

import logging

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class EngineSettings(BaseSettings):
    """Settings for the analysis pipeline and its collaborators.

    All values can be overridden via environment variables prefixed with
    ``ENGINE_`` (e.g. ``ENGINE_LLM_MODEL=...``) or through a ``.env`` file
    in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Document store.  PostgreSQL (asyncpg) in production, SQLite locally.
    database_url: str = "sqlite+aiosqlite:///.gitscope/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # --- LLM integration ---
    llm_enabled: bool = True
    llm_api_key: SecretStr | None = None
    llm_model: str = "claude-sonnet-4-5-20250929"
    llm_timeout: float = 120.0
    llm_max_tokens: int = 4096
    llm_max_retries: int = 2

    # --- git source provider ---
    clone_timeout_seconds: int = 120
    git_command_timeout_seconds: int = 30
    metadata_timeout_seconds: float = 10.0
    github_token: SecretStr | None = None
    temp_dir_prefix: str = "gitscope-"

    # --- snapshot limits ---
    max_file_bytes: int = 1_000_000
    max_snapshot_files: int = 10_000

    @field_validator("llm_max_retries")
    @classmethod
    def _non_negative_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("llm_max_retries must be >= 0")
        return value

    @field_validator("clone_timeout_seconds", "git_command_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("git timeouts must be positive")
        return value


def load_engine_settings() -> EngineSettings:
    """Construct settings from the environment / ``.env`` file."""
    return EngineSettings()
