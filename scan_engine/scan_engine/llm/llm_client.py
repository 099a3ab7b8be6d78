"""Anthropic-backed repository analysis client.

One prompt in, one validated :class:`AnalysisResult` out, or an
:class:`AnalysisError`.  Transient transport and rate-limit failures are
retried by the SDK (``max_retries``); everything else fails the call.
The model is asked for JSON only; markdown fences are tolerated and
stripped, any other deviation is a parse failure.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol

import anthropic
from pydantic import ValidationError

from scan_engine.config import EngineSettings
from scan_engine.errors import AnalysisError, LLMDisabledError
from scan_engine.llm.prompts import get_prompt
from scan_engine.models.analysis import AnalysisResult

logger = logging.getLogger(__name__)


class AnalysisModel(Protocol):
    """What the pipeline needs from a language model service."""

    @property
    def model_name(self) -> str: ...

    async def analyze(self, user_prompt: str) -> AnalysisResult: ...


class AnthropicAnalysisClient:
    """Thin async wrapper around the Anthropic Messages API.

    Parameters
    ----------
    settings:
        Supplies model id, token budget, timeout, retry count and API key.
    client:
        Pre-built ``AsyncAnthropic``-compatible client (tests inject fakes).
        When omitted the client is created from *settings*.
    """

    def __init__(self, settings: EngineSettings, client: Any | None = None) -> None:
        self._model = settings.llm_model
        self._max_tokens = settings.llm_max_tokens
        self._timeout = settings.llm_timeout
        self._owns_client = client is None
        self._client: Any = client

        if self._client is None and settings.llm_enabled:
            api_key = settings.llm_api_key.get_secret_value() if settings.llm_api_key else None
            if api_key:
                self._client = anthropic.AsyncAnthropic(
                    api_key=api_key,
                    timeout=self._timeout,
                    max_retries=settings.llm_max_retries,
                )
                logger.info(
                    "LLM client initialised (model=%s, timeout=%.1fs, max_retries=%d)",
                    self._model,
                    self._timeout,
                    settings.llm_max_retries,
                )
            else:
                logger.warning("LLM enabled but ENGINE_LLM_API_KEY is not set; analyses will fail")
        elif self._client is None:
            logger.info("LLM disabled by configuration; analyses will fail")

    @property
    def model_name(self) -> str:
        return self._model

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.close()

    async def analyze(self, user_prompt: str) -> AnalysisResult:
        """Run the analysis prompt and return the validated result.

        Raises
        ------
        LLMDisabledError
            If no client is configured.
        AnalysisError
            On timeout, API failure, truncated output, or unparsable output.
        """
        if self._client is None:
            raise LLMDisabledError("Analysis model is not configured. Set ENGINE_LLM_API_KEY to enable analyses.")

        prompt = get_prompt("analyze_repository_system")
        logger.info(
            "LLM call: prompt_key=%s prompt_version=%s model=%s",
            prompt.key,
            prompt.version,
            self._model,
        )

        start = time.monotonic()
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                temperature=0.0,
                system=prompt.content,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic.APITimeoutError as exc:
            raise AnalysisError(f"Analysis timed out after {self._timeout:.0f}s") from exc
        except anthropic.APIError as exc:
            raise AnalysisError(f"Analysis request failed: {exc}") from exc
        finally:
            logger.info("LLM call finished in %.2fs", time.monotonic() - start)

        if getattr(response, "stop_reason", None) == "max_tokens":
            raise AnalysisError("Analysis output was truncated at the token limit")

        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(
                "LLM usage: input_tokens=%s output_tokens=%s",
                getattr(usage, "input_tokens", None),
                getattr(usage, "output_tokens", None),
            )

        return self.parse_analysis(self._response_text(response))

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @staticmethod
    def _response_text(response: Any) -> str:
        parts = [
            getattr(block, "text", "")
            for block in getattr(response, "content", None) or []
            if getattr(block, "type", "text") == "text"
        ]
        return "".join(parts)

    @staticmethod
    def _parse_json(raw: str) -> Any:
        """JSON extraction from LLM output, tolerating markdown fences."""
        text = raw.strip()
        if text.startswith("```"):
            first_newline = text.find("\n")
            last_fence = text.rfind("```")
            if first_newline == -1 or last_fence <= first_newline:
                raise ValueError("unterminated markdown fence")
            text = text[first_newline + 1 : last_fence].strip()
        return json.loads(text)

    @classmethod
    def parse_analysis(cls, raw: str) -> AnalysisResult:
        """Parse model output into an :class:`AnalysisResult`.

        Raises
        ------
        AnalysisError
            If the text is not a JSON object matching the analysis schema.
        """
        if not raw.strip():
            raise AnalysisError("Analysis model returned an empty response")
        try:
            data = cls._parse_json(raw)
        except ValueError as exc:
            raise AnalysisError("Analysis model returned malformed JSON") from exc
        if not isinstance(data, dict):
            raise AnalysisError("Analysis model returned JSON that is not an object")
        try:
            return AnalysisResult.model_validate(data)
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise AnalysisError(f"Analysis output failed validation at {location}: {first.get('msg')}") from exc
