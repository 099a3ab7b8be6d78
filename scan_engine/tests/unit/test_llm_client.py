"""Tests for AnthropicAnalysisClient with an injected fake SDK client."""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import anthropic
import httpx
import pytest
from scan_engine.config import EngineSettings
from scan_engine.errors import AnalysisError, LLMDisabledError
from scan_engine.llm.llm_client import AnthropicAnalysisClient
from scan_engine.models.analysis import AnalysisResult


def _settings(**overrides) -> EngineSettings:
    return EngineSettings(_env_file=None, **overrides)


def _response(text: str, stop_reason: str = "end_turn") -> SimpleNamespace:
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=100, output_tokens=50),
    )


def _fake_client(response=None, side_effect=None) -> SimpleNamespace:
    create = AsyncMock(return_value=response, side_effect=side_effect)
    return SimpleNamespace(messages=SimpleNamespace(create=create), close=AsyncMock())


@pytest.fixture()
def analysis_json(sample_analysis: AnalysisResult) -> str:
    return json.dumps(sample_analysis.model_dump(mode="json", by_alias=True))


@pytest.mark.asyncio
async def test_analyze_returns_validated_result(analysis_json: str, sample_analysis: AnalysisResult) -> None:
    fake = _fake_client(_response(analysis_json))
    client = AnthropicAnalysisClient(_settings(llm_model="claude-test", llm_max_tokens=2048), client=fake)

    result = await client.analyze("describe the repo")

    assert result == sample_analysis
    kwargs = fake.messages.create.await_args.kwargs
    assert kwargs["model"] == "claude-test"
    assert kwargs["max_tokens"] == 2048
    assert kwargs["messages"] == [{"role": "user", "content": "describe the repo"}]
    assert "Respond ONLY with one JSON object" in kwargs["system"]


@pytest.mark.asyncio
async def test_markdown_fences_are_stripped(analysis_json: str, sample_analysis: AnalysisResult) -> None:
    fake = _fake_client(_response(f"```json\n{analysis_json}\n```"))
    client = AnthropicAnalysisClient(_settings(), client=fake)
    assert await client.analyze("x") == sample_analysis


@pytest.mark.asyncio
async def test_truncated_output_fails(analysis_json: str) -> None:
    fake = _fake_client(_response(analysis_json[:40], stop_reason="max_tokens"))
    client = AnthropicAnalysisClient(_settings(), client=fake)
    with pytest.raises(AnalysisError, match="token limit"):
        await client.analyze("x")


@pytest.mark.asyncio
async def test_disabled_client_raises() -> None:
    client = AnthropicAnalysisClient(_settings(llm_enabled=False))
    assert not client.enabled
    with pytest.raises(LLMDisabledError):
        await client.analyze("x")


@pytest.mark.asyncio
async def test_missing_api_key_leaves_client_disabled() -> None:
    client = AnthropicAnalysisClient(_settings(llm_enabled=True, llm_api_key=None))
    with pytest.raises(LLMDisabledError, match="ENGINE_LLM_API_KEY"):
        await client.analyze("x")


@pytest.mark.asyncio
async def test_timeout_maps_to_analysis_error() -> None:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    fake = _fake_client(side_effect=anthropic.APITimeoutError(request=request))
    client = AnthropicAnalysisClient(_settings(llm_timeout=30.0), client=fake)
    with pytest.raises(AnalysisError, match="timed out after 30s"):
        await client.analyze("x")


@pytest.mark.asyncio
async def test_api_error_maps_to_analysis_error() -> None:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    fake = _fake_client(side_effect=anthropic.APIConnectionError(request=request))
    client = AnthropicAnalysisClient(_settings(), client=fake)
    with pytest.raises(AnalysisError, match="request failed"):
        await client.analyze("x")


@pytest.mark.asyncio
async def test_injected_client_is_not_closed() -> None:
    fake = _fake_client()
    client = AnthropicAnalysisClient(_settings(), client=fake)
    await client.aclose()
    fake.close.assert_not_awaited()


class TestParseAnalysis:
    @pytest.mark.parametrize(
        ("raw", "message"),
        [
            ("", "empty response"),
            ("   ", "empty response"),
            ("not json", "malformed JSON"),
            ("```json\n{\"a\": 1}", "malformed JSON"),
            ("[1, 2]", "not an object"),
            ('{"description": "x"}', "failed validation"),
        ],
    )
    def test_rejections(self, raw: str, message: str) -> None:
        with pytest.raises(AnalysisError, match=message):
            AnthropicAnalysisClient.parse_analysis(raw)
