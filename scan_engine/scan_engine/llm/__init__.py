"""Language model integration: prompt registry and analysis client."""

from scan_engine.llm.llm_client import AnalysisModel, AnthropicAnalysisClient
from scan_engine.llm.prompts import (
    PROMPT_REGISTRY,
    PromptTemplate,
    build_analysis_prompt,
    get_prompt,
    sanitize_prompt_input,
)

__all__ = [
    "AnalysisModel",
    "AnthropicAnalysisClient",
    "PROMPT_REGISTRY",
    "PromptTemplate",
    "build_analysis_prompt",
    "get_prompt",
    "sanitize_prompt_input",
]
