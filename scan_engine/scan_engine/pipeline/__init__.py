"""Repository analysis pipeline."""

from scan_engine.pipeline.analyzer import (
    AnalysisPipeline,
    PipelineOutcome,
    ProgressCallback,
    SourceProvider,
)

__all__ = ["AnalysisPipeline", "PipelineOutcome", "ProgressCallback", "SourceProvider"]
