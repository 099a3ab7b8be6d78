"""Background execution of accepted scans.

:class:`ScanRunner` drives one scan from ``queued`` to a terminal state by
running the analysis pipeline and translating its outcome into lifecycle
transitions.  :class:`ScanDispatcher` owns the ``asyncio`` tasks, one per
scan, and tears them down at application shutdown.

A cancel request is a direct write to the scan document.  The runner
notices it at the next progress report or before the cache write; the
in-flight clone or model call is allowed to finish and its result is
discarded.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time

from scan_engine.errors import AnalysisError
from scan_engine.models.scan import ScanErrorCode
from scan_engine.pipeline.analyzer import AnalysisPipeline, PipelineOutcome

from scan_api.middleware.prometheus import (
    CACHE_LOOKUPS_TOTAL,
    LLM_CALLS_TOTAL,
    SCAN_DURATION,
    SCANS_TOTAL,
)
from scan_api.services.scan_service import ScanLifecycle, classify_failure

logger = logging.getLogger(__name__)

SHUTDOWN_MESSAGE = "Interrupted by shutdown"

# Error messages stored on the scan are shown to end users; keep them short.
_MAX_ERROR_MESSAGE = 500


class ScanRunner:
    """Run the pipeline for one scan and record the outcome on the scan.

    No exception escapes :meth:`run` except task cancellation, which is
    recorded on the scan and then re-raised.
    """

    def __init__(self, lifecycle: ScanLifecycle, pipeline: AnalysisPipeline) -> None:
        self._lifecycle = lifecycle
        self._pipeline = pipeline

    async def run(self, scan_id: str, repo_url: str) -> None:
        log_extra = {"scan_id": scan_id}
        start = time.monotonic()
        outcome_label = "failed"
        try:
            if not await self._lifecycle.start(scan_id):
                outcome_label = "skipped"
                return

            async def _on_progress(pct: int) -> None:
                await self._lifecycle.report_progress(scan_id, pct)

            async def _should_persist() -> bool:
                return not await self._lifecycle.is_cancelled(scan_id)

            outcome = await self._pipeline.run(repo_url, _on_progress, should_persist=_should_persist)
            self._record_pipeline_metrics(outcome)

            if await self._lifecycle.finish_success(scan_id, outcome.analysis.metadata.full_name):
                outcome_label = "succeeded"
            else:
                outcome_label = "discarded"
                logger.info("Scan %s was cancelled while running; result discarded", scan_id, extra=log_extra)
        except asyncio.CancelledError:
            outcome_label = "interrupted"
            await self._lifecycle.finish_failure(scan_id, ScanErrorCode.UNKNOWN, SHUTDOWN_MESSAGE)
            raise
        except Exception as exc:
            if isinstance(exc, AnalysisError):
                LLM_CALLS_TOTAL.labels(outcome="failure").inc()
            code = classify_failure(exc)
            logger.warning(
                "Scan %s failed with %s: %s",
                scan_id,
                code.value,
                exc,
                exc_info=code == ScanErrorCode.UNKNOWN,
                extra=log_extra,
            )
            try:
                await self._lifecycle.finish_failure(scan_id, code, str(exc)[:_MAX_ERROR_MESSAGE] or None)
            except Exception:
                logger.exception("Could not record failure for scan %s", scan_id, extra=log_extra)
        finally:
            SCANS_TOTAL.labels(outcome=outcome_label).inc()
            SCAN_DURATION.labels(outcome=outcome_label).observe(time.monotonic() - start)

    @staticmethod
    def _record_pipeline_metrics(outcome: PipelineOutcome) -> None:
        if outcome.cache_hit:
            CACHE_LOOKUPS_TOTAL.labels(result="hit").inc()
        else:
            CACHE_LOOKUPS_TOTAL.labels(result="miss").inc()
            LLM_CALLS_TOTAL.labels(outcome="success").inc()


class ScanDispatcher:
    """Schedule at most one background task per scan id."""

    def __init__(self, runner: ScanRunner) -> None:
        self._runner = runner
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def is_active(self, scan_id: str) -> bool:
        return scan_id in self._tasks

    def dispatch(self, scan_id: str, repo_url: str) -> bool:
        """Start the scan in the background.  ``False`` if it is already running."""
        if scan_id in self._tasks:
            logger.warning("Scan %s already dispatched; ignoring duplicate", scan_id)
            return False
        task = asyncio.create_task(self._runner.run(scan_id, repo_url), name=f"scan-{scan_id}")
        self._tasks[scan_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(scan_id, None))
        return True

    async def wait(self, scan_id: str) -> None:
        """Wait for the scan's task to finish, if one is running."""
        task = self._tasks.get(scan_id)
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(task)

    async def shutdown(self) -> None:
        """Cancel outstanding scans and wait for them to record the interruption."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info("Cancelling %d in-flight scan(s)", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
