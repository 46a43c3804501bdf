"""Stage executor: runs one stage of one project end to end.

Enter the stage, invoke its worker under a wall-clock budget and the retry
policy, then commit the worker's output together with the stage's progress
in a single transaction before handing control back to the orchestrator.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import TYPE_CHECKING, Optional

import httpx
import pydantic
from google.genai.errors import ClientError, ServerError
from ollama import ResponseError

from comicpipe.config import PipelineConfig, settings
from comicpipe.errors import FatalStageError, RetryableStageError, StageError
from comicpipe.orchestrator.hooks import StageHooks
from comicpipe.orchestrator.retry import RetryPolicy
from comicpipe.orchestrator.store import ProgressStore
from comicpipe.pipeline.base import StageContext, StageRegistry, StageWorker, normalize_output

if TYPE_CHECKING:
    from comicpipe.orchestrator.pipeline import PipelineOrchestrator

logger = logging.getLogger(__name__)


def _is_retryable_status(code: int) -> bool:
    return code == 429 or code >= 500


def classify_error(exc: BaseException, stage: Optional[str] = None) -> StageError:
    """Map a worker exception onto the retryable/fatal taxonomy.

    Anything not recognised as transient is fatal.
    """
    if isinstance(exc, StageError):
        if exc.stage is None:
            exc.stage = stage
        return exc

    message = f"{type(exc).__name__}: {exc}"

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return RetryableStageError(f"Stage '{stage}' timed out", stage=stage)
    if isinstance(exc, httpx.HTTPStatusError):
        if _is_retryable_status(exc.response.status_code):
            return RetryableStageError(message, stage=stage)
        return FatalStageError(message, stage=stage)
    if isinstance(exc, httpx.TransportError):
        return RetryableStageError(message, stage=stage)
    if isinstance(exc, ServerError):
        return RetryableStageError(message, stage=stage)
    if isinstance(exc, ClientError):
        if getattr(exc, "code", 0) == 429:
            return RetryableStageError(message, stage=stage)
        return FatalStageError(message, stage=stage)
    if isinstance(exc, ResponseError):
        if _is_retryable_status(exc.status_code):
            return RetryableStageError(message, stage=stage)
        return FatalStageError(message, stage=stage)
    # Malformed model output
    if isinstance(exc, (pydantic.ValidationError, json.JSONDecodeError)):
        return FatalStageError(message, stage=stage)
    if isinstance(exc, (ConnectionError, OSError)):
        return RetryableStageError(message, stage=stage)
    return FatalStageError(message, stage=stage)


class StageExecutor:
    """Executes single stages on behalf of a ``PipelineOrchestrator``."""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        store: ProgressStore,
        registry: StageRegistry,
        retry_policy: RetryPolicy,
        hooks: StageHooks,
        config: Optional[PipelineConfig] = None,
    ):
        self._orchestrator = orchestrator
        self._store = store
        self._registry = registry
        self._retry_policy = retry_policy
        self._hooks = hooks
        self._config = config or settings.pipeline

    def timeout_for(self, stage: str, worker: StageWorker) -> float:
        """Per-stage budget: config override, then worker default, then global."""
        if stage in self._config.stage_timeouts:
            return self._config.stage_timeouts[stage]
        if worker.timeout_seconds is not None:
            return worker.timeout_seconds
        return self._config.stage_timeout_seconds

    async def run(self, project_id: uuid.UUID, stage: str, run_id: uuid.UUID) -> bool:
        """Execute ``stage`` and advance the run.

        Returns True when the stage committed, False when it was refused,
        discarded or aborted.
        """
        if not await self._store.enter_stage(project_id, stage):
            logger.info(f"Project {project_id}: not entering '{stage}', run is no longer active")
            return False

        try:
            worker = self._registry.get(stage)
            snapshot = await self._store.load_snapshot(project_id)
            prior_outputs = await self._store.load_outputs(project_id)
        except Exception as exc:
            error = classify_error(exc, stage)
            await self._hooks.on_failure(project_id, stage, error, False)
            await self._orchestrator.abort(project_id, f"Stage '{stage}' failed: {error.message}")
            return False

        async def report_progress(progress: int) -> None:
            if not await self._store.report_progress(project_id, stage, progress):
                logger.debug(f"Project {project_id}: progress for '{stage}' ignored, run aborted")

        started = time.monotonic()
        try:
            output = await self._run_with_retry(project_id, stage, worker, snapshot, prior_outputs, report_progress)
        except StageError as error:
            await self._orchestrator.abort(project_id, f"Stage '{stage}' failed: {error.message}")
            return False
        duration = time.monotonic() - started

        try:
            committed = await self._store.commit_stage(
                project_id, stage, run_id, output, worker.persist, duration
            )
        except Exception as exc:
            logger.exception(f"Project {project_id}: persisting stage '{stage}' failed")
            error = classify_error(exc, stage)
            await self._hooks.on_failure(project_id, stage, error, False)
            await self._orchestrator.abort(project_id, f"Stage '{stage}' could not be saved: {error.message}")
            return False

        if not committed:
            await self._hooks.on_cancel(project_id, stage, "run aborted while stage was running")
            return False

        await self._hooks.on_success(project_id, stage, duration)
        await self._orchestrator.advance(project_id, run_id, stage)
        return True

    async def _run_with_retry(self, project_id, stage, worker, snapshot, prior_outputs, report_progress) -> dict:
        timeout = self.timeout_for(stage, worker)
        attempts = self._retry_policy.attempts

        async for attempt in self._retry_policy.retrying():
            with attempt:
                number = attempt.retry_state.attempt_number
                await self._store.start_attempt(project_id, stage, number)
                await self._hooks.on_start_attempt(project_id, stage, number)

                context = StageContext(
                    stage=stage,
                    project=snapshot,
                    prior_outputs=prior_outputs,
                    attempt=number,
                    report_progress=report_progress,
                )
                try:
                    result = await asyncio.wait_for(worker.run(context), timeout=timeout)
                    return normalize_output(stage, result)
                except Exception as exc:
                    error = classify_error(exc, stage)
                    will_retry = error.retryable and number < attempts
                    await self._hooks.on_failure(project_id, stage, error, will_retry)
                    if error is exc:
                        raise
                    raise error from exc

        # Unreachable: AsyncRetrying either returns or re-raises
        raise FatalStageError(f"Stage '{stage}' produced no result", stage=stage)
