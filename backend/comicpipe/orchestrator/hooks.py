"""Stage lifecycle hooks.

Observers are registered when the orchestrator is built and are notified at
the start of every attempt, on success, on failure and when a finished
stage's result is discarded because the run was aborted.
"""

import logging
import uuid
from typing import Iterable, Optional

from comicpipe.errors import StageError

logger = logging.getLogger(__name__)


class StageHooks:
    """Base observer. Override the events you care about."""

    async def on_start_attempt(self, project_id: uuid.UUID, stage: str, attempt: int) -> None:
        pass

    async def on_success(self, project_id: uuid.UUID, stage: str, duration_seconds: float) -> None:
        pass

    async def on_failure(
        self, project_id: uuid.UUID, stage: str, error: StageError, will_retry: bool
    ) -> None:
        pass

    async def on_cancel(self, project_id: uuid.UUID, stage: str, reason: Optional[str]) -> None:
        pass


class LoggingHooks(StageHooks):
    """Writes every lifecycle event to the module logger."""

    async def on_start_attempt(self, project_id, stage, attempt):
        logger.info(f"Project {project_id}: stage '{stage}' attempt {attempt}")

    async def on_success(self, project_id, stage, duration_seconds):
        logger.info(f"Project {project_id}: stage '{stage}' completed in {duration_seconds:.1f}s")

    async def on_failure(self, project_id, stage, error, will_retry):
        kind = "retryable" if error.retryable else "fatal"
        suffix = ", retrying" if will_retry else ""
        logger.warning(f"Project {project_id}: stage '{stage}' failed ({kind}{suffix}): {error.message}")

    async def on_cancel(self, project_id, stage, reason):
        logger.warning(f"Project {project_id}: stage '{stage}' cancelled: {reason or 'run aborted'}")


class HookSet(StageHooks):
    """Fans events out to several observers.

    An observer that raises is logged and skipped; it never fails the stage.
    """

    def __init__(self, observers: Iterable[StageHooks] = ()):
        self.observers = list(observers)

    def add(self, observer: StageHooks) -> None:
        self.observers.append(observer)

    async def _dispatch(self, event: str, *args) -> None:
        for observer in self.observers:
            try:
                await getattr(observer, event)(*args)
            except Exception:
                logger.exception(f"Hook {type(observer).__name__}.{event} raised")

    async def on_start_attempt(self, project_id, stage, attempt):
        await self._dispatch("on_start_attempt", project_id, stage, attempt)

    async def on_success(self, project_id, stage, duration_seconds):
        await self._dispatch("on_success", project_id, stage, duration_seconds)

    async def on_failure(self, project_id, stage, error, will_retry):
        await self._dispatch("on_failure", project_id, stage, error, will_retry)

    async def on_cancel(self, project_id, stage, reason):
        await self._dispatch("on_cancel", project_id, stage, reason)
