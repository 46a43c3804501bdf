"""Pipeline orchestrator: owns the lifecycle of generation runs.

Coordinates the comic generation pipeline with:
- Strictly forward stage transitions (see ``state.py``)
- At most one active run per project
- Cooperative abort: in-flight work finishes but is never committed
- Resume of failed runs from the first stage without committed output
- Recovery of runs interrupted by a process restart
"""

import asyncio
import logging
import uuid
from typing import Iterable, Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comicpipe.config import Settings, settings
from comicpipe.errors import ConflictError, NotFoundError, ValidationError
from comicpipe.orchestrator.executor import StageExecutor
from comicpipe.orchestrator.hooks import HookSet, LoggingHooks, StageHooks
from comicpipe.orchestrator.retry import RetryPolicy
from comicpipe.orchestrator.state import STAGE_SEQUENCE, can_resume, get_resume_stage, next_stage
from comicpipe.orchestrator.store import ProgressStore
from comicpipe.pipeline.base import StageRegistry
from comicpipe.schemas.brief import StoryBrief

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "interrupted"


class RunHandle(BaseModel):
    """Identifiers returned to the caller when a run is scheduled."""

    project_id: uuid.UUID
    run_id: uuid.UUID
    access_token: str


class PipelineOrchestrator:
    """Schedules runs as detached asyncio tasks and sequences their stages."""

    def __init__(
        self,
        registry: StageRegistry,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        hooks: Optional[Iterable[StageHooks]] = None,
        config: Optional[Settings] = None,
    ):
        if session_factory is None:
            from comicpipe.db import async_session as session_factory

        self._config = config or settings
        self.store = ProgressStore(session_factory)
        self.hooks = HookSet([LoggingHooks()] if hooks is None else hooks)
        self.executor = StageExecutor(
            self,
            self.store,
            registry,
            retry_policy or RetryPolicy.from_settings(self._config),
            self.hooks,
            self._config.pipeline,
        )
        self._tasks: dict[uuid.UUID, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def validate_brief(self, brief: StoryBrief) -> None:
        """Raise ValidationError unless the brief can start a run."""
        pipeline = self._config.pipeline
        fields = {}
        if not brief.synopsis or not brief.synopsis.strip():
            fields["storyDescription"] = "required"
        if not brief.art_style or not brief.art_style.strip():
            fields["artStyle"] = "required"
        if fields:
            raise ValidationError(
                "Missing required fields: storyDescription, artStyle, and pageCount",
                fields=fields,
            )
        if not pipeline.min_pages <= brief.total_pages <= pipeline.max_pages:
            raise ValidationError(
                f"Page count must be between {pipeline.min_pages} and {pipeline.max_pages}",
                fields={"pageCount": "out of range"},
            )

    async def start(
        self,
        owner_id: uuid.UUID,
        brief: StoryBrief,
        project_id: Optional[uuid.UUID] = None,
    ) -> RunHandle:
        """Create a project and schedule its run. Returns without waiting."""
        self.validate_brief(brief)

        if project_id is not None and await self.store.get_project(project_id) is not None:
            raise ConflictError(f"Project {project_id} already exists")

        try:
            project, run = await self.store.create_project(owner_id, brief, project_id=project_id)
        except IntegrityError:
            raise ConflictError(f"Project {project_id} already exists")

        logger.info(f"Project {project.id}: run {run.id} scheduled ({brief.total_pages} pages)")
        self._spawn(project.id, run.id, STAGE_SEQUENCE[0])
        return RunHandle(project_id=project.id, run_id=run.id, access_token=run.access_token)

    async def advance(self, project_id: uuid.UUID, run_id: uuid.UUID, completed_stage: str) -> None:
        """Continue a run after ``completed_stage`` committed."""
        following = next_stage(completed_stage)
        if following is None:
            if await self.store.mark_complete(project_id, run_id):
                logger.info(f"Project {project_id}: run {run_id} complete")
            return
        await self.executor.run(project_id, following, run_id)

    async def abort(self, project_id: uuid.UUID, reason: str) -> bool:
        """Mark the project failed. Idempotent; returns whether it transitioned."""
        changed = await self.store.mark_failed(project_id, reason)
        if changed:
            logger.warning(f"Project {project_id}: run aborted: {reason}")
        return changed

    async def resume(self, owner_id: uuid.UUID, project_id: uuid.UUID) -> RunHandle:
        """Restart a failed project at its first stage without committed output."""
        project = await self.store.get_project(project_id)
        if project is None or project.user_id != owner_id:
            raise NotFoundError()
        if not can_resume(project.generation_stage):
            raise ConflictError(
                f"Project is '{project.generation_stage}'; only failed projects can be resumed"
            )

        stage = get_resume_stage(await self.store.completed_stages(project_id))
        # A worker from the aborted run may still be finishing its stage
        if self.is_running(project_id):
            raise ConflictError("Previous run is still shutting down, try again shortly")

        run = await self.store.reopen(project_id, stage)
        if run is None:
            raise ConflictError("Project is no longer failed")

        logger.info(f"Project {project_id}: resuming at '{stage}' with run {run.id}")
        self._spawn(project_id, run.id, stage)
        return RunHandle(project_id=project_id, run_id=run.id, access_token=run.access_token)

    def is_running(self, project_id: uuid.UUID) -> bool:
        task = self._tasks.get(project_id)
        return task is not None and not task.done()

    async def wait(self, project_id: uuid.UUID) -> None:
        """Block until the in-process task for ``project_id`` (if any) ends."""
        task = self._tasks.get(project_id)
        if task is not None:
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        """Cancel every in-process run. They are recovered on next startup."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} running pipeline task(s)")

    async def recover_interrupted(self) -> int:
        """Fail projects left active by a previous process so they can resume."""
        recovered = 0
        for project_id in await self.store.active_project_ids():
            if self.is_running(project_id):
                continue
            if await self.abort(project_id, INTERRUPTED_REASON):
                recovered += 1
        if recovered:
            logger.info(f"Marked {recovered} interrupted project(s) as failed")
        return recovered

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------

    def _spawn(self, project_id: uuid.UUID, run_id: uuid.UUID, stage: str) -> None:
        if self.is_running(project_id):
            raise ConflictError()
        task = asyncio.create_task(
            self._run(project_id, run_id, stage),
            name=f"comicpipe-run-{project_id}",
        )
        self._tasks[project_id] = task
        task.add_done_callback(lambda done: self._forget(project_id, done))

    def _forget(self, project_id: uuid.UUID, task: asyncio.Task) -> None:
        if self._tasks.get(project_id) is task:
            del self._tasks[project_id]

    async def _run(self, project_id: uuid.UUID, run_id: uuid.UUID, stage: str) -> None:
        try:
            await self.executor.run(project_id, stage, run_id)
        except asyncio.CancelledError:
            logger.warning(f"Project {project_id}: run {run_id} cancelled")
            raise
        except Exception as exc:
            logger.exception(f"Project {project_id}: run {run_id} crashed")
            await self.abort(project_id, f"Internal error: {type(exc).__name__}")
