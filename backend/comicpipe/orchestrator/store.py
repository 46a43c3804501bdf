"""Progress store: the single writer of pipeline state.

Every mutation of a project's pipeline state happens here, one transaction
per call. Stage transitions are guarded by conditional UPDATEs on
``generation_stage`` so that an aborted run can never be advanced again and
a poller never sees a stage without the outputs of the stages before it.
"""

import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comicpipe.db.models import PipelineRun, Project, StageOutput, empty_progress
from comicpipe.orchestrator.progress import clamp_progress, group_progress
from comicpipe.orchestrator.state import STAGE_SEQUENCE, TERMINAL_STATES, previous_state
from comicpipe.pipeline.base import ProjectSnapshot
from comicpipe.schemas.brief import StoryBrief

logger = logging.getLogger(__name__)

PersistFn = Callable[[AsyncSession, Project, dict], Awaitable[None]]


def _utcnow() -> datetime:
    # Naive UTC, matching SQLite's CURRENT_TIMESTAMP server defaults
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ProgressStore:
    """Persisted per-stage progress and stage labels for projects."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    async def create_project(
        self,
        owner_id: uuid.UUID,
        brief: StoryBrief,
        project_id: Optional[uuid.UUID] = None,
    ) -> tuple[Project, PipelineRun]:
        """Insert a queued project together with its first run."""
        async with self._session_factory() as session:
            project = Project(
                id=project_id or uuid.uuid4(),
                user_id=owner_id,
                title=brief.title or "New Comic",
                synopsis=brief.synopsis,
                genre=brief.genre or "",
                style=brief.art_style,
                total_pages=brief.total_pages,
                generation_stage="queued",
                generation_progress=empty_progress(),
                preview_only=True,
            )
            session.add(project)
            await session.flush()

            run = PipelineRun(
                project_id=project.id,
                status="running",
                access_token=secrets.token_urlsafe(32),
                log={},
            )
            session.add(run)
            await session.commit()
            await session.refresh(project)
            await session.refresh(run)
            return project, run

    async def get_project(self, project_id: uuid.UUID) -> Optional[Project]:
        async with self._session_factory() as session:
            return await session.get(Project, project_id)

    async def load_snapshot(self, project_id: uuid.UUID) -> ProjectSnapshot:
        async with self._session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None:
                raise LookupError(f"Project {project_id} not found")
            return ProjectSnapshot.model_validate(project)

    async def load_outputs(self, project_id: uuid.UUID) -> dict[str, dict]:
        """Outputs of every completed stage, keyed by stage name."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(StageOutput).where(
                    StageOutput.project_id == project_id,
                    StageOutput.status == "complete",
                )
            )
            return {row.stage: row.output or {} for row in result.scalars().all()}

    async def completed_stages(self, project_id: uuid.UUID) -> list[str]:
        outputs = await self.load_outputs(project_id)
        return [stage for stage in STAGE_SEQUENCE if stage in outputs]

    async def active_project_ids(self) -> list[uuid.UUID]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Project.id).where(Project.generation_stage.notin_(TERMINAL_STATES))
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Stage lifecycle
    # ------------------------------------------------------------------

    async def enter_stage(self, project_id: uuid.UUID, stage: str) -> bool:
        """Move the project into ``stage``.

        Only allowed from the preceding state or from ``stage`` itself (a
        resumed run). Returns False when the run was aborted meanwhile.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Project)
                .where(
                    Project.id == project_id,
                    Project.generation_stage.in_((previous_state(stage), stage)),
                )
                .values(generation_stage=stage)
            )
            if result.rowcount == 0:
                await session.rollback()
                return False

            await self._upsert_stage(session, project_id, stage, status="running", progress=0, attempts=0)
            await self._refresh_group_progress(session, project_id)
            await session.commit()
            return True

    async def start_attempt(self, project_id: uuid.UUID, stage: str, attempt: int) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(StageOutput)
                .where(StageOutput.project_id == project_id, StageOutput.stage == stage)
                .values(attempts=attempt)
            )
            await session.commit()

    async def report_progress(self, project_id: uuid.UUID, stage: str, progress: int) -> bool:
        """Record intermediate progress of a running stage.

        Capped at 99: only ``commit_stage`` may mark a stage 100.
        """
        async with self._session_factory() as session:
            if not await self._still_in(session, project_id, stage):
                await session.rollback()
                return False
            await self._upsert_stage(
                session, project_id, stage,
                status="running", progress=min(clamp_progress(progress), 99),
            )
            await self._refresh_group_progress(session, project_id)
            await session.commit()
            return True

    async def commit_stage(
        self,
        project_id: uuid.UUID,
        stage: str,
        run_id: uuid.UUID,
        output: dict,
        persist: PersistFn,
        duration_seconds: float,
    ) -> bool:
        """Atomically persist a stage's entities, output and 100% progress.

        Returns False (and writes nothing) if the project left ``stage``
        while the worker was running, i.e. the run was aborted.
        """
        async with self._session_factory() as session:
            if not await self._still_in(session, project_id, stage):
                await session.rollback()
                return False

            project = await session.get(Project, project_id)
            try:
                await persist(session, project, output)
            except Exception:
                await session.rollback()
                raise

            await self._upsert_stage(
                session, project_id, stage,
                status="complete", progress=100, output=output,
            )
            await self._refresh_group_progress(session, project_id)

            run = await session.get(PipelineRun, run_id)
            if run is not None:
                run.log = {**(run.log or {}), stage: round(duration_seconds, 3)}

            await session.commit()
            return True

    async def mark_complete(self, project_id: uuid.UUID, run_id: uuid.UUID) -> bool:
        """Flip a project whose last stage committed to ``complete``."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Project)
                .where(
                    Project.id == project_id,
                    Project.generation_stage == STAGE_SEQUENCE[-1],
                )
                .values(generation_stage="complete")
            )
            if result.rowcount == 0:
                await session.rollback()
                return False
            await self._close_runs(session, project_id, status="complete", run_id=run_id)
            await session.commit()
            return True

    async def mark_failed(self, project_id: uuid.UUID, reason: str) -> bool:
        """Flip an active project to ``failed``. No-op on terminal projects."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Project)
                .where(
                    Project.id == project_id,
                    Project.generation_stage.notin_(TERMINAL_STATES),
                )
                .values(generation_stage="failed", error_message=reason)
            )
            if result.rowcount == 0:
                await session.rollback()
                return False

            await session.execute(
                update(StageOutput)
                .where(StageOutput.project_id == project_id, StageOutput.status == "running")
                .values(status="failed")
            )
            await self._close_runs(session, project_id, status="failed", reason=reason)
            await session.commit()
            return True

    async def reopen(self, project_id: uuid.UUID, stage: str) -> Optional[PipelineRun]:
        """Move a failed project back to ``stage`` under a fresh run."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Project)
                .where(Project.id == project_id, Project.generation_stage == "failed")
                .values(generation_stage=stage, error_message=None)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None

            run = PipelineRun(
                project_id=project_id,
                status="running",
                access_token=secrets.token_urlsafe(32),
                log={},
            )
            session.add(run)
            await session.commit()
            await session.refresh(run)
            return run

    # ------------------------------------------------------------------
    # Helpers (caller owns the transaction)
    # ------------------------------------------------------------------

    async def _still_in(self, session: AsyncSession, project_id: uuid.UUID, stage: str) -> bool:
        # Touching the row takes the write lock, so abort cannot interleave
        result = await session.execute(
            update(Project)
            .where(Project.id == project_id, Project.generation_stage == stage)
            .values(updated_at=func.now())
        )
        return result.rowcount > 0

    async def _upsert_stage(
        self,
        session: AsyncSession,
        project_id: uuid.UUID,
        stage: str,
        **values,
    ) -> StageOutput:
        row = await session.get(StageOutput, (project_id, stage))
        if row is None:
            row = StageOutput(project_id=project_id, stage=stage, **values)
            session.add(row)
        else:
            for key, value in values.items():
                setattr(row, key, value)
        return row

    async def _refresh_group_progress(self, session: AsyncSession, project_id: uuid.UUID) -> None:
        await session.flush()
        result = await session.execute(
            select(StageOutput.stage, StageOutput.progress).where(StageOutput.project_id == project_id)
        )
        counters = group_progress({stage: progress for stage, progress in result.all()})
        await session.execute(
            update(Project)
            .where(Project.id == project_id)
            .values(generation_progress=counters)
            .execution_options(synchronize_session=False)
        )

    async def _close_runs(
        self,
        session: AsyncSession,
        project_id: uuid.UUID,
        status: str,
        run_id: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> None:
        query = select(PipelineRun).where(
            PipelineRun.project_id == project_id,
            PipelineRun.status == "running",
        )
        if run_id is not None:
            query = query.where(PipelineRun.id == run_id)
        result = await session.execute(query)
        now = _utcnow()
        for run in result.scalars().all():
            run.status = status
            run.completed_at = now
            run.abort_reason = reason
            if run.started_at is not None:
                run.total_duration_seconds = max(0.0, (now - run.started_at).total_seconds())
