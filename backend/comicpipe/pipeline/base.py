"""Stage contract: the typed boundary every stage worker must satisfy.

A worker has two halves:

- ``run`` performs the slow, external generation work. It receives a
  read-only ``StageContext`` and must not touch the database.
- ``persist`` writes the worker's entities inside the executor's stage
  transaction. It must upsert by stable keys so that a re-run never
  duplicates rows.

The value returned by ``run`` is stored as the stage output and handed to
every later stage through ``StageContext.prior_outputs``.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Coroutine, Iterable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from comicpipe.db.models import Project
from comicpipe.errors import FatalStageError


class ProjectSnapshot(BaseModel):
    """Immutable view of the project row taken when a stage starts."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: uuid.UUID
    user_id: uuid.UUID
    title: str
    synopsis: str
    genre: str = ""
    style: str
    total_pages: int
    story_analysis: Optional[dict] = None
    script_data: Optional[dict] = None


async def _ignore_progress(progress: int) -> None:
    return None


@dataclass(frozen=True)
class StageContext:
    """Everything a worker may read while running."""

    stage: str
    project: ProjectSnapshot
    prior_outputs: dict[str, dict] = field(default_factory=dict)
    attempt: int = 1
    report_progress: Callable[[int], Awaitable[None]] = _ignore_progress

    def output_of(self, stage: str) -> dict:
        """Output of an earlier stage; a missing one is a fatal ordering bug."""
        try:
            return self.prior_outputs[stage]
        except KeyError:
            raise FatalStageError(f"Missing output of stage '{stage}'", stage=self.stage)


class StageWorker(ABC):
    """Base class for the worker behind one named stage."""

    stage: ClassVar[str]
    # Overrides the configured per-stage wall-clock budget when set
    timeout_seconds: ClassVar[Optional[float]] = None

    @abstractmethod
    async def run(self, context: StageContext) -> BaseModel | dict:
        """Perform the stage's generation work and return its output."""
        ...

    async def persist(self, session: AsyncSession, project: Project, output: dict) -> None:
        """Upsert the stage's entities. Default: output is only recorded."""
        return None


T = TypeVar("T")


async def run_concurrently(coros: Iterable[Coroutine[Any, Any, T]]) -> list[T]:
    """Run coroutines as sibling tasks and return their results in order.

    The first failure cancels every sibling still running and is re-raised
    unwrapped.
    """
    try:
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(coro) for coro in coros]
    except BaseExceptionGroup as failures:
        first = failures.exceptions[0]
        while isinstance(first, BaseExceptionGroup):
            first = first.exceptions[0]
        raise first from failures
    return [task.result() for task in tasks]


def normalize_output(stage: str, result: Any) -> dict:
    """Convert a worker result into the JSON dict stored for the stage."""
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if isinstance(result, dict):
        return result
    if result is None:
        return {}
    raise FatalStageError(
        f"Worker returned {type(result).__name__}, expected a mapping",
        stage=stage,
    )


class StageRegistry:
    """Maps stage names to the worker instances that execute them."""

    def __init__(self, workers: Iterable[StageWorker] = ()):
        self._workers: dict[str, StageWorker] = {}
        for worker in workers:
            self.register(worker)

    def register(self, worker: StageWorker) -> None:
        self._workers[worker.stage] = worker

    def get(self, stage: str) -> StageWorker:
        worker = self._workers.get(stage)
        if worker is None:
            raise FatalStageError(f"No worker registered for stage '{stage}'", stage=stage)
        return worker

    def __contains__(self, stage: str) -> bool:
        return stage in self._workers

    def stages(self) -> list[str]:
        return list(self._workers)
