"""Run lifecycle: start, advance, abort, resume and recovery."""

import asyncio
import uuid

import pydantic
import pytest
from sqlalchemy import func, select

from comicpipe.db.models import PipelineRun, Project, StageOutput
from comicpipe.errors import ConflictError, FatalStageError, NotFoundError, ValidationError
from comicpipe.orchestrator.pipeline import INTERRUPTED_REASON
from comicpipe.orchestrator.progress import GROUP_STAGES, calculate_progress
from comicpipe.orchestrator.state import STAGE_SEQUENCE

from conftest import FakeWorker, fake_registry, make_brief


async def _count(session_factory, model, project_id) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(model).where(model.project_id == project_id)
        )
        return result.scalar_one()


async def _stage_rows(session_factory, project_id) -> dict[str, StageOutput]:
    async with session_factory() as session:
        result = await session.execute(select(StageOutput).where(StageOutput.project_id == project_id))
        return {row.stage: row for row in result.scalars().all()}


class ProbeWorker(FakeWorker):
    """Records what a poller would see at the moment the stage starts."""

    def __init__(self, stage, session_factory, observations):
        super().__init__(stage)
        self.session_factory = session_factory
        self.observations = observations

    async def run(self, context):
        async with self.session_factory() as session:
            project = await session.get(Project, context.project.id)
            result = await session.execute(
                select(StageOutput).where(StageOutput.project_id == context.project.id)
            )
            rows = {row.stage: (row.status, row.progress) for row in result.scalars().all()}
        self.observations.append((self.stage, project.generation_stage, rows, dict(project.generation_progress)))
        return await super().run(context)


# ---------------------------------------------------------------------------
# start / advance
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_full_run_completes(make_orchestrator, session_factory, alice, hooks):
    registry = fake_registry()
    orchestrator = make_orchestrator(registry)

    handle = await orchestrator.start(alice.id, make_brief())
    assert handle.access_token
    await orchestrator.wait(handle.project_id)

    project = await orchestrator.store.get_project(handle.project_id)
    assert project.generation_stage == "complete"
    assert project.generation_progress == {"script": 100, "characters": 100, "storyboard": 100, "preview": 100}
    assert calculate_progress(project.generation_progress) == 100
    assert project.error_message is None

    for stage in STAGE_SEQUENCE:
        worker = registry.get(stage)
        assert worker.calls == 1
        assert worker.persisted == 1
        # Every earlier stage's output is visible to later workers
        assert set(worker.contexts[0].prior_outputs) == set(STAGE_SEQUENCE[:STAGE_SEQUENCE.index(stage)])

    async with session_factory() as session:
        run = await session.get(PipelineRun, handle.run_id)
    assert run.status == "complete"
    assert set(run.log) == set(STAGE_SEQUENCE)
    assert run.total_duration_seconds is not None

    assert [event[1] for event in hooks.events if event[0] == "success"] == list(STAGE_SEQUENCE)


@pytest.mark.asyncio
async def test_start_returns_before_stages_run(make_orchestrator, alice):
    gate = asyncio.Event()
    analyzing = FakeWorker("analyzing", gate=gate)
    orchestrator = make_orchestrator(fake_registry(analyzing=analyzing))

    handle = await orchestrator.start(alice.id, make_brief())
    project = await orchestrator.store.get_project(handle.project_id)
    assert project.generation_stage in ("queued", "analyzing")
    assert orchestrator.is_running(handle.project_id)

    gate.set()
    await orchestrator.wait(handle.project_id)
    assert not orchestrator.is_running(handle.project_id)


@pytest.mark.asyncio
async def test_poll_never_sees_stage_without_prior_output(make_orchestrator, session_factory, alice):
    observations = []
    workers = {stage: ProbeWorker(stage, session_factory, observations) for stage in STAGE_SEQUENCE}
    orchestrator = make_orchestrator(fake_registry(**workers))

    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    assert [observation[0] for observation in observations] == list(STAGE_SEQUENCE)
    for stage, current, rows, groups in observations:
        assert current == stage
        earlier = STAGE_SEQUENCE[:STAGE_SEQUENCE.index(stage)]
        for done in earlier:
            assert rows[done] == ("complete", 100)
        for group, members in GROUP_STAGES.items():
            if all(member in earlier for member in members):
                assert groups[group] == 100


@pytest.mark.asyncio
async def test_intermediate_progress_is_capped_below_100(make_orchestrator, session_factory, alice):
    gate = asyncio.Event()

    class EagerWorker(FakeWorker):
        async def run(self, context):
            await context.report_progress(100)
            self.started.set()
            await gate.wait()
            return {"done": True}

    designs = EagerWorker("designs")
    orchestrator = make_orchestrator(fake_registry(designs=designs))

    handle = await orchestrator.start(alice.id, make_brief())
    await designs.started.wait()

    rows = await _stage_rows(session_factory, handle.project_id)
    assert rows["designs"].progress == 99
    assert rows["designs"].status == "running"
    project = await orchestrator.store.get_project(handle.project_id)
    # characters (100) and designs (99) average to 99.5
    assert project.generation_progress["characters"] == 100

    gate.set()
    await orchestrator.wait(handle.project_id)
    rows = await _stage_rows(session_factory, handle.project_id)
    assert rows["designs"].progress == 100


@pytest.mark.parametrize("pages", [0, 17, -1])
@pytest.mark.asyncio
async def test_page_count_out_of_range_is_rejected(make_orchestrator, alice, pages):
    orchestrator = make_orchestrator()
    with pytest.raises(ValidationError) as excinfo:
        await orchestrator.start(alice.id, make_brief(pages=pages))
    assert excinfo.value.message == "Page count must be between 1 and 16"


@pytest.mark.parametrize("pages", [True, "8", 2.0])
def test_page_count_must_be_a_real_integer(pages):
    with pytest.raises(pydantic.ValidationError):
        make_brief(pages=pages)


@pytest.mark.asyncio
async def test_missing_brief_fields_are_rejected(make_orchestrator, alice):
    orchestrator = make_orchestrator()
    with pytest.raises(ValidationError) as excinfo:
        await orchestrator.start(alice.id, make_brief(synopsis="   "))
    assert excinfo.value.message == "Missing required fields: storyDescription, artStyle, and pageCount"
    assert excinfo.value.fields == {"storyDescription": "required"}


@pytest.mark.asyncio
async def test_starting_an_active_project_twice_conflicts(make_orchestrator, session_factory, alice):
    gate = asyncio.Event()
    orchestrator = make_orchestrator(fake_registry(analyzing=FakeWorker("analyzing", gate=gate)))
    project_id = uuid.uuid4()

    first = await orchestrator.start(alice.id, make_brief(), project_id=project_id)
    with pytest.raises(ConflictError):
        await orchestrator.start(alice.id, make_brief(), project_id=project_id)

    gate.set()
    await orchestrator.wait(project_id)

    assert first.project_id == project_id
    assert await _count(session_factory, PipelineRun, project_id) == 1
    assert (await orchestrator.store.get_project(project_id)).generation_stage == "complete"


@pytest.mark.asyncio
async def test_starting_a_complete_project_conflicts(make_orchestrator, alice):
    orchestrator = make_orchestrator()
    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    with pytest.raises(ConflictError):
        await orchestrator.start(alice.id, make_brief(), project_id=handle.project_id)


@pytest.mark.asyncio
async def test_projects_run_concurrently(make_orchestrator, alice, bob):
    gate = asyncio.Event()
    analyzing = FakeWorker("analyzing", gate=gate)
    orchestrator = make_orchestrator(fake_registry(analyzing=analyzing))

    first = await orchestrator.start(alice.id, make_brief())
    second = await orchestrator.start(bob.id, make_brief(pages=3))
    while analyzing.calls < 2:
        await asyncio.sleep(0.01)
    assert orchestrator.is_running(first.project_id)
    assert orchestrator.is_running(second.project_id)

    gate.set()
    await orchestrator.wait(first.project_id)
    await orchestrator.wait(second.project_id)
    for handle in (first, second):
        assert (await orchestrator.store.get_project(handle.project_id)).generation_stage == "complete"


# ---------------------------------------------------------------------------
# abort
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_abort_discards_in_flight_output(make_orchestrator, session_factory, alice, hooks):
    gate = asyncio.Event()
    characters = FakeWorker("characters", gate=gate)
    designs = FakeWorker("designs")
    orchestrator = make_orchestrator(fake_registry(characters=characters, designs=designs))

    handle = await orchestrator.start(alice.id, make_brief())
    await characters.started.wait()

    assert await orchestrator.abort(handle.project_id, "user changed their mind")
    gate.set()
    await orchestrator.wait(handle.project_id)

    project = await orchestrator.store.get_project(handle.project_id)
    assert project.generation_stage == "failed"
    assert project.error_message == "user changed their mind"
    assert characters.calls == 1
    assert characters.persisted == 0
    assert designs.calls == 0

    rows = await _stage_rows(session_factory, handle.project_id)
    assert rows["characters"].status == "failed"
    assert rows["characters"].output is None
    assert ("cancel", "characters") in hooks.events

    async with session_factory() as session:
        run = await session.get(PipelineRun, handle.run_id)
    assert run.status == "failed"
    assert run.abort_reason == "user changed their mind"


@pytest.mark.asyncio
async def test_abort_is_idempotent(make_orchestrator, alice):
    orchestrator = make_orchestrator()
    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    # Complete projects are terminal
    assert not await orchestrator.abort(handle.project_id, "too late")
    project = await orchestrator.store.get_project(handle.project_id)
    assert project.generation_stage == "complete"


@pytest.mark.asyncio
async def test_failed_project_is_never_reentered(make_orchestrator, alice):
    script = FakeWorker("script", error=FatalStageError("bad script"), fail_times=1)
    orchestrator = make_orchestrator(fake_registry(script=script))

    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)
    assert (await orchestrator.store.get_project(handle.project_id)).generation_stage == "failed"

    assert not await orchestrator.executor.run(handle.project_id, "script", handle.run_id)
    assert not await orchestrator.executor.run(handle.project_id, "characters", handle.run_id)
    assert script.calls == 1
    assert (await orchestrator.store.get_project(handle.project_id)).generation_stage == "failed"


# ---------------------------------------------------------------------------
# resume
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_resume_starts_at_first_incomplete_stage(make_orchestrator, session_factory, alice):
    analyzing = FakeWorker("analyzing")
    script = FakeWorker("script")
    characters = FakeWorker("characters", error=FatalStageError("no cast"), fail_times=1)
    orchestrator = make_orchestrator(fake_registry(analyzing=analyzing, script=script, characters=characters))

    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)
    assert await orchestrator.store.completed_stages(handle.project_id) == ["analyzing", "script"]

    resumed = await orchestrator.resume(alice.id, handle.project_id)
    assert resumed.run_id != handle.run_id
    await orchestrator.wait(handle.project_id)

    project = await orchestrator.store.get_project(handle.project_id)
    assert project.generation_stage == "complete"
    assert project.error_message is None
    assert analyzing.calls == 1
    assert script.calls == 1
    assert characters.calls == 2
    # The resumed stage sees the committed outputs of the earlier run
    assert set(characters.contexts[-1].prior_outputs) == {"analyzing", "script"}

    # Re-running a stage upserts its row instead of adding one
    assert await _count(session_factory, StageOutput, handle.project_id) == len(STAGE_SEQUENCE)
    assert await _count(session_factory, PipelineRun, handle.project_id) == 2


@pytest.mark.asyncio
async def test_resume_requires_failed_project(make_orchestrator, alice):
    orchestrator = make_orchestrator()
    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    with pytest.raises(ConflictError):
        await orchestrator.resume(alice.id, handle.project_id)


@pytest.mark.asyncio
async def test_resume_of_foreign_or_unknown_project_is_not_found(make_orchestrator, alice, bob):
    script = FakeWorker("script", error=FatalStageError("bad"), fail_times=1)
    orchestrator = make_orchestrator(fake_registry(script=script))
    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    with pytest.raises(NotFoundError):
        await orchestrator.resume(bob.id, handle.project_id)
    with pytest.raises(NotFoundError):
        await orchestrator.resume(alice.id, uuid.uuid4())


@pytest.mark.asyncio
async def test_resume_waits_for_aborted_worker_to_finish(make_orchestrator, alice):
    gate = asyncio.Event()
    layouts = FakeWorker("layouts", gate=gate)
    orchestrator = make_orchestrator(fake_registry(layouts=layouts))

    handle = await orchestrator.start(alice.id, make_brief())
    await layouts.started.wait()
    await orchestrator.abort(handle.project_id, "stop")

    with pytest.raises(ConflictError):
        await orchestrator.resume(alice.id, handle.project_id)

    gate.set()
    await orchestrator.wait(handle.project_id)
    await orchestrator.resume(alice.id, handle.project_id)
    await orchestrator.wait(handle.project_id)
    assert (await orchestrator.store.get_project(handle.project_id)).generation_stage == "complete"
    assert layouts.calls == 2


# ---------------------------------------------------------------------------
# shutdown / recovery
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_recover_interrupted_fails_orphaned_projects(make_orchestrator, session_factory, alice):
    first = make_orchestrator()
    project, _ = await first.store.create_project(alice.id, make_brief())
    async with session_factory() as session:
        row = await session.get(Project, project.id)
        row.generation_stage = "panels"
        await session.commit()

    second = make_orchestrator()
    assert await second.recover_interrupted() == 1

    recovered = await second.store.get_project(project.id)
    assert recovered.generation_stage == "failed"
    assert recovered.error_message == INTERRUPTED_REASON
    # Nothing left to recover
    assert await second.recover_interrupted() == 0


@pytest.mark.asyncio
async def test_shutdown_then_recovery_allows_resume(make_orchestrator, alice):
    gate = asyncio.Event()
    dialogue = FakeWorker("dialogue", gate=gate)
    orchestrator = make_orchestrator(fake_registry(dialogue=dialogue))

    handle = await orchestrator.start(alice.id, make_brief())
    await dialogue.started.wait()
    await orchestrator.shutdown()
    assert not orchestrator.is_running(handle.project_id)

    restarted = make_orchestrator(fake_registry())
    assert await restarted.recover_interrupted() == 1
    await restarted.resume(alice.id, handle.project_id)
    await restarted.wait(handle.project_id)

    assert (await restarted.store.get_project(handle.project_id)).generation_stage == "complete"
    assert await restarted.store.completed_stages(handle.project_id) == list(STAGE_SEQUENCE)


@pytest.mark.asyncio
async def test_unloadable_stage_fails_project(make_orchestrator, alice):
    class BrokenRegistry:
        def get(self, stage):
            raise RuntimeError("registry exploded")

    orchestrator = make_orchestrator()
    orchestrator.executor._registry = BrokenRegistry()

    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    project = await orchestrator.store.get_project(handle.project_id)
    assert project.generation_stage == "failed"
    assert "registry exploded" in project.error_message
