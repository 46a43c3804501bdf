"""Error classification, retry policy and per-stage attempt accounting."""

import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest
from google.genai.errors import ClientError, ServerError
from ollama import ResponseError
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select

from comicpipe.config import PipelineConfig, Settings
from comicpipe.db.models import StageOutput
from comicpipe.errors import FatalStageError, RetryableStageError
from comicpipe.orchestrator.executor import classify_error
from comicpipe.orchestrator.retry import RetryPolicy
from comicpipe.pipeline.base import run_concurrently
from comicpipe.pipeline.designs import DesignsWorker
from comicpipe.pipeline.layouts import plan_page
from comicpipe.pipeline.panels import PanelsWorker
from comicpipe.schemas.brief import StoryBrief
from comicpipe.schemas.comic import Script
from comicpipe.services.file_manager import FileManager
from comicpipe.services.image_generation import ImageGenerator
from comicpipe.services.llm.vertex_adapter import VertexAIAdapter

from conftest import FAKE_PNG, FAST_RETRIES, FakeWorker, fake_registry, make_brief, sample_script


def _http_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://example.test/generate")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


# ---------------------------------------------------------------------------
# classify_error
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("exc", [
    TimeoutError(),
    _http_error(429),
    _http_error(503),
    httpx.ConnectError("connection refused"),
    ResponseError("rate limited", 429),
    ResponseError("bad gateway", 502),
    ConnectionResetError("reset by peer"),
    ServerError(500, {"error": {"message": "backend error", "status": "INTERNAL"}}),
    ClientError(429, {"error": {"message": "quota", "status": "RESOURCE_EXHAUSTED"}}),
])
def test_transient_errors_are_retryable(exc):
    error = classify_error(exc, "script")
    assert isinstance(error, RetryableStageError)
    assert error.retryable
    assert error.stage == "script"


@pytest.mark.parametrize("exc", [
    _http_error(400),
    _http_error(404),
    ResponseError("model not found", 404),
    ClientError(400, {"error": {"message": "invalid argument", "status": "INVALID_ARGUMENT"}}),
    json.JSONDecodeError("Expecting value", "not json", 0),
    ValueError("No image generated in response"),
    KeyError("pages"),
])
def test_other_errors_are_fatal(exc):
    error = classify_error(exc, "panels")
    assert isinstance(error, FatalStageError)
    assert not error.retryable


def test_schema_validation_errors_are_fatal():
    with pytest.raises(PydanticValidationError) as excinfo:
        StoryBrief.model_validate({"synopsis": "x"})
    assert isinstance(classify_error(excinfo.value, "script"), FatalStageError)


def test_timeout_message_names_the_stage():
    assert classify_error(TimeoutError(), "designs").message == "Stage 'designs' timed out"


def test_stage_errors_pass_through_with_stage_filled_in():
    original = RetryableStageError("flaky")
    error = classify_error(original, "layouts")
    assert error is original
    assert error.stage == "layouts"


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------

def test_zero_attempts_still_runs_once():
    assert RetryPolicy(max_attempts=0).attempts == 1
    assert RetryPolicy(max_attempts=3).attempts == 3


def test_development_environment_disables_retries():
    policy = RetryPolicy.from_settings(Settings(environment="development"))
    assert policy.max_attempts == 0
    assert policy.attempts == 1


def test_production_uses_configured_attempts():
    policy = RetryPolicy.from_settings(Settings(environment="production"))
    assert policy.max_attempts == 3


def test_backoff_grows_exponentially_and_caps():
    policy = RetryPolicy()
    assert policy.backoff_seconds(1) == 1.0
    assert policy.backoff_seconds(2) == 2.0
    assert policy.backoff_seconds(3) == 4.0
    assert policy.backoff_seconds(10) == 10.0


# ---------------------------------------------------------------------------
# Attempts through the executor
# ---------------------------------------------------------------------------

async def _stage_row(session_factory, project_id, stage) -> StageOutput:
    async with session_factory() as session:
        result = await session.execute(
            select(StageOutput).where(StageOutput.project_id == project_id, StageOutput.stage == stage)
        )
        return result.scalar_one()


@pytest.mark.asyncio
async def test_retryable_failure_is_attempted_max_attempts_times(make_orchestrator, session_factory, alice, hooks):
    script = FakeWorker("script", error=RetryableStageError("flaky"), fail_times=99)
    orchestrator = make_orchestrator(fake_registry(script=script))

    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    project = await orchestrator.store.get_project(handle.project_id)
    assert script.calls == 3
    assert project.generation_stage == "failed"
    assert "flaky" in project.error_message
    row = await _stage_row(session_factory, handle.project_id, "script")
    assert row.attempts == 3
    assert row.status == "failed"

    failures = [event for event in hooks.events if event[0] == "failure"]
    assert failures == [
        ("failure", "script", True, True),
        ("failure", "script", True, True),
        ("failure", "script", True, False),
    ]


@pytest.mark.asyncio
async def test_zero_max_attempts_aborts_on_first_failure(make_orchestrator, alice):
    script = FakeWorker("script", error=RetryableStageError("flaky"), fail_times=99)
    orchestrator = make_orchestrator(
        fake_registry(script=script),
        retry_policy=RetryPolicy(max_attempts=0, initial_backoff_ms=1, max_backoff_ms=1, jitter_ms=0),
    )

    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    assert script.calls == 1
    assert (await orchestrator.store.get_project(handle.project_id)).generation_stage == "failed"


@pytest.mark.asyncio
async def test_fatal_failure_is_not_retried(make_orchestrator, alice):
    characters = FakeWorker("characters", error=ValueError("malformed cast"), fail_times=99)
    designs = FakeWorker("designs")
    orchestrator = make_orchestrator(fake_registry(characters=characters, designs=designs))

    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    project = await orchestrator.store.get_project(handle.project_id)
    assert characters.calls == 1
    assert designs.calls == 0
    assert project.generation_stage == "failed"
    assert project.error_message.startswith("Stage 'characters' failed")


@pytest.mark.asyncio
async def test_transient_failure_recovers_within_budget(make_orchestrator, session_factory, alice):
    panels = FakeWorker("panels", error=httpx.ConnectError("refused"), fail_times=2)
    orchestrator = make_orchestrator(fake_registry(panels=panels))

    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    assert panels.calls == 3
    assert panels.contexts[-1].attempt == 3
    assert (await orchestrator.store.get_project(handle.project_id)).generation_stage == "complete"
    row = await _stage_row(session_factory, handle.project_id, "panels")
    assert row.status == "complete"
    assert row.output == {"stage": "panels", "attempt": 3}


@pytest.mark.asyncio
async def test_stage_timeout_is_retried_then_aborts(make_orchestrator, alice):
    layouts = FakeWorker("layouts", delay=5.0)
    config = Settings(pipeline=PipelineConfig(stage_timeouts={"layouts": 0.05}))
    orchestrator = make_orchestrator(
        fake_registry(layouts=layouts),
        retry_policy=RetryPolicy(max_attempts=2, initial_backoff_ms=1, max_backoff_ms=1, jitter_ms=0),
        config=config,
    )

    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    project = await orchestrator.store.get_project(handle.project_id)
    assert layouts.calls == 2
    assert project.generation_stage == "failed"
    assert "timed out" in project.error_message


@pytest.mark.asyncio
async def test_timeout_resolution_order(make_orchestrator):
    class SlowWorker(FakeWorker):
        timeout_seconds = 42.0

    config = Settings(pipeline=PipelineConfig(stage_timeout_seconds=7.0, stage_timeouts={"panels": 3.0}))
    orchestrator = make_orchestrator(config=config)

    assert orchestrator.executor.timeout_for("panels", SlowWorker("panels")) == 3.0
    assert orchestrator.executor.timeout_for("designs", SlowWorker("designs")) == 42.0
    assert orchestrator.executor.timeout_for("script", FakeWorker("script")) == 7.0


# ---------------------------------------------------------------------------
# Provider calls and sibling tasks
# ---------------------------------------------------------------------------

class _UnreachableModels:
    """Stands in for ``client.aio.models``; every request fails to connect."""

    def __init__(self):
        self.calls = 0

    async def generate_content(self, **kwargs):
        self.calls += 1
        raise httpx.ConnectError("connection refused")


def _client_for(models: _UnreachableModels):
    return lambda location=None: SimpleNamespace(aio=SimpleNamespace(models=models))


@pytest.mark.asyncio
@pytest.mark.parametrize("policy, expected_calls", [
    (RetryPolicy(max_attempts=0, initial_backoff_ms=1, max_backoff_ms=1, jitter_ms=0), 1),
    (FAST_RETRIES, 3),
])
async def test_image_provider_is_called_once_per_stage_attempt(
    monkeypatch, make_orchestrator, alice, tmp_path, policy, expected_calls
):
    models = _UnreachableModels()
    monkeypatch.setattr("comicpipe.services.image_generation.get_vertex_client", _client_for(models))
    characters = FakeWorker("characters", output={"characters": [
        {"handle": "@miravale", "name": "Mira Vale", "description": "A daring courier"},
    ]})
    designs = DesignsWorker(
        generator=ImageGenerator(model_id="gemini-2.5-flash-image"),
        file_manager=FileManager(tmp_path),
        config=PipelineConfig(style_anchor=False),
    )
    orchestrator = make_orchestrator(
        fake_registry(characters=characters, designs=designs), retry_policy=policy
    )

    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    assert models.calls == expected_calls
    assert (await orchestrator.store.get_project(handle.project_id)).generation_stage == "failed"


@pytest.mark.asyncio
async def test_llm_adapter_makes_a_single_request(monkeypatch):
    models = _UnreachableModels()
    monkeypatch.setattr("comicpipe.services.llm.vertex_adapter.get_vertex_client", _client_for(models))

    with pytest.raises(httpx.ConnectError):
        await VertexAIAdapter("gemini-2.5-flash").generate_text("Write the script", Script)

    assert models.calls == 1


@pytest.mark.asyncio
async def test_first_failure_cancels_siblings_and_is_raised_unwrapped():
    cancelled = []

    async def slow(index):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(index)
            raise

    async def refused():
        raise httpx.ConnectError("connection refused")

    with pytest.raises(httpx.ConnectError) as excinfo:
        await run_concurrently([slow(1), refused(), slow(2)])

    assert sorted(cancelled) == [1, 2]
    assert isinstance(classify_error(excinfo.value, "panels"), RetryableStageError)


@pytest.mark.asyncio
async def test_run_concurrently_keeps_submission_order():
    async def delayed(value, seconds):
        await asyncio.sleep(seconds)
        return value

    assert await run_concurrently([delayed("a", 0.02), delayed("b", 0), delayed("c", 0.01)]) == ["a", "b", "c"]


class _CountingGenerator:
    """Fails its first request, then tracks how many requests overlap."""

    def __init__(self):
        self.calls = 0
        self.in_flight = 0
        self.peak = 0

    async def generate(self, prompt, aspect_ratio="2:3", reference_images=None, style_reference=None):
        self.calls += 1
        if self.calls == 1:
            raise httpx.ConnectError("connection refused")
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.05)
        finally:
            self.in_flight -= 1
        return FAKE_PNG


@pytest.mark.asyncio
async def test_image_concurrency_holds_across_a_retried_attempt(make_orchestrator, alice, tmp_path):
    generator = _CountingGenerator()
    layouts = FakeWorker("layouts", output={
        "pages": [plan_page(page, 1200, 1800) for page in sample_script(2).pages],
    })
    panels = PanelsWorker(
        generator=generator,
        file_manager=FileManager(tmp_path),
        config=PipelineConfig(image_concurrency=2),
    )
    orchestrator = make_orchestrator(fake_registry(layouts=layouts, panels=panels), retry_policy=FAST_RETRIES)

    handle = await orchestrator.start(alice.id, make_brief())
    await orchestrator.wait(handle.project_id)

    assert (await orchestrator.store.get_project(handle.project_id)).generation_stage == "complete"
    # Requests from the failed attempt never overlap the retry
    assert generator.peak <= 2
    assert generator.in_flight == 0
