"""Shared fixtures: temporary databases, users, fake workers and AI services."""

import asyncio
from typing import Optional

import pytest
import pytest_asyncio

from comicpipe.api.deps import hash_token
from comicpipe.db import build_engine, build_session_factory, init_database
from comicpipe.db.models import User
from comicpipe.orchestrator.hooks import StageHooks
from comicpipe.orchestrator.pipeline import PipelineOrchestrator
from comicpipe.orchestrator.retry import RetryPolicy
from comicpipe.orchestrator.state import STAGE_SEQUENCE
from comicpipe.pipeline.base import StageContext, StageRegistry, StageWorker
from comicpipe.schemas.brief import StoryBrief
from comicpipe.schemas.comic import (
    CharacterProfile,
    CharacterSheet,
    DramaticCore,
    EnhancedPage,
    EnhancedPanel,
    EnhancedScript,
    KeyScene,
    Script,
    ScriptCharacter,
    ScriptPage,
    ScriptPanel,
    Setting,
    StoryAnalysis,
    VisionBubble,
    VisionBubbleLayout,
)
from comicpipe.services.llm import LLMAdapter

ALICE_TOKEN = "alice-token"
BOB_TOKEN = "bob-token"

# Smallest valid PNG header; the pipeline never decodes images
FAKE_PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16

FAST_RETRIES = RetryPolicy(max_attempts=3, initial_backoff_ms=1, max_backoff_ms=1, jitter_ms=0)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'comicpipe-test.db'}")
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return build_session_factory(db_engine)


async def _make_user(session_factory, name: str, token: str) -> User:
    async with session_factory() as session:
        user = User(name=name, api_token_hash=hash_token(token))
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


@pytest_asyncio.fixture
async def alice(session_factory):
    return await _make_user(session_factory, "alice", ALICE_TOKEN)


@pytest_asyncio.fixture
async def bob(session_factory):
    return await _make_user(session_factory, "bob", BOB_TOKEN)


def make_brief(pages: int = 2, **overrides) -> StoryBrief:
    values = {
        "synopsis": "A courier races a storm across the floating islands.",
        "art_style": "manga",
        "total_pages": pages,
        "genre": "adventure",
    }
    values.update(overrides)
    return StoryBrief(**values)


# ---------------------------------------------------------------------------
# Fake stage workers
# ---------------------------------------------------------------------------

class FakeWorker(StageWorker):
    """Configurable stand-in for a real stage worker.

    Fails the first ``fail_times`` calls with ``error``, optionally blocks on
    ``gate`` and records every context it was called with.
    """

    def __init__(
        self,
        stage: str,
        error: Optional[BaseException] = None,
        fail_times: int = 0,
        gate: Optional[asyncio.Event] = None,
        delay: float = 0.0,
        output: Optional[dict] = None,
    ):
        self.stage = stage
        self.output = output
        self.error = error
        self.fail_times = fail_times
        self.gate = gate
        self.delay = delay
        self.started = asyncio.Event()
        self.contexts: list[StageContext] = []
        self.persisted = 0

    @property
    def calls(self) -> int:
        return len(self.contexts)

    async def run(self, context: StageContext) -> dict:
        self.contexts.append(context)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None and self.calls <= self.fail_times:
            raise self.error
        await context.report_progress(50)
        if self.output is not None:
            return self.output
        return {"stage": self.stage, "attempt": context.attempt}

    async def persist(self, session, project, output):
        self.persisted += 1


def fake_registry(**overrides: StageWorker) -> StageRegistry:
    return StageRegistry(overrides.get(stage) or FakeWorker(stage) for stage in STAGE_SEQUENCE)


class RecordingHooks(StageHooks):
    def __init__(self):
        self.events: list[tuple] = []

    async def on_start_attempt(self, project_id, stage, attempt):
        self.events.append(("start", stage, attempt))

    async def on_success(self, project_id, stage, duration_seconds):
        self.events.append(("success", stage))

    async def on_failure(self, project_id, stage, error, will_retry):
        self.events.append(("failure", stage, error.retryable, will_retry))

    async def on_cancel(self, project_id, stage, reason):
        self.events.append(("cancel", stage))


@pytest.fixture
def hooks():
    return RecordingHooks()


@pytest_asyncio.fixture
async def make_orchestrator(session_factory, hooks):
    """Build orchestrators over the test database; shut them all down after."""
    created: list[PipelineOrchestrator] = []

    def factory(registry: Optional[StageRegistry] = None, retry_policy: RetryPolicy = FAST_RETRIES, config=None):
        orchestrator = PipelineOrchestrator(
            registry or fake_registry(),
            session_factory=session_factory,
            retry_policy=retry_policy,
            hooks=[hooks],
            config=config,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        await orchestrator.shutdown()


# ---------------------------------------------------------------------------
# Fake AI services
# ---------------------------------------------------------------------------

def sample_script(pages: int = 2) -> Script:
    return Script(
        title="Storm Courier",
        characters=[
            ScriptCharacter(name="Mira Vale", description="A daring courier"),
            ScriptCharacter(name="Tobin", description="Her anxious mechanic"),
        ],
        pages=[
            ScriptPage(
                page_number=number,
                layout_template_id="dialogue-4panel",
                story_beat="rising-action",
                panels=[
                    ScriptPanel(
                        panel_number=index + 1,
                        scene_description=f"Page {number} panel {index + 1}",
                        prompt=f"Mira and Tobin on the deck, shot {index + 1}",
                        characters=["Mira Vale", "Tobin"] if index == 0 else ["Mira Vale"],
                        dialogue="We fly at dawn!" if index < 2 else "",
                        narration="The storm was coming." if index == 0 else "",
                    )
                    for index in range(4)
                ],
            )
            for number in range(1, pages + 1)
        ],
    )


class FakeLLMAdapter(LLMAdapter):
    """Returns canned structured output keyed by the requested schema."""

    def __init__(self, script_pages: int = 2, vision_error: Optional[Exception] = None):
        self.script_pages = script_pages
        self.vision_error = vision_error
        self.text_calls: list[type] = []
        self.image_calls = 0

    async def generate_text(self, prompt, schema, *, temperature=0.7, system_prompt=None):
        self.text_calls.append(schema)
        if schema is StoryAnalysis:
            return StoryAnalysis(
                language="English",
                main_theme="Courage",
                dramatic_core=DramaticCore(
                    central_conflict="Courier vs storm",
                    stakes="The islands lose their medicine",
                    the_turn="The engine fails mid-flight",
                ),
                setting=Setting(time="Far future", location="Floating islands", atmosphere="Tense"),
                key_scenes=[KeyScene(description="Takeoff", importance="high", suggested_page=1)],
            )
        if schema is Script:
            return sample_script(self.script_pages)
        if schema is EnhancedScript:
            return EnhancedScript(
                pages=[EnhancedPage(
                    page_number=1,
                    panels=[EnhancedPanel(panel_number=1, dialogue="We fly at dawn, storm or not!")],
                    page_hook="The engine coughs.",
                )],
                enhancement_notes="Sharper opening line",
            )
        if schema is CharacterSheet:
            return CharacterSheet(characters=[
                CharacterProfile(
                    name="Mira Vale",
                    physical_description="Tall, short red hair",
                    clothing_description="Flight jacket",
                    expressions=["determined", "grinning"],
                ),
                CharacterProfile(
                    name="Tobin",
                    physical_description="Stocky, goggles",
                    clothing_description="Oil-stained overalls",
                ),
            ])
        raise AssertionError(f"Unexpected schema {schema.__name__}")

    async def analyze_image(self, image_bytes, prompt, schema, *, mime_type="image/png", temperature=0.4):
        self.image_calls += 1
        if self.vision_error is not None:
            raise self.vision_error
        return VisionBubbleLayout(bubbles=[
            VisionBubble(relative_x=0.05, relative_y=0.05, relative_width=0.4, relative_height=0.15),
            VisionBubble(relative_x=0.55, relative_y=0.75, relative_width=0.4, relative_height=0.15),
        ])


class FakeImageGenerator:
    def __init__(self):
        self.prompts: list[str] = []
        self.aspect_ratios: list[str] = []
        self.style_references: list[Optional[bytes]] = []

    async def generate(
        self, prompt: str, aspect_ratio: str = "2:3", reference_images=None, style_reference=None
    ) -> bytes:
        self.prompts.append(prompt)
        self.aspect_ratios.append(aspect_ratio)
        self.style_references.append(style_reference)
        return FAKE_PNG
