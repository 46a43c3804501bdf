"""Script generation: turn the brief and analysis into a paged script."""

import logging
import math
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from comicpipe.config import PipelineConfig, settings
from comicpipe.db.models import Project
from comicpipe.errors import FatalStageError
from comicpipe.pipeline.analyze import climax_page
from comicpipe.pipeline.base import StageContext, StageWorker
from comicpipe.pipeline.layouts import LAYOUT_TEMPLATES
from comicpipe.schemas.comic import EnhancedScript, Script, StoryAnalysis
from comicpipe.services.llm import LLMAdapter, get_adapter

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a master {genre} comic scriptwriter. You understand panel-to-panel "
    "transitions, how to balance dialogue with visual storytelling, pacing in "
    "sequential art, character expression and sound effects."
)

SCRIPT_PROMPT = """Convert this story into a production-ready comic script.

**Story Description:**
{synopsis}

**Art Style:** {art_style}
**Genre:** {genre}
**Total Pages:** {page_count}
**Language:** {language}

**Story Analysis:**
- Theme: {theme}
- Central conflict: {conflict}
- Stakes: {stakes}
- The turn: {turn}
- Setting: {setting}

**Structure:**
- Create EXACTLY {page_count} pages.
- Page 1, Panel 1 MUST establish the setting with a wide establishing shot.
- Pages 1-{early_pages}: introduction and setup.
- Page {climax_page}: the climax and turning point.
- Page {page_count}: resolution.
- End each page with a micro-hook to turn the page.

**Layouts:** choose one template per page. The number of panels MUST match:
{layouts}

**Dialogue:** keep it concise and punchy; it has to fit in a bubble. Use an
empty string when a panel has no dialogue or narration.

Use the exact character names from your character list in every panel."""

DRAMA_PROMPT = """You are a comic editor reviewing a script draft. Punch up the drama
without changing the structure.

**Dramatic core:**
- Central conflict: {conflict}
- Stakes: {stakes}
- The turn: {turn}
- Climax page: {climax_page}

**Script draft:**
{script_json}

**Tasks:**
- Sharpen dialogue: shorter lines, more subtext, every line reveals character
  or raises tension.
- Add micro-tension to quiet panels through glances, hesitations and small details.
- Strengthen scene descriptions and image prompts with mood and composition.
- Make page {climax_page} hit hardest; the turn must land visually and emotionally.
- Give every page a page hook that pulls the reader to the next page.

**Do NOT** change the number of pages or panels, renumber them, rename
characters, or change layouts and shot types.

Return every page and panel with its original number and the rewritten text
fields. Leave a field empty to keep the draft text."""

_ENHANCED_PANEL_FIELDS = ("scene_description", "prompt", "dialogue", "narration", "emotion")


def _layout_menu() -> str:
    return "\n".join(
        f"- {template.id} ({len(template.panels)} panels): {template.description}"
        for template in LAYOUT_TEMPLATES.values()
    )


def merge_enhanced_script(script: Script, enhanced: EnhancedScript) -> Script:
    """Apply a drama pass to a script draft without changing its structure.

    Pages and panels are matched by number. Empty enhanced fields keep the
    draft text, and pages or panels the pass invented are ignored.
    """
    enhanced_pages = {page.page_number: page for page in enhanced.pages}
    for page in script.pages:
        update = enhanced_pages.get(page.page_number)
        if update is None:
            continue
        if update.page_hook.strip():
            page.page_hook = update.page_hook.strip()
        enhanced_panels = {panel.panel_number: panel for panel in update.panels}
        for panel in page.panels:
            change = enhanced_panels.get(panel.panel_number)
            if change is None:
                continue
            for name in _ENHANCED_PANEL_FIELDS:
                value = getattr(change, name).strip()
                if value:
                    setattr(panel, name, value)
            if change.sound_effects:
                panel.sound_effects = list(change.sound_effects)
    return script


class ScriptWorker(StageWorker):
    """Runs the script stage.

    Drafts the paged script, then (when enabled) runs a drama pass that
    rewrites dialogue, descriptions and page hooks while keeping every page
    and panel in place.
    """

    stage = "script"

    def __init__(self, adapter: Optional[LLMAdapter] = None, config: Optional[PipelineConfig] = None):
        self._adapter = adapter
        self._config = config or settings.pipeline

    @property
    def adapter(self) -> LLMAdapter:
        if self._adapter is None:
            self._adapter = get_adapter(settings.models.script_llm)
        return self._adapter

    async def run(self, context: StageContext) -> Script:
        project = context.project
        analysis = StoryAnalysis.model_validate(context.output_of("analyzing"))
        genre = project.genre or "manga"
        pages = project.total_pages

        prompt = SCRIPT_PROMPT.format(
            synopsis=project.synopsis,
            art_style=project.style,
            genre=genre,
            page_count=pages,
            language=analysis.language,
            theme=analysis.main_theme,
            conflict=analysis.dramatic_core.central_conflict,
            stakes=analysis.dramatic_core.stakes,
            turn=analysis.dramatic_core.the_turn,
            setting=f"{analysis.setting.location}, {analysis.setting.time} ({analysis.setting.atmosphere})",
            early_pages=math.ceil(pages * 0.25),
            climax_page=climax_page(pages),
            layouts=_layout_menu(),
        )
        script = await self.adapter.generate_text(
            prompt, Script, temperature=0.7, system_prompt=SYSTEM_PROMPT.format(genre=genre)
        )

        if not script.pages:
            raise FatalStageError("Script contains no pages", stage=self.stage)
        # Keep the requested page count even if the model over-delivers
        script.pages = sorted(script.pages, key=lambda page: page.page_number)[:pages]
        for number, page in enumerate(script.pages, start=1):
            page.page_number = number

        if self._config.drama_enhancement:
            await context.report_progress(50)
            script = await self._enhance_drama(script, analysis, genre)

        logger.info(
            f"Project {project.id}: script '{script.title}' with {len(script.pages)} pages, "
            f"{len(script.characters)} characters"
        )
        return script

    async def _enhance_drama(self, script: Script, analysis: StoryAnalysis, genre: str) -> Script:
        prompt = DRAMA_PROMPT.format(
            conflict=analysis.dramatic_core.central_conflict,
            stakes=analysis.dramatic_core.stakes,
            turn=analysis.dramatic_core.the_turn,
            climax_page=climax_page(len(script.pages)),
            script_json=script.model_dump_json(include={"pages"}, indent=2),
        )
        try:
            enhanced = await self.adapter.generate_text(
                prompt, EnhancedScript, temperature=0.7, system_prompt=SYSTEM_PROMPT.format(genre=genre)
            )
        except ValueError as e:
            # Malformed model output (pydantic ValidationError is a ValueError)
            logger.warning(f"Drama pass returned unusable output, keeping the draft: {e}")
            return script

        if enhanced.enhancement_notes:
            logger.info(f"Drama pass: {enhanced.enhancement_notes}")
        return merge_enhanced_script(script, enhanced)

    async def persist(self, session: AsyncSession, project: Project, output: dict) -> None:
        project.title = output.get("title") or project.title
        project.script_data = output
