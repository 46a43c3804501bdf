"""Story analysis: extract the dramatic core and structure of the brief."""

import logging
import math
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from comicpipe.config import settings
from comicpipe.db.models import Project
from comicpipe.pipeline.base import StageContext, StageWorker
from comicpipe.schemas.comic import StoryAnalysis
from comicpipe.services.llm import LLMAdapter, get_adapter

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert comic editor and story analyst. You understand sequential "
    "art pacing, visual storytelling, genre conventions and dramatic craft: "
    "conflict, stakes and emotional arcs. Focus on emotional resonance over plot "
    "mechanics."
)

ANALYSIS_PROMPT = """Analyze this story for adaptation into a {page_count}-page comic.

**Input Story:**
{synopsis}

**Genre:** {genre}
**Target Pages:** {page_count}

1. Dramatic core: central conflict, stakes, and the turn (the single moment where
   everything changes). If the story lacks clear conflict or stakes, invent them
   while staying true to the premise.
2. Setting: time period, location and atmosphere.
3. Key scenes that must be included, with their importance and suggested page.
   The climax should land around page {climax_page}.
4. A recurring visual motif, if one fits.
5. The minimum cast size (2-6) needed to tell this story. Count only characters
   who physically appear; fewer pages means fewer characters.

Return your analysis in the specified JSON format."""


def climax_page(page_count: int) -> int:
    return max(1, math.floor(page_count * 0.75))


class AnalyzeStoryWorker(StageWorker):
    """Runs the analyzing stage."""

    stage = "analyzing"

    def __init__(self, adapter: Optional[LLMAdapter] = None):
        self._adapter = adapter

    @property
    def adapter(self) -> LLMAdapter:
        if self._adapter is None:
            self._adapter = get_adapter(settings.models.script_llm)
        return self._adapter

    async def run(self, context: StageContext) -> StoryAnalysis:
        project = context.project
        prompt = ANALYSIS_PROMPT.format(
            synopsis=project.synopsis,
            genre=project.genre or "Not specified",
            page_count=project.total_pages,
            climax_page=climax_page(project.total_pages),
        )
        analysis = await self.adapter.generate_text(
            prompt, StoryAnalysis, temperature=0.7, system_prompt=SYSTEM_PROMPT
        )
        logger.info(
            f"Project {project.id}: analysis theme='{analysis.main_theme}', "
            f"{len(analysis.key_scenes)} key scenes"
        )
        return analysis

    async def persist(self, session: AsyncSession, project: Project, output: dict) -> None:
        project.story_analysis = output
