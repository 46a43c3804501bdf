"""Character designs: one front-view reference image per cast member.

The stage also renders a style anchor, one wide establishing image that the
panels stage passes along as a style reference so every panel shares a look.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from comicpipe.config import PipelineConfig, settings
from comicpipe.db.models import Character, Project
from comicpipe.pipeline.base import StageContext, StageWorker, run_concurrently
from comicpipe.services.file_manager import FileManager
from comicpipe.services.image_generation import ImageGenerator

logger = logging.getLogger(__name__)

DESIGN_PROMPT = """Professional {art_style} comic character reference sheet, front view.

Character: {name}
{description}

Full body, neutral pose, facing the viewer, clean line art, consistent
proportions, plain white background, no text or labels."""

STYLE_ANCHOR_PROMPT = """{art_style} {genre} comic illustration, professional quality.

Scene: {story}
Setting: {setting}
Atmosphere: {atmosphere}

Wide establishing shot that sets the visual tone for the whole comic: line
weight, shading technique and level of detail. No text, letters or speech
bubbles."""

STYLE_PROMPT_SUFFIX = (
    "Style: {art_style}, matching the style reference image's line work, "
    "shading and level of detail."
)

# Long synopses are cut to keep the anchor prompt focused
_ANCHOR_STORY_CHARS = 2000


def build_style_anchor_prompt(art_style: str, genre: str, synopsis: str, analysis: dict) -> str:
    setting = analysis.get("setting") or {}
    return STYLE_ANCHOR_PROMPT.format(
        art_style=art_style,
        genre=genre or "manga",
        story=synopsis[:_ANCHOR_STORY_CHARS],
        setting=", ".join(part for part in (setting.get("location"), setting.get("time")) if part) or "unspecified",
        atmosphere=setting.get("atmosphere") or "unspecified",
    )


class DesignsWorker(StageWorker):
    """Runs the designs stage."""

    stage = "designs"

    def __init__(
        self,
        generator: Optional[ImageGenerator] = None,
        file_manager: Optional[FileManager] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self._generator = generator
        self._file_manager = file_manager
        self._config = config or settings.pipeline

    @property
    def generator(self) -> ImageGenerator:
        if self._generator is None:
            self._generator = ImageGenerator()
        return self._generator

    @property
    def file_manager(self) -> FileManager:
        if self._file_manager is None:
            self._file_manager = FileManager()
        return self._file_manager

    async def _style_anchor(self, context: StageContext) -> Optional[dict]:
        """Render the style anchor, or None when the model returns no image."""
        project = context.project
        prompt = build_style_anchor_prompt(
            project.style, project.genre, project.synopsis, context.prior_outputs.get("analyzing", {})
        )
        try:
            data = await self.generator.generate(prompt, aspect_ratio="16:9")
        except ValueError as e:
            logger.warning(f"Project {project.id}: style anchor skipped: {e}")
            return None
        filename = FileManager.style_anchor_filename()
        self.file_manager.save_asset(project.id, filename, data)
        return {
            "filename": filename,
            "url": FileManager.asset_url(project.id, filename),
            "prompt_suffix": STYLE_PROMPT_SUFFIX.format(art_style=project.style),
        }

    async def run(self, context: StageContext) -> dict:
        characters = context.output_of("characters").get("characters", [])
        project = context.project
        semaphore = asyncio.Semaphore(self._config.image_concurrency)
        done = 0

        style_anchor = None
        if self._config.style_anchor:
            style_anchor = await self._style_anchor(context)

        async def design(character: dict) -> dict:
            nonlocal done
            async with semaphore:
                prompt = DESIGN_PROMPT.format(
                    art_style=project.style,
                    name=character["name"],
                    description=character["description"],
                )
                data = await self.generator.generate(prompt, aspect_ratio="2:3")
            filename = FileManager.character_filename(character["handle"], "front")
            self.file_manager.save_asset(project.id, filename, data)
            done += 1
            await context.report_progress(done * 100 // max(1, len(characters)))
            return {
                "handle": character["handle"],
                "filename": filename,
                "front": FileManager.asset_url(project.id, filename),
            }

        designs = await run_concurrently(design(character) for character in characters)
        logger.info(
            f"Project {project.id}: {len(designs)} character designs generated"
            f"{', with style anchor' if style_anchor else ''}"
        )
        return {"characters": designs, "style_anchor": style_anchor}

    async def persist(self, session: AsyncSession, project: Project, output: dict) -> None:
        result = await session.execute(select(Character).where(Character.project_id == project.id))
        by_handle = {char.handle: char for char in result.scalars().all()}
        for design in output.get("characters", []):
            character = by_handle.get(design["handle"])
            if character is not None:
                character.reference_images = {
                    **(character.reference_images or {}),
                    "front": design["front"],
                }
