"""Panel artwork: generate an image for every planned panel."""

import asyncio
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from comicpipe.config import PipelineConfig, settings
from comicpipe.db.models import Page, Panel, Project
from comicpipe.pipeline.base import StageContext, StageWorker, run_concurrently
from comicpipe.services.file_manager import FileManager
from comicpipe.services.image_generation import ImageGenerator

logger = logging.getLogger(__name__)

PANEL_PROMPT = """{art_style} comic panel.

Scene: {prompt}
{cast}
Composition: {shape} panel. Leave some empty background space for speech
bubbles. No text, letters or speech bubbles in the image."""


def panel_aspect_ratio(width: int, height: int) -> str:
    """Closest supported aspect ratio for a panel's pixel size."""
    if width <= 0 or height <= 0:
        return "1:1"
    ratio = width / height
    choices = {"1:1": 1.0, "4:3": 4 / 3, "3:4": 3 / 4, "16:9": 16 / 9, "9:16": 9 / 16, "2:3": 2 / 3, "3:2": 3 / 2}
    return min(choices, key=lambda name: abs(choices[name] - ratio))


def build_panel_prompt(panel: dict, art_style: str, characters: dict[str, dict], style_suffix: str = "") -> str:
    cast_lines = []
    for handle in panel.get("character_handles", []):
        character = characters.get(handle)
        if character is not None:
            cast_lines.append(f"- {character['name']} ({handle}): {character['description']}")
    cast = "Characters:\n" + "\n".join(cast_lines) if cast_lines else ""
    shape = "tall" if panel["height"] > panel["width"] else "wide"
    prompt = PANEL_PROMPT.format(art_style=art_style, prompt=panel["prompt"], cast=cast, shape=shape)
    if style_suffix:
        prompt = f"{prompt}\n\n{style_suffix}"
    return prompt


class PanelsWorker(StageWorker):
    """Runs the panels stage."""

    stage = "panels"

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

    def _reference_images(self, project_id: uuid.UUID, designs: dict[str, dict], handles: list[str]) -> list[bytes]:
        images = []
        for handle in handles:
            design = designs.get(handle)
            if design is None:
                continue
            data = self.file_manager.read_asset(project_id, design["filename"])
            if data is not None:
                images.append(data)
        return images

    async def run(self, context: StageContext) -> dict:
        project = context.project
        pages = context.output_of("layouts").get("pages", [])
        characters = {c["handle"]: c for c in context.output_of("characters").get("characters", [])}
        design_output = context.output_of("designs")
        designs = {d["handle"]: d for d in design_output.get("characters", [])}
        style_anchor = design_output.get("style_anchor") or {}
        style_reference = None
        if style_anchor:
            style_reference = self.file_manager.read_asset(project.id, style_anchor["filename"])
        style_suffix = style_anchor.get("prompt_suffix", "") if style_reference else ""

        jobs = [(page["page_number"], panel) for page in pages for panel in page["panels"]]
        semaphore = asyncio.Semaphore(self._config.image_concurrency)
        done = 0

        async def render(page_number: int, panel: dict) -> dict:
            nonlocal done
            async with semaphore:
                data = await self.generator.generate(
                    build_panel_prompt(panel, project.style, characters, style_suffix),
                    aspect_ratio=panel_aspect_ratio(panel["width"], panel["height"]),
                    reference_images=self._reference_images(project.id, designs, panel["character_handles"]),
                    style_reference=style_reference,
                )
            filename = FileManager.panel_filename(page_number, panel["panel_index"])
            self.file_manager.save_asset(project.id, filename, data)
            done += 1
            await context.report_progress(done * 100 // max(1, len(jobs)))
            return {
                "page_number": page_number,
                "panel_index": panel["panel_index"],
                "filename": filename,
                "image_url": FileManager.asset_url(project.id, filename),
            }

        rendered = await run_concurrently(render(number, panel) for number, panel in jobs)
        logger.info(f"Project {project.id}: {len(rendered)} panel images generated")
        return {"panels": rendered}

    async def persist(self, session: AsyncSession, project: Project, output: dict) -> None:
        result = await session.execute(
            select(Page.page_number, Panel)
            .join(Panel, Panel.page_id == Page.id)
            .where(Page.project_id == project.id)
        )
        by_key = {(number, panel.panel_index): panel for number, panel in result.all()}
        for item in output.get("panels", []):
            panel = by_key.get((item["page_number"], item["panel_index"]))
            if panel is not None:
                panel.image_url = item["image_url"]
