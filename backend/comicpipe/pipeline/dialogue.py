"""Dialogue placement: position every panel's speech bubbles."""

import logging
import uuid
from typing import Optional

import pydantic
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from comicpipe.config import PipelineConfig, settings
from comicpipe.db.models import Page, Panel, Project
from comicpipe.pipeline.base import StageContext, StageWorker
from comicpipe.pipeline.bubbles import (
    adjust_for_overlap,
    needs_ai_positioning,
    rule_based_position,
    to_absolute,
    validate_bubble_position,
)
from comicpipe.schemas.comic import VisionBubbleLayout
from comicpipe.services.file_manager import FileManager
from comicpipe.services.llm import LLMAdapter, get_adapter

logger = logging.getLogger(__name__)

VISION_PROMPT = """Analyze this comic panel and choose positions for its speech bubbles.

Scene: {prompt}
Characters: {characters}

Bubbles to place, in reading order:
{bubbles}

Rules:
1. Never cover faces or important visual elements.
2. Do not obscure the action.
3. Follow reading flow: top to bottom.
4. Prefer empty background areas.
5. Narration boxes usually go at the top.
6. Dialogue bubbles sit near the speaking character; aim the tail at their mouth.

Return one position per bubble, all values on a 0-1 scale."""


class DialogueWorker(StageWorker):
    """Runs the dialogue stage."""

    stage = "dialogue"

    def __init__(
        self,
        adapter: Optional[LLMAdapter] = None,
        file_manager: Optional[FileManager] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self._adapter = adapter
        self._file_manager = file_manager
        self._config = config or settings.pipeline

    @property
    def adapter(self) -> LLMAdapter:
        if self._adapter is None:
            self._adapter = get_adapter(settings.models.vision_llm)
        return self._adapter

    @property
    def file_manager(self) -> FileManager:
        if self._file_manager is None:
            self._file_manager = FileManager()
        return self._file_manager

    async def run(self, context: StageContext) -> dict:
        pages = context.output_of("layouts").get("pages", [])
        images = {
            (item["page_number"], item["panel_index"]): item["filename"]
            for item in context.output_of("panels").get("panels", [])
        }

        placed = []
        for page_done, page in enumerate(pages, start=1):
            for panel in page["panels"]:
                filename = images.get((page["page_number"], panel["panel_index"]))
                bubbles = await self.place_bubbles(context.project.id, panel, filename)
                placed.append({
                    "page_number": page["page_number"],
                    "panel_index": panel["panel_index"],
                    "bubbles": bubbles,
                })
            await context.report_progress(page_done * 100 // len(pages))

        return {"panels": placed}

    async def place_bubbles(self, project_id: uuid.UUID, panel: dict, image_filename: Optional[str]) -> list[dict]:
        bubbles = panel.get("bubbles") or []
        if not bubbles:
            return []

        positioned = None
        if (
            self._config.vision_bubbles
            and image_filename
            and needs_ai_positioning(bubbles, panel.get("character_handles", []), panel.get("prompt", ""))
        ):
            positioned = await self._vision_positions(project_id, panel, bubbles, image_filename)
        if positioned is None:
            positioned = [rule_based_position(bubble, index) for index, bubble in enumerate(bubbles)]

        adjusted = adjust_for_overlap(positioned)
        return [to_absolute(bubble, panel["width"], panel["height"]) for bubble in adjusted]

    async def _vision_positions(
        self, project_id: uuid.UUID, panel: dict, bubbles: list[dict], image_filename: str
    ) -> Optional[list[dict]]:
        image = self.file_manager.read_asset(project_id, image_filename)
        if image is None:
            return None

        prompt = VISION_PROMPT.format(
            prompt=panel.get("prompt", ""),
            characters=", ".join(panel.get("character_handles", [])) or "none specified",
            bubbles="\n".join(
                f'{index + 1}. [{bubble["type"]}] "{bubble["text"]}"' for index, bubble in enumerate(bubbles)
            ),
        )
        try:
            layout = await self.adapter.analyze_image(image, prompt, VisionBubbleLayout, temperature=0.3)
        except (pydantic.ValidationError, ValueError) as exc:
            logger.warning(f"Vision bubble placement unusable, falling back to rules: {exc}")
            return None
        if not layout.bubbles:
            return None

        positioned = []
        for index, bubble in enumerate(bubbles):
            suggestion = layout.bubbles[index] if index < len(layout.bubbles) else layout.bubbles[0]
            candidate = suggestion.model_dump(exclude={"tail_target"})
            if validate_bubble_position(candidate):
                positioned.append({
                    **bubble,
                    **candidate,
                    "tail": suggestion.tail_target.model_dump() if suggestion.tail_target else None,
                    "positioning_method": "ai-vision",
                })
            else:
                positioned.append(rule_based_position(bubble, index))
        return positioned

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
                panel.bubbles = item["bubbles"]
