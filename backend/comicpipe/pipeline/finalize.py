"""Finalizing: summarize what was generated and settle the preview flag."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from comicpipe.db.models import Project
from comicpipe.pipeline.base import StageContext, StageWorker

logger = logging.getLogger(__name__)


class FinalizeWorker(StageWorker):
    """Runs the finalizing stage."""

    stage = "finalizing"

    async def run(self, context: StageContext) -> dict:
        pages = context.output_of("layouts").get("pages", [])
        panel_count = sum(len(page["panels"]) for page in pages)
        with_images = len(context.output_of("panels").get("panels", []))
        placed = context.output_of("dialogue").get("panels", [])
        bubble_count = sum(len(item["bubbles"]) for item in placed)

        if with_images < panel_count:
            logger.warning(
                f"Project {context.project.id}: only {with_images} of {panel_count} panels have artwork"
            )

        return {
            "pages_generated": len(pages),
            "total_pages": context.project.total_pages,
            "panel_count": panel_count,
            "panels_with_images": with_images,
            "bubble_count": bubble_count,
            "preview_only": len(pages) < context.project.total_pages,
        }

    async def persist(self, session: AsyncSession, project: Project, output: dict) -> None:
        project.preview_only = output["preview_only"]
