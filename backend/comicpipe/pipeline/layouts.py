"""Page layouts: map script pages onto layout templates and panel geometry.

Templates describe panels in coordinates relative to the page's safe area
(the page minus its outer margins). Absolute pixel geometry is derived as:

    x      = safe.x + rel_x * safe.width  + margin.left
    y      = safe.y + rel_y * safe.height + margin.top
    width  = rel_w * safe.width  - (margin.left + margin.right)
    height = rel_h * safe.height - (margin.top + margin.bottom)
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from comicpipe.config import PipelineConfig, settings
from comicpipe.db.models import Character, Page, Panel, Project
from comicpipe.orchestrator.progress import round_half_up
from comicpipe.pipeline.base import StageContext, StageWorker
from comicpipe.pipeline.bubbles import NARRATION_SLOT
from comicpipe.pipeline.characters import make_handle
from comicpipe.schemas.comic import Script, ScriptPage, ScriptPanel, SpeechBubble

logger = logging.getLogger(__name__)

PAGE_MARGIN = 20


@dataclass(frozen=True)
class Margins:
    top: int = 10
    right: int = 10
    bottom: int = 10
    left: int = 10


@dataclass(frozen=True)
class PanelTemplate:
    x: float
    y: float
    width: float
    height: float
    margins: Margins
    z_index: int = 1
    panel_type: str = "standard"


@dataclass(frozen=True)
class LayoutTemplate:
    id: str
    name: str
    description: str
    panels: tuple[PanelTemplate, ...]


def _grid(rows: list[tuple[float, float]], columns: int = 2) -> tuple[PanelTemplate, ...]:
    """Two-column grid; ``rows`` holds (y, height) per row."""
    panels = []
    last = len(rows) - 1
    for row, (y, height) in enumerate(rows):
        top = 10 if row == 0 else 5
        bottom = 10 if row == last else 5
        for column in range(columns):
            left = 10 if column == 0 else 5
            right = 10 if column == columns - 1 else 5
            panels.append(
                PanelTemplate(
                    x=column / columns,
                    y=y,
                    width=1 / columns,
                    height=height,
                    margins=Margins(top=top, right=right, bottom=bottom, left=left),
                )
            )
    return tuple(panels)


LAYOUT_TEMPLATES: dict[str, LayoutTemplate] = {
    template.id: template
    for template in (
        LayoutTemplate(
            id="dialogue-4panel",
            name="4 Panel Dialogue",
            description="Classic 2x2 grid for conversations and reaction shots",
            panels=_grid([(0, 0.5), (0.5, 0.5)]),
        ),
        LayoutTemplate(
            id="action-6panel",
            name="6 Panel Action",
            description="Dynamic 2x3 grid for action sequences",
            panels=_grid([(0, 0.33), (0.33, 0.34), (0.67, 0.33)]),
        ),
        LayoutTemplate(
            id="establishing-3panel",
            name="3 Panel Establishing",
            description="Wide horizontal panels for establishing shots and reveals",
            panels=_grid([(0, 0.33), (0.33, 0.34), (0.67, 0.33)], columns=1),
        ),
        LayoutTemplate(
            id="splash-single",
            name="Single Splash",
            description="Full-page panel for dramatic moments",
            panels=(PanelTemplate(0, 0, 1.0, 1.0, Margins(), panel_type="splash"),),
        ),
        LayoutTemplate(
            id="mixed-5panel",
            name="5 Panel Mixed",
            description="Asymmetric layout with one large focus panel",
            panels=(
                PanelTemplate(0, 0, 0.5, 0.25, Margins(10, 5, 5, 10)),
                PanelTemplate(0.5, 0, 0.5, 0.25, Margins(10, 10, 5, 5)),
                PanelTemplate(0, 0.25, 1.0, 0.5, Margins(5, 10, 5, 10), z_index=2),
                PanelTemplate(0, 0.75, 0.5, 0.25, Margins(5, 5, 10, 10)),
                PanelTemplate(0.5, 0.75, 0.5, 0.25, Margins(5, 10, 10, 5)),
            ),
        ),
        LayoutTemplate(
            id="grid-8panel",
            name="8 Panel Grid",
            description="Dense 4x2 grid for complex sequences",
            panels=_grid([(0, 0.25), (0.25, 0.25), (0.5, 0.25), (0.75, 0.25)]),
        ),
    )
}

DEFAULT_LAYOUT_TEMPLATE = LAYOUT_TEMPLATES["action-6panel"]


def select_template(template_id: str, panel_count: int) -> LayoutTemplate:
    """Pick the template for a page.

    The requested template wins when its panel count matches. Otherwise the
    template with exactly ``panel_count`` panels, then the smallest template
    with room for all of them, then the densest template.
    """
    requested = LAYOUT_TEMPLATES.get(template_id, DEFAULT_LAYOUT_TEMPLATE)
    if len(requested.panels) == panel_count:
        return requested
    by_size = sorted(LAYOUT_TEMPLATES.values(), key=lambda t: len(t.panels))
    for template in by_size:
        if len(template.panels) == panel_count:
            return template
    for template in by_size:
        if len(template.panels) >= panel_count:
            return template
    return by_size[-1]


def panel_geometry(template: PanelTemplate, page_width: int, page_height: int) -> dict:
    safe_x = PAGE_MARGIN
    safe_y = PAGE_MARGIN
    safe_width = page_width - 2 * PAGE_MARGIN
    safe_height = page_height - 2 * PAGE_MARGIN
    margins = template.margins
    return {
        "x": round_half_up(safe_x + template.x * safe_width + margins.left),
        "y": round_half_up(safe_y + template.y * safe_height + margins.top),
        "width": round_half_up(template.width * safe_width - (margins.left + margins.right)),
        "height": round_half_up(template.height * safe_height - (margins.top + margins.bottom)),
        "relative_x": template.x,
        "relative_y": template.y,
        "relative_width": template.width,
        "relative_height": template.height,
        "z_index": template.z_index,
        "panel_type": template.panel_type,
    }


def placeholder_bubbles(
    panel: ScriptPanel, page_number: int, panel_index: int, width: int, height: int
) -> list[dict]:
    """Dialogue and narration bubbles at default positions, refined later."""
    speaker = make_handle(panel.characters[0]) if panel.characters else None
    specs = []
    if panel.dialogue.strip():
        specs.append(("dialogue", panel.dialogue, "speech", speaker, (0.15, 0.15, 0.7, 0.15)))
    if panel.narration.strip():
        specs.append(("narration", panel.narration, "narration", None, NARRATION_SLOT))

    bubbles = []
    for kind, text, bubble_type, bubble_speaker, (rx, ry, rw, rh) in specs:
        bubble = SpeechBubble(
            id=f"bubble-{kind}-{page_number}-{panel_index}",
            text=text.strip(),
            type=bubble_type,
            speaker=bubble_speaker,
            relative_x=rx,
            relative_y=ry,
            relative_width=rw,
            relative_height=rh,
            x=round_half_up(width * rx),
            y=round_half_up(height * ry),
            width=round_half_up(width * rw),
            height=round_half_up(height * rh),
        )
        bubbles.append(bubble.model_dump(mode="json"))
    return bubbles


def plan_page(page: ScriptPage, page_width: int, page_height: int) -> dict:
    template = select_template(page.layout_template_id, len(page.panels))
    script_panels = page.panels[: len(template.panels)]
    if len(page.panels) > len(template.panels):
        logger.warning(
            f"Page {page.page_number}: {len(page.panels)} panels exceed every layout, "
            f"keeping the first {len(template.panels)}"
        )
    panel_templates = template.panels[: len(script_panels)]

    panels = []
    for index, (script_panel, panel_template) in enumerate(zip(script_panels, panel_templates)):
        geometry = panel_geometry(panel_template, page_width, page_height)
        panels.append({
            "panel_index": index,
            **geometry,
            "prompt": script_panel.prompt,
            "description": script_panel.scene_description,
            "character_handles": [make_handle(name) for name in script_panel.characters],
            "bubbles": placeholder_bubbles(
                script_panel, page.page_number, index, geometry["width"], geometry["height"]
            ),
        })

    return {
        "page_number": page.page_number,
        "layout_template_id": template.id,
        "width": page_width,
        "height": page_height,
        "panels": panels,
    }


def preview_page_count(total_pages: int, config: Optional[PipelineConfig] = None) -> int:
    config = config or settings.pipeline
    return min(total_pages, config.preview_page_count)


class LayoutsWorker(StageWorker):
    """Runs the layouts stage: pages and panels for the preview pages."""

    stage = "layouts"

    def __init__(self, config: Optional[PipelineConfig] = None):
        self._config = config or settings.pipeline

    async def run(self, context: StageContext) -> dict:
        script = Script.model_validate(context.output_of("script"))
        count = preview_page_count(context.project.total_pages, self._config)
        pages = [
            plan_page(page, self._config.page_width, self._config.page_height)
            for page in script.pages[:count]
        ]
        return {"pages": pages}

    async def persist(self, session: AsyncSession, project: Project, output: dict) -> None:
        result = await session.execute(
            select(Character.handle, Character.id).where(Character.project_id == project.id)
        )
        ids_by_handle = {handle: str(char_id) for handle, char_id in result.all()}

        result = await session.execute(select(Page).where(Page.project_id == project.id))
        existing_pages = {page.page_number: page for page in result.scalars().all()}

        planned_numbers = set()
        for page_data in output.get("pages", []):
            number = page_data["page_number"]
            planned_numbers.add(number)
            page = existing_pages.get(number)
            if page is None:
                page = Page(id=uuid.uuid4(), project_id=project.id, page_number=number)
                session.add(page)
            page.width = page_data["width"]
            page.height = page_data["height"]
            page.layout_template_id = page_data["layout_template_id"]
            await self._upsert_panels(session, page, page_data["panels"], ids_by_handle)

        stale_ids = [page.id for number, page in existing_pages.items() if number not in planned_numbers]
        if stale_ids:
            await session.execute(delete(Panel).where(Panel.page_id.in_(stale_ids)))
            await session.execute(delete(Page).where(Page.id.in_(stale_ids)))

    async def _upsert_panels(
        self,
        session: AsyncSession,
        page: Page,
        panels: list[dict],
        ids_by_handle: dict[str, str],
    ) -> None:
        result = await session.execute(select(Panel).where(Panel.page_id == page.id))
        existing = {panel.panel_index: panel for panel in result.scalars().all()}

        for panel_data in panels:
            index = panel_data["panel_index"]
            panel = existing.pop(index, None)
            if panel is None:
                panel = Panel(page_id=page.id, panel_index=index)
                session.add(panel)
            for key in (
                "x", "y", "width", "height",
                "relative_x", "relative_y", "relative_width", "relative_height",
                "z_index", "panel_type", "prompt", "description",
                "character_handles", "bubbles",
            ):
                setattr(panel, key, panel_data[key])
            panel.character_ids = [
                ids_by_handle[handle] for handle in panel_data["character_handles"]
                if handle in ids_by_handle
            ]

        for stale in existing.values():
            await session.delete(stale)
