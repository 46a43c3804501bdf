"""Status projection: read-only views of a project's persisted state.

Nothing here triggers or waits on pipeline work; every value is derived
from the rows committed so far.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from comicpipe.db.models import Character, Page, Panel, Project
from comicpipe.orchestrator.progress import calculate_progress, get_current_step
from comicpipe.schemas.api import (
    CharacterDetail,
    CharacterPreview,
    GenerationProgress,
    PageDetail,
    PanelDetail,
    PreviewPageRef,
    PreviewResponse,
    ProjectSummary,
    StoryboardPanel,
)


async def _load_characters(session: AsyncSession, project: Project) -> list[Character]:
    result = await session.execute(
        select(Character)
        .where(Character.project_id == project.id)
        .order_by(Character.created_at, Character.handle)
    )
    return list(result.scalars().all())


async def _load_pages(
    session: AsyncSession, project: Project, page_limit: int | None = None
) -> list[tuple[Page, list[Panel]]]:
    query = select(Page).where(Page.project_id == project.id).order_by(Page.page_number)
    if page_limit is not None:
        query = query.where(Page.page_number <= page_limit)
    pages = list((await session.execute(query)).scalars().all())
    if not pages:
        return []

    result = await session.execute(
        select(Panel)
        .where(Panel.page_id.in_([page.id for page in pages]))
        .order_by(Panel.panel_index)
    )
    panels_by_page: dict = {page.id: [] for page in pages}
    for panel in result.scalars().all():
        panels_by_page[panel.page_id].append(panel)
    return [(page, panels_by_page[page.id]) for page in pages]


async def build_status(session: AsyncSession, project: Project) -> GenerationProgress:
    """Client-facing progress summary. Never exposes error details."""
    characters = await _load_characters(session, project)
    pages = await _load_pages(session, project)

    return GenerationProgress(
        status=project.generation_stage,
        progress=calculate_progress(project.generation_progress),
        current_step=get_current_step(project.generation_stage),
        script=(project.script_data or {}).get("title") or None,
        characters=[
            CharacterPreview(
                id=str(character.id),
                name=character.name,
                image_url=(character.reference_images or {}).get("front"),
            )
            for character in characters
        ],
        storyboard=[
            StoryboardPanel(
                page_number=page.page_number,
                panel_number=panel.panel_index + 1,
                description=panel.description or panel.prompt,
                image_url=panel.image_url,
            )
            for page, panels in pages
            for panel in panels
        ],
        preview_pages=[
            PreviewPageRef(
                page_number=page.page_number,
                image_url=panels[0].image_url if panels else None,
            )
            for page, panels in pages
        ],
    )


def _panel_detail(panel: Panel) -> PanelDetail:
    return PanelDetail(
        id=str(panel.id),
        panel_index=panel.panel_index,
        x=panel.x,
        y=panel.y,
        width=panel.width,
        height=panel.height,
        relative_x=panel.relative_x,
        relative_y=panel.relative_y,
        relative_width=panel.relative_width,
        relative_height=panel.relative_height,
        z_index=panel.z_index,
        panel_type=panel.panel_type,
        image_url=panel.image_url,
        prompt=panel.prompt,
        description=panel.description,
        character_handles=panel.character_handles or [],
        character_ids=panel.character_ids or [],
        bubbles=panel.bubbles or [],
    )


async def build_preview(session: AsyncSession, project: Project, page_limit: int) -> PreviewResponse:
    """Project metadata, characters and the first ``page_limit`` pages in full."""
    characters = await _load_characters(session, project)
    pages = await _load_pages(session, project, page_limit)

    return PreviewResponse(
        project=ProjectSummary(
            id=str(project.id),
            title=project.title,
            total_pages=project.total_pages,
            preview_only=project.preview_only,
            generation_stage=project.generation_stage,
            genre=project.genre,
            style=project.style,
            synopsis=project.synopsis,
            story_analysis=project.story_analysis,
        ),
        characters=[
            CharacterDetail(
                id=str(character.id),
                name=character.name,
                handle=character.handle,
                description=character.description,
                reference_images=character.reference_images or {},
                expressions=character.expressions or [],
            )
            for character in characters
        ],
        pages=[
            PageDetail(
                id=str(page.id),
                page_number=page.page_number,
                width=page.width,
                height=page.height,
                layout_template_id=page.layout_template_id,
                thumbnail_url=panels[0].image_url if panels else None,
                panels=[_panel_detail(panel) for panel in panels],
            )
            for page, panels in pages
        ],
    )
