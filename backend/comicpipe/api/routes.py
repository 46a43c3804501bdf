"""API route handlers."""

import logging
import math

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from comicpipe import __version__
from comicpipe.api.deps import get_file_manager, get_orchestrator, get_owned_project, require_user
from comicpipe.api.projection import build_preview, build_status
from comicpipe.config import settings
from comicpipe.db import get_session
from comicpipe.db.models import Project, User
from comicpipe.errors import NotFoundError, ValidationError
from comicpipe.orchestrator.pipeline import PipelineOrchestrator
from comicpipe.schemas.api import (
    AbortResponse,
    GenerateRequest,
    GenerateResponse,
    GenerationProgress,
    PreviewResponse,
    RunResponse,
)
from comicpipe.schemas.brief import StoryBrief
from comicpipe.services.file_manager import FileManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

USER_ABORT_REASON = "Aborted by user"


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


@router.post("/generate", status_code=201, response_model=GenerateResponse)
async def generate_comic(
    request: GenerateRequest,
    user: User = Depends(require_user),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Create a project and start its generation run in the background."""
    missing = {
        field: "required"
        for field, value in (
            ("storyDescription", request.story_description),
            ("artStyle", request.art_style),
            ("pageCount", request.page_count),
        )
        if _is_blank(value)
    }
    if missing:
        raise ValidationError(
            "Missing required fields: storyDescription, artStyle, and pageCount",
            fields=missing,
        )

    brief = StoryBrief(
        synopsis=request.story_description,
        art_style=request.art_style,
        total_pages=request.page_count,
        genre=request.genre,
    )
    handle = await orchestrator.start(user.id, brief)

    return GenerateResponse(
        project_id=str(handle.project_id),
        run_id=str(handle.run_id),
        access_token=handle.access_token,
        estimated_time=math.ceil(request.page_count * settings.pipeline.seconds_per_page),
        message="Comic generation started successfully",
    )


@router.get("/progress/{project_id}", response_model=GenerationProgress)
async def get_progress(
    project: Project = Depends(get_owned_project),
    session: AsyncSession = Depends(get_session),
):
    """Progress projection for polling clients."""
    return await build_status(session, project)


@router.get("/preview/{project_id}", response_model=PreviewResponse)
async def get_preview(
    project: Project = Depends(get_owned_project),
    session: AsyncSession = Depends(get_session),
):
    """Project metadata, characters and the first pages with full panel detail."""
    return await build_preview(session, project, settings.pipeline.preview_page_limit)


@router.post("/projects/{project_id}/resume", status_code=202, response_model=RunResponse)
async def resume_project(
    project: Project = Depends(get_owned_project),
    user: User = Depends(require_user),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Resume a failed run at its first incomplete stage.

    Returns 409 if the project is not failed.
    """
    handle = await orchestrator.resume(user.id, project.id)
    return RunResponse(
        project_id=str(handle.project_id),
        run_id=str(handle.run_id),
        access_token=handle.access_token,
        status="resumed",
        status_url=f"/api/progress/{handle.project_id}",
    )


@router.post("/projects/{project_id}/abort", response_model=AbortResponse)
async def abort_project(
    project: Project = Depends(get_owned_project),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Abort an active run. In-flight stage work finishes but is discarded."""
    aborted = await orchestrator.abort(project.id, USER_ABORT_REASON)
    return AbortResponse(
        project_id=str(project.id),
        status="failed" if aborted else project.generation_stage,
        aborted=aborted,
    )


@router.get("/projects/{project_id}/assets/{filename}")
async def get_asset(
    filename: str,
    project: Project = Depends(get_owned_project),
    file_manager: FileManager = Depends(get_file_manager),
):
    """Serve a generated character sheet or panel image."""
    try:
        path = file_manager.resolve_asset(project.id, filename)
    except ValueError:
        raise NotFoundError("Asset not found")
    if not path.is_file():
        raise NotFoundError("Asset not found")
    return FileResponse(path=str(path), media_type="image/png")


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
    }
