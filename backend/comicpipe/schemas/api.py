"""Request and response models for the HTTP API.

Field names are snake_case in Python and camelCase on the wire.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, StrictInt
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateRequest(WireModel):
    """Request schema for POST /api/generate.

    Required fields are optional here so that a missing field yields the
    API's own 400 message instead of a schema error.

    ``pageCount`` must be a JSON integer; booleans and numeric strings are
    rejected rather than coerced.
    """
    story_description: Optional[str] = None
    genre: Optional[str] = None
    art_style: Optional[str] = None
    page_count: Optional[StrictInt] = None


class GenerateResponse(WireModel):
    """Response schema for POST /api/generate."""
    success: bool = True
    project_id: str
    run_id: str
    access_token: str
    estimated_time: int
    message: str


class RunResponse(WireModel):
    """Response schema for POST /api/projects/{id}/resume."""
    project_id: str
    run_id: str
    access_token: str
    status: str
    status_url: str


class AbortResponse(WireModel):
    """Response schema for POST /api/projects/{id}/abort."""
    project_id: str
    status: str
    aborted: bool


# ---------------------------------------------------------------------------
# Progress projection
# ---------------------------------------------------------------------------

class CharacterPreview(WireModel):
    id: str
    name: str
    image_url: Optional[str] = None


class StoryboardPanel(WireModel):
    page_number: int
    panel_number: int
    description: str
    image_url: Optional[str] = None


class PreviewPageRef(WireModel):
    page_number: int
    image_url: Optional[str] = None


class GenerationProgress(WireModel):
    """Response schema for GET /api/progress/{id}."""
    status: str
    progress: int
    current_step: str
    script: Optional[str] = None
    characters: list[CharacterPreview] = []
    storyboard: list[StoryboardPanel] = []
    preview_pages: list[PreviewPageRef] = []


# ---------------------------------------------------------------------------
# Full preview
# ---------------------------------------------------------------------------

class ProjectSummary(WireModel):
    id: str
    title: str
    total_pages: int
    preview_only: bool
    generation_stage: str
    genre: str
    style: str
    synopsis: str
    story_analysis: Optional[dict[str, Any]] = None


class CharacterDetail(WireModel):
    id: str
    name: str
    handle: str
    description: str
    reference_images: dict[str, str] = {}
    expressions: list[str] = []


class PanelDetail(WireModel):
    id: str
    panel_index: int
    x: int
    y: int
    width: int
    height: int
    relative_x: float
    relative_y: float
    relative_width: float
    relative_height: float
    z_index: int
    panel_type: str
    image_url: Optional[str] = None
    prompt: str
    description: str
    character_handles: list[str] = []
    character_ids: list[str] = []
    bubbles: list[dict[str, Any]] = []


class PageDetail(WireModel):
    id: str
    page_number: int
    width: int
    height: int
    layout_template_id: str
    thumbnail_url: Optional[str] = None
    panels: list[PanelDetail] = []


class PreviewResponse(WireModel):
    """Response schema for GET /api/preview/{id}."""
    project: ProjectSummary
    characters: list[CharacterDetail]
    pages: list[PageDetail]
