"""SQLAlchemy 2.0 ORM models for the comic generation pipeline."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, JSON, Integer, Float, Boolean, ForeignKey, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def empty_progress() -> dict:
    return {"script": 0, "characters": 0, "storyboard": 0, "preview": 0}


class User(Base):
    """API user. Only a hash of the bearer token is stored."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200))
    api_token_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())


class Project(Base):
    """Project model: one comic and the state of its generation run."""
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(200), default="New Comic")
    synopsis: Mapped[str] = mapped_column(Text)
    genre: Mapped[str] = mapped_column(String(100), default="")
    style: Mapped[str] = mapped_column(String(100))
    total_pages: Mapped[int] = mapped_column(Integer)

    generation_stage: Mapped[str] = mapped_column(String(20), default="queued")
    generation_progress: Mapped[dict] = mapped_column(JSON, default=empty_progress)
    preview_only: Mapped[bool] = mapped_column(Boolean, default=True)
    story_analysis: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    script_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )


class PipelineRun(Base):
    """One end-to-end execution of the pipeline for a project."""
    __tablename__ = "pipeline_runs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), index=True)
    status: Mapped[str] = mapped_column(String(20), default="running")
    access_token: Mapped[str] = mapped_column(String(100))
    abort_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    total_duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    log: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)


class StageOutput(Base):
    """Per-stage progress and output, keyed by (project, stage)."""
    __tablename__ = "stage_outputs"

    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), primary_key=True)
    stage: Mapped[str] = mapped_column(String(20), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default="running")
    progress: Mapped[int] = mapped_column(Integer, default=0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    output: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )


class Character(Base):
    """A cast member, addressed in prompts and bubbles by its @handle."""
    __tablename__ = "characters"
    __table_args__ = (UniqueConstraint("project_id", "handle"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    handle: Mapped[str] = mapped_column(String(100))
    description: Mapped[str] = mapped_column(Text, default="")
    reference_images: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # view -> url
    expressions: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())


class Page(Base):
    """A comic page with its chosen layout template."""
    __tablename__ = "pages"
    __table_args__ = (UniqueConstraint("project_id", "page_number"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("projects.id"), index=True)
    page_number: Mapped[int] = mapped_column(Integer)
    width: Mapped[int] = mapped_column(Integer)
    height: Mapped[int] = mapped_column(Integer)
    layout_template_id: Mapped[str] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())


class Panel(Base):
    """A panel on a page: geometry, prompt, artwork and speech bubbles."""
    __tablename__ = "panels"
    __table_args__ = (UniqueConstraint("page_id", "panel_index"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    page_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("pages.id"), index=True)
    panel_index: Mapped[int] = mapped_column(Integer)

    # Absolute geometry in page pixels
    x: Mapped[int] = mapped_column(Integer)
    y: Mapped[int] = mapped_column(Integer)
    width: Mapped[int] = mapped_column(Integer)
    height: Mapped[int] = mapped_column(Integer)
    # Relative geometry (0-1 of the page safe area)
    relative_x: Mapped[float] = mapped_column(Float)
    relative_y: Mapped[float] = mapped_column(Float)
    relative_width: Mapped[float] = mapped_column(Float)
    relative_height: Mapped[float] = mapped_column(Float)
    z_index: Mapped[int] = mapped_column(Integer, default=1)
    panel_type: Mapped[str] = mapped_column(String(20), default="standard")

    prompt: Mapped[str] = mapped_column(Text)
    description: Mapped[str] = mapped_column(Text, default="")
    character_handles: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    character_ids: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    bubbles: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
