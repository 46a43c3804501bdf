"""FastAPI dependencies: identity, ownership and shared services.

Every dependency here can be replaced through ``app.dependency_overrides``.
"""

import hashlib
import uuid
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from comicpipe.db import get_session
from comicpipe.db.models import Project, User
from comicpipe.errors import AuthError, NotFoundError
from comicpipe.orchestrator.pipeline import PipelineOrchestrator
from comicpipe.services.file_manager import FileManager

bearer_scheme = HTTPBearer(auto_error=False)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def parse_project_id(project_id: str | uuid.UUID) -> Optional[uuid.UUID]:
    if isinstance(project_id, uuid.UUID):
        return project_id
    try:
        return uuid.UUID(project_id)
    except ValueError:
        return None


async def get_authenticated_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_session),
) -> Optional[User]:
    """Resolve the bearer token to a User, or None."""
    if credentials is None or not credentials.credentials:
        return None
    result = await session.execute(
        select(User).where(User.api_token_hash == hash_token(credentials.credentials))
    )
    return result.scalar_one_or_none()


async def require_user(user: Optional[User] = Depends(get_authenticated_user)) -> User:
    if user is None:
        raise AuthError()
    return user


async def verify_project_ownership(
    session: AsyncSession, user_id: uuid.UUID, project_id: str | uuid.UUID
) -> bool:
    """True only when the project exists and belongs to ``user_id``."""
    parsed = parse_project_id(project_id)
    if parsed is None:
        return False
    result = await session.execute(select(Project.user_id).where(Project.id == parsed))
    owner = result.scalar_one_or_none()
    return owner is not None and owner == user_id


async def get_owned_project(
    project_id: str,
    user: User = Depends(require_user),
    session: AsyncSession = Depends(get_session),
) -> Project:
    """The caller's project. Unknown and foreign projects are indistinguishable."""
    if not await verify_project_ownership(session, user.id, project_id):
        raise NotFoundError()
    project = await session.get(Project, parse_project_id(project_id))
    if project is None:
        raise NotFoundError()
    return project


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def get_file_manager() -> FileManager:
    return FileManager()
