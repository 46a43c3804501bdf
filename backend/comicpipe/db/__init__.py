"""
Database module for comicpipe.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from comicpipe.db.engine import async_session, build_engine, build_session_factory, engine, get_session, shutdown
from comicpipe.db.models import Base

logger = logging.getLogger(__name__)


async def init_database(bind: Optional[AsyncEngine] = None):
    """Initialize database schema on first run."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


__all__ = [
    "Base",
    "engine",
    "async_session",
    "build_engine",
    "build_session_factory",
    "get_session",
    "shutdown",
    "init_database",
]
