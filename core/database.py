"""
Database engine and session factories (SQLAlchemy async).

Job runners work on background tasks and open a short-lived session per
state change, so every factory here hands out sessions with
expire_on_commit=False: ORM rows stay readable after the session closes.
"""

from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for url (default: settings.DATABASE_URL).

    NullPool: connections are opened per session, which keeps engines
    usable from more than one event loop (API workers, CLI runs, tests).
    """
    url = url or settings.DATABASE_URL
    connect_args = {}
    if url.startswith("sqlite"):
        # background tasks and request handlers share the file
        connect_args["timeout"] = 30
    return create_async_engine(url, echo=echo, poolclass=NullPool, connect_args=connect_args)


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


async def check_connection(session: AsyncSession) -> bool:
    """True if a trivial query succeeds on the session's connection."""
    try:
        await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")
        return False


# Process-wide defaults
engine = build_engine()
async_session_maker = build_session_maker(engine)
