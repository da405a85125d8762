"""
Database Connection Manager
===========================

Handles the async connection to the QA Forge SQLite database.
"""

from pathlib import Path
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession

from qaforge.db.models import Base

# Global session maker
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None
_engine: Optional[AsyncEngine] = None


async def init_db(db_path: Union[Path, str]) -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and create tables if they don't exist.

    ``db_path`` is a filesystem path to the SQLite file; its parent directory
    is created when missing.
    """
    global _async_session_maker, _engine

    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db_url = f"sqlite+aiosqlite:///{db_path}"

    _engine = create_async_engine(db_url, echo=False)

    # Create tables
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _async_session_maker = async_sessionmaker(_engine, expire_on_commit=False)

    return _async_session_maker


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the configured session maker."""
    if _async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_maker


async def close_db() -> None:
    """Dispose the engine so the SQLite file can be removed."""
    global _async_session_maker, _engine
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_maker = None
