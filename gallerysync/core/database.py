from pathlib import Path
from typing import AsyncGenerator
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from gallerysync.core.config import get_settings

settings = get_settings()

# Sync runs write from a background task while API requests poll progress,
# each with its own session on the same SQLite file
engine = create_async_engine(
    f"sqlite+aiosqlite:///{settings.db_path}",
    echo=settings.debug,
    connect_args={"timeout": 30},
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; commits on success, rolls back on error."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the data directories and all tables, and switch SQLite to WAL."""
    import gallerysync.models  # noqa: F401

    Path(settings.db_path).parent.mkdir(parents=True, exist_ok=True)
    Path(settings.sync_dir).mkdir(parents=True, exist_ok=True)

    async with engine.begin() as conn:
        # Lets progress pollers read while a run holds the write lock
        await conn.execute(text("PRAGMA journal_mode=WAL"))
        await conn.run_sync(Base.metadata.create_all)
