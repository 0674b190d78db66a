"""Shared test fixtures for the gallerysync test suite."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from gallerysync.core.config import Settings
from gallerysync.core.database import Base
# Import all models so their metadata is registered on Base
import gallerysync.models.database  # noqa: F401
import gallerysync.models.sync_log  # noqa: F401
from gallerysync.services.errors import RemoteFetchError


@pytest_asyncio.fixture
async def async_session():
    """
    Provide an in-memory SQLite async session for tests.

    Creates all tables before the test, drops them after. Each test gets
    a clean database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a temporary sync directory, with no delays."""
    return Settings(
        _env_file=None,
        sync_dir=str(tmp_path / "sync"),
        api_base_url="http://catalog.test",
        api_tokens=["secret-token"],
        website_property_ids=[42],
        site_url="http://site.test",
        batch_size=10,
        batch_delay_seconds=0,
        time_limit_seconds=0,
        memory_limit_mb=0,
    )


def sidebar_payload(procedures: dict[int, int], category: str = "Body") -> dict:
    """Sidebar response with one category holding ``{procedure id: case total}``."""
    return {
        "success": True,
        "data": [
            {
                "name": category,
                "totalCase": sum(procedures.values()),
                "procedures": [
                    {
                        "name": f"Procedure {pid}",
                        "slugName": f"procedure-{pid}",
                        "ids": [pid],
                        "totalCase": total,
                        "nudity": False,
                    }
                    for pid, total in procedures.items()
                ],
            }
        ],
    }


class FakeCatalog:
    """In-memory stand-in for CatalogClient."""

    def __init__(self, case_lists: dict[int, list[int]], failing: set[int] | None = None):
        self.case_lists = case_lists
        self.failing = failing or set()
        self.detail_calls: list[int] = []
        self.sidebar_calls = 0
        self.closed = False

    async def fetch_sidebar(self):
        self.sidebar_calls += 1
        return sidebar_payload({pid: len(ids) for pid, ids in self.case_lists.items()})

    async def fetch_all_case_ids(self, procedure_id, max_pages=100):
        return list(self.case_lists.get(procedure_id, []))

    async def fetch_case_detail(self, case_id, procedure_id=None):
        self.detail_calls.append(case_id)
        if case_id in self.failing:
            raise RemoteFetchError("API returned error status: 500")
        return {"id": case_id, "procedureId": procedure_id, "details": f"Case {case_id}"}

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_catalog():
    """Two procedures sharing case 3."""
    return FakeCatalog({101: [1, 2, 3], 202: [3, 4, 5]})
