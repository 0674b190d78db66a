"""Key-value option store backed by the sync_options table."""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from gallerysync.models.database import SyncOption

logger = logging.getLogger(__name__)

# Option keys shared across services
CURSOR_KEY = "stage3_cursor"
RUN_STATE_KEY = "sync_run_state"
PROGRESS_KEY = "stage_progress"
STOP_FLAG_KEY = "sync_stop_flag"
STAGE3_LAST_RUN_KEY = "stage3_last_run"
CURRENT_JOB_KEY = "current_sync_job"
LAST_REPORT_KEY = "last_sync_report"
SCHEDULE_KEY = "sync_schedule"


class OptionStore:
    """Persist small JSON values by key, with optional expiry.

    Every write commits immediately so that pollers using their own
    session see the latest value.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str, default: Any = None) -> Any:
        # Select columns, not the entity: rows are rewritten with core upserts
        result = await self.session.execute(
            select(SyncOption.value, SyncOption.expires_at).where(SyncOption.key == key)
        )
        row = result.one_or_none()
        if row is None:
            return default

        if row.expires_at is not None and row.expires_at <= datetime.utcnow():
            logger.debug(f"Option {key} expired at {row.expires_at}")
            await self.delete(key)
            return default

        return row.value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        now = datetime.utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds else None

        stmt = insert(SyncOption).values(key=key, value=value, expires_at=expires_at, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={
                "value": stmt.excluded.value,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.commit()

    async def delete(self, key: str) -> None:
        await self.session.execute(delete(SyncOption).where(SyncOption.key == key))
        await self.session.commit()
