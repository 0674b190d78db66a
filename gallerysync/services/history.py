"""Sync history log - one record per run attempt."""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Union
from sqlalchemy import delete, desc, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gallerysync.models.sync_log import SyncLog
from gallerysync.services.state import SyncDetails

logger = logging.getLogger(__name__)

STATUS_STARTED = "started"
TERMINAL_STATUSES = frozenset({"success", "partial", "failed", "stopped"})


def format_duration(started: datetime, completed: Optional[datetime]) -> str:
    if completed is None:
        return "In progress"

    seconds = max(0, int((completed - started).total_seconds()))
    if seconds < 60:
        return f"{seconds} seconds"
    return f"{seconds // 60} min {seconds % 60} sec"


class SyncHistory:
    """Append/update access to the sync_log table.

    Updates are single-row UPDATE statements so that list views reading
    concurrently never see a half-written record.
    """

    def __init__(self, session: AsyncSession, page_size: int = 50):
        self.session = session
        self.page_size = page_size

    async def log_start(self, source: str, sync_type: str = "full") -> int:
        record = SyncLog(
            source=source,
            sync_type=sync_type,
            started_at=datetime.utcnow(),
            status=STATUS_STARTED,
            details=SyncDetails().to_dict(),
        )
        self.session.add(record)
        await self.session.commit()
        logger.info(f"Sync log {record.id} started (source={source})")
        return record.id

    async def log_update(
        self,
        record_id: int,
        status: str,
        processed: int,
        failed: int,
        details: Union[SyncDetails, dict[str, Any], None] = None,
        error_message: Optional[str] = None,
        amend: bool = False,
    ) -> bool:
        """
        Update a record in place.

        A record leaves ``started`` for a terminal status exactly once.
        Repeating the same terminal status is a no-op; moving to a different
        one is refused unless ``amend`` is set.

        Returns:
            True if the record now holds ``status``.
        """
        if isinstance(details, SyncDetails):
            details = details.to_dict()

        values: dict[str, Any] = {
            "status": status,
            "items_processed": processed,
            "items_failed": failed,
        }
        if details is not None:
            values["details"] = details
        if error_message is not None:
            values["error_message"] = error_message
        if status in TERMINAL_STATUSES:
            values["completed_at"] = datetime.utcnow()

        stmt = update(SyncLog).where(SyncLog.id == record_id)
        if not amend:
            stmt = stmt.where(SyncLog.status == STATUS_STARTED)

        result = await self.session.execute(stmt.values(**values))
        await self.session.commit()

        if result.rowcount:
            logger.info(f"Sync log {record_id} -> {status} (processed={processed}, failed={failed})")
            return True

        current = await self.get(record_id)
        if current is None:
            logger.warning(f"Sync log {record_id} not found")
            return False
        if current.status == status:
            logger.debug(f"Sync log {record_id} already {status}")
            return True

        logger.warning(f"Sync log {record_id} is already {current.status}, not changing to {status}")
        return False

    async def get(self, record_id: int) -> Optional[SyncLog]:
        result = await self.session.execute(
            select(SyncLog)
            .where(SyncLog.id == record_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_latest(self, terminal_only: bool = False) -> Optional[SyncLog]:
        stmt = select(SyncLog)
        if terminal_only:
            stmt = stmt.where(SyncLog.status.in_(TERMINAL_STATUSES))
        result = await self.session.execute(
            stmt.order_by(desc(SyncLog.started_at), desc(SyncLog.id))
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_records(self, limit: Optional[int] = None) -> list[SyncLog]:
        """Most recent first, capped at the configured page size."""
        limit = min(limit or self.page_size, self.page_size)
        result = await self.session.execute(
            select(SyncLog)
            .order_by(desc(SyncLog.started_at), desc(SyncLog.id))
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def delete_record(self, record_id: int) -> bool:
        result = await self.session.execute(delete(SyncLog).where(SyncLog.id == record_id))
        await self.session.commit()
        return bool(result.rowcount)

    async def clear_history(self) -> int:
        result = await self.session.execute(delete(SyncLog))
        await self.session.commit()
        logger.info(f"Cleared {result.rowcount} sync log records")
        return result.rowcount

    async def cleanup_old_records(self, days: int = 90) -> int:
        """Purge records older than ``days``."""
        cutoff = datetime.utcnow() - timedelta(days=days)
        result = await self.session.execute(delete(SyncLog).where(SyncLog.started_at < cutoff))
        await self.session.commit()
        if result.rowcount:
            logger.info(f"Deleted {result.rowcount} sync log records older than {days} days")
        return result.rowcount


def record_to_dict(record: SyncLog) -> dict[str, Any]:
    """Serialize a record with its details normalized to the current schema."""
    details = SyncDetails.from_dict(record.details)
    return {
        "id": record.id,
        "source": record.source,
        "sync_type": record.sync_type,
        "status": record.status,
        "started_at": record.started_at,
        "completed_at": record.completed_at,
        "duration": details.duration or format_duration(record.started_at, record.completed_at),
        "items_processed": record.items_processed,
        "items_failed": record.items_failed,
        "error_message": record.error_message,
        "details": details.to_dict(),
    }
