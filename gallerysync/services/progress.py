"""Progress store - last-write-wins snapshot for UI polling."""

import logging

from gallerysync.services.options import OptionStore, PROGRESS_KEY
from gallerysync.services.state import ProgressSnapshot, utc_now_iso

logger = logging.getLogger(__name__)


class ProgressStore:
    """Short-lived progress snapshot; expires if the writer stops publishing."""

    def __init__(self, options: OptionStore, ttl_seconds: int = 300):
        self.options = options
        self.ttl_seconds = ttl_seconds

    async def publish(self, snapshot: ProgressSnapshot) -> None:
        snapshot.updated_at = utc_now_iso()
        await self.options.set(PROGRESS_KEY, snapshot.to_dict(), ttl_seconds=self.ttl_seconds)

    async def read(self) -> ProgressSnapshot:
        """Best-known snapshot, or an idle one when no run is publishing."""
        data = await self.options.get(PROGRESS_KEY)
        if not data:
            return ProgressSnapshot.idle()

        try:
            return ProgressSnapshot.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable progress snapshot: {e}")
            return ProgressSnapshot.idle()

    async def clear(self) -> None:
        await self.options.delete(PROGRESS_KEY)
