"""Stage 3 - fetch and persist case details in bounded batches."""

import logging
from collections import deque
from typing import Callable, Optional
from sqlalchemy.exc import SQLAlchemyError

from gallerysync.services.catalog import CatalogClient
from gallerysync.services.entities import EntityStore
from gallerysync.services.errors import PerItemFailure, SyncError
from gallerysync.services.manifest import Manifest
from gallerysync.services.options import CURSOR_KEY, OptionStore
from gallerysync.services.progress import ProgressStore
from gallerysync.services.resources import ResourceMonitor
from gallerysync.services.state import BatchCursor, ProgressSnapshot, StageResult, StepProgress

logger = logging.getLogger(__name__)

STAGE = 3


class BatchProcessor:
    """
    Works through the manifest ``batch_size`` cases at a time.

    The cursor is the only record of how far Stage 3 got: it is persisted
    after every batch, so a paused or interrupted run resumes at the first
    unprocessed case. Upserts are keyed by case id, so a batch replayed after
    a crash does not create duplicates.
    """

    def __init__(
        self,
        catalog: CatalogClient,
        entities: EntityStore,
        options: OptionStore,
        progress: Optional[ProgressStore] = None,
        monitor: Optional[ResourceMonitor] = None,
        batch_size: int = 10,
        recent_cases_limit: int = 5,
        activity: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.catalog = catalog
        self.entities = entities
        self.options = options
        self.progress = progress
        self.monitor = monitor
        self.batch_size = max(1, batch_size)
        self.recent_cases: deque[str] = deque(maxlen=recent_cases_limit)
        self.activity = activity or (lambda message: None)
        self.on_error = on_error or (lambda message: None)

    async def load_cursor(self, manifest: Manifest, manifest_date: str) -> BatchCursor:
        """Saved cursor for this manifest, or a fresh one."""
        data = await self.options.get(CURSOR_KEY)
        if data:
            cursor = BatchCursor.from_dict(data)
            if cursor.manifest_date == manifest_date and cursor.total_cases == manifest.case_count:
                return cursor
            logger.info(f"Discarding cursor for manifest {cursor.manifest_date}")
        return BatchCursor(manifest_date=manifest_date, total_cases=manifest.case_count)

    async def reset_cursor(self) -> None:
        await self.options.delete(CURSOR_KEY)

    async def _process_case(self, manifest: Manifest, case_id: int) -> bool:
        """Fetch and store one case. Returns True if the case was created."""
        procedure_id = manifest.case_procedures.get(case_id)
        position = manifest.position(case_id)

        try:
            detail = await self.catalog.fetch_case_detail(case_id, procedure_id)
            created = await self.entities.upsert_case(case_id, detail, procedure_id, position)
            await self.entities.session.commit()
        except SyncError as e:
            raise PerItemFailure(case_id, str(e)) from e
        except SQLAlchemyError as e:
            await self.entities.session.rollback()
            raise PerItemFailure(case_id, str(e)) from e
        return created

    async def process_next_batch(self, manifest: Manifest, cursor: BatchCursor) -> StageResult:
        """
        Process the next slice of the manifest and advance ``cursor``.

        Per-case failures are counted and reported through ``on_error``; they
        never abort the batch.

        Returns:
            StageResult whose data holds this batch's created_posts,
            updated_posts and failed_cases, the cumulative processed_cases,
            total_cases and needs_continue.
        """
        start = cursor.next_index
        batch = manifest.case_ids[start:start + self.batch_size]
        created = updated = failed = 0

        for case_id in batch:
            try:
                was_created = await self._process_case(manifest, case_id)
            except PerItemFailure as e:
                failed += 1
                logger.warning(str(e))
                self.on_error(str(e))
                self.recent_cases.appendleft(f"Case {case_id} (failed)")
                continue

            if was_created:
                created += 1
            else:
                updated += 1
            self.recent_cases.appendleft(f"Case {case_id}")

        cursor.next_index = start + len(batch)
        cursor.created += created
        cursor.updated += updated
        cursor.failed += failed
        cursor.processed += len(batch)
        await self.options.set(CURSOR_KEY, cursor.to_dict())

        await self._publish(manifest, cursor, batch[-1] if batch else None)

        message = (
            f"Processed cases {start + 1}-{cursor.next_index} of {cursor.total_cases} "
            f"({created} created, {updated} updated, {failed} failed)"
        )
        logger.info(message)
        self.activity(f"Stage 3: {message}")

        return StageResult.ok(
            STAGE,
            message,
            created_posts=created,
            updated_posts=updated,
            failed_cases=failed,
            processed_cases=cursor.processed,
            total_cases=cursor.total_cases,
            next_index=cursor.next_index,
            needs_continue=not cursor.exhausted,
        )

    async def _publish(self, manifest: Manifest, cursor: BatchCursor, last_case_id: Optional[int]) -> None:
        if self.progress is None:
            return

        step = StepProgress(current=cursor.next_index, total=cursor.total_cases)
        procedure_name = ""
        if last_case_id is not None:
            procedure_id = manifest.case_procedures.get(last_case_id)
            procedure_name = manifest.procedure_names.get(procedure_id, "") if procedure_id else ""

        snapshot = ProgressSnapshot(
            stage="processing",
            overall_percentage=round(200 / 3 + step.percentage / 3, 1),
            current_procedure=procedure_name,
            case_progress=step,
            current_step=f"Processing case {cursor.next_index} of {cursor.total_cases}",
            recent_cases=list(self.recent_cases),
        )
        if self.monitor is not None:
            sample = self.monitor.sample()
            snapshot.elapsed_seconds = sample.elapsed_seconds
            snapshot.memory_used_mb = sample.memory_used_mb
            snapshot.memory_peak_mb = sample.memory_peak_mb
            snapshot.memory_limit_mb = sample.memory_limit_mb
        await self.progress.publish(snapshot)
