"""Stage orchestrator - runs the three sync stages as one resumable job."""

import asyncio
import logging
from datetime import date, datetime
from typing import Any, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from gallerysync.core.config import Settings
from gallerysync.services.artifacts import MANIFEST, ArtifactStore
from gallerysync.services.batch import BatchProcessor
from gallerysync.services.catalog import CatalogClient
from gallerysync.services.entities import EntityStore
from gallerysync.services.errors import (
    PrerequisiteMissing,
    RegistryUnavailable,
    ResourceExhaustion,
    ScheduleConflict,
)
from gallerysync.services.history import SyncHistory, format_duration
from gallerysync.services.manifest import Manifest, ManifestBuilder
from gallerysync.services.options import CURSOR_KEY, RUN_STATE_KEY, STAGE3_LAST_RUN_KEY, OptionStore
from gallerysync.services.procedures import ProcedureFetcher
from gallerysync.services.progress import ProgressStore
from gallerysync.services.registry import JobRegistryClient, JobStatus, SyncType
from gallerysync.services.resources import ResourceMonitor
from gallerysync.services.state import (
    BatchCursor,
    CancellationToken,
    ProgressSnapshot,
    RunResult,
    StageResult,
    SyncRunState,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

SOURCES = ("manual", "rest_api", "automatic")

# Serializes the in-flight check of fresh runs within this process
_start_lock = asyncio.Lock()


class SyncOrchestrator:
    """
    Runs Stage 1, Stage 2, then Stage 3 batches until the manifest is exhausted.

    One call to ``run_full_sync`` is one invocation. When elapsed time or
    memory gets close to its ceiling the run state is persisted and the call
    returns ``needs_resume``; the next call with ``resume=True`` continues
    from the saved cursor under the same history record and registry job.
    """

    def __init__(
        self,
        options: OptionStore,
        history: SyncHistory,
        artifacts: ArtifactStore,
        procedures: ProcedureFetcher,
        manifest_builder: ManifestBuilder,
        batch: BatchProcessor,
        progress: ProgressStore,
        monitor: ResourceMonitor,
        registry: Optional[JobRegistryClient] = None,
        max_batch_iterations: int = 1000,
        batch_delay_seconds: float = 0.5,
    ):
        self.options = options
        self.history = history
        self.artifacts = artifacts
        self.procedures = procedures
        self.manifest_builder = manifest_builder
        self.batch = batch
        self.progress = progress
        self.monitor = monitor
        self.registry = registry
        self.max_batch_iterations = max_batch_iterations
        self.batch_delay_seconds = batch_delay_seconds
        self.cancel = CancellationToken(options)
        self.state: Optional[SyncRunState] = None

        # Stage activity lands in the current run's log
        self.procedures.activity = self._log
        self.manifest_builder.activity = self._log
        self.batch.activity = self._log
        self.batch.on_error = self._record_error

    def _log(self, message: str) -> None:
        if self.state is not None:
            self.state.log(message)

    def _record_error(self, message: str) -> None:
        if self.state is not None:
            self.state.add_error(message)

    async def close(self):
        await self.procedures.catalog.close()
        if self.registry is not None:
            await self.registry.close()

    # Registry

    async def _register(self, state: SyncRunState) -> None:
        """Attach the run to a registry job. ScheduleConflict propagates."""
        if self.registry is None:
            return

        try:
            job = await self.registry.get_current_job()
            if job is not None and job.is_active:
                # Only a job registered ahead of time and not yet started belongs to this run
                if job.status != JobStatus.PENDING.value:
                    raise ScheduleConflict(f"Job {job.job_id} is already {job.status}")
            else:
                sync_type = SyncType.AUTO if state.source == "automatic" else SyncType.MANUAL
                job = await self.registry.register_sync(sync_type)
            state.job_id = job.job_id
        except RegistryUnavailable as e:
            logger.warning(f"Job registry unavailable, continuing without a job: {e}")
            state.add_warning(f"Job registry unavailable: {e}")
            return

        await self._report(state, JobStatus.IN_PROGRESS)

    async def _report(
        self,
        state: SyncRunState,
        status: JobStatus,
        cases_synced: int = 0,
        message: str = "",
        error_log: Optional[str] = None,
    ) -> None:
        """Best-effort status report; failures become run warnings."""
        if self.registry is None:
            return
        try:
            await self.registry.report_sync(status, cases_synced, message, error_log)
        except (RegistryUnavailable, ScheduleConflict) as e:
            logger.warning(f"Could not report {status.value} to the job registry: {e}")
            state.add_warning(f"Could not report {status.value}: {e}")

    # Run lifecycle

    async def _claim(self) -> None:
        """Mark a fresh run as in flight, or raise ScheduleConflict if one already is."""
        async with _start_lock:
            if await self.options.get(RUN_STATE_KEY):
                raise ScheduleConflict("A paused sync is waiting to resume")
            if (await self.progress.read()).stage != "idle":
                raise ScheduleConflict("Another sync is already running")
            await self.progress.publish(ProgressSnapshot(stage="fetching", current_step="Starting sync"))

    async def _begin(self, source: str, resume: bool) -> Optional[SyncRunState]:
        if resume:
            saved = await self.options.get(RUN_STATE_KEY)
            if saved:
                state = SyncRunState.from_dict(saved)
                if state.run_date:
                    # Keep working from the artifacts and cursor the run started with
                    self.artifacts.run_date = date.fromisoformat(state.run_date)
                state.details.resumes += 1
                state.log(f"Resuming run (resume #{state.details.resumes})")
                logger.info(f"Resuming sync log {state.log_id} from {self.artifacts.date_string} artifacts")
                return state
            logger.info("No paused run to resume, starting a new one")

        if source not in SOURCES:
            raise ValueError(f"Unknown sync source: {source}")

        await self._claim()
        state = SyncRunState(source=source, run_date=self.artifacts.date_string)
        self.state = state
        try:
            await self._register(state)
        except ScheduleConflict:
            await self.progress.clear()
            raise

        # A fresh run never reuses a previous run's leftovers
        self.artifacts.clear()
        await self.batch.reset_cursor()
        await self.cancel.reset()
        await self.options.delete(RUN_STATE_KEY)

        state.log_id = await self.history.log_start(source)
        state.log(f"Sync started (source={source})")
        return state

    async def _finish(self, state: SyncRunState, status: str, processed: int, failed: int, error: Optional[str] = None):
        state.details.duration = format_duration(datetime.fromisoformat(state.started_at.rstrip("Z")), datetime.utcnow())
        if state.log_id is not None:
            await self.history.log_update(
                state.log_id, status, processed, failed, state.details, error_message=error
            )
        await self.options.delete(RUN_STATE_KEY)
        await self.progress.clear()

    async def _fail(
        self,
        state: SyncRunState,
        error: str,
        job_status: JobStatus = JobStatus.FAILED,
        cursor: Optional[BatchCursor] = None,
    ) -> RunResult:
        processed = cursor.processed if cursor else 0
        failed = cursor.failed if cursor else 0
        state.add_error(error)
        logger.error(f"Sync failed: {error}")

        await self._report(state, job_status, processed, error, "\n".join(state.error_summary()))
        await self._finish(state, "failed", processed, failed, error)
        return RunResult(
            success=False,
            status="failed",
            message=error,
            log_id=state.log_id,
            job_id=state.job_id,
            processed=processed,
            failed=failed,
        )

    async def _stopped(self, state: SyncRunState, cursor: Optional[BatchCursor]) -> RunResult:
        processed = cursor.processed if cursor else 0
        failed = cursor.failed if cursor else 0
        state.log(f"Stopped by request after {processed} cases")
        logger.info(f"Sync stopped by request after {processed} cases")

        await self._report(state, JobStatus.PARTIAL, processed, "Sync stopped by user")
        await self._finish(state, "stopped", processed, failed, "Sync stopped by user")
        await self.cancel.reset()
        return RunResult(
            success=True,
            status="stopped",
            message=f"Sync stopped after {processed} cases",
            log_id=state.log_id,
            job_id=state.job_id,
            processed=processed,
            failed=failed,
        )

    async def _pause(self, state: SyncRunState, cursor: BatchCursor, reason: ResourceExhaustion) -> RunResult:
        """Persist everything the next invocation needs and hand back ``needs_resume``."""
        state.log(f"Paused: {reason}")
        self._apply_cursor(state, cursor)
        if state.log_id is not None:
            await self.history.log_update(state.log_id, "started", cursor.processed, cursor.failed, state.details)
        await self.options.set(RUN_STATE_KEY, state.to_dict())

        snapshot = await self.progress.read()
        snapshot.current_step = f"Paused at case {cursor.next_index} of {cursor.total_cases}, resuming shortly"
        await self.progress.publish(snapshot)

        return RunResult(
            success=True,
            status="paused",
            message=str(reason),
            needs_resume=True,
            log_id=state.log_id,
            job_id=state.job_id,
            processed=cursor.processed,
            failed=cursor.failed,
            created=cursor.created,
            updated=cursor.updated,
        )

    def _apply_cursor(self, state: SyncRunState, cursor: BatchCursor) -> None:
        state.details.cases_created = cursor.created
        state.details.cases_updated = cursor.updated
        state.details.cases_failed = cursor.failed

    async def record_crash(self, error: BaseException) -> None:
        """Close out the current run after an unexpected exception."""
        state = self.state
        if state is None:
            return
        if state.log_id is None:
            # Crashed between claiming the run and opening its record
            await self.progress.clear()
            return
        message = f"Unexpected error: {error}"
        state.add_error(message)
        await self._report(state, JobStatus.FAILED, 0, message, "\n".join(state.error_summary()))
        await self._finish(state, "failed", 0, state.details.cases_failed, message)

    async def run_full_sync(self, source: str = "manual", resume: bool = False) -> RunResult:
        """
        Run all three stages.

        Returns a RunResult whose status is one of success, partial, failed,
        stopped, paused (``needs_resume``) or conflict.
        """
        try:
            state = await self._begin(source, resume)
        except ScheduleConflict as e:
            logger.warning(f"Sync not started: {e}")
            return RunResult(success=False, status="conflict", message=str(e))
        self.state = state
        self.monitor.restart()

        if await self.cancel.is_cancelled():
            return await self._stopped(state, None)

        await self.progress.publish(ProgressSnapshot(stage="fetching", current_step="Fetching procedures"))
        result = await self.procedures.fetch_procedures()
        if not result.success:
            return await self._fail(state, result.error or result.message)
        if not result.data.get("reused"):
            state.details.procedures_created = result.data.get("created", 0)
            state.details.procedures_updated = result.data.get("updated", 0)

        if await self.cancel.is_cancelled():
            return await self._stopped(state, None)

        await self.progress.publish(ProgressSnapshot(
            stage="manifest", overall_percentage=round(100 / 3, 1), current_step="Building manifest"
        ))
        result = await self.manifest_builder.build_manifest()
        if not result.success:
            return await self._fail(state, result.error or result.message)

        try:
            manifest = self.manifest_builder.load_manifest()
        except PrerequisiteMissing as e:
            return await self._fail(state, str(e))
        state.details.procedure_count = manifest.procedure_count
        state.details.case_count = manifest.case_count
        state.details.duplicate_occurrences = manifest.duplicate_occurrences
        state.details.duplicate_count = manifest.duplicate_count
        state.details.duplicate_case_ids = manifest.duplicate_case_ids[:50]

        cursor = await self.batch.load_cursor(manifest, self.artifacts.date_string)
        if cursor.next_index:
            state.log(f"Stage 3: continuing at case {cursor.next_index + 1} of {cursor.total_cases}")

        outcome = await self._process_batches(state, manifest, cursor)
        if outcome is not None:
            return outcome

        if not cursor.exhausted:
            message = f"Stopped after {self.max_batch_iterations} batches with {cursor.total_cases - cursor.next_index} cases left"
            return await self._fail(state, message, JobStatus.TIMEOUT, cursor)

        return await self._complete(state, cursor)

    async def _process_batches(self, state: SyncRunState, manifest: Manifest, cursor: BatchCursor) -> Optional[RunResult]:
        """Loop Stage 3. Returns a RunResult if the run stopped or paused early."""
        for _ in range(self.max_batch_iterations):
            if cursor.exhausted:
                return None
            if await self.cancel.is_cancelled():
                self._apply_cursor(state, cursor)
                return await self._stopped(state, cursor)
            try:
                self.monitor.check()
            except ResourceExhaustion as e:
                return await self._pause(state, cursor, e)

            result = await self.batch.process_next_batch(manifest, cursor)
            await self._save_stage3_result(result)

            if result.data.get("needs_continue") and self.batch_delay_seconds:
                await asyncio.sleep(self.batch_delay_seconds)
        return None

    async def _complete(self, state: SyncRunState, cursor: BatchCursor) -> RunResult:
        self._apply_cursor(state, cursor)
        status = "success" if cursor.failed == 0 else "partial"
        job_status = JobStatus.SUCCESS if cursor.failed == 0 else JobStatus.PARTIAL
        message = (
            f"Synced {cursor.processed} cases "
            f"({cursor.created} created, {cursor.updated} updated, {cursor.failed} failed)"
        )
        state.log(f"Sync completed: {message}")
        logger.info(f"Sync completed: {message}")

        error_summary = "\n".join(state.error_summary()) or None
        await self._report(state, job_status, cursor.processed - cursor.failed, message, error_summary)
        await self._finish(state, status, cursor.processed, cursor.failed, error_summary)
        return RunResult(
            success=True,
            status=status,
            message=message,
            log_id=state.log_id,
            job_id=state.job_id,
            processed=cursor.processed,
            failed=cursor.failed,
            created=cursor.created,
            updated=cursor.updated,
        )

    async def _save_stage3_result(self, result: StageResult) -> None:
        await self.options.set(STAGE3_LAST_RUN_KEY, {**result.to_dict(), "completed_at": utc_now_iso()})

    # Operator surface

    async def stop(self) -> None:
        """Ask a running sync to stop at its next batch boundary."""
        await self.cancel.request()
        logger.info("Stop requested")

    async def run_stage(self, stage: int) -> StageResult:
        """Run a single stage (Stage 3 runs one batch)."""
        if stage == 1:
            return await self.procedures.fetch_procedures()
        if stage == 2:
            return await self.manifest_builder.build_manifest()
        if stage != 3:
            raise ValueError(f"Unknown stage: {stage}")

        try:
            manifest = self.manifest_builder.load_manifest()
        except PrerequisiteMissing as e:
            return StageResult.failed(3, str(e), error_type=type(e).__name__)

        cursor = await self.batch.load_cursor(manifest, self.artifacts.date_string)
        if cursor.exhausted:
            return StageResult.ok(
                3,
                "All cases processed",
                processed_cases=cursor.processed,
                total_cases=cursor.total_cases,
                needs_continue=False,
            )

        result = await self.batch.process_next_batch(manifest, cursor)
        await self._save_stage3_result(result)
        return result

    async def get_stage_status(self) -> dict[str, Any]:
        files = self.artifacts.file_status()
        manifest_stats = None
        if self.artifacts.exists(MANIFEST):
            try:
                manifest_stats = self.manifest_builder.load_manifest().stats()
            except PrerequisiteMissing as e:
                logger.warning(f"Manifest unreadable: {e}")

        return {
            "files": files,
            "manifest": manifest_stats,
            "cursor": await self.options.get(CURSOR_KEY),
            "stage3_last_run": await self.options.get(STAGE3_LAST_RUN_KEY),
            "paused_run": await self.options.get(RUN_STATE_KEY),
        }

    def get_manifest_preview(self, limit: int = 20) -> dict[str, Any]:
        return self.manifest_builder.get_manifest_preview(limit)


def build_orchestrator(session: AsyncSession, settings: Settings) -> SyncOrchestrator:
    """Wire an orchestrator for one session from settings."""
    options = OptionStore(session)
    entities = EntityStore(session)
    artifacts = ArtifactStore(settings.sync_dir)
    progress = ProgressStore(options, settings.progress_ttl_seconds)
    monitor = ResourceMonitor(
        settings.time_limit_seconds,
        settings.memory_limit_mb,
        threshold=settings.resource_threshold,
    )
    catalog = CatalogClient(
        settings.api_base_url,
        settings.api_tokens,
        settings.website_property_ids,
        timeout=settings.api_timeout,
    )
    registry = JobRegistryClient(
        options,
        settings.api_base_url,
        settings.api_tokens,
        settings.website_property_ids,
        settings.site_url,
        timeout=settings.api_timeout,
    )

    return SyncOrchestrator(
        options=options,
        history=SyncHistory(session, settings.history_page_size),
        artifacts=artifacts,
        procedures=ProcedureFetcher(catalog, entities, artifacts),
        manifest_builder=ManifestBuilder(
            catalog, entities, artifacts, progress, page_limit=settings.case_id_page_limit
        ),
        batch=BatchProcessor(
            catalog,
            entities,
            options,
            progress,
            monitor,
            batch_size=settings.batch_size,
            recent_cases_limit=settings.recent_cases_limit,
        ),
        progress=progress,
        monitor=monitor,
        registry=registry,
        max_batch_iterations=settings.max_batch_iterations,
        batch_delay_seconds=settings.batch_delay_seconds,
    )
