"""Tests for the stage orchestrator.

Runs the full pipeline against an in-memory catalog and database, with the
job registry mocked where a test needs it.
"""

import pytest
from datetime import date
from unittest.mock import AsyncMock, MagicMock

from gallerysync.services.artifacts import MANIFEST, PROCEDURES, ArtifactStore
from gallerysync.services.batch import BatchProcessor
from gallerysync.services.entities import EntityStore
from gallerysync.services.errors import RegistryUnavailable, RemoteFetchError, ScheduleConflict
from gallerysync.services.history import SyncHistory
from gallerysync.services.manifest import ManifestBuilder
from gallerysync.services.options import CURSOR_KEY, RUN_STATE_KEY, STAGE3_LAST_RUN_KEY, OptionStore
from gallerysync.services.orchestrator import SyncOrchestrator
from gallerysync.services.procedures import ProcedureFetcher
from gallerysync.services.progress import ProgressStore
from gallerysync.services.registry import JobStatus, SyncJob
from gallerysync.services.resources import ResourceMonitor
from gallerysync.services.state import CancellationToken, ProgressSnapshot
from tests.conftest import FakeCatalog


def _make_orchestrator(
    session, settings, catalog, registry=None, monitor=None, batch_size=10, max_batch_iterations=1000, run_date=None
):
    options = OptionStore(session)
    entities = EntityStore(session)
    artifacts = ArtifactStore(settings.sync_dir, run_date)
    progress = ProgressStore(options)
    monitor = monitor or ResourceMonitor(0, 0, memory_reader=lambda: 100.0)
    return SyncOrchestrator(
        options=options,
        history=SyncHistory(session),
        artifacts=artifacts,
        procedures=ProcedureFetcher(catalog, entities, artifacts),
        manifest_builder=ManifestBuilder(catalog, entities, artifacts, progress),
        batch=BatchProcessor(catalog, entities, options, progress, monitor, batch_size=batch_size),
        progress=progress,
        monitor=monitor,
        registry=registry,
        max_batch_iterations=max_batch_iterations,
        batch_delay_seconds=0,
    )


def _mock_registry(active_job=None):
    registry = MagicMock()
    registry.has_active_job = AsyncMock(return_value=active_job is not None)
    registry.get_current_job = AsyncMock(return_value=active_job)
    registry.register_sync = AsyncMock(return_value=SyncJob(job_id="job-1", sync_type="MANUAL"))
    registry.report_sync = AsyncMock(return_value={"success": True})
    registry.close = AsyncMock()
    return registry


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _pausing_orchestrator(session, settings, catalog, **kwargs):
    """Orchestrator whose clock passes the time threshold after every batch."""
    clock = FakeClock()
    monitor = ResourceMonitor(100, 0, threshold=0.8, clock=clock, memory_reader=lambda: 50.0)
    orchestrator = _make_orchestrator(session, settings, catalog, monitor=monitor, **kwargs)
    process = orchestrator.batch.process_next_batch

    async def slow_batch(manifest, cursor):
        result = await process(manifest, cursor)
        clock.now += 90
        return result

    orchestrator.batch.process_next_batch = slow_batch
    return orchestrator


class TestFullSync:

    @pytest.mark.asyncio
    async def test_successful_run(self, async_session, settings, fake_catalog):
        registry = _mock_registry()
        orchestrator = _make_orchestrator(async_session, settings, fake_catalog, registry)

        result = await orchestrator.run_full_sync("manual")

        assert result.success
        assert result.status == "success"
        assert result.processed == 5
        assert result.job_id == "job-1"

        record = await SyncHistory(async_session).get(result.log_id)
        assert record.status == "success"
        assert record.items_processed == 5
        assert record.details["duplicate_count"] == 1
        assert record.details["procedure_count"] == 2

        statuses = [call.args[0] for call in registry.report_sync.call_args_list]
        assert statuses == [JobStatus.IN_PROGRESS, JobStatus.SUCCESS]

        snapshot = await orchestrator.progress.read()
        assert snapshot.stage == "idle"

    @pytest.mark.asyncio
    async def test_one_failure_in_batch_of_ten_is_partial(self, async_session, settings):
        catalog = FakeCatalog({101: list(range(1, 11))}, failing={7})
        registry = _mock_registry()
        orchestrator = _make_orchestrator(async_session, settings, catalog, registry)

        result = await orchestrator.run_full_sync("manual")

        assert result.status == "partial"
        assert result.processed == 10
        assert result.failed == 1

        record = await SyncHistory(async_session).get(result.log_id)
        assert record.status == "partial"
        assert record.items_processed == 10
        assert record.items_failed == 1
        assert record.details["errors"] == ["Failed to process case 7: API returned error status: 500"]
        assert registry.report_sync.call_args_list[-1].args[0] == JobStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_stop_before_first_batch(self, async_session, settings, fake_catalog):
        orchestrator = _make_orchestrator(async_session, settings, fake_catalog)
        build_manifest = orchestrator.manifest_builder.build_manifest

        async def build_then_stop():
            result = await build_manifest()
            await CancellationToken(OptionStore(async_session)).request()
            return result

        orchestrator.manifest_builder.build_manifest = build_then_stop

        result = await orchestrator.run_full_sync("manual")

        assert result.status == "stopped"
        assert result.processed == 0
        assert fake_catalog.detail_calls == []

        record = await SyncHistory(async_session).get(result.log_id)
        assert record.status == "stopped"
        assert record.items_processed == 0
        # The stop flag does not leak into the next run
        assert not await CancellationToken(OptionStore(async_session)).is_cancelled()

    @pytest.mark.asyncio
    async def test_stage1_failure_fails_run(self, async_session, settings, fake_catalog):
        async def broken_sidebar():
            raise RemoteFetchError("API returned error status: 503")

        fake_catalog.fetch_sidebar = broken_sidebar
        registry = _mock_registry()
        orchestrator = _make_orchestrator(async_session, settings, fake_catalog, registry)

        result = await orchestrator.run_full_sync("manual")

        assert not result.success
        assert result.status == "failed"
        record = await SyncHistory(async_session).get(result.log_id)
        assert record.status == "failed"
        assert "503" in record.error_message
        assert registry.report_sync.call_args_list[-1].args[0] == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_fresh_run_discards_previous_artifacts(self, async_session, settings, fake_catalog):
        orchestrator = _make_orchestrator(async_session, settings, fake_catalog)
        await orchestrator.run_full_sync("manual")
        assert fake_catalog.sidebar_calls == 1

        await orchestrator.run_full_sync("manual")

        assert fake_catalog.sidebar_calls == 2
        assert orchestrator.artifacts.exists(PROCEDURES)
        assert orchestrator.artifacts.exists(MANIFEST)

    @pytest.mark.asyncio
    async def test_empty_manifest_succeeds(self, async_session, settings):
        catalog = FakeCatalog({101: []})
        orchestrator = _make_orchestrator(async_session, settings, catalog)

        result = await orchestrator.run_full_sync("manual")

        assert result.status == "success"
        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_iteration_ceiling_fails_with_timeout(self, async_session, settings):
        catalog = FakeCatalog({101: list(range(1, 31))})
        registry = _mock_registry()
        orchestrator = _make_orchestrator(
            async_session, settings, catalog, registry, batch_size=10, max_batch_iterations=2
        )

        result = await orchestrator.run_full_sync("manual")

        assert result.status == "failed"
        assert result.processed == 20
        assert registry.report_sync.call_args_list[-1].args[0] == JobStatus.TIMEOUT


class TestRegistryCoordination:

    @pytest.mark.asyncio
    async def test_conflict_does_not_start_run(self, async_session, settings, fake_catalog):
        registry = _mock_registry()
        registry.register_sync.side_effect = ScheduleConflict("Sync already in progress")
        orchestrator = _make_orchestrator(async_session, settings, fake_catalog, registry)

        result = await orchestrator.run_full_sync("manual")

        assert result.status == "conflict"
        assert fake_catalog.sidebar_calls == 0
        assert await SyncHistory(async_session).list_records() == []

    @pytest.mark.asyncio
    async def test_unavailable_registry_is_a_warning(self, async_session, settings, fake_catalog):
        registry = _mock_registry()
        registry.register_sync.side_effect = RegistryUnavailable("Sync API unreachable")
        registry.report_sync.side_effect = RegistryUnavailable("Sync API unreachable")
        orchestrator = _make_orchestrator(async_session, settings, fake_catalog, registry)

        result = await orchestrator.run_full_sync("manual")

        assert result.status == "success"
        record = await SyncHistory(async_session).get(result.log_id)
        assert any("unavailable" in w for w in record.details["warnings"])

    @pytest.mark.asyncio
    async def test_uses_pre_registered_job(self, async_session, settings, fake_catalog):
        job = SyncJob(job_id="auto-7", sync_type="AUTO")
        registry = _mock_registry(active_job=job)
        orchestrator = _make_orchestrator(async_session, settings, fake_catalog, registry)

        result = await orchestrator.run_full_sync("automatic")

        assert result.job_id == "auto-7"
        registry.register_sync.assert_not_called()

    @pytest.mark.asyncio
    async def test_job_already_in_progress_is_a_conflict(self, async_session, settings, fake_catalog):
        await _make_orchestrator(async_session, settings, fake_catalog).run_full_sync("manual")
        options = OptionStore(async_session)
        cursor = await options.get(CURSOR_KEY)

        registry = _mock_registry(active_job=SyncJob(job_id="job-1", sync_type="MANUAL", status="IN_PROGRESS"))
        second = _make_orchestrator(async_session, settings, fake_catalog, registry)
        result = await second.run_full_sync("automatic")

        assert result.status == "conflict"
        registry.register_sync.assert_not_called()
        registry.report_sync.assert_not_called()
        assert second.artifacts.exists(PROCEDURES)
        assert second.artifacts.exists(MANIFEST)
        assert await options.get(CURSOR_KEY) == cursor
        assert len(await SyncHistory(async_session).list_records()) == 1
        assert (await second.progress.read()).stage == "idle"

    @pytest.mark.asyncio
    async def test_run_in_flight_is_a_conflict(self, async_session, settings, fake_catalog):
        progress = ProgressStore(OptionStore(async_session))
        await progress.publish(ProgressSnapshot(stage="processing", current_step="Processing cases"))
        registry = _mock_registry()
        orchestrator = _make_orchestrator(async_session, settings, fake_catalog, registry)

        result = await orchestrator.run_full_sync("automatic")

        assert result.status == "conflict"
        assert fake_catalog.sidebar_calls == 0
        registry.register_sync.assert_not_called()
        assert (await progress.read()).stage == "processing"


class TestResume:

    @pytest.mark.asyncio
    async def test_paused_run_blocks_a_fresh_run(self, async_session, settings):
        case_ids = list(range(1, 26))
        catalog = FakeCatalog({101: case_ids})
        options = OptionStore(async_session)

        first = await _pausing_orchestrator(async_session, settings, catalog).run_full_sync("manual")
        assert first.status == "paused"
        cursor = await options.get(CURSOR_KEY)

        registry = _mock_registry()
        weekly = _make_orchestrator(async_session, settings, catalog, registry)
        result = await weekly.run_full_sync("automatic")

        assert result.status == "conflict"
        registry.register_sync.assert_not_called()
        assert await options.get(CURSOR_KEY) == cursor
        assert weekly.artifacts.exists(MANIFEST)
        assert len(await SyncHistory(async_session).list_records()) == 1

        # The paused run still completes from where it stopped
        resumed = await _make_orchestrator(async_session, settings, catalog).run_full_sync("manual", resume=True)
        assert resumed.status == "success"
        assert resumed.log_id == first.log_id
        assert sorted(catalog.detail_calls) == case_ids

    @pytest.mark.asyncio
    async def test_resume_after_midnight_keeps_cursor(self, async_session, settings):
        case_ids = list(range(1, 26))
        catalog = FakeCatalog({101: case_ids})

        first = await _pausing_orchestrator(
            async_session, settings, catalog, run_date=date(2026, 1, 1)
        ).run_full_sync("manual")
        assert first.status == "paused"
        assert first.processed == 10

        # The runner builds a new orchestrator for every resume
        next_day = _make_orchestrator(async_session, settings, catalog, run_date=date(2026, 1, 2))
        final = await next_day.run_full_sync("manual", resume=True)

        assert final.status == "success"
        assert final.processed == 25
        assert len(catalog.detail_calls) == 25
        assert sorted(catalog.detail_calls) == case_ids
        assert catalog.sidebar_calls == 1
        assert next_day.artifacts.date_string == "2026-01-01"

    @pytest.mark.asyncio
    async def test_pause_and_resume_process_every_case_once(self, async_session, settings):
        case_ids = list(range(1, 26))
        catalog = FakeCatalog({101: case_ids})
        clock = FakeClock()
        monitor = ResourceMonitor(100, 0, threshold=0.8, clock=clock, memory_reader=lambda: 50.0)
        orchestrator = _make_orchestrator(async_session, settings, catalog, monitor=monitor)

        # Past the time threshold once the first batch is done
        process = orchestrator.batch.process_next_batch

        async def slow_batch(manifest, cursor):
            result = await process(manifest, cursor)
            clock.now += 90
            return result

        orchestrator.batch.process_next_batch = slow_batch

        first = await orchestrator.run_full_sync("manual")

        assert first.status == "paused"
        assert first.needs_resume is True
        assert first.processed == 10
        record = await SyncHistory(async_session).get(first.log_id)
        assert record.status == "started"
        assert await orchestrator.options.get(RUN_STATE_KEY) is not None

        results = []
        while True:
            result = await orchestrator.run_full_sync("manual", resume=True)
            results.append(result)
            if not result.needs_resume:
                break

        final = results[-1]
        assert final.status == "success"
        assert final.log_id == first.log_id
        assert final.processed == 25
        assert sorted(catalog.detail_calls) == case_ids
        assert catalog.sidebar_calls == 1

        record = await SyncHistory(async_session).get(first.log_id)
        assert record.status == "success"
        assert record.details["resumes"] == len(results)
        assert await orchestrator.options.get(RUN_STATE_KEY) is None

    @pytest.mark.asyncio
    async def test_resume_without_saved_state_starts_fresh(self, async_session, settings, fake_catalog):
        orchestrator = _make_orchestrator(async_session, settings, fake_catalog)

        result = await orchestrator.run_full_sync("manual", resume=True)

        assert result.status == "success"
        assert result.processed == 5


class TestOperatorSurface:

    @pytest.mark.asyncio
    async def test_run_stages_individually(self, async_session, settings, fake_catalog):
        orchestrator = _make_orchestrator(async_session, settings, fake_catalog)

        missing = await orchestrator.run_stage(3)
        assert missing.data["error_type"] == "PrerequisiteMissing"

        assert (await orchestrator.run_stage(1)).success
        assert (await orchestrator.run_stage(2)).success
        batch = await orchestrator.run_stage(3)
        assert batch.data["processed_cases"] == 5
        assert batch.data["needs_continue"] is False

        done = await orchestrator.run_stage(3)
        assert done.message == "All cases processed"

        status = await orchestrator.get_stage_status()
        assert status["files"]["manifest"]["exists"] is True
        assert status["manifest"]["case_count"] == 5
        assert status["cursor"]["next_index"] == 5
        assert status["stage3_last_run"]["processed_cases"] == 5

    @pytest.mark.asyncio
    async def test_unknown_stage(self, async_session, settings, fake_catalog):
        orchestrator = _make_orchestrator(async_session, settings, fake_catalog)
        with pytest.raises(ValueError):
            await orchestrator.run_stage(4)

    @pytest.mark.asyncio
    async def test_stage3_last_run_is_recorded(self, async_session, settings, fake_catalog):
        orchestrator = _make_orchestrator(async_session, settings, fake_catalog)
        await orchestrator.run_full_sync("manual")

        last_run = await orchestrator.options.get(STAGE3_LAST_RUN_KEY)
        assert last_run["total_cases"] == 5
        assert "completed_at" in last_run
