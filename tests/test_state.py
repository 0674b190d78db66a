"""Tests for run-state types, the option store and the progress store."""

import pytest

from gallerysync.services.options import PROGRESS_KEY, STOP_FLAG_KEY, OptionStore
from gallerysync.services.progress import ProgressStore
from gallerysync.services.state import (
    ACTIVITY_LOG_LIMIT,
    BatchCursor,
    CancellationToken,
    ProgressSnapshot,
    StageResult,
    StepProgress,
    SyncDetails,
    SyncRunState,
)


class TestOptionStore:

    @pytest.mark.asyncio
    async def test_set_get_overwrite_delete(self, async_session):
        options = OptionStore(async_session)
        assert await options.get("missing", "fallback") == "fallback"

        await options.set("cursor", {"next_index": 10})
        await options.set("cursor", {"next_index": 20})
        assert await options.get("cursor") == {"next_index": 20}

        await options.delete("cursor")
        assert await options.get("cursor") is None

    @pytest.mark.asyncio
    async def test_expired_value_reads_as_default(self, async_session):
        options = OptionStore(async_session)
        await options.set("progress", {"stage": "processing"}, ttl_seconds=-1)

        assert await options.get("progress") is None

    @pytest.mark.asyncio
    async def test_value_within_ttl(self, async_session):
        options = OptionStore(async_session)
        await options.set("progress", {"stage": "processing"}, ttl_seconds=300)

        assert await options.get("progress") == {"stage": "processing"}


class TestProgressStore:

    @pytest.mark.asyncio
    async def test_idle_when_nothing_published(self, async_session):
        snapshot = await ProgressStore(OptionStore(async_session)).read()
        assert snapshot.stage == "idle"
        assert snapshot.overall_percentage == 0.0

    @pytest.mark.asyncio
    async def test_publish_read_clear(self, async_session):
        store = ProgressStore(OptionStore(async_session))
        await store.publish(ProgressSnapshot(
            stage="processing",
            overall_percentage=80.0,
            case_progress=StepProgress(current=40, total=100),
            recent_cases=["Case 40", "Case 39"],
        ))

        snapshot = await store.read()
        assert snapshot.stage == "processing"
        assert snapshot.case_progress.percentage == 40.0
        assert snapshot.recent_cases == ["Case 40", "Case 39"]
        assert snapshot.updated_at is not None

        await store.clear()
        assert (await store.read()).stage == "idle"

    @pytest.mark.asyncio
    async def test_reads_older_snapshot_shape(self, async_session):
        options = OptionStore(async_session)
        await options.set(PROGRESS_KEY, {"stage": "manifest", "progress": 45, "message": "Building manifest"})

        snapshot = await ProgressStore(options).read()

        assert snapshot.overall_percentage == 45.0
        assert snapshot.current_step == "Building manifest"

    @pytest.mark.asyncio
    async def test_expired_snapshot_is_idle(self, async_session):
        store = ProgressStore(OptionStore(async_session), ttl_seconds=-1)
        await store.publish(ProgressSnapshot(stage="processing"))
        assert (await store.read()).stage == "idle"


class TestCancellationToken:

    @pytest.mark.asyncio
    async def test_request_is_seen_by_another_token(self, async_session):
        options = OptionStore(async_session)
        running = CancellationToken(options)
        assert not await running.is_cancelled()

        await CancellationToken(options).request()

        assert await running.is_cancelled()
        await running.reset()
        assert await options.get(STOP_FLAG_KEY) is None
        assert not await running.is_cancelled()


class TestStageResult:

    def test_failed_message(self):
        result = StageResult.failed(2, "sync-data-2025-01-28.json does not exist", error_type="PrerequisiteMissing")
        assert not result.success
        assert result.message == "Stage 2 failed: sync-data-2025-01-28.json does not exist"
        assert result.to_dict()["error_type"] == "PrerequisiteMissing"


class TestBatchCursor:

    def test_reads_legacy_counter_names(self):
        cursor = BatchCursor.from_dict({
            "manifest_date": "2025-01-28",
            "total_cases": 50,
            "next_index": 20,
            "created_posts": 15,
            "updated_posts": 4,
            "failed_cases": 1,
            "processed_cases": 20,
        })
        assert cursor.created == 15
        assert cursor.updated == 4
        assert cursor.failed == 1
        assert cursor.processed == 20
        assert not cursor.exhausted


class TestSyncDetails:

    def test_current_names_win_over_legacy(self):
        details = SyncDetails.from_dict({"created_posts": 3, "cases_created": 7})
        assert details.cases_created == 7

    def test_unknown_keys_are_dropped(self):
        details = SyncDetails.from_dict({"memory_peak": "512MB", "cases_updated": 2})
        assert details.cases_updated == 2
        assert not hasattr(details, "memory_peak")


class TestSyncRunState:

    def test_error_summary_caps_messages(self):
        state = SyncRunState(source="manual")
        for case_id in range(15):
            state.add_error(f"Failed to process case {case_id}: timeout")

        summary = state.error_summary()

        assert len(summary) == 11
        assert summary[-1] == "... and 5 more errors"
        assert state.details.error_count == 15

    def test_activity_log_is_bounded(self):
        state = SyncRunState(source="manual")
        for i in range(ACTIVITY_LOG_LIMIT + 25):
            state.log(f"entry {i}")

        assert len(state.details.activity_log) == ACTIVITY_LOG_LIMIT
        assert state.details.activity_log[-1].endswith(f"entry {ACTIVITY_LOG_LIMIT + 24}")

    def test_round_trip(self):
        state = SyncRunState(source="rest_api", log_id=4, job_id="job-2", run_date="2026-01-01")
        state.add_warning("Job registry unavailable")
        state.details.resumes = 2

        restored = SyncRunState.from_dict(state.to_dict())

        assert restored.log_id == 4
        assert restored.job_id == "job-2"
        assert restored.details.resumes == 2
        assert restored.details.warnings == ["Job registry unavailable"]
        assert restored.run_date == "2026-01-01"
