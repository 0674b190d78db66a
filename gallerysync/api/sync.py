"""Sync API endpoints."""

import logging
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Path, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from gallerysync.core.database import get_db
from gallerysync.core.config import get_settings
from gallerysync.schemas.responses import ProgressResponse, StageResultResponse, SyncLogResponse
from gallerysync.services.history import SyncHistory, record_to_dict
from gallerysync.services.options import RUN_STATE_KEY, OptionStore
from gallerysync.services.orchestrator import build_orchestrator
from gallerysync.services.progress import ProgressStore
from gallerysync.services.scheduler import run_sync_job
from gallerysync.services.state import CancellationToken

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class StartRequest(BaseModel):
    resume: bool = False


class SyncResponse(BaseModel):
    message: str
    source: str
    resume: bool = False


async def is_sync_running(db: AsyncSession) -> bool:
    """A run is in flight while it publishes progress or sits paused awaiting resume."""
    options = OptionStore(db)
    settings = get_settings()
    snapshot = await ProgressStore(options, settings.progress_ttl_seconds).read()
    if snapshot.stage != "idle":
        return True
    return bool(await options.get(RUN_STATE_KEY))


@router.post("/start", response_model=SyncResponse)
async def start_sync(
    background_tasks: BackgroundTasks,
    request: StartRequest | None = None,
    db: AsyncSession = Depends(get_db)
):
    """Start a full sync, or resume a paused one."""
    resume = request.resume if request else False
    if not resume and await is_sync_running(db):
        raise HTTPException(
            status_code=409,
            detail="A sync is already running. Check /api/sync/progress for progress.",
        )

    background_tasks.add_task(run_sync_job, "manual", resume)
    return SyncResponse(
        message="Sync resumed" if resume else "Sync started",
        source="manual",
        resume=resume,
    )


@router.post("/stop")
async def stop_sync(db: AsyncSession = Depends(get_db)):
    """Ask the running sync to stop at its next batch boundary."""
    if not await is_sync_running(db):
        raise HTTPException(status_code=400, detail="No sync is currently running")

    await CancellationToken(OptionStore(db)).request()
    logger.info("Stop requested via API")
    return {"message": "Sync stop requested"}


@router.get("/progress", response_model=ProgressResponse)
async def sync_progress(db: AsyncSession = Depends(get_db)):
    """Current progress snapshot; idle when nothing is running."""
    settings = get_settings()
    snapshot = await ProgressStore(OptionStore(db), settings.progress_ttl_seconds).read()
    return ProgressResponse(is_running=snapshot.stage != "idle", **snapshot.to_dict())


@router.get("/status")
async def sync_status(db: AsyncSession = Depends(get_db)):
    """Last run, registry state and stage artifacts."""
    settings = get_settings()
    history = SyncHistory(db, settings.history_page_size)
    orchestrator = build_orchestrator(db, settings)
    registry = orchestrator.registry
    try:
        latest = await history.get_latest()
        last_completed = await history.get_latest(terminal_only=True)
        current_job = await registry.get_current_job()
        return {
            "is_running": await is_sync_running(db),
            "last_sync": record_to_dict(latest) if latest else None,
            "last_completed_sync": record_to_dict(last_completed) if last_completed else None,
            "current_job": current_job.to_dict() if current_job else None,
            "last_report": await registry.get_last_report(),
            "stages": await orchestrator.get_stage_status(),
        }
    finally:
        await orchestrator.close()


@router.post("/stages/{stage}", response_model=StageResultResponse)
async def run_stage(stage: int = Path(ge=1, le=3), db: AsyncSession = Depends(get_db)):
    """Run one stage by hand. Stage 3 processes a single batch."""
    if await is_sync_running(db):
        raise HTTPException(status_code=409, detail="A sync is already running")

    orchestrator = build_orchestrator(db, get_settings())
    try:
        result = await orchestrator.run_stage(stage)
    finally:
        await orchestrator.close()

    if result.data.get("error_type") == "PrerequisiteMissing":
        raise HTTPException(status_code=409, detail=result.message)

    return StageResultResponse(
        success=result.success,
        stage=result.stage,
        message=result.message,
        error=result.error,
        data=result.data,
    )


@router.get("/manifest")
async def manifest_preview(
    limit: int = Query(default=20, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    """Today's manifest stats and its first entries."""
    orchestrator = build_orchestrator(db, get_settings())
    try:
        return orchestrator.get_manifest_preview(limit)
    finally:
        await orchestrator.close()


@router.get("/history", response_model=list[SyncLogResponse])
async def sync_history(
    limit: int | None = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db)
):
    """Sync history, most recent first."""
    history = SyncHistory(db, get_settings().history_page_size)
    records = await history.list_records(limit)
    return [SyncLogResponse(**record_to_dict(record)) for record in records]


@router.delete("/history/{record_id}")
async def delete_history_record(record_id: int, db: AsyncSession = Depends(get_db)):
    """Delete one history record."""
    if not await SyncHistory(db).delete_record(record_id):
        raise HTTPException(status_code=404, detail=f"Sync log {record_id} not found")
    return {"message": f"Sync log {record_id} deleted"}


@router.delete("/history")
async def clear_history(db: AsyncSession = Depends(get_db)):
    """Delete all history records."""
    deleted = await SyncHistory(db).clear_history()
    return {"message": "Sync history cleared", "deleted": deleted}
