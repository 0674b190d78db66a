"""Token-authenticated trigger endpoints for external callers."""

import logging
import secrets
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from gallerysync.api.sync import is_sync_running
from gallerysync.core.config import get_settings
from gallerysync.core.database import get_db
from gallerysync.services.errors import RegistryUnavailable, ScheduleConflict, SecurityCheckFailed
from gallerysync.services.history import SyncHistory, record_to_dict
from gallerysync.services.options import OptionStore
from gallerysync.services.registry import JobRegistryClient, JobStatus, SyncType
from gallerysync.services.scheduler import ScheduleConfig, apply_schedule, get_schedule, run_sync_job
from gallerysync.services.state import CancellationToken

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/remote", tags=["remote"])


class RemoteSyncResponse(BaseModel):
    success: bool
    message: str
    job_id: str | None = None


def check_token(provided: str | None, tokens: list[str]) -> None:
    """Raise SecurityCheckFailed unless ``provided`` matches a configured token."""
    if not provided:
        raise SecurityCheckFailed("Missing sync token")
    matched = False
    for token in tokens:
        # Compare against every token so timing does not reveal which one matched
        if token and secrets.compare_digest(provided.encode(), token.encode()):
            matched = True
    if not matched:
        raise SecurityCheckFailed("Invalid sync token")


async def require_token(
    token: str | None = Query(default=None),
    x_sync_token: str | None = Header(default=None),
) -> None:
    try:
        check_token(x_sync_token or token, get_settings().api_tokens)
    except SecurityCheckFailed as e:
        logger.warning(f"Rejected remote trigger: {e}")
        raise HTTPException(status_code=403, detail=str(e))


@router.post("/sync", response_model=RemoteSyncResponse, dependencies=[Depends(require_token)])
async def remote_sync(background_tasks: BackgroundTasks, db: AsyncSession = Depends(get_db)):
    """Register a job and start a full sync in the background."""
    if await is_sync_running(db):
        raise HTTPException(status_code=409, detail="A sync is already running")

    settings = get_settings()
    registry = JobRegistryClient(
        OptionStore(db),
        settings.api_base_url,
        settings.api_tokens,
        settings.website_property_ids,
        settings.site_url,
        timeout=settings.api_timeout,
    )
    job_id = None
    try:
        current = await registry.get_current_job()
        if current is not None and current.is_active:
            if current.status != JobStatus.PENDING.value:
                raise ScheduleConflict(f"Job {current.job_id} is already {current.status}")
            job_id = current.job_id
        else:
            job = await registry.register_sync(SyncType.MANUAL)
            job_id = job.job_id
    except ScheduleConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RegistryUnavailable as e:
        logger.warning(f"Starting remote sync without a registry job: {e}")
    finally:
        await registry.close()

    background_tasks.add_task(run_sync_job, "rest_api", False)
    return RemoteSyncResponse(success=True, message="Sync scheduled", job_id=job_id)


@router.get("/status", dependencies=[Depends(require_token)])
async def remote_status(
    sync_day: int | None = Query(default=None, ge=0, le=6),
    sync_time: str | None = Query(default=None, pattern=r"^\d{1,2}:\d{2}$"),
    db: AsyncSession = Depends(get_db)
):
    """
    Sync status for external callers.

    Passing ``sync_day`` and/or ``sync_time`` updates the weekly schedule and
    returns the recomputed next run.
    """
    settings = get_settings()
    schedule = await get_schedule(db, settings)

    if sync_day is not None or sync_time is not None:
        try:
            config = ScheduleConfig(
                enabled=True,
                day_of_week=sync_day if sync_day is not None else schedule["day_of_week"],
                time_of_day=sync_time or schedule["time_of_day"],
                timezone=schedule["timezone"],
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        schedule = await apply_schedule(db, config, settings)

    latest = await SyncHistory(db).get_latest()
    return {
        "success": True,
        "is_running": await is_sync_running(db),
        "last_sync": record_to_dict(latest) if latest else None,
        "schedule": schedule,
        "next_run": schedule.get("next_run"),
    }


@router.post("/cancel", dependencies=[Depends(require_token)])
async def remote_cancel(db: AsyncSession = Depends(get_db)):
    """Ask the running sync to stop at its next batch boundary."""
    if not await is_sync_running(db):
        raise HTTPException(status_code=400, detail="No sync is currently running")

    await CancellationToken(OptionStore(db)).request()
    return {"success": True, "message": "Sync stop requested"}
