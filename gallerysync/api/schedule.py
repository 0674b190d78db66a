"""Weekly schedule endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from gallerysync.core.config import get_settings
from gallerysync.core.database import get_db
from gallerysync.schemas.responses import ScheduleResponse
from gallerysync.services.scheduler import ScheduleConfig, apply_schedule, get_schedule

router = APIRouter(prefix="/api/schedule", tags=["schedule"])


class ScheduleUpdate(BaseModel):
    enabled: bool = True
    day_of_week: int = Field(ge=0, le=6)
    time_of_day: str = Field(pattern=r"^\d{1,2}:\d{2}$")
    timezone: str | None = None


@router.get("", response_model=ScheduleResponse)
async def read_schedule(db: AsyncSession = Depends(get_db)):
    """Current schedule and its next run."""
    return ScheduleResponse(**await get_schedule(db))


@router.put("", response_model=ScheduleResponse)
async def update_schedule(update: ScheduleUpdate, db: AsyncSession = Depends(get_db)):
    """Save the schedule, register the next run and arrange it."""
    settings = get_settings()
    try:
        config = ScheduleConfig(
            enabled=update.enabled,
            day_of_week=update.day_of_week,
            time_of_day=update.time_of_day,
            timezone=update.timezone or settings.tz,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    result = await apply_schedule(db, config, settings)
    return ScheduleResponse(**result)
