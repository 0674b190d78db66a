"""APScheduler setup for weekly syncs, resumptions and history cleanup."""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from gallerysync.core.config import Settings, get_settings
from gallerysync.core.database import async_session_maker
from gallerysync.services.errors import RegistryUnavailable, ScheduleConflict
from gallerysync.services.history import SyncHistory
from gallerysync.services.options import RUN_STATE_KEY, SCHEDULE_KEY, OptionStore
from gallerysync.services.orchestrator import build_orchestrator
from gallerysync.services.registry import JobRegistryClient, SyncType
from gallerysync.services.state import RunResult

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "weekly_sync"
RESUME_JOB_ID = "sync_resume"
CLEANUP_JOB_ID = "history_cleanup"

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


def parse_time_of_day(value: str) -> time:
    """Parse "HH:MM" (24h)."""
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except (AttributeError, ValueError) as e:
        raise ValueError(f"Invalid time of day {value!r}, expected HH:MM") from e


@dataclass
class ScheduleConfig:
    enabled: bool = True
    day_of_week: int = 0  # 0 = Sunday
    time_of_day: str = "02:00"
    timezone: str = "UTC"

    def __post_init__(self):
        if not 0 <= int(self.day_of_week) <= 6:
            raise ValueError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
        self.day_of_week = int(self.day_of_week)
        parse_time_of_day(self.time_of_day)
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone {self.timezone!r}") from e

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScheduleConfig":
        return cls(
            enabled=True,
            day_of_week=settings.sync_day,
            time_of_day=settings.sync_time,
            timezone=settings.tz,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any], defaults: "ScheduleConfig") -> "ScheduleConfig":
        return cls(
            enabled=bool(data.get("enabled", defaults.enabled)),
            day_of_week=data.get("day_of_week", defaults.day_of_week),
            time_of_day=data.get("time_of_day", defaults.time_of_day),
            timezone=data.get("timezone") or defaults.timezone,
        )


@dataclass
class NextRun:
    timestamp: float
    iso_utc: str
    local: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def calculate_next_run_time(config: ScheduleConfig, now: Optional[datetime] = None) -> NextRun:
    """
    Next occurrence of the configured weekday and time.

    Today counts if the time is still ahead; otherwise the run lands 1 to 7
    days out. Naive ``now`` values are taken to be in the schedule's timezone.
    """
    tz = ZoneInfo(config.timezone)
    if now is None:
        now = datetime.now(tz)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=tz)
    else:
        now = now.astimezone(tz)

    # Python weekdays start on Monday
    target_weekday = (config.day_of_week - 1) % 7
    days_ahead = (target_weekday - now.weekday()) % 7
    candidate = datetime.combine(
        now.date() + timedelta(days=days_ahead), parse_time_of_day(config.time_of_day), tzinfo=tz
    )
    if candidate <= now:
        candidate += timedelta(days=7)

    utc = candidate.astimezone(timezone.utc)
    return NextRun(
        timestamp=utc.timestamp(),
        iso_utc=utc.strftime("%Y-%m-%dT%H:%M:%SZ"),
        local=candidate.isoformat(),
    )


def _make_registry(options: OptionStore, settings: Settings) -> JobRegistryClient:
    return JobRegistryClient(
        options,
        settings.api_base_url,
        settings.api_tokens,
        settings.website_property_ids,
        settings.site_url,
        timeout=settings.api_timeout,
    )


def _add_one_shot(job_id: str, run_date: datetime, **kwargs) -> bool:
    if scheduler is None:
        logger.warning(f"Scheduler not running, cannot schedule {job_id}")
        return False

    scheduler.add_job(
        run_sync_job,
        DateTrigger(run_date=run_date),
        id=job_id,
        kwargs=kwargs,
        replace_existing=True,
        misfire_grace_time=3600,
    )
    return True


async def get_schedule(session: AsyncSession, settings: Optional[Settings] = None) -> dict[str, Any]:
    """Stored schedule (or the settings defaults) with its next run."""
    settings = settings or get_settings()
    defaults = ScheduleConfig.from_settings(settings)
    stored = await OptionStore(session).get(SCHEDULE_KEY) or {}
    config = ScheduleConfig.from_dict(stored, defaults)

    next_run = calculate_next_run_time(config) if config.enabled else None
    return {
        **config.to_dict(),
        "day_name": DAY_NAMES[config.day_of_week],
        "next_run": next_run.to_dict() if next_run else None,
        "registration": stored.get("registration"),
        "job_id": stored.get("job_id"),
    }


async def apply_schedule(session: AsyncSession, config: ScheduleConfig, settings: Optional[Settings] = None) -> dict[str, Any]:
    """
    Persist ``config``, register the next AUTO job and arrange the one-shot run.

    Registration is skipped (left pending) while another job is active; it is
    retried by ``schedule_after_completion`` once that job reports a terminal
    status.
    """
    settings = settings or get_settings()
    options = OptionStore(session)

    if not config.enabled:
        if scheduler is not None and scheduler.get_job(SYNC_JOB_ID):
            scheduler.remove_job(SYNC_JOB_ID)
        await options.set(SCHEDULE_KEY, {**config.to_dict(), "next_run": None, "registration": None})
        logger.info("Automatic sync disabled")
        return {
            **config.to_dict(),
            "day_name": DAY_NAMES[config.day_of_week],
            "next_run": None,
            "registration": None,
            "job_id": None,
        }

    next_run = calculate_next_run_time(config)
    registration = "registered"
    job_id = None
    error = None

    registry = _make_registry(options, settings)
    try:
        if await registry.has_active_job():
            registration = "pending"
        else:
            job = await registry.register_sync(SyncType.AUTO, next_run.iso_utc)
            job_id = job.job_id
    except ScheduleConflict as e:
        logger.info(f"Registration deferred, another job is active: {e}")
        registration = "pending"
    except RegistryUnavailable as e:
        logger.warning(f"Could not register scheduled sync: {e}")
        registration = "failed"
        error = str(e)
    finally:
        await registry.close()

    _add_one_shot(
        SYNC_JOB_ID,
        datetime.fromtimestamp(next_run.timestamp, tz=timezone.utc),
        source="automatic",
    )

    result = {
        **config.to_dict(),
        "day_name": DAY_NAMES[config.day_of_week],
        "next_run": next_run.to_dict(),
        "registration": registration,
        "job_id": job_id,
        "error": error,
    }
    await options.set(SCHEDULE_KEY, result)
    logger.info(
        f"Next automatic sync {DAY_NAMES[config.day_of_week]} {config.time_of_day} "
        f"({next_run.iso_utc}), registration {registration}"
    )
    return result


async def schedule_after_completion() -> Optional[dict[str, Any]]:
    """Arrange next week's run once the previous job has finished."""
    settings = get_settings()
    async with async_session_maker() as session:
        schedule = await get_schedule(session, settings)
        if not schedule["enabled"]:
            return None
        config = ScheduleConfig.from_dict(schedule, ScheduleConfig.from_settings(settings))
        return await apply_schedule(session, config, settings)


def schedule_resume(source: str, delay_seconds: int) -> bool:
    """Re-invoke a paused run after ``delay_seconds``."""
    run_date = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
    scheduled = _add_one_shot(RESUME_JOB_ID, run_date, source=source, resume=True)
    if scheduled:
        logger.info(f"Paused sync will resume at {run_date.isoformat()}")
    return scheduled


async def run_sync_job(source: str = "automatic", resume: bool = False) -> Optional[RunResult]:
    """Run (or resume) a full sync in its own session."""
    settings = get_settings()
    logger.info(f"Starting sync job (source={source}, resume={resume})")

    async with async_session_maker() as session:
        orchestrator = build_orchestrator(session, settings)
        try:
            result = await orchestrator.run_full_sync(source, resume=resume)
        except Exception as e:
            logger.exception(f"Sync job failed: {e}")
            await session.rollback()
            await orchestrator.record_crash(e)
            result = None
        finally:
            await orchestrator.close()

    if result is not None and result.needs_resume:
        schedule_resume(source, settings.resume_delay_seconds)
    elif result is None or result.status != "conflict":
        await schedule_after_completion()

    if result is not None:
        logger.info(f"Sync job finished: {result.status} - {result.message}")
    return result


async def cleanup_history():
    """Purge sync log records past the retention window."""
    settings = get_settings()
    async with async_session_maker() as session:
        await SyncHistory(session).cleanup_old_records(settings.history_retention_days)


async def restore_schedule():
    """Re-arrange the weekly run and any paused run after a restart."""
    settings = get_settings()
    async with async_session_maker() as session:
        options = OptionStore(session)
        state = await options.get(RUN_STATE_KEY)
        if state:
            schedule_resume(state.get("source", "automatic"), settings.resume_delay_seconds)

        schedule = await get_schedule(session, settings)
        if schedule["enabled"]:
            config = ScheduleConfig.from_dict(schedule, ScheduleConfig.from_settings(settings))
            await apply_schedule(session, config, settings)


def start_scheduler():
    """Start the APScheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already started")
        return

    settings = get_settings()
    scheduler = AsyncIOScheduler(timezone=settings.tz)

    scheduler.add_job(
        cleanup_history,
        CronTrigger(hour=3, minute=30),
        id=CLEANUP_JOB_ID,
        name="Purge old sync history",
        replace_existing=True
    )
    # No trigger: runs once, as soon as the scheduler starts
    scheduler.add_job(restore_schedule, id="restore_schedule", replace_existing=True)

    scheduler.start()
    logger.info(f"Scheduler started - weekly sync {DAY_NAMES[settings.sync_day]} {settings.sync_time} {settings.tz}")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown()
        scheduler = None
        logger.info("Scheduler stopped")
