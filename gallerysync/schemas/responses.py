"""Pydantic response models for API endpoints."""

from datetime import datetime
from pydantic import BaseModel
from typing import Any


class StepProgressResponse(BaseModel):
    current: int = 0
    total: int = 0
    percentage: float = 0.0


class ProgressResponse(BaseModel):
    """Live progress of the running sync."""
    is_running: bool
    stage: str
    overall_percentage: float
    current_procedure: str
    procedure_progress: StepProgressResponse
    case_progress: StepProgressResponse
    current_step: str
    recent_cases: list[str]
    elapsed_seconds: float
    memory_used_mb: float
    memory_peak_mb: float
    memory_limit_mb: float
    updated_at: str | None


class SyncLogResponse(BaseModel):
    """One sync history record."""
    id: int
    source: str
    sync_type: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    duration: str
    items_processed: int
    items_failed: int
    error_message: str | None
    details: dict[str, Any]


class StageResultResponse(BaseModel):
    """Outcome of a single stage run."""
    success: bool
    stage: int
    message: str
    error: str | None = None
    data: dict[str, Any] = {}


class NextRunResponse(BaseModel):
    timestamp: float
    iso_utc: str
    local: str


class ScheduleResponse(BaseModel):
    enabled: bool
    day_of_week: int
    day_name: str | None = None
    time_of_day: str
    timezone: str
    next_run: NextRunResponse | None
    registration: str | None = None
    job_id: str | None = None
    error: str | None = None
