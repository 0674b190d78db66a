"""Run-state types shared by the sync stages.

These replace ad hoc option arrays: every shape that is persisted (cursor,
run state, progress, log details) round-trips through ``to_dict`` /
``from_dict`` so that field-name changes are handled in one place.
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Optional

from gallerysync.services.options import OptionStore, STOP_FLAG_KEY

logger = logging.getLogger(__name__)

PROGRESS_VERSION = 1
DETAILS_VERSION = 2
ACTIVITY_LOG_LIMIT = 200
ERROR_REPORT_LIMIT = 10


def utc_now_iso() -> str:
    return datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


@dataclass
class StageResult:
    """Outcome of a single stage call."""

    success: bool
    message: str
    stage: int = 0
    error: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, stage: int, message: str, **data: Any) -> "StageResult":
        return cls(success=True, message=message, stage=stage, data=data)

    @classmethod
    def failed(cls, stage: int, error: str, **data: Any) -> "StageResult":
        return cls(
            success=False,
            message=f"Stage {stage} failed: {error}",
            stage=stage,
            error=error,
            data=data,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "stage": self.stage,
            "message": self.message,
            "error": self.error,
            **self.data,
        }


@dataclass
class RunResult:
    """Outcome of one orchestrator invocation."""

    success: bool
    status: str  # "success", "partial", "failed", "stopped", "paused", "conflict"
    message: str
    needs_resume: bool = False
    log_id: Optional[int] = None
    job_id: Optional[str] = None
    processed: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BatchCursor:
    """Resume point into the manifest for Stage 3."""

    manifest_date: str
    total_cases: int
    next_index: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    processed: int = 0

    @property
    def exhausted(self) -> bool:
        return self.next_index >= self.total_cases

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchCursor":
        return cls(
            manifest_date=str(data.get("manifest_date", "")),
            total_cases=int(data.get("total_cases", 0)),
            next_index=int(data.get("next_index", 0)),
            created=int(data.get("created", data.get("created_posts", 0))),
            updated=int(data.get("updated", data.get("updated_posts", 0))),
            failed=int(data.get("failed", data.get("failed_cases", 0))),
            processed=int(data.get("processed", data.get("processed_cases", 0))),
        )


@dataclass
class StepProgress:
    current: int = 0
    total: int = 0

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(self.current / self.total * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        return {"current": self.current, "total": self.total, "percentage": self.percentage}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "StepProgress":
        data = data or {}
        return cls(current=int(data.get("current", 0)), total=int(data.get("total", 0)))


@dataclass
class ProgressSnapshot:
    """Ephemeral progress published for UI polling."""

    stage: str = "idle"  # "idle", "fetching", "manifest", "processing"
    overall_percentage: float = 0.0
    current_procedure: str = ""
    procedure_progress: StepProgress = field(default_factory=StepProgress)
    case_progress: StepProgress = field(default_factory=StepProgress)
    current_step: str = ""
    recent_cases: list[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    memory_used_mb: float = 0.0
    memory_peak_mb: float = 0.0
    memory_limit_mb: float = 0.0
    updated_at: Optional[str] = None
    version: int = PROGRESS_VERSION

    @classmethod
    def idle(cls) -> "ProgressSnapshot":
        return cls()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["procedure_progress"] = self.procedure_progress.to_dict()
        data["case_progress"] = self.case_progress.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgressSnapshot":
        # Older snapshots used "progress"/"percentage" and "message"
        overall = data.get("overall_percentage", data.get("progress", data.get("percentage", 0.0)))
        return cls(
            stage=data.get("stage") or "idle",
            overall_percentage=float(overall or 0.0),
            current_procedure=data.get("current_procedure") or "",
            procedure_progress=StepProgress.from_dict(data.get("procedure_progress")),
            case_progress=StepProgress.from_dict(data.get("case_progress")),
            current_step=data.get("current_step", data.get("message")) or "",
            recent_cases=list(data.get("recent_cases") or []),
            elapsed_seconds=float(data.get("elapsed_seconds", 0.0)),
            memory_used_mb=float(data.get("memory_used_mb", 0.0)),
            memory_peak_mb=float(data.get("memory_peak_mb", 0.0)),
            memory_limit_mb=float(data.get("memory_limit_mb", 0.0)),
            updated_at=data.get("updated_at"),
        )


# Legacy detail keys written by older engine generations
_LEGACY_DETAIL_FIELDS = {
    "created_posts": "cases_created",
    "updated_posts": "cases_updated",
    "failed_cases": "cases_failed",
    "created": "procedures_created",
    "updated": "procedures_updated",
    "total_procedures": "procedure_count",
    "total_cases": "case_count",
    "duplicate_cases_found": "duplicate_count",
}


@dataclass
class SyncDetails:
    """Structured payload stored in a sync log record."""

    procedures_created: int = 0
    procedures_updated: int = 0
    cases_created: int = 0
    cases_updated: int = 0
    cases_failed: int = 0
    procedure_count: int = 0
    case_count: int = 0
    duplicate_occurrences: int = 0
    duplicate_count: int = 0
    duplicate_case_ids: list[int] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    error_count: int = 0
    activity_log: list[str] = field(default_factory=list)
    resumes: int = 0
    duration: Optional[str] = None
    version: int = DETAILS_VERSION

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "SyncDetails":
        if not data:
            return cls()

        known = {f.name for f in fields(cls)}
        normalized: dict[str, Any] = {}
        for key, value in data.items():
            name = _LEGACY_DETAIL_FIELDS.get(key)
            if name and name not in data:
                normalized[name] = value
        for key, value in data.items():
            if key in known:
                normalized[key] = value

        normalized["version"] = DETAILS_VERSION
        return cls(**normalized)


@dataclass
class SyncRunState:
    """Context threaded through one logical run, persisted across resumes."""

    source: str
    log_id: Optional[int] = None
    job_id: Optional[str] = None
    started_at: str = field(default_factory=utc_now_iso)
    # Date of the artifacts and cursor this run works from (YYYY-MM-DD)
    run_date: Optional[str] = None
    details: SyncDetails = field(default_factory=SyncDetails)

    def log(self, message: str) -> None:
        """Append to the run's activity log, keeping the most recent entries."""
        self.details.activity_log.append(f"[{utc_now_iso()}] {message}")
        if len(self.details.activity_log) > ACTIVITY_LOG_LIMIT:
            del self.details.activity_log[: len(self.details.activity_log) - ACTIVITY_LOG_LIMIT]

    def add_warning(self, message: str) -> None:
        self.details.warnings.append(message)
        self.log(f"WARNING: {message}")

    def add_error(self, message: str) -> None:
        self.details.error_count += 1
        if len(self.details.errors) < ERROR_REPORT_LIMIT:
            self.details.errors.append(message)
        self.log(f"ERROR: {message}")

    def error_summary(self) -> list[str]:
        summary = list(self.details.errors)
        hidden = self.details.error_count - len(summary)
        if hidden > 0:
            summary.append(f"... and {hidden} more errors")
        return summary

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "log_id": self.log_id,
            "job_id": self.job_id,
            "started_at": self.started_at,
            "run_date": self.run_date,
            "details": self.details.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncRunState":
        return cls(
            source=data.get("source", "manual"),
            log_id=data.get("log_id"),
            job_id=data.get("job_id"),
            started_at=data.get("started_at") or utc_now_iso(),
            run_date=data.get("run_date"),
            details=SyncDetails.from_dict(data.get("details")),
        )


class CancellationToken:
    """Cooperative stop request, honoured at batch boundaries only.

    The flag lives in the option store so that a stop issued from another
    request (or process) reaches the running sync.
    """

    def __init__(self, options: OptionStore):
        self.options = options
        self._cancelled = False

    async def request(self) -> None:
        self._cancelled = True
        await self.options.set(STOP_FLAG_KEY, True)

    async def is_cancelled(self) -> bool:
        if self._cancelled:
            return True
        if await self.options.get(STOP_FLAG_KEY, False):
            self._cancelled = True
        return self._cancelled

    async def reset(self) -> None:
        self._cancelled = False
        await self.options.delete(STOP_FLAG_KEY)
