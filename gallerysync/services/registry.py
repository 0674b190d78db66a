"""Job registry client - coordinates sync runs with the external coordination API."""

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional
import httpx

from gallerysync.services.errors import RegistryUnavailable, ScheduleConflict
from gallerysync.services.options import CURRENT_JOB_KEY, LAST_REPORT_KEY, OptionStore
from gallerysync.services.state import utc_now_iso

logger = logging.getLogger(__name__)

REGISTER_ENDPOINT = "/api/plugin/v2/sync/register"
REPORT_ENDPOINT = "/api/plugin/v2/sync/report"
STATUS_ENDPOINT = "/api/plugin/v2/sync/status"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"
    TIMEOUT = "TIMEOUT"


class SyncType(str, Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.PARTIAL, JobStatus.TIMEOUT})


@dataclass
class SyncJob:
    """Locally cached copy of the coordinator's job."""

    job_id: Optional[str]
    sync_type: str
    status: str = JobStatus.PENDING.value
    sync_site_id: Optional[str] = None
    scheduled_at: Optional[str] = None
    registered_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in {s.value for s in ACTIVE_STATUSES}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncJob":
        return cls(
            job_id=data.get("job_id"),
            sync_type=data.get("sync_type", SyncType.MANUAL.value),
            status=data.get("status", JobStatus.PENDING.value),
            sync_site_id=data.get("sync_site_id"),
            scheduled_at=data.get("scheduled_at"),
            registered_at=data.get("registered_at"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


def _error_message(response: httpx.Response) -> str:
    """Pull an error message out of the coordinator's varying error shapes."""
    try:
        data = response.json()
    except ValueError:
        data = None

    message: Any = None
    if isinstance(data, dict):
        message = data.get("error") or data.get("message") or data.get("errors")
    if isinstance(message, list):
        message = ", ".join(str(m) for m in message)
    return str(message) if message else f"API request failed with status {response.status_code}"


class JobRegistryClient:
    """Async client for the sync coordination API.

    The coordinator enforces that only one job per site is active. The
    current job is cached in the option store so that ``has_active_job``
    answers without a network round trip.
    """

    def __init__(
        self,
        options: OptionStore,
        base_url: str,
        api_tokens: list[str],
        website_property_ids: list[int],
        site_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.options = options
        self.base_url = base_url.rstrip('/')
        self.api_token = next((t for t in api_tokens if t), None)
        self.website_property_id = next((p for p in website_property_ids if p), None)
        self.site_url = site_url
        self.timeout = timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _request(self, method: str, endpoint: str, body: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        if not self.api_token:
            raise RegistryUnavailable("API token is not configured")
        if not self.website_property_id:
            raise RegistryUnavailable("Website property ID is not configured")

        client = await self._get_client()
        try:
            response = await client.request(
                method,
                f"{self.base_url}{endpoint}",
                params={"websitePropertyId": str(self.website_property_id)},
                json=body,
                headers={
                    "Accept": "application/json",
                    "Authorization": f"Bearer {self.api_token}",
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Sync API {endpoint} unreachable: {e}")
            raise RegistryUnavailable(f"Sync API unreachable: {e}") from e

        if response.status_code == 409:
            raise ScheduleConflict(_error_message(response))
        if not 200 <= response.status_code < 300:
            message = _error_message(response)
            logger.error(f"Sync API {endpoint} returned {response.status_code}: {message}")
            raise RegistryUnavailable(message)

        try:
            data = response.json()
        except ValueError as e:
            raise RegistryUnavailable("Invalid JSON response from sync API") from e
        if not isinstance(data, dict):
            raise RegistryUnavailable("Unexpected response shape from sync API")
        return data

    async def get_current_job(self) -> Optional[SyncJob]:
        data = await self.options.get(CURRENT_JOB_KEY)
        return SyncJob.from_dict(data) if isinstance(data, dict) else None

    async def has_active_job(self) -> bool:
        job = await self.get_current_job()
        return job is not None and job.is_active

    async def get_last_report(self) -> Optional[dict[str, Any]]:
        data = await self.options.get(LAST_REPORT_KEY)
        return data if isinstance(data, dict) else None

    async def register_sync(self, sync_type: SyncType = SyncType.MANUAL, scheduled_time: Optional[str] = None) -> SyncJob:
        """
        Register a sync job with the coordinator.

        Raises:
            ScheduleConflict: a job is already active (locally or per the coordinator).
            RegistryUnavailable: the coordinator could not be reached or answered badly.
        """
        if await self.has_active_job():
            current = await self.get_current_job()
            raise ScheduleConflict(f"Sync job {current.job_id} is still {current.status}")

        body: dict[str, Any] = {"url": self.site_url, "syncType": sync_type.value}
        if sync_type == SyncType.AUTO and scheduled_time:
            body["scheduledTime"] = scheduled_time

        data = await self._request("POST", REGISTER_ENDPOINT, body)
        sync_job = data.get("syncJob")
        if not sync_job:
            raise RegistryUnavailable("No sync job returned from registration")

        job = SyncJob(
            job_id=sync_job.get("id"),
            sync_type=sync_type.value,
            status=sync_job.get("status", JobStatus.PENDING.value),
            sync_site_id=sync_job.get("syncSiteId"),
            scheduled_at=sync_job.get("scheduledAt"),
            registered_at=utc_now_iso(),
        )
        await self.options.set(CURRENT_JOB_KEY, job.to_dict())
        logger.info(f"Registered sync job {job.job_id} ({sync_type.value})")
        return job

    async def report_sync(
        self,
        status: JobStatus,
        cases_synced: int = 0,
        message: str = "",
        error_log: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Report a status transition for the current job.

        A terminal status always clears the locally cached job, even when the
        coordinator cannot be reached, so the next run can register.
        """
        status = JobStatus(status)
        body: dict[str, Any] = {"url": self.site_url, "status": status.value}
        if cases_synced > 0:
            body["casesSynced"] = cases_synced
        if message:
            body["message"] = message
        if error_log:
            body["errorLog"] = error_log

        try:
            data = await self._request("POST", REPORT_ENDPOINT, body)
        except RegistryUnavailable:
            if status in TERMINAL_STATUSES:
                await self.options.delete(CURRENT_JOB_KEY)
            raise

        job = await self.get_current_job()
        if job is not None:
            if status == JobStatus.IN_PROGRESS:
                job.started_at = utc_now_iso()
            if status in TERMINAL_STATUSES:
                job.completed_at = utc_now_iso()
            job.status = status.value
            await self.options.set(CURRENT_JOB_KEY, job.to_dict())

        await self.options.set(LAST_REPORT_KEY, {
            "reported_at": utc_now_iso(),
            "status": status.value,
            "cases_synced": cases_synced,
            "job": data.get("job"),
            "next_sync": data.get("nextSync"),
            "manual_sync_required": bool(data.get("manualSyncRequired", False)),
        })

        if status in TERMINAL_STATUSES:
            await self.options.delete(CURRENT_JOB_KEY)

        logger.info(f"Reported sync status {status.value} ({cases_synced} cases)")
        return {"success": True, "job": data.get("job"), "next_sync": data.get("nextSync")}

    async def fetch_remote_status(self) -> dict[str, Any]:
        """Read the coordinator's view of this site's sync jobs."""
        return await self._request("GET", STATUS_ENDPOINT)
