from fastapi import APIRouter
from pydantic import BaseModel

from gallerysync.core.config import get_settings

router = APIRouter(prefix="/api", tags=["config"])


class HealthResponse(BaseModel):
    status: str
    version: str


class ConfigResponse(BaseModel):
    db_path: str
    sync_dir: str
    api_base_url: str
    api_tokens_configured: int
    website_property_ids: list[int]
    site_url: str
    tz: str
    sync_day: int
    sync_time: str
    batch_size: int
    max_batch_iterations: int
    time_limit_seconds: int
    memory_limit_mb: int
    debug: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version="0.1.0")


@router.get("/config", response_model=ConfigResponse)
async def get_config() -> ConfigResponse:
    """Get current configuration (excluding secrets)."""
    settings = get_settings()
    return ConfigResponse(
        db_path=settings.db_path,
        sync_dir=settings.sync_dir,
        api_base_url=settings.api_base_url,
        api_tokens_configured=len([t for t in settings.api_tokens if t]),
        website_property_ids=settings.website_property_ids,
        site_url=settings.site_url,
        tz=settings.tz,
        sync_day=settings.sync_day,
        sync_time=settings.sync_time,
        batch_size=settings.batch_size,
        max_batch_iterations=settings.max_batch_iterations,
        time_limit_seconds=settings.time_limit_seconds,
        memory_limit_mb=settings.memory_limit_mb,
        debug=settings.debug,
    )
