from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Storage
    db_path: str = "/data/gallery_sync.db"
    sync_dir: str = "/data/sync"

    # Catalog API connection
    api_base_url: str = "https://app.bragbookgallery.com"
    api_tokens: list[str] = []
    website_property_ids: list[int] = []
    api_timeout: float = 30.0
    site_url: str = "http://localhost:8000"

    # Weekly schedule defaults (day 0 = Sunday)
    tz: str = "UTC"
    sync_day: int = 0
    sync_time: str = "02:00"

    # Stage 3 batching
    batch_size: int = 10
    max_batch_iterations: int = 1000
    batch_delay_seconds: float = 0.5
    case_id_page_limit: int = 100

    # Self-pause thresholds
    time_limit_seconds: int = 300
    memory_limit_mb: int = 512
    resource_threshold: float = 0.8
    resume_delay_seconds: int = 5

    # Progress and history
    progress_ttl_seconds: int = 300
    recent_cases_limit: int = 5
    history_page_size: int = 50
    history_retention_days: int = 90

    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
