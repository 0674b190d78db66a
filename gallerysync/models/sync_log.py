"""Sync log model for tracking sync runs."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from gallerysync.core.database import Base


class SyncLog(Base):
    """Log of sync runs, one row per run attempt."""

    __tablename__ = "sync_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String, nullable=False)  # "manual", "rest_api", "automatic"
    sync_type = Column(String, nullable=False, default="full")
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String, nullable=False, default="started")  # "started", "success", "partial", "failed", "stopped"
    items_processed = Column(Integer, nullable=False, default=0)
    items_failed = Column(Integer, nullable=False, default=0)
    details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
