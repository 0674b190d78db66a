from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    DateTime,
    JSON,
)
from gallerysync.core.database import Base


class Procedure(Base):
    """Procedure taxonomy entry (parent categories and child procedures)."""

    __tablename__ = "procedures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    api_id = Column(Integer, nullable=True, index=True)  # first id from the catalog
    api_ids = Column(JSON, nullable=True)
    parent_id = Column(Integer, nullable=True)
    nudity = Column(Boolean, default=False, nullable=False)
    description = Column(Text, nullable=True)
    total_cases = Column(Integer, nullable=True)
    case_order = Column(JSON, nullable=True)  # case ids in catalog order
    updated_at = Column(DateTime, default=datetime.utcnow)


class GalleryCase(Base):
    """A single imported case record."""

    __tablename__ = "gallery_cases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Integer, nullable=False, unique=True, index=True)
    procedure_id = Column(Integer, nullable=True, index=True)  # catalog procedure id
    position = Column(Integer, nullable=True)
    data = Column(JSON, nullable=True)
    synced_at = Column(DateTime, default=datetime.utcnow)


class SyncOption(Base):
    """Key-value options for sync state (cursor, progress, schedule, current job)."""

    __tablename__ = "sync_options"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow)
