# Database models
from gallerysync.models.database import (
    Procedure,
    GalleryCase,
    SyncOption,
)
from gallerysync.models.sync_log import SyncLog

__all__ = [
    "Procedure",
    "GalleryCase",
    "SyncOption",
    "SyncLog",
]
