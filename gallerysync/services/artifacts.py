"""Durable JSON artifacts produced by Stage 1 and Stage 2."""

import json
import logging
import os
from datetime import date
from pathlib import Path
from typing import Any, Optional

from gallerysync.services.errors import PrerequisiteMissing

logger = logging.getLogger(__name__)

PROCEDURES = "sync-data"
MANIFEST = "manifest"


class ArtifactStore:
    """Dated JSON documents in the sync directory.

    File names carry the run date (``sync-data-2025-01-28.json``) so that a
    fresh day starts from a fresh fetch while a resumed run picks up the
    documents it already wrote.
    """

    def __init__(self, sync_dir: str, run_date: Optional[date] = None):
        self.sync_dir = Path(sync_dir)
        self.run_date = run_date or date.today()
        self.sync_dir.mkdir(parents=True, exist_ok=True)

    @property
    def date_string(self) -> str:
        return self.run_date.isoformat()

    def path(self, name: str) -> Path:
        return self.sync_dir / f"{name}-{self.date_string}.json"

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def load(self, name: str) -> Any:
        path = self.path(name)
        if not path.is_file():
            raise PrerequisiteMissing(f"{path.name} does not exist")

        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise PrerequisiteMissing(f"Invalid JSON in {path.name}: {e}") from e

    def save(self, name: str, data: Any) -> Path:
        """Write atomically: a half-written artifact must never look complete."""
        path = self.path(name)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, path)
        logger.info(f"Saved {path.name}")
        return path

    def delete(self, name: str) -> None:
        path = self.path(name)
        if path.exists():
            path.unlink()
            logger.info(f"Deleted {path.name}")

    def clear(self) -> None:
        """Remove today's artifacts so the next run starts from a fresh fetch."""
        self.delete(PROCEDURES)
        self.delete(MANIFEST)

    def file_status(self) -> dict[str, Any]:
        return {
            label: {
                "exists": self.exists(name),
                "path": str(self.path(name)),
                "date": self.date_string,
            }
            for label, name in (("procedures", PROCEDURES), ("manifest", MANIFEST))
        }
