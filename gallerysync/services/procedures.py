"""Stage 1 - fetch the procedure tree and upsert the local taxonomy."""

import logging
from typing import Any, Callable, Optional

from gallerysync.services.artifacts import PROCEDURES, ArtifactStore
from gallerysync.services.catalog import CatalogClient
from gallerysync.services.entities import EntityStore
from gallerysync.services.errors import SyncError
from gallerysync.services.state import StageResult, utc_now_iso

logger = logging.getLogger(__name__)

STAGE = 1


def iter_procedures(categories: list[dict[str, Any]]):
    """Yield (category, procedure) pairs from the sidebar payload."""
    for category in categories or []:
        if not isinstance(category, dict):
            continue
        for procedure in category.get("procedures") or []:
            if isinstance(procedure, dict):
                yield category, procedure


class ProcedureFetcher:
    """Stage 1 of the sync pipeline."""

    def __init__(
        self,
        catalog: CatalogClient,
        entities: EntityStore,
        artifacts: ArtifactStore,
        activity: Optional[Callable[[str], None]] = None,
    ):
        self.catalog = catalog
        self.entities = entities
        self.artifacts = artifacts
        self.activity = activity or (lambda message: None)

    async def fetch_procedures(self) -> StageResult:
        """
        Fetch the sidebar, upsert categories and procedures, write the procedures artifact.

        Today's artifact, when present, is reused without calling the API.
        """
        if self.artifacts.exists(PROCEDURES):
            try:
                saved = self.artifacts.load(PROCEDURES)
            except SyncError as e:
                logger.warning(f"Ignoring unreadable procedures artifact: {e}")
            else:
                stats = saved.get("stats") or {}
                self.activity(f"Stage 1: reusing {self.artifacts.path(PROCEDURES).name}")
                return StageResult.ok(
                    STAGE,
                    "Procedures already fetched today",
                    created=int(stats.get("created", 0)),
                    updated=int(stats.get("updated", 0)),
                    total=int(stats.get("total", 0)),
                    reused=True,
                )

        try:
            sidebar = await self.catalog.fetch_sidebar()
        except SyncError as e:
            logger.error(f"Stage 1 sidebar fetch failed: {e}")
            return StageResult.failed(STAGE, str(e))

        categories = sidebar.get("data") or []
        created = updated = total = 0
        parents: dict[str, int] = {}

        for category, procedure in iter_procedures(categories):
            category_name = category.get("name") or "Uncategorized"
            if category_name not in parents:
                parent_id, parent_created = await self.entities.upsert_procedure({
                    "name": category_name,
                    "totalCase": category.get("totalCase"),
                })
                parents[category_name] = parent_id
                created += parent_created
                updated += not parent_created

            _, was_created = await self.entities.upsert_procedure(procedure, parent_id=parents[category_name])
            total += 1
            if was_created:
                created += 1
            else:
                updated += 1

        await self.entities.session.commit()

        stats = {"created": created, "updated": updated, "total": total}
        self.artifacts.save(PROCEDURES, {
            "fetched_at": utc_now_iso(),
            "data": categories,
            "stats": stats,
        })

        message = f"Fetched {total} procedures ({created} created, {updated} updated)"
        logger.info(message)
        self.activity(f"Stage 1: {message}")
        return StageResult.ok(STAGE, message, **stats)
