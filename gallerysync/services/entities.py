"""Local entity store - upserts procedures and cases by their natural keys."""

import logging
import re
from datetime import datetime
from typing import Any, Optional
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gallerysync.models.database import GalleryCase, Procedure

logger = logging.getLogger(__name__)


def _slugify(name: str) -> str:
    """Lowercase, hyphen-separated slug."""
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower())
    return slug.strip('-')


class EntityStore:
    """Persists procedure taxonomy entries and case records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert_procedure(self, data: dict[str, Any], parent_id: Optional[int] = None) -> tuple[int, bool]:
        """
        Create or update a procedure entry keyed by slug.

        Returns:
            (procedure row id, created flag)
        """
        name = data.get("name") or "Unknown"
        slug = data.get("slugName") or _slugify(name)
        api_ids = [int(i) for i in data.get("ids") or [] if str(i).isdigit() and int(i) != 0]

        result = await self.session.execute(select(Procedure).where(Procedure.slug == slug))
        procedure = result.scalar_one_or_none()
        created = procedure is None
        if created:
            procedure = Procedure(slug=slug)
            self.session.add(procedure)

        procedure.name = name
        procedure.parent_id = parent_id
        procedure.nudity = bool(data.get("nudity"))
        if api_ids:
            procedure.api_id = api_ids[0]
            procedure.api_ids = api_ids
        if "description" in data:
            procedure.description = data["description"]
        if data.get("totalCase") is not None:
            try:
                procedure.total_cases = abs(int(data["totalCase"]))
            except (TypeError, ValueError):
                logger.warning(f"Procedure {slug}: ignoring bad totalCase {data['totalCase']!r}")
        procedure.updated_at = datetime.utcnow()

        await self.session.flush()
        return procedure.id, created

    async def set_case_order(self, procedure_api_id: int, case_ids: list[int]) -> bool:
        """Store the catalog ordering of cases on the procedure that owns ``procedure_api_id``."""
        result = await self.session.execute(
            select(Procedure).where(Procedure.api_id == procedure_api_id)
        )
        procedure = result.scalars().first()
        if procedure is None:
            logger.warning(f"No procedure entry found for API id {procedure_api_id}")
            return False

        procedure.case_order = list(case_ids)
        await self.session.flush()
        return True

    async def upsert_case(
        self,
        case_id: int,
        detail: dict[str, Any],
        procedure_id: Optional[int] = None,
        position: Optional[int] = None,
    ) -> bool:
        """
        Create or update a case keyed by its catalog id.

        Returns:
            True if the case was created, False if an existing case was updated.
        """
        result = await self.session.execute(
            select(GalleryCase).where(GalleryCase.case_id == case_id)
        )
        case = result.scalar_one_or_none()
        created = case is None
        if created:
            case = GalleryCase(case_id=case_id)
            self.session.add(case)

        case.procedure_id = procedure_id
        case.position = position
        case.data = detail
        case.synced_at = datetime.utcnow()

        await self.session.flush()
        return created

    async def count_cases(self) -> int:
        result = await self.session.execute(select(func.count(GalleryCase.id)))
        return result.scalar_one()
