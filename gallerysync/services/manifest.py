"""Stage 2 - build the de-duplicated case manifest."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from gallerysync.services.artifacts import MANIFEST, PROCEDURES, ArtifactStore
from gallerysync.services.catalog import CatalogClient, _valid_ids
from gallerysync.services.entities import EntityStore
from gallerysync.services.errors import PrerequisiteMissing, SyncError
from gallerysync.services.procedures import iter_procedures
from gallerysync.services.progress import ProgressStore
from gallerysync.services.state import ProgressSnapshot, StageResult, StepProgress, utc_now_iso

logger = logging.getLogger(__name__)

STAGE = 2


@dataclass
class Manifest:
    """Ordered, duplicate-free list of case ids with their owning procedure."""

    case_ids: list[int] = field(default_factory=list)
    case_procedures: dict[int, int] = field(default_factory=dict)
    procedure_cases: dict[int, list[int]] = field(default_factory=dict)
    duplicate_occurrences: int = 0
    duplicate_count: int = 0
    duplicate_case_ids: list[int] = field(default_factory=list)
    procedure_names: dict[int, str] = field(default_factory=dict)
    # case id -> index within its owning procedure's list; derived, not stored
    case_positions: dict[int, int] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if not self.case_positions:
            self.case_positions = _owner_positions(self.case_procedures, self.procedure_cases)

    def position(self, case_id: int) -> Optional[int]:
        return self.case_positions.get(case_id)

    @property
    def case_count(self) -> int:
        return len(self.case_ids)

    @property
    def procedure_count(self) -> int:
        return len(self.procedure_cases)

    def stats(self) -> dict[str, int]:
        return {
            "procedure_count": self.procedure_count,
            "case_count": self.case_count,
            "duplicate_occurrences": self.duplicate_occurrences,
            "duplicate_count": self.duplicate_count,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": utc_now_iso(),
            "case_ids": self.case_ids,
            # JSON object keys are strings
            "case_procedures": {str(k): v for k, v in self.case_procedures.items()},
            "procedure_cases": {str(k): v for k, v in self.procedure_cases.items()},
            "duplicate_case_ids": self.duplicate_case_ids,
            "procedure_names": {str(k): v for k, v in self.procedure_names.items()},
            **self.stats(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        return cls(
            case_ids=[int(i) for i in data.get("case_ids") or []],
            case_procedures={int(k): int(v) for k, v in (data.get("case_procedures") or {}).items()},
            procedure_cases={
                int(k): [int(i) for i in v] for k, v in (data.get("procedure_cases") or {}).items()
            },
            duplicate_occurrences=int(data.get("duplicate_occurrences", 0)),
            duplicate_count=int(data.get("duplicate_count", 0)),
            duplicate_case_ids=[int(i) for i in data.get("duplicate_case_ids") or []],
            procedure_names={int(k): str(v) for k, v in (data.get("procedure_names") or {}).items()},
        )


def _owner_positions(case_procedures: dict[int, int], procedure_cases: dict[int, list[int]]) -> dict[int, int]:
    positions: dict[int, int] = {}
    for procedure_id, case_ids in procedure_cases.items():
        for index, case_id in enumerate(case_ids):
            if case_procedures.get(case_id) == procedure_id:
                positions.setdefault(case_id, index)
    return positions


def merge_case_lists(procedure_cases: Iterable[tuple[int, list[int]]]) -> Manifest:
    """
    Merge per-procedure case lists into a manifest.

    The first procedure to list a case owns it. Every later sighting counts
    as a duplicate occurrence; each distinct repeated id counts once in
    ``duplicate_count``.
    """
    manifest = Manifest()
    seen: set[int] = set()
    repeated: set[int] = set()

    for procedure_id, case_ids in procedure_cases:
        manifest.procedure_cases[procedure_id] = list(case_ids)
        for index, case_id in enumerate(case_ids):
            if case_id in seen:
                manifest.duplicate_occurrences += 1
                if case_id not in repeated:
                    repeated.add(case_id)
                    manifest.duplicate_case_ids.append(case_id)
                continue
            seen.add(case_id)
            manifest.case_ids.append(case_id)
            manifest.case_procedures[case_id] = procedure_id
            manifest.case_positions[case_id] = index

    manifest.duplicate_count = len(repeated)
    return manifest


def _syncable_procedures(categories: list[dict[str, Any]]) -> list[tuple[int, str]]:
    """(api id, name) for procedures with a valid id and at least one case, first id wins."""
    procedures: list[tuple[int, str]] = []
    seen: set[int] = set()
    for _, procedure in iter_procedures(categories):
        ids = _valid_ids(procedure.get("ids") or [])
        try:
            total = int(procedure.get("totalCase") or 0)
        except (TypeError, ValueError):
            total = 0
        if not ids or total <= 0 or ids[0] in seen:
            continue
        seen.add(ids[0])
        procedures.append((ids[0], procedure.get("name") or str(ids[0])))
    return procedures


class ManifestBuilder:
    """Stage 2 of the sync pipeline."""

    def __init__(
        self,
        catalog: CatalogClient,
        entities: EntityStore,
        artifacts: ArtifactStore,
        progress: Optional[ProgressStore] = None,
        page_limit: int = 100,
        activity: Optional[Callable[[str], None]] = None,
    ):
        self.catalog = catalog
        self.entities = entities
        self.artifacts = artifacts
        self.progress = progress
        self.page_limit = page_limit
        self.activity = activity or (lambda message: None)

    def load_manifest(self) -> Manifest:
        """Today's manifest. Raises PrerequisiteMissing when Stage 2 has not run."""
        return Manifest.from_dict(self.artifacts.load(MANIFEST))

    async def build_manifest(self) -> StageResult:
        if self.artifacts.exists(MANIFEST):
            try:
                manifest = self.load_manifest()
            except SyncError as e:
                logger.warning(f"Ignoring unreadable manifest: {e}")
            else:
                self.activity(f"Stage 2: reusing {self.artifacts.path(MANIFEST).name}")
                return StageResult.ok(STAGE, "Manifest already built today", reused=True, **manifest.stats())

        try:
            saved = self.artifacts.load(PROCEDURES)
            categories = saved.get("data") if isinstance(saved, dict) else None
            if not categories:
                raise PrerequisiteMissing("Procedures data is empty, run Stage 1 first")
        except PrerequisiteMissing as e:
            logger.warning(f"Stage 2 cannot run: {e}")
            return StageResult.failed(STAGE, str(e), error_type=type(e).__name__)

        procedures = _syncable_procedures(categories)
        logger.info(f"Building manifest from {len(procedures)} procedures")

        case_lists: list[tuple[int, list[int]]] = []
        for index, (procedure_id, name) in enumerate(procedures, start=1):
            await self._publish(name, index, len(procedures))
            try:
                case_ids = await self.catalog.fetch_all_case_ids(procedure_id, max_pages=self.page_limit)
            except SyncError as e:
                logger.error(f"Stage 2 failed fetching cases for procedure {procedure_id}: {e}")
                return StageResult.failed(
                    STAGE, f"Procedure {name} ({procedure_id}): {e}", error_type=type(e).__name__
                )
            case_lists.append((procedure_id, case_ids))

        manifest = merge_case_lists(case_lists)
        manifest.procedure_names = dict(procedures)
        for procedure_id, case_ids in manifest.procedure_cases.items():
            await self.entities.set_case_order(procedure_id, case_ids)
        await self.entities.session.commit()

        self.artifacts.save(MANIFEST, manifest.to_dict())

        message = f"Manifest built with {manifest.case_count} cases from {manifest.procedure_count} procedures"
        if manifest.duplicate_occurrences:
            message += f" ({manifest.duplicate_count} cases listed under several procedures)"
        logger.info(message)
        self.activity(f"Stage 2: {message}")
        return StageResult.ok(STAGE, message, duplicate_case_ids=manifest.duplicate_case_ids, **manifest.stats())

    async def _publish(self, procedure_name: str, current: int, total: int) -> None:
        if self.progress is None:
            return
        step = StepProgress(current=current, total=total)
        await self.progress.publish(ProgressSnapshot(
            stage="manifest",
            overall_percentage=round(step.percentage / 3 + 100 / 3, 1),
            current_procedure=procedure_name,
            procedure_progress=step,
            current_step=f"Collecting case ids for {procedure_name}",
        ))

    def get_manifest_preview(self, limit: int = 20) -> dict[str, Any]:
        """Summary of today's manifest with its first ``limit`` entries."""
        if not self.artifacts.exists(MANIFEST):
            return {"exists": False, "date": self.artifacts.date_string, "cases": []}

        manifest = self.load_manifest()
        return {
            "exists": True,
            "date": self.artifacts.date_string,
            "path": str(self.artifacts.path(MANIFEST)),
            **manifest.stats(),
            "duplicate_case_ids": manifest.duplicate_case_ids[:limit],
            "cases": [
                {"case_id": case_id, "procedure_id": manifest.case_procedures.get(case_id)}
                for case_id in manifest.case_ids[:limit]
            ],
        }
