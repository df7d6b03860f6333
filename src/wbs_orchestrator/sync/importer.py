"""Import a project's WBS sheet from Smartsheet into the local cache."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

from ..errors import NotFound, ValidationError
from ..mapper.mappings import ContactDirectory, WbsRowMapper
from ..models import Outcome, Project, WbsItem
from ..remote.retry import RetryableRemoteClient
from ..store import CacheStore, new_id, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    """Result of pulling the remote WBS sheet into the cache."""

    project_id: str
    imported: int = 0
    updated: int = 0
    unchanged: int = 0
    removed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def outcome(self) -> Outcome:
        if not self.errors:
            return Outcome.SUCCEEDED
        if self.imported or self.updated or self.removed:
            return Outcome.PARTIAL
        return Outcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "outcome": self.outcome.value,
            "imported": self.imported,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "removed": self.removed,
            "errors": self.errors,
        }


class WbsImporter:
    """
    Mirrors the remote WBS sheet into the cache.

    Rows are matched to cached items by remote row id. Cached items whose
    remote row disappeared are deleted; items that were never written
    remotely are left alone. ``Project.last_synced_at`` tracks the portfolio
    row and is not touched here; item timestamps record the import.
    """

    def __init__(
        self,
        store: CacheStore,
        remote: RetryableRemoteClient,
        contacts: dict[str, str] | None = None,
    ):
        self.store = store
        self.remote = remote
        self.contacts = contacts or {}

    async def import_project(self, project: Project, actor: str = "system") -> ImportResult:
        """
        Raises:
            ValidationError: If the project has no provisioned WBS sheet
        """
        if project.workspace is None:
            raise ValidationError(f"Project {project.code} has no WBS sheet to sync from")

        result = ImportResult(project_id=project.id)
        sheet_id = project.workspace.sheet_id
        try:
            sheet = await self.remote.get_sheet(sheet_id)
        except NotFound as e:
            logger.warning(f"WBS sheet {sheet_id} of {project.code} was deleted; unlinking")
            self.store.set_workspace(project.id, None)
            self.store.audit(actor, "workspace.unlinked", "project", project.id, sheet_id=sheet_id)
            result.errors.append(f"WBS sheet no longer exists: {e}")
            return result

        mapper = WbsRowMapper.for_sheet(sheet, ContactDirectory(self.contacts))
        existing = self.store.list_items(project.id)
        by_remote = {item.remote_row_id: item for item in existing if item.remote_row_id is not None}
        now = utcnow()

        inserts: list[WbsItem] = []
        updates: list[WbsItem] = []
        seen: set[int] = set()
        for position, row in enumerate(sheet.rows):
            incoming = mapper.to_item(row, project.id, position)
            if not incoming.name.strip():
                logger.debug(f"Skipping unnamed row {row.id}")
                continue
            seen.add(row.id)

            cached = by_remote.get(row.id)
            if cached is None:
                inserts.append(replace(incoming, id=new_id(), last_synced_at=now))
                continue

            merged = replace(incoming, id=cached.id, last_synced_at=cached.last_synced_at)
            if merged == cached:
                result.unchanged += 1
            else:
                merged.last_synced_at = now
                updates.append(merged)

        removed = [
            item
            for item in existing
            if item.remote_row_id is not None and item.remote_row_id not in seen
        ]

        self.store.apply_changes(
            inserts=inserts,
            updates=updates,
            delete_ids=[item.id for item in removed if item.id],
        )

        result.imported = len(inserts)
        result.updated = len(updates)
        result.removed = len(removed)
        self.store.audit(
            actor,
            "wbs.import",
            "project",
            project.id,
            imported=result.imported,
            updated=result.updated,
            removed=result.removed,
        )
        logger.info(
            f"Imported WBS for {project.code}: {result.imported} new, {result.updated} updated, "
            f"{result.removed} removed"
        )
        return result
