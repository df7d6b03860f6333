"""Timestamp-driven polling of the portfolio sheet, for when webhooks are unavailable."""

from __future__ import annotations

import logging
from datetime import datetime

from ..errors import WbsError
from ..mapper.mappings import PortfolioEntry
from ..models import ItemError, Project
from .portfolio import PortfolioProcessor, PortfolioSyncResult

logger = logging.getLogger(__name__)


def needs_refresh(project: Project | None, last_update: datetime | None) -> bool:
    """A row is reprocessed when it is new, or either timestamp is unknown, or remote is newer."""
    if project is None:
        return True
    if last_update is None or project.last_synced_at is None:
        return True
    return last_update > project.last_synced_at


class PollingFallback:
    """Walks the portfolio and reprocesses rows that changed since the last sync."""

    def __init__(self, processor: PortfolioProcessor):
        self.processor = processor

    def _has_identity(self, entry: PortfolioEntry, project: Project | None) -> bool:
        return bool(entry.code or project or self.processor.config.app.auto_project_codes)

    async def poll(self, actor: str = "poller") -> PortfolioSyncResult:
        result = PortfolioSyncResult()
        sheet, mapper = await self.processor.load_portfolio()

        for row in sheet.rows:
            entry = mapper.to_entry(row)
            result.checked += 1
            project = self.processor.find_project(entry)
            if not self._has_identity(entry, project):
                result.skipped += 1
                continue
            if not needs_refresh(project, entry.last_update):
                result.skipped += 1
                continue

            try:
                outcome = await self.processor.process_entry(entry, actor)
            except WbsError as e:
                logger.warning(f"Polling row {row.id} failed: {e}")
                result.processed += 1
                result.errors.append(ItemError(entry.code or f"row {row.id}", str(e)))
                continue
            result.add(outcome)

        logger.info(
            f"Poll complete: {result.checked} rows, {result.processed} processed, "
            f"{result.skipped} unchanged"
        )
        return result
