"""Portfolio row processing shared by webhooks, polling and the provisioning check."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..config import AppConfig
from ..errors import PartialProvisioningFailure, WbsError
from ..mapper.mappings import PortfolioEntry, PortfolioMapper
from ..models import ApprovalStatus, ItemError, Outcome, Project
from ..provisioning.workflow import ProvisioningResult, ProvisioningWorkflow
from ..remote.retry import RetryableRemoteClient
from ..remote.types import RemoteSheet
from ..store import CacheStore, utcnow

logger = logging.getLogger(__name__)

ROW_EVENTS = ("created", "updated")


@dataclass
class RowOutcome:
    """What processing one portfolio row did."""

    row_id: int
    project_code: str | None
    action: str
    provisioning: ProvisioningResult | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rowId": self.row_id,
            "projectCode": self.project_code,
            "action": self.action,
            "provisioning": self.provisioning.to_dict() if self.provisioning else None,
            "error": self.error,
        }


@dataclass
class PortfolioSyncResult:
    """Aggregate result of processing many portfolio rows."""

    checked: int = 0
    processed: int = 0
    created: int = 0
    provisioned: int = 0
    skipped: int = 0
    unlinked: int = 0
    pruned: int = 0
    rows: list[RowOutcome] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)

    def add(self, outcome: RowOutcome) -> None:
        self.rows.append(outcome)
        self.processed += 1
        if outcome.action == "created":
            self.created += 1
        prov = outcome.provisioning
        if prov is not None and not prov.skipped and prov.failed_step is None:
            self.provisioned += 1
        if outcome.error:
            self.errors.append(
                ItemError(outcome.project_code or f"row {outcome.row_id}", outcome.error)
            )

    @property
    def outcome(self) -> Outcome:
        if not self.errors:
            return Outcome.SUCCEEDED
        if self.processed > len(self.errors):
            return Outcome.PARTIAL
        return Outcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "checked": self.checked,
            "processed": self.processed,
            "created": self.created,
            "provisioned": self.provisioned,
            "skipped": self.skipped,
            "unlinked": self.unlinked,
            "pruned": self.pruned,
            "rows": [r.to_dict() for r in self.rows],
            "errors": [{"item": e.item, "message": e.message} for e in self.errors],
        }


def challenge_response(
    payload: dict[str, Any] | None, query_challenge: str | None = None
) -> dict[str, str] | None:
    """Answer Smartsheet's webhook verification challenge, if this is one."""
    challenge = (payload or {}).get("challenge") or query_challenge
    if not challenge:
        return None
    return {"smartsheetHookResponse": str(challenge)}


class PortfolioProcessor:
    """
    Applies portfolio rows to local projects and fires provisioning.

    Webhook events, the polling fallback and the manual provisioning check
    all go through :meth:`process_entry`.
    """

    def __init__(
        self,
        store: CacheStore,
        remote: RetryableRemoteClient,
        workflow: ProvisioningWorkflow,
        config: AppConfig,
    ):
        self.store = store
        self.remote = remote
        self.workflow = workflow
        self.config = config

    @property
    def portfolio_sheet_id(self) -> int:
        return self.config.smartsheet.portfolio_sheet_id

    async def load_portfolio(self) -> tuple[RemoteSheet, PortfolioMapper]:
        sheet = await self.remote.get_sheet(self.portfolio_sheet_id)
        mapper = PortfolioMapper.for_sheet(sheet)
        if not mapper.accessor.has("code"):
            logger.warning("Portfolio sheet has no '###' column; rows are matched by row id only")
        return sheet, mapper

    def find_project(self, entry: PortfolioEntry) -> Project | None:
        project = self.store.get_project_by_code(entry.code) if entry.code else None
        return project or self.store.get_project_by_portfolio_row(entry.row_id)

    # ==================== Row processing ====================

    async def process_row(
        self,
        row_id: int,
        sheet: RemoteSheet | None = None,
        mapper: PortfolioMapper | None = None,
        actor: str = "system",
    ) -> RowOutcome:
        """Process one portfolio row by id (fetching the sheet if not given)."""
        if sheet is None or mapper is None:
            sheet, mapper = await self.load_portfolio()
        row = sheet.row(row_id)
        if row is None:
            return RowOutcome(row_id, None, "skipped", error=f"Row {row_id} not in portfolio sheet")
        return await self.process_entry(mapper.to_entry(row), actor)

    async def process_entry(self, entry: PortfolioEntry, actor: str = "system") -> RowOutcome:
        """
        Upsert the project for ``entry`` and provision it if approved.

        Provisioning failures are reported on the outcome, not raised, and
        leave the project unsynced so the next poll retries it.
        """
        project = self.find_project(entry)
        code = entry.code or (project.code if project else None)
        if code is None and self.config.app.auto_project_codes:
            code = self.store.next_project_code()
        if code is None:
            logger.debug(f"Portfolio row {entry.row_id} has no project code; skipping")
            return RowOutcome(entry.row_id, None, "skipped")

        action = "updated"
        if project is None:
            action = "created"
            project = Project(id="", code=code, title=entry.title)
        self._apply_entry(project, entry, code)
        self.store.save_project(project)
        self.store.audit(actor, f"project.{action}", "project", project.id, code=code)

        outcome = RowOutcome(entry.row_id, code, action)
        try:
            outcome.provisioning = await self.workflow.run(project, entry, actor)
        except PartialProvisioningFailure as e:
            outcome.provisioning = e.result
            outcome.error = str(e)
            return outcome

        self.store.mark_synced(project.id, utcnow(), entry.last_update)
        return outcome

    @staticmethod
    def _apply_entry(project: Project, entry: PortfolioEntry, code: str) -> None:
        project.code = code
        project.title = entry.title
        project.description = entry.description
        project.category = entry.category
        project.approval_status = entry.approval_status
        project.status = entry.status
        project.portfolio_row_id = entry.row_id
        project.requires_wbs = entry.requires_wbs
        project.approved_by = entry.approved_by
        project.assigned_to = entry.assigned_to
        project.start_date = entry.start_date
        project.end_date = entry.end_date
        project.budget = entry.budget
        project.actual = entry.actual

    # ==================== Webhooks ====================

    async def handle_webhook(self, payload: dict[str, Any], actor: str = "webhook") -> PortfolioSyncResult:
        """
        Dispatch row ``created``/``updated`` events to :meth:`process_row`.

        Other object types and event types are ignored. The portfolio sheet
        is fetched once per payload.
        """
        result = PortfolioSyncResult()
        scope = payload.get("scopeObjectId")
        if scope is not None and int(scope) != self.portfolio_sheet_id:
            logger.info(f"Ignoring webhook for sheet {scope}")
            return result

        row_ids: list[int] = []
        for event in payload.get("events") or []:
            if event.get("objectType") != "row" or event.get("eventType") not in ROW_EVENTS:
                continue
            row_id = event.get("id", event.get("rowId"))
            if row_id is not None and int(row_id) not in row_ids:
                row_ids.append(int(row_id))

        result.checked = len(row_ids)
        if not row_ids:
            return result

        sheet, mapper = await self.load_portfolio()
        for row_id in row_ids:
            try:
                result.add(await self.process_row(row_id, sheet, mapper, actor))
            except WbsError as e:
                logger.warning(f"Processing portfolio row {row_id} failed: {e}")
                result.processed += 1
                result.errors.append(ItemError(f"row {row_id}", str(e)))
        return result

    # ==================== Provisioning check ====================

    async def check_new_projects(
        self,
        verify_existing: bool = False,
        prune: bool = False,
        actor: str = "system",
    ) -> PortfolioSyncResult:
        """
        Walk every portfolio row and provision approved projects.

        Args:
            verify_existing: Confirm provisioned sheets still exist; a deleted
                sheet unlinks the workspace so the project is re-provisioned
            prune: Soft-delete projects whose code left the portfolio
            actor: Recorded in the audit log
        """
        result = PortfolioSyncResult()
        sheet, mapper = await self.load_portfolio()
        seen_codes: set[str] = set()

        for row in sheet.rows:
            entry = mapper.to_entry(row)
            result.checked += 1
            if entry.code:
                seen_codes.add(entry.code)
            try:
                project = self.find_project(entry)
                if verify_existing and project is not None and project.workspace is not None:
                    if not await self.workflow.verify_workspace(project, actor):
                        result.unlinked += 1
                if entry.approval_status != ApprovalStatus.APPROVED and project is not None:
                    result.skipped += 1
                    continue
                outcome = await self.process_entry(entry, actor)
            except WbsError as e:
                logger.warning(f"Processing portfolio row {row.id} failed: {e}")
                result.processed += 1
                result.errors.append(ItemError(entry.code or f"row {row.id}", str(e)))
                continue
            if outcome.project_code:
                seen_codes.add(outcome.project_code)
            result.add(outcome)

        if prune:
            for project in self.store.list_projects():
                if project.code in seen_codes:
                    continue
                removed = self.store.soft_delete_project(project.id)
                self.store.audit(
                    actor, "project.pruned", "project", project.id, code=project.code, items=removed
                )
                logger.info(f"Pruned project {project.code} (no longer in portfolio)")
                result.pruned += 1
        return result
