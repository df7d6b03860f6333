"""Provision a WBS workspace (folder, template copy, back-links) for an approved project."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import SmartsheetConfig
from ..errors import NotFound, PartialProvisioningFailure, ValidationError, WbsError
from ..mapper.accessor import RowAccessor
from ..mapper.mappings import PortfolioEntry
from ..models import ApprovalStatus, Outcome, Project, Workspace
from ..remote.retry import RetryableRemoteClient
from ..remote.schemas import PORTFOLIO_SCHEMA, WBS_SCHEMA
from ..remote.types import RemoteObject, RowPatch
from ..store import CacheStore

logger = logging.getLogger(__name__)

PROJECT_PLAN_LINK_TEXT = "Work Breakdown Schedule"


class ProvisioningState(str, Enum):
    PENDING = "Pending"
    FOLDER_CREATED = "FolderCreated"
    TEMPLATE_COPIED = "TemplateCopied"
    HEADER_PATCHED = "HeaderPatched"
    LINKS_WRITTEN = "LinksWritten"
    COMPLETE = "Complete"
    FAILED = "Failed"


def folder_name(project_code: str) -> str:
    """Deterministic workspace folder name for a project."""
    return f"WBS (#{project_code})"


def app_url(base_url: str, project_id: str) -> str:
    return f"{base_url.rstrip('/')}/projects/{project_id}/wbs"


@dataclass
class ProvisioningResult:
    """Where a provisioning run ended and what it produced."""

    project_id: str
    project_code: str
    state: ProvisioningState = ProvisioningState.PENDING
    skipped_reason: str | None = None
    failed_step: ProvisioningState | None = None
    error: str | None = None
    folder_id: int | None = None
    folder_reused: bool = False
    sheet_id: int | None = None
    sheet_url: str | None = None
    app_url: str | None = None
    copied: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    @property
    def outcome(self) -> Outcome:
        if self.state == ProvisioningState.FAILED:
            return Outcome.FAILED
        if self.warnings:
            return Outcome.PARTIAL
        return Outcome.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "projectCode": self.project_code,
            "state": self.state.value,
            "outcome": self.outcome.value,
            "skippedReason": self.skipped_reason,
            "failedStep": self.failed_step.value if self.failed_step else None,
            "error": self.error,
            "folderId": self.folder_id,
            "folderReused": self.folder_reused,
            "sheetId": self.sheet_id,
            "sheetUrl": self.sheet_url,
            "appUrl": self.app_url,
            "copied": self.copied,
            "warnings": self.warnings,
        }


@dataclass
class _Run:
    """Mutable context threaded through the steps of one run."""

    project: Project
    entry: PortfolioEntry | None
    result: ProvisioningResult
    sheets: list[RemoteObject] = field(default_factory=list)

    @property
    def folder_id(self) -> int:
        if self.result.folder_id is None:
            raise WbsError(f"No workspace folder for {self.project.code} yet")
        return self.result.folder_id

    @property
    def sheet_id(self) -> int:
        if self.result.sheet_id is None:
            raise WbsError(f"No WBS sheet for {self.project.code} yet")
        return self.result.sheet_id


class ProvisioningWorkflow:
    """
    Per-project state machine:
    ``Pending -> FolderCreated -> TemplateCopied -> HeaderPatched ->
    LinksWritten -> Complete``, or ``Failed`` at any step.

    The trigger (approved, no workspace yet) is checked against the stored
    project before any remote call, so re-entry for a provisioned project is
    free. A failing step raises :class:`PartialProvisioningFailure`; remote
    side effects of earlier steps are kept, and a re-run reuses the folder
    and skips sheets that were already copied.
    """

    def __init__(
        self,
        store: CacheStore,
        remote: RetryableRemoteClient,
        config: SmartsheetConfig,
        app_base_url: str,
    ):
        self.store = store
        self.remote = remote
        self.config = config
        self.app_base_url = app_base_url

    @staticmethod
    def skip_reason(project: Project, approval: ApprovalStatus) -> str | None:
        """Why the trigger does not fire, or ``None`` if provisioning should run."""
        if project.workspace is not None:
            return "already provisioned"
        if approval != ApprovalStatus.APPROVED:
            return f"approval status is {approval.value}"
        return None

    async def run(
        self,
        project: Project,
        entry: PortfolioEntry | None = None,
        actor: str = "system",
    ) -> ProvisioningResult:
        """
        Provision ``project`` if the trigger fires.

        Args:
            project: The project (re-read from the store before deciding)
            entry: The originating portfolio row, if known
            actor: Recorded in the audit log

        Raises:
            PartialProvisioningFailure: A step failed; ``.step`` names it and
                ``.result`` holds the partial result
        """
        project = self.store.get_project(project.id) or project
        approval = entry.approval_status if entry else project.approval_status
        result = ProvisioningResult(project_id=project.id, project_code=project.code)

        reason = self.skip_reason(project, approval)
        if reason:
            if project.workspace is not None:
                result.state = ProvisioningState.COMPLETE
                result.folder_id = project.workspace.folder_id
                result.sheet_id = project.workspace.sheet_id
                result.sheet_url = project.workspace.sheet_url
                result.app_url = project.workspace.app_url
            result.skipped_reason = reason
            logger.debug(f"Not provisioning {project.code}: {reason}")
            return result

        run = _Run(project=project, entry=entry, result=result)
        result.app_url = app_url(self.app_base_url, project.id)
        steps: list[tuple[ProvisioningState, Callable[[_Run], Awaitable[None]]]] = [
            (ProvisioningState.FOLDER_CREATED, self._create_folder),
            (ProvisioningState.TEMPLATE_COPIED, self._copy_template),
            (ProvisioningState.HEADER_PATCHED, self._patch_header),
            (ProvisioningState.LINKS_WRITTEN, self._write_links),
            (ProvisioningState.COMPLETE, self._persist),
        ]
        logger.info(f"Provisioning WBS workspace for {project.code}")
        for state, step in steps:
            try:
                await step(run)
            except WbsError as e:
                result.state = ProvisioningState.FAILED
                result.failed_step = state
                result.error = str(e)
                logger.error(f"Provisioning {project.code} failed at {state.value}: {e}")
                self.store.audit(
                    actor,
                    "provisioning.failed",
                    "project",
                    project.id,
                    step=state.value,
                    error=str(e),
                    folder_id=result.folder_id,
                )
                raise PartialProvisioningFailure(state.value, project.code, e, result) from e
            result.state = state

        self.store.audit(
            actor,
            "provisioning.complete",
            "project",
            project.id,
            folder_id=result.folder_id,
            sheet_id=result.sheet_id,
            warnings=result.warnings,
        )
        logger.info(f"Provisioned {project.code}: sheet {result.sheet_id}")
        return result

    async def verify_workspace(self, project: Project, actor: str = "system") -> bool:
        """Check the workspace sheet still exists; unlink it if it was deleted."""
        if project.workspace is None:
            return False
        try:
            await self.remote.get_sheet(project.workspace.sheet_id)
        except NotFound:
            logger.warning(f"WBS sheet of {project.code} was deleted; clearing workspace link")
            self.store.set_workspace(project.id, None)
            self.store.audit(
                actor,
                "workspace.unlinked",
                "project",
                project.id,
                sheet_id=project.workspace.sheet_id,
            )
            project.workspace = None
            return False
        return True

    # ==================== Steps ====================

    async def _create_folder(self, run: _Run) -> None:
        name = folder_name(run.project.code)
        parent_id = self.config.wbs_parent_folder_id
        contents = await self.remote.get_folder(parent_id)
        for existing in contents.folders:
            if existing.name.strip().lower() == name.lower():
                logger.warning(f"Folder {name!r} already exists (ID: {existing.id}); reusing it")
                run.result.folder_id = existing.id
                run.result.folder_reused = True
                return

        folder = await self.remote.create_folder(name, parent_id)
        run.result.folder_id = folder.id

    async def _copy_template(self, run: _Run) -> None:
        result = run.result
        folder_id = run.folder_id
        template = await self.remote.get_folder(self.config.wbs_template_folder_id)
        if not template.sheets:
            raise ValidationError(
                f"Template folder {self.config.wbs_template_folder_id} contains no sheets"
            )

        present: dict[str, RemoteObject] = {}
        if result.folder_reused:
            target = await self.remote.get_folder(folder_id)
            present = {s.name.strip().lower(): s for s in target.sheets}

        for sheet in template.sheets:
            already = present.get(sheet.name.strip().lower())
            if already is not None:
                logger.info(f"Sheet {sheet.name!r} already copied; skipping")
                run.sheets.append(already)
                continue
            copy = await self.remote.copy_sheet(sheet.id, sheet.name, folder_id)
            run.sheets.append(copy)
            result.copied.append(copy.name)

        # Dashboards are best-effort
        for dashboard in template.dashboards:
            try:
                await self.remote.copy_dashboard(dashboard.id, dashboard.name, folder_id)
                result.copied.append(dashboard.name)
            except WbsError as e:
                message = f"Dashboard {dashboard.name!r} not copied: {e}"
                logger.warning(message)
                result.warnings.append(message)

        for report in template.reports:
            message = f"Report {report.name!r} cannot be copied through the API; recreate it manually"
            logger.warning(message)
            result.warnings.append(message)

        main = self._find_main_sheet(run.sheets)
        if main is None:
            raise ValidationError(
                f"No sheet named {self.config.main_sheet_name!r} among the copied template sheets"
            )
        result.sheet_id = main.id
        result.sheet_url = main.permalink

    def _find_main_sheet(self, sheets: list[RemoteObject]) -> RemoteObject | None:
        wanted = self.config.main_sheet_name.strip().lower()
        for sheet in sheets:
            if sheet.name.strip().lower() == wanted:
                return sheet
        for sheet in sheets:
            if "work breakdown" in sheet.name.lower():
                return sheet
        return None

    async def _patch_header(self, run: _Run) -> None:
        result = run.result
        sheet = await self.remote.get_sheet(run.sheet_id)
        result.sheet_url = sheet.permalink or result.sheet_url
        if not sheet.rows:
            raise ValidationError(f"Sheet {sheet.name!r} has no header row to patch")

        accessor = RowAccessor.for_sheet(WBS_SCHEMA, sheet)
        patch = RowPatch(row_id=sheet.rows[0].id)
        if not accessor.set(patch, "name", run.project.code, strict=True):
            raise ValidationError(f"Sheet {sheet.name!r} has no Name column")
        await self.remote.update_rows(sheet.id, [patch])

    async def _write_links(self, run: _Run) -> None:
        result = run.result
        row_id = run.entry.row_id if run.entry else run.project.portfolio_row_id
        if row_id is None:
            message = "Project has no portfolio row; back-links not written"
            logger.warning(message)
            result.warnings.append(message)
            return

        portfolio_id = self.config.portfolio_sheet_id
        portfolio = await self.remote.get_sheet(portfolio_id)
        accessor = RowAccessor.for_sheet(PORTFOLIO_SCHEMA, portfolio)
        patch = RowPatch(row_id=row_id)
        if result.sheet_url:
            accessor.set(patch, "project_plan", PROJECT_PLAN_LINK_TEXT, hyperlink_url=result.sheet_url)
        accessor.set(patch, "app_link", result.app_url)
        if not patch.cells:
            message = "Portfolio sheet has neither 'Project Plan' nor 'WBS App Link' column"
            logger.warning(message)
            result.warnings.append(message)
            return
        await self.remote.update_rows(portfolio_id, [patch])

    async def _persist(self, run: _Run) -> None:
        result = run.result
        workspace = Workspace(
            folder_id=run.folder_id,
            sheet_id=run.sheet_id,
            sheet_url=result.sheet_url,
            app_url=result.app_url or app_url(self.app_base_url, run.project.id),
        )
        self.store.set_workspace(run.project.id, workspace)
        run.project.workspace = workspace
