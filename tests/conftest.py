"""Shared fixtures: an in-memory Smartsheet gateway, a temp cache store and config."""

from __future__ import annotations

import copy
from collections import defaultdict
from itertools import count
from pathlib import Path
from typing import Any

import pytest

from wbs_orchestrator.config import AppConfig, AppSettings, RetryConfig, SmartsheetConfig
from wbs_orchestrator.errors import NotFound
from wbs_orchestrator.models import ApprovalStatus, Project, Workspace
from wbs_orchestrator.remote.retry import DedupeGuard, RetryableRemoteClient, RetryPolicy
from wbs_orchestrator.remote.types import (
    FolderContents,
    RemoteCell,
    RemoteColumn,
    RemoteObject,
    RemoteRow,
    RemoteSheet,
    RowPatch,
    Webhook,
)
from wbs_orchestrator.service import WbsService
from wbs_orchestrator.store import CacheStore

PORTFOLIO_ID = 100
PARENT_FOLDER_ID = 200
TEMPLATE_FOLDER_ID = 300
TEMPLATE_SHEET_ID = 310

WBS_TITLES = [
    "Name",
    "Description",
    "Assigned To",
    "Approver",
    "Status",
    "Start Date",
    "End Date",
    "At Risk",
    "Budget",
    "Actual",
    "Variance",
    "Notes",
    "WBS",
    "Skip WBS",
]

PORTFOLIO_TITLES = [
    "###",
    "Project Name",
    "Description",
    "Category",
    "Approved By",
    "Approval Status",
    "Assigned To",
    "Project Plan",
    "Status",
    "Budget",
    "Actual",
    "Work Breakdown Needed?",
    "WBS App Link",
    "Last Update",
]


# ---------------------------------------------------------------------------
# Fake gateway
# ---------------------------------------------------------------------------


class FakeGateway:
    """
    In-memory stand-in for ``SmartsheetGateway``.

    Records every call in ``calls`` as ``(operation, args)`` and raises
    queued exceptions registered with :meth:`fail`.
    """

    def __init__(self) -> None:
        self.sheets: dict[int, RemoteSheet] = {}
        self.folders: dict[int, FolderContents] = {}
        self.webhooks: dict[int, Webhook] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self._ids = count(10_000)

    # ---- test helpers ----

    def next_id(self) -> int:
        return next(self._ids)

    def fail(self, operation: str, *errors: Exception) -> None:
        """Raise ``errors`` (in order) on the next calls of ``operation``."""
        self.failures[operation].extend(errors)

    def ops(self, operation: str | None = None) -> list[str]:
        names = [name for name, _ in self.calls]
        if operation is None:
            return names
        return [name for name in names if name == operation]

    def add_sheet(
        self,
        sheet_id: int,
        name: str,
        titles: list[str],
        rows: list[dict[str, Any]] | None = None,
        folder_id: int | None = None,
    ) -> RemoteSheet:
        columns = [
            RemoteColumn(id=sheet_id * 100 + i + 1, title=title, primary=(i == 0))
            for i, title in enumerate(titles)
        ]
        sheet = RemoteSheet(
            id=sheet_id,
            name=name,
            permalink=f"https://app.smartsheet.com/sheets/{sheet_id}",
            columns=columns,
        )
        self.sheets[sheet_id] = sheet
        for values in rows or []:
            self.add_row(sheet_id, values)
        if folder_id is not None:
            self.folders[folder_id].sheets.append(RemoteObject(sheet_id, name, sheet.permalink))
        return sheet

    def add_row(
        self,
        sheet_id: int,
        values: dict[str, Any],
        parent_id: int | None = None,
        row_id: int | None = None,
        modified_at: str | None = None,
    ) -> RemoteRow:
        sheet = self.sheets[sheet_id]
        by_title = {c.title: c.id for c in sheet.columns}
        row = RemoteRow(
            id=row_id or self.next_id(),
            parent_id=parent_id,
            cells=[RemoteCell(by_title[t], v, str(v) if v is not None else None) for t, v in values.items()],
            modified_at=modified_at,
        )
        sheet.rows.append(row)
        return row

    def add_folder(self, folder_id: int, name: str, parent_id: int | None = None) -> FolderContents:
        folder = FolderContents(id=folder_id, name=name)
        self.folders[folder_id] = folder
        if parent_id is not None:
            self.folders[parent_id].folders.append(RemoteObject(folder_id, name))
        return folder

    def value(self, sheet_id: int, row_id: int, title: str) -> Any:
        sheet = self.sheets[sheet_id]
        col_id = next(c.id for c in sheet.columns if c.title == title)
        row = sheet.row(row_id)
        assert row is not None
        cell = row.cell(col_id)
        return cell.value if cell else None

    def hyperlink(self, sheet_id: int, row_id: int, title: str) -> str | None:
        sheet = self.sheets[sheet_id]
        col_id = next(c.id for c in sheet.columns if c.title == title)
        row = sheet.row(row_id)
        assert row is not None
        cell = row.cell(col_id)
        return cell.hyperlink_url if cell else None

    def written_columns(self, operation: str) -> set[str]:
        """Titles of every column written by ``operation`` calls."""
        titles: set[str] = set()
        for name, args in self.calls:
            if name != operation:
                continue
            sheet = self.sheets.get(args[0])
            if sheet is None:
                continue
            by_id = {c.id: c.title for c in sheet.columns}
            for patch in args[1]:
                titles.update(by_id.get(cell.column_id, "?") for cell in patch.cells)
        return titles

    # ---- protocol ----

    def _enter(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _sheet(self, sheet_id: int) -> RemoteSheet:
        sheet = self.sheets.get(sheet_id)
        if sheet is None:
            raise NotFound(f"Sheet {sheet_id} not found")
        return sheet

    async def get_sheet(self, sheet_id: int) -> RemoteSheet:
        self._enter("get_sheet", sheet_id)
        return copy.deepcopy(self._sheet(sheet_id))

    def _apply_cells(self, row: RemoteRow, patch: RowPatch) -> None:
        for cell in patch.cells:
            row.cells = [c for c in row.cells if c.column_id != cell.column_id]
            display = None if cell.value in (None, "") else str(cell.value)
            row.cells.append(RemoteCell(cell.column_id, cell.value, display, cell.hyperlink_url))

    @staticmethod
    def _subtree_end(rows: list[RemoteRow], index: int) -> int:
        """Index just past the last descendant of ``rows[index]``."""
        ids = {rows[index].id}
        end = index + 1
        while end < len(rows) and rows[end].parent_id in ids:
            ids.add(rows[end].id)
            end += 1
        return end

    async def add_rows(self, sheet_id: int, rows: list[RowPatch]) -> list[int]:
        self._enter("add_rows", sheet_id, copy.deepcopy(rows))
        sheet = self._sheet(sheet_id)
        created: list[int] = []
        for patch in rows:
            row = RemoteRow(id=self.next_id())
            self._apply_cells(row, patch)
            index_of = {r.id: i for i, r in enumerate(sheet.rows)}
            if patch.sibling_id is not None:
                sibling = index_of[patch.sibling_id]
                row.parent_id = sheet.rows[sibling].parent_id
                position = sibling if patch.above else self._subtree_end(sheet.rows, sibling)
            elif patch.parent_id is not None:
                row.parent_id = patch.parent_id
                position = index_of[patch.parent_id] + 1
            elif patch.to_top:
                position = 0
            else:
                position = len(sheet.rows)
            sheet.rows.insert(position, row)
            created.append(row.id)
        return created

    async def update_rows(self, sheet_id: int, rows: list[RowPatch]) -> None:
        self._enter("update_rows", sheet_id, copy.deepcopy(rows))
        sheet = self._sheet(sheet_id)
        for patch in rows:
            row = sheet.row(patch.row_id) if patch.row_id is not None else None
            if row is None:
                raise NotFound(f"Row {patch.row_id} not found")
            self._apply_cells(row, patch)

    async def delete_rows(self, sheet_id: int, row_ids: list[int]) -> None:
        self._enter("delete_rows", sheet_id, list(row_ids))
        sheet = self._sheet(sheet_id)
        doomed = set(row_ids)
        if not doomed <= {r.id for r in sheet.rows}:
            raise NotFound("Row not found")
        # Deleting a parent removes its children too
        changed = True
        while changed:
            extra = {r.id for r in sheet.rows if r.parent_id in doomed} - doomed
            changed = bool(extra)
            doomed |= extra
        sheet.rows = [r for r in sheet.rows if r.id not in doomed]

    async def create_folder(self, name: str, parent_folder_id: int) -> RemoteObject:
        self._enter("create_folder", name, parent_folder_id)
        if parent_folder_id not in self.folders:
            raise NotFound(f"Folder {parent_folder_id} not found")
        folder = self.add_folder(self.next_id(), name, parent_folder_id)
        return RemoteObject(folder.id, folder.name)

    async def get_folder(self, folder_id: int) -> FolderContents:
        self._enter("get_folder", folder_id)
        folder = self.folders.get(folder_id)
        if folder is None:
            raise NotFound(f"Folder {folder_id} not found")
        return copy.deepcopy(folder)

    async def copy_sheet(self, sheet_id: int, new_name: str, dest_folder_id: int) -> RemoteObject:
        self._enter("copy_sheet", sheet_id, new_name, dest_folder_id)
        source = self._sheet(sheet_id)
        new_id = self.next_id()
        copied = copy.deepcopy(source)
        copied.id = new_id
        copied.name = new_name
        copied.permalink = f"https://app.smartsheet.com/sheets/{new_id}"
        row_map = {row.id: self.next_id() for row in copied.rows}
        for row in copied.rows:
            row.id = row_map[row.id]
            row.parent_id = row_map.get(row.parent_id) if row.parent_id else None
        self.sheets[new_id] = copied
        obj = RemoteObject(new_id, new_name, copied.permalink)
        self.folders[dest_folder_id].sheets.append(obj)
        return obj

    async def copy_dashboard(
        self, dashboard_id: int, new_name: str, dest_folder_id: int
    ) -> RemoteObject:
        self._enter("copy_dashboard", dashboard_id, new_name, dest_folder_id)
        obj = RemoteObject(self.next_id(), new_name)
        self.folders[dest_folder_id].dashboards.append(obj)
        return obj

    async def create_webhook(self, name: str, sheet_id: int, callback_url: str) -> Webhook:
        self._enter("create_webhook", name, sheet_id, callback_url)
        hook = Webhook(self.next_id(), name, sheet_id, callback_url, False, "NEW_NOT_VERIFIED")
        self.webhooks[hook.id] = hook
        return copy.copy(hook)

    async def enable_webhook(self, webhook_id: int) -> Webhook:
        self._enter("enable_webhook", webhook_id)
        hook = self.webhooks[webhook_id]
        hook.enabled = True
        hook.status = "ENABLED"
        return copy.copy(hook)

    async def delete_webhook(self, webhook_id: int) -> None:
        self._enter("delete_webhook", webhook_id)
        if self.webhooks.pop(webhook_id, None) is None:
            raise NotFound(f"Webhook {webhook_id} not found")

    async def list_webhooks(self) -> list[Webhook]:
        self._enter("list_webhooks")
        return [copy.copy(h) for h in self.webhooks.values()]

    async def get_current_user(self) -> str:
        self._enter("get_current_user")
        return "owner@example.com"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway() -> FakeGateway:
    """Portfolio sheet, WBS parent folder and a template folder."""
    gw = FakeGateway()
    gw.add_sheet(PORTFOLIO_ID, "Portfolio", PORTFOLIO_TITLES)
    gw.add_folder(PARENT_FOLDER_ID, "Project WBS")
    template = gw.add_folder(TEMPLATE_FOLDER_ID, "WBS Template")
    gw.add_sheet(
        TEMPLATE_SHEET_ID,
        "Work Breakdown Schedule",
        WBS_TITLES,
        rows=[{"Name": "PROJECT CODE"}],
        folder_id=TEMPLATE_FOLDER_ID,
    )
    gw.add_sheet(311, "Budget Summary", ["Line", "Amount"], folder_id=TEMPLATE_FOLDER_ID)
    template.dashboards.append(RemoteObject(320, "Project Dashboard"))
    template.reports.append(RemoteObject(330, "Status Report"))
    return gw


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        smartsheet=SmartsheetConfig(
            access_token="test-token",
            portfolio_sheet_id=PORTFOLIO_ID,
            wbs_parent_folder_id=PARENT_FOLDER_ID,
            wbs_template_folder_id=TEMPLATE_FOLDER_ID,
            webhook_callback_url="https://wbs.example.com/api/webhooks/smartsheet",
            contacts={"Keith Clark": "keith.clark@example.com"},
        ),
        retry=RetryConfig(max_retries=3, base_delay=1.0, multiplier=2.0, max_delay=30.0),
        app=AppSettings(
            app_base_url="https://wbs.example.com",
            database_path=tmp_path / "cache.db",
        ),
    )


@pytest.fixture
def store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "cache.db")


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the retry client, in order."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def remote(gateway: FakeGateway, fake_sleep) -> RetryableRemoteClient:
    return RetryableRemoteClient(gateway, RetryPolicy(), DedupeGuard(), sleep=fake_sleep)


@pytest.fixture
def service(config: AppConfig, store: CacheStore, gateway: FakeGateway, fake_sleep) -> WbsService:
    return WbsService(config, store=store, gateway=gateway, sleep=fake_sleep)


@pytest.fixture
def wbs_sheet(gateway: FakeGateway) -> RemoteSheet:
    """A provisioned WBS sheet with only the header row."""
    sheet = gateway.add_sheet(500, "Work Breakdown Schedule", WBS_TITLES)
    gateway.add_row(500, {"Name": "P-0001"}, row_id=501)
    return sheet


@pytest.fixture
def project(store: CacheStore, wbs_sheet: RemoteSheet) -> Project:
    """An approved, provisioned project whose WBS sheet is ``wbs_sheet``."""
    project = Project(
        id="",
        code="P-0001",
        title="Pump Station Upgrade",
        approval_status=ApprovalStatus.APPROVED,
        workspace=Workspace(
            folder_id=400,
            sheet_id=wbs_sheet.id,
            sheet_url=wbs_sheet.permalink,
            app_url="https://wbs.example.com/projects/x/wbs",
        ),
    )
    return store.save_project(project)


@pytest.fixture
def local_project(store: CacheStore) -> Project:
    """A project without a workspace (saves stay local)."""
    return store.save_project(Project(id="", code="P-0002", title="Levee Survey"))
