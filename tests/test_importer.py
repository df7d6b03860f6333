"""Tests for pulling a WBS sheet into the cache."""

from __future__ import annotations

import asyncio

import pytest

from wbs_orchestrator.errors import ValidationError
from wbs_orchestrator.models import Outcome, Project, Remote, WbsStatus
from wbs_orchestrator.service import WbsService
from wbs_orchestrator.store import CacheStore

from .conftest import FakeGateway


@pytest.fixture
def remote_rows(gateway: FakeGateway, project: Project) -> dict[str, int]:
    sheet_id = project.workspace.sheet_id  # type: ignore[union-attr]
    phase = gateway.add_row(sheet_id, {"Name": "Design", "Status": "In Progress", "Budget": "$1,200"})
    task = gateway.add_row(
        sheet_id,
        {"Name": "Survey", "Assigned To": "keith.clark@example.com", "Variance": 15.0},
        parent_id=phase.id,
    )
    gateway.add_row(sheet_id, {"Notes": "no name here"})
    return {"phase": phase.id, "task": task.id}


class TestImport:
    def test_first_import(
        self, service: WbsService, store: CacheStore, project: Project, remote_rows: dict[str, int]
    ) -> None:
        result = asyncio.run(service.sync_from_remote(project.code))

        items = {i.name: i for i in store.list_items(project.id)}
        # The header row is a regular named row; the unnamed row is skipped
        assert set(items) == {"P-0001", "Design", "Survey"}
        assert result.imported == 3
        assert result.outcome == Outcome.SUCCEEDED
        assert items["Design"].status == WbsStatus.IN_PROGRESS
        assert items["Design"].budget == "1200"
        assert items["Survey"].parent == Remote(remote_rows["phase"])
        assert items["Survey"].owner == "keith.clark@example.com"
        assert items["Survey"].variance == "15.0"
        assert all(item.last_synced_at is not None for item in items.values())
        # The project timestamp belongs to the portfolio row, not the sheet
        assert store.get_project(project.id).last_synced_at is None  # type: ignore[union-attr]

    def test_reimport_unchanged(
        self, service: WbsService, project: Project, remote_rows: dict[str, int]
    ) -> None:
        asyncio.run(service.sync_from_remote(project.id))
        result = asyncio.run(service.sync_from_remote(project.id))

        assert result.imported == result.updated == result.removed == 0
        assert result.unchanged == 3

    def test_remote_edits_and_deletes_applied(
        self,
        service: WbsService,
        store: CacheStore,
        gateway: FakeGateway,
        project: Project,
        remote_rows: dict[str, int],
    ) -> None:
        asyncio.run(service.sync_from_remote(project.id))
        sheet = gateway.sheets[project.workspace.sheet_id]  # type: ignore[union-attr]
        status_col = next(c.id for c in sheet.columns if c.title == "Status")
        sheet.row(remote_rows["phase"]).cell(status_col).value = "Complete"  # type: ignore[union-attr]
        sheet.rows = [r for r in sheet.rows if r.id != remote_rows["task"]]

        result = asyncio.run(service.sync_from_remote(project.id))

        assert result.updated == 1
        assert result.removed == 1
        items = {i.name: i for i in store.list_items(project.id)}
        assert items["Design"].status == WbsStatus.COMPLETE
        assert "Survey" not in items

    def test_local_only_items_kept(
        self,
        service: WbsService,
        store: CacheStore,
        gateway: FakeGateway,
        project: Project,
        remote_rows: dict[str, int],
    ) -> None:
        asyncio.run(service.sync_from_remote(project.id))
        header = next(i for i in store.list_items(project.id) if i.name == "P-0001")
        store.set_remote_state(header.id, None, None)  # type: ignore[arg-type]

        result = asyncio.run(service.sync_from_remote(project.id))

        # The header row comes back as a new item; the unlinked one stays
        assert result.imported == 1
        assert [i.name for i in store.list_items(project.id)].count("P-0001") == 2

    def test_deleted_sheet_unlinks(
        self, service: WbsService, store: CacheStore, gateway: FakeGateway, project: Project
    ) -> None:
        del gateway.sheets[project.workspace.sheet_id]  # type: ignore[union-attr]

        result = asyncio.run(service.sync_from_remote(project.id))

        assert result.outcome == Outcome.FAILED
        assert store.get_project(project.id).workspace is None  # type: ignore[union-attr]
        assert store.list_audit(project.id)[0].action == "workspace.unlinked"

    def test_unprovisioned_project_rejected(
        self, service: WbsService, local_project: Project
    ) -> None:
        with pytest.raises(ValidationError):
            asyncio.run(service.sync_from_remote(local_project.id))
