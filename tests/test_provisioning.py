"""Tests for workspace provisioning."""

from __future__ import annotations

import asyncio

import pytest

from wbs_orchestrator.errors import PartialProvisioningFailure, RemoteServiceError
from wbs_orchestrator.models import ApprovalStatus, Outcome, Project
from wbs_orchestrator.provisioning import ProvisioningState, app_url, folder_name
from wbs_orchestrator.service import WbsService
from wbs_orchestrator.store import CacheStore

from .conftest import PARENT_FOLDER_ID, PORTFOLIO_ID, FakeGateway

PORTFOLIO_ROW = 77


@pytest.fixture
def approved(store: CacheStore, gateway: FakeGateway) -> Project:
    gateway.add_row(
        PORTFOLIO_ID,
        {"###": "P-0001", "Project Name": "Pump Station", "Approval Status": "Approved"},
        row_id=PORTFOLIO_ROW,
    )
    return store.save_project(
        Project(
            id="",
            code="P-0001",
            title="Pump Station",
            approval_status=ApprovalStatus.APPROVED,
            portfolio_row_id=PORTFOLIO_ROW,
        )
    )


def test_folder_name_and_app_url() -> None:
    assert folder_name("P-0042") == "WBS (#P-0042)"
    assert app_url("https://wbs.example.com/", "abc") == "https://wbs.example.com/projects/abc/wbs"


class TestProvisioning:
    def test_happy_path(
        self, service: WbsService, store: CacheStore, gateway: FakeGateway, approved: Project
    ) -> None:
        result = asyncio.run(service.workflow.run(approved))

        assert result.state == ProvisioningState.COMPLETE
        # The template report cannot be copied, which is reported, not fatal
        assert result.outcome == Outcome.PARTIAL
        assert any("Status Report" in w for w in result.warnings)
        assert result.copied == ["Work Breakdown Schedule", "Budget Summary", "Project Dashboard"]

        folder = gateway.folders[PARENT_FOLDER_ID].folders[0]
        assert folder.name == "WBS (#P-0001)"
        assert result.folder_id == folder.id

        sheet = gateway.sheets[result.sheet_id]  # type: ignore[index]
        assert gateway.value(sheet.id, sheet.rows[0].id, "Name") == approved.code

        assert gateway.hyperlink(PORTFOLIO_ID, PORTFOLIO_ROW, "Project Plan") == sheet.permalink
        assert (
            gateway.value(PORTFOLIO_ID, PORTFOLIO_ROW, "WBS App Link")
            == f"https://wbs.example.com/projects/{approved.id}/wbs"
        )

        stored = store.get_project(approved.id)
        assert stored is not None and stored.workspace is not None
        assert stored.workspace.sheet_id == sheet.id
        assert store.list_audit(approved.id)[0].action == "provisioning.complete"

    def test_rerun_makes_no_remote_calls(
        self, service: WbsService, gateway: FakeGateway, approved: Project
    ) -> None:
        first = asyncio.run(service.workflow.run(approved))
        gateway.calls.clear()

        again = asyncio.run(service.workflow.run(approved))

        assert again.skipped_reason == "already provisioned"
        assert again.sheet_id == first.sheet_id
        assert gateway.calls == []

    def test_not_approved_is_skipped(
        self, service: WbsService, store: CacheStore, gateway: FakeGateway
    ) -> None:
        project = store.save_project(Project(id="", code="P-0005", title="Pending"))

        result = asyncio.run(service.workflow.run(project))

        assert result.skipped
        assert "Pending_Approval" in (result.skipped_reason or "")
        assert gateway.calls == []

    def test_failed_step_reported_and_earlier_steps_kept(
        self, service: WbsService, store: CacheStore, gateway: FakeGateway, approved: Project
    ) -> None:
        gateway.fail("update_rows", RemoteServiceError("locked", status_code=400))

        with pytest.raises(PartialProvisioningFailure) as exc_info:
            asyncio.run(service.workflow.run(approved))

        err = exc_info.value
        assert err.step == ProvisioningState.HEADER_PATCHED.value
        assert err.result.state == ProvisioningState.FAILED
        assert err.result.folder_id is not None
        assert len(gateway.ops("copy_sheet")) == 2
        assert store.get_project(approved.id).workspace is None  # type: ignore[union-attr]
        assert store.list_audit(approved.id)[0].action == "provisioning.failed"

    def test_retry_after_failure_reuses_folder_and_copies(
        self, service: WbsService, store: CacheStore, gateway: FakeGateway, approved: Project
    ) -> None:
        gateway.fail("update_rows", RemoteServiceError("locked", status_code=400))
        with pytest.raises(PartialProvisioningFailure):
            asyncio.run(service.workflow.run(approved))

        result = asyncio.run(service.workflow.run(approved))

        assert result.state == ProvisioningState.COMPLETE
        assert result.folder_reused
        assert len(gateway.ops("create_folder")) == 1
        assert len(gateway.ops("copy_sheet")) == 2
        assert store.get_project(approved.id).workspace is not None  # type: ignore[union-attr]

    def test_dashboard_copy_failure_is_a_warning(
        self, service: WbsService, gateway: FakeGateway, approved: Project
    ) -> None:
        gateway.fail("copy_dashboard", RemoteServiceError("unsupported", status_code=400))

        result = asyncio.run(service.workflow.run(approved))

        assert result.state == ProvisioningState.COMPLETE
        assert any("Project Dashboard" in w for w in result.warnings)

    def test_verify_workspace_unlinks_deleted_sheet(
        self, service: WbsService, store: CacheStore, gateway: FakeGateway, project: Project
    ) -> None:
        del gateway.sheets[project.workspace.sheet_id]  # type: ignore[union-attr]

        ok = asyncio.run(service.workflow.verify_workspace(project))

        assert ok is False
        assert store.get_project(project.id).workspace is None  # type: ignore[union-attr]
