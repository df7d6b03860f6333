"""Tests for saving edited trees: cache diff and remote row writes."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from wbs_orchestrator.errors import CycleDetected, RateLimited, RemoteServiceError, ValidationError
from wbs_orchestrator.models import Outcome, Permanent, Project, Remote, Temporary, WbsItem, WbsStatus
from wbs_orchestrator.service import WbsService
from wbs_orchestrator.store import CacheStore
from wbs_orchestrator.wbs import Reconciler
from wbs_orchestrator.wbs.reconcile import canonical_ref

from .conftest import FakeGateway


def new(name: str, temp_id: str, order: int, parent=None, **kwargs) -> WbsItem:
    return WbsItem(
        project_id="", name=name, temp_id=temp_id, order_index=order, parent=parent, **kwargs
    )


def by_name(store: CacheStore, project_id: str) -> dict[str, WbsItem]:
    return {item.name: item for item in store.list_items(project_id)}


def add_calls(gateway: FakeGateway):
    return [args[1] for name, args in gateway.calls if name == "add_rows"]


# ---------------------------------------------------------------------------
# Local-only saves
# ---------------------------------------------------------------------------


class TestLocalSave:
    def test_temp_ids_mapped_and_parents_resolved(
        self, service: WbsService, store: CacheStore, local_project: Project, gateway: FakeGateway
    ) -> None:
        items = [
            new("Phase 1", "t-phase", 0),
            new("Task 1", "t-task", 1, parent=Temporary("t-phase")),
        ]
        result = asyncio.run(service.save_tree(local_project.id, items))

        cached = by_name(store, local_project.id)
        assert set(result.id_map) == {"t-phase", "t-task"}
        assert result.id_map["t-phase"] == cached["Phase 1"].id
        assert cached["Task 1"].parent == Permanent(cached["Phase 1"].id)
        assert result.remote is None
        assert result.outcome == Outcome.SUCCEEDED
        assert gateway.calls == []

    def test_resave_is_unchanged(
        self, service: WbsService, store: CacheStore, local_project: Project
    ) -> None:
        asyncio.run(service.save_tree(local_project.id, [new("Phase 1", "t1", 0)]))
        cached = store.list_items(local_project.id)

        result = asyncio.run(service.save_tree(local_project.id, cached))

        assert result.unchanged == 1
        assert result.created_ids == result.updated_ids == result.deleted_ids == []

    def test_edit_and_remove(
        self, service: WbsService, store: CacheStore, local_project: Project
    ) -> None:
        asyncio.run(
            service.save_tree(local_project.id, [new("A", "ta", 0), new("B", "tb", 1)])
        )
        cached = by_name(store, local_project.id)
        edited = replace(cached["A"], status=WbsStatus.IN_PROGRESS)

        result = asyncio.run(service.save_tree(local_project.id, [edited]))

        assert result.updated_ids == [cached["A"].id]
        assert result.deleted_ids == [cached["B"].id]
        assert store.get_item(cached["A"].id).status == WbsStatus.IN_PROGRESS  # type: ignore[union-attr]

    def test_audit_entry_written(
        self, service: WbsService, store: CacheStore, local_project: Project
    ) -> None:
        asyncio.run(service.save_tree(local_project.id, [new("A", "ta", 0)], actor="alice"))

        entry = store.list_audit(local_project.id)[0]
        assert entry.action == "wbs.save"
        assert entry.actor == "alice"
        assert entry.payload["created"] == 1

    def test_cycle_rejected_before_any_write(
        self, store: CacheStore, local_project: Project
    ) -> None:
        items = [
            new("A", "ta", 0, parent=Temporary("tb")),
            new("B", "tb", 1, parent=Temporary("ta")),
        ]
        with pytest.raises(CycleDetected):
            Reconciler(store).plan(local_project.id, items)
        assert store.list_items(local_project.id) == []

    def test_blank_name_rejected(self, store: CacheStore, local_project: Project) -> None:
        with pytest.raises(ValidationError):
            Reconciler(store).plan(local_project.id, [new("  ", "t1", 0)])

    def test_canonical_ref_prefers_remote_row(self) -> None:
        assert canonical_ref(WbsItem(project_id="p", name="x", id="a", remote_row_id=5)) == Remote(5)
        assert canonical_ref(WbsItem(project_id="p", name="x", id="a")) == Permanent("a")

    def test_canonical_ref_needs_an_identity(self) -> None:
        with pytest.raises(ValidationError, match="no identity"):
            canonical_ref(WbsItem(project_id="p", name="x", temp_id="t"))

    def test_unresolved_parent_becomes_root_with_warning(
        self, store: CacheStore, local_project: Project
    ) -> None:
        plan = Reconciler(store).plan(
            local_project.id, [new("Lost", "t1", 0, parent=Permanent("nope"))]
        )
        assert plan.inserts[0].parent is None
        assert plan.warnings


# ---------------------------------------------------------------------------
# Remote sync
# ---------------------------------------------------------------------------


class TestRemoteSync:
    def test_sequential_sibling_creates(
        self, service: WbsService, store: CacheStore, project: Project, gateway: FakeGateway
    ) -> None:
        items = [
            new("Phase 1", "p", 0),
            new("Task 1", "t1", 1, parent=Temporary("p")),
            new("Task 2", "t2", 2, parent=Temporary("p")),
            new("Task 3", "t3", 3, parent=Temporary("p")),
        ]
        result = asyncio.run(service.save_tree(project.id, items))

        assert result.remote is not None and result.remote.created == 4
        calls = add_calls(gateway)
        assert [len(rows) for rows in calls] == [1, 1, 1, 1]

        cached = by_name(store, project.id)
        phase_row = cached["Phase 1"].remote_row_id
        assert calls[0][0].to_bottom
        assert calls[1][0].parent_id == phase_row and calls[1][0].sibling_id is None
        assert calls[2][0].sibling_id == cached["Task 1"].remote_row_id
        assert calls[2][0].above is False
        assert calls[3][0].sibling_id == cached["Task 2"].remote_row_id

        sheet_rows = gateway.sheets[project.workspace.sheet_id].rows  # type: ignore[union-attr]
        children = [r.id for r in sheet_rows if r.parent_id == phase_row]
        assert children == [cached[n].remote_row_id for n in ("Task 1", "Task 2", "Task 3")]

    def test_delete_and_create_under_existing_parent(
        self, service: WbsService, store: CacheStore, project: Project, gateway: FakeGateway
    ) -> None:
        asyncio.run(
            service.save_tree(
                project.id,
                [new("Phase 1", "a", 0), new("Task 1", "b", 1, parent=Temporary("a"))],
            )
        )
        cached = by_name(store, project.id)
        phase, task = cached["Phase 1"], cached["Task 1"]
        gateway.calls.clear()

        edited = [phase, new("Task 2", "t1", 0, parent=Permanent(phase.id))]  # type: ignore[arg-type]
        result = asyncio.run(service.save_tree(project.id, edited))

        assert result.deleted_ids == [task.id]
        assert len(result.created_ids) == 1
        assert result.updated_ids == []
        assert gateway.ops("update_rows") == []
        assert gateway.calls[-1] == ("delete_rows", (project.workspace.sheet_id, [task.remote_row_id]))  # type: ignore[union-attr]

        created = add_calls(gateway)
        assert len(created) == 1
        assert created[0][0].parent_id == phase.remote_row_id
        assert by_name(store, project.id)["Task 2"].parent == Remote(phase.remote_row_id)  # type: ignore[arg-type]

    def test_remote_parent_ref_resolves_when_parent_sent_by_id(
        self, service: WbsService, store: CacheStore, project: Project, gateway: FakeGateway
    ) -> None:
        asyncio.run(service.save_tree(project.id, [new("Phase 1", "p", 0)]))
        phase = by_name(store, project.id)["Phase 1"]
        gateway.calls.clear()

        edited = [
            replace(phase, remote_row_id=None),
            new("Task 2", "t1", 1, parent=Remote(phase.remote_row_id)),  # type: ignore[arg-type]
        ]
        result = asyncio.run(service.save_tree(project.id, edited))

        assert result.warnings == []
        assert result.unchanged == 1
        assert by_name(store, project.id)["Task 2"].parent == Remote(phase.remote_row_id)  # type: ignore[arg-type]
        created = add_calls(gateway)
        assert len(created) == 1
        assert created[0][0].parent_id == phase.remote_row_id
        assert created[0][0].to_bottom is False

    def test_demoted_parent_reported_in_result(
        self, service: WbsService, local_project: Project
    ) -> None:
        result = asyncio.run(
            service.save_tree(local_project.id, [new("Lost", "t1", 0, parent=Permanent("nope"))])
        )

        assert len(result.warnings) == 1
        assert "nope" in result.warnings[0]

    def test_formula_columns_never_written(
        self, service: WbsService, store: CacheStore, project: Project, gateway: FakeGateway
    ) -> None:
        item = new("Budgeted", "t1", 0, budget="100", actual="40", variance="60")
        asyncio.run(service.save_tree(project.id, [item]))
        cached = store.list_items(project.id)[0]
        asyncio.run(service.save_tree(project.id, [replace(cached, variance="999", budget="150")]))

        written = gateway.written_columns("add_rows") | gateway.written_columns("update_rows")
        assert {"Name", "Budget", "Actual"} <= written
        assert not written & {"Variance", "WBS", "Skip WBS"}

    def test_update_batched_and_hash_gated(
        self, service: WbsService, store: CacheStore, project: Project, gateway: FakeGateway
    ) -> None:
        asyncio.run(service.save_tree(project.id, [new("A", "a", 0), new("B", "b", 1)]))
        cached = by_name(store, project.id)
        gateway.calls.clear()

        edited = [replace(cached["A"], notes="changed"), replace(cached["B"], notes="also")]
        asyncio.run(service.save_tree(project.id, edited))
        assert len(gateway.ops("update_rows")) == 1

        gateway.calls.clear()
        asyncio.run(service.save_tree(project.id, store.list_items(project.id)))
        assert gateway.ops("update_rows") == []

    def test_skip_rows_stay_local(
        self, service: WbsService, store: CacheStore, project: Project, gateway: FakeGateway
    ) -> None:
        items = [
            new("Header", "h", 0, skip=True),
            new("Task", "t", 1, parent=Temporary("h")),
        ]
        result = asyncio.run(service.save_tree(project.id, items))

        assert result.remote is not None
        assert result.remote.skipped_headers == 1
        assert result.remote.created == 1
        assert by_name(store, project.id)["Header"].remote_row_id is None

    def test_failed_create_collected_and_children_skipped(
        self, service: WbsService, store: CacheStore, project: Project, gateway: FakeGateway
    ) -> None:
        gateway.fail("add_rows", RemoteServiceError("bad row", status_code=400))
        items = [
            new("Broken", "x", 0),
            new("Child", "c", 1, parent=Temporary("x")),
            new("Fine", "f", 2),
        ]
        result = asyncio.run(service.save_tree(project.id, items))

        assert result.outcome == Outcome.PARTIAL
        errors = {e.item: e.message for e in result.remote.errors}  # type: ignore[union-attr]
        assert "create failed" in errors["Broken"]
        assert "not created" in errors["Child"]
        assert by_name(store, project.id)["Fine"].remote_row_id is not None
        # The cache keeps every item regardless of remote failures
        assert len(store.list_items(project.id)) == 3

    def test_rate_limited_create_retried(
        self,
        service: WbsService,
        store: CacheStore,
        project: Project,
        gateway: FakeGateway,
        sleeps: list[float],
    ) -> None:
        gateway.fail("add_rows", RateLimited())
        result = asyncio.run(service.save_tree(project.id, [new("A", "a", 0)]))

        assert result.outcome == Outcome.SUCCEEDED
        assert sleeps == [1.0]

    def test_deleted_sheet_unlinks_workspace(
        self, service: WbsService, store: CacheStore, project: Project, gateway: FakeGateway
    ) -> None:
        del gateway.sheets[project.workspace.sheet_id]  # type: ignore[union-attr]

        result = asyncio.run(service.save_tree(project.id, [new("A", "a", 0)]))

        assert result.outcome == Outcome.FAILED
        assert store.get_project(project.id).workspace is None  # type: ignore[union-attr]
        assert len(store.list_items(project.id)) == 1

    def test_rows_deleted_remotely_are_recreated(
        self, service: WbsService, store: CacheStore, project: Project, gateway: FakeGateway
    ) -> None:
        asyncio.run(service.save_tree(project.id, [new("A", "a", 0)]))
        old_row = store.list_items(project.id)[0].remote_row_id
        sheet = gateway.sheets[project.workspace.sheet_id]  # type: ignore[union-attr]
        sheet.rows = [r for r in sheet.rows if r.id != old_row]

        result = asyncio.run(service.save_tree(project.id, store.list_items(project.id)))

        assert result.remote is not None and result.remote.created == 1
        new_row = store.list_items(project.id)[0].remote_row_id
        assert new_row is not None and new_row != old_row
