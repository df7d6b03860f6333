"""Diff an edited WBS against the cache and push the difference to Smartsheet."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any

from ..errors import CycleDetected, IdempotencyConflict, NotFound, RemoteServiceError, ValidationError
from ..mapper.mappings import ContactDirectory, WbsRowMapper
from ..models import ItemError, Outcome, Permanent, Project, Ref, Remote, Temporary, WbsItem
from ..remote.retry import RetryableRemoteClient
from ..store import CacheStore, new_id
from .tree import find_cycle

logger = logging.getLogger(__name__)


@dataclass
class RemoteSyncResult:
    """Aggregate of the remote writes of one reconciliation."""

    updated: int = 0
    created: int = 0
    deleted: int = 0
    skipped_headers: int = 0
    errors: list[ItemError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def written(self) -> int:
        return self.updated + self.created + self.deleted


@dataclass
class ReconcileResult:
    """Result of saving an edited tree."""

    project_id: str
    created_ids: list[str] = field(default_factory=list)
    updated_ids: list[str] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    unchanged: int = 0
    id_map: dict[str, str] = field(default_factory=dict)
    remote: RemoteSyncResult | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def reverse_id_map(self) -> dict[str, str]:
        """Permanent id to the temporary id the UI used for it."""
        return {perm: temp for temp, perm in self.id_map.items()}

    @property
    def outcome(self) -> Outcome:
        if self.remote is None or self.remote.success:
            return Outcome.SUCCEEDED
        if self.remote.written == 0:
            return Outcome.FAILED
        return Outcome.PARTIAL

    def to_dict(self) -> dict[str, Any]:
        remote = None
        if self.remote is not None:
            remote = {
                "updated": self.remote.updated,
                "created": self.remote.created,
                "deleted": self.remote.deleted,
                "skipped_headers": self.remote.skipped_headers,
                "errors": [
                    {"item": e.item, "item_id": e.item_id, "message": e.message}
                    for e in self.remote.errors
                ],
            }
        return {
            "project_id": self.project_id,
            "outcome": self.outcome.value,
            "created": self.created_ids,
            "updated": self.updated_ids,
            "deleted": self.deleted_ids,
            "unchanged": self.unchanged,
            "id_map": self.id_map,
            "remote": remote,
            "warnings": self.warnings,
        }


@dataclass
class _Slot:
    """Arena entry: one incoming item resolved to its permanent identity."""

    index: int
    item: WbsItem
    cached: WbsItem | None
    parent_ref: Ref | None
    parent_index: int | None = None
    failed: bool = False

    @property
    def is_new(self) -> bool:
        return self.cached is None


@dataclass
class ReconcilePlan:
    slots: list[_Slot]
    inserts: list[WbsItem]
    updates: list[WbsItem]
    unchanged: list[WbsItem]
    deletes: list[WbsItem]
    id_map: dict[str, str]
    warnings: list[str]


def canonical_ref(item: WbsItem) -> Ref:
    """How a persisted item is referenced by its children."""
    if item.remote_row_id is not None:
        return Remote(item.remote_row_id)
    if not item.id:
        raise ValidationError(f"Item {item.label} has no identity to reference")
    return Permanent(item.id)


class Reconciler:
    """
    Saves an edited, flattened WBS.

    Planning is a two-pass arena: every incoming item is first given a slot
    and a permanent id, then parent references (permanent, remote or
    temporary) are resolved to slot indices. The cache is updated in one
    transaction, after which the remote sheet is brought in line: one
    batched update, sequential single-row creates in pre-order, and one
    batched delete. Per-item remote failures are collected, not raised.
    """

    def __init__(
        self,
        store: CacheStore,
        remote: RetryableRemoteClient | None = None,
        contacts: dict[str, str] | None = None,
    ):
        self.store = store
        self.remote = remote
        self.contacts = contacts or {}

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def resolve_identities(self, project_id: str, incoming: list[WbsItem]) -> list[WbsItem]:
        """
        Fill in the cached identity forms an incoming item is missing.

        An item sent with only its permanent id gains its remote row id (and
        the other way round), so a child may reference its parent by either
        form before the tree is built.
        """
        existing = self.store.list_items(project_id)
        by_id = {item.id: item for item in existing}
        by_remote = {i.remote_row_id: i for i in existing if i.remote_row_id is not None}

        resolved: list[WbsItem] = []
        for item in incoming:
            cached = by_id.get(item.id) if item.id else None
            if cached is None and item.remote_row_id is not None:
                cached = by_remote.get(item.remote_row_id)
            if cached is not None:
                item = replace(
                    item,
                    id=item.id or cached.id,
                    remote_row_id=(
                        item.remote_row_id if item.remote_row_id is not None else cached.remote_row_id
                    ),
                )
            resolved.append(item)
        return resolved

    def plan(self, project_id: str, incoming: list[WbsItem]) -> ReconcilePlan:
        """
        Resolve identities and diff ``incoming`` against the cache.

        Raises:
            ValidationError: Empty names or duplicate identities
            CycleDetected: If the parent references form a loop
        """
        existing = {item.id: item for item in self.store.list_items(project_id) if item.id}
        by_remote = {
            i.remote_row_id: item_id for item_id, i in existing.items() if i.remote_row_id is not None
        }

        slots: list[_Slot] = []
        index_of: dict[Ref, int] = {}
        id_map: dict[str, str] = {}
        warnings: list[str] = []
        claimed: set[str] = set()

        # Pass 1: allocate a slot (and permanent id) for every incoming item
        for item in sorted(incoming, key=lambda i: i.order_index):
            if not item.name or not item.name.strip():
                raise ValidationError(f"Item {item.label} has no name")

            cached_id = item.id if item.id in existing else None
            if cached_id is None and item.remote_row_id is not None:
                cached_id = by_remote.get(item.remote_row_id)
            cached = existing[cached_id] if cached_id is not None else None
            if cached_id in claimed:
                raise ValidationError(f"Item {item.label} appears more than once")

            if cached_id is not None and cached is not None:
                claimed.add(cached_id)
                resolved = replace(
                    item,
                    id=cached_id,
                    project_id=project_id,
                    temp_id=None,
                    remote_row_id=cached.remote_row_id,
                    variance=cached.variance,
                    remote_hash=cached.remote_hash,
                    last_synced_at=cached.last_synced_at,
                )
            else:
                resolved = replace(
                    item,
                    id=new_id(),
                    project_id=project_id,
                    temp_id=None,
                    variance=None,
                    remote_hash=None,
                )
                if item.temp_id:
                    id_map[item.temp_id] = resolved.id  # type: ignore[assignment]

            index = len(slots)
            keys: list[Ref] = list(resolved.refs)
            if item.id and item.id != resolved.id:
                keys.append(Permanent(item.id))
            if item.remote_row_id is not None and item.remote_row_id != resolved.remote_row_id:
                keys.append(Remote(item.remote_row_id))
            if item.temp_id:
                keys.append(Temporary(item.temp_id))
            for key in keys:
                if index_of.get(key, index) != index:
                    raise ValidationError(f"Duplicate identity {key} in edited tree")
                index_of[key] = index
            slots.append(_Slot(index=index, item=resolved, cached=cached, parent_ref=item.parent))

        # Pass 2: resolve parent references by index
        for slot in slots:
            if slot.parent_ref is None:
                continue
            parent_index = index_of.get(slot.parent_ref)
            if parent_index is None:
                message = f"Parent {slot.parent_ref} of {slot.item.label} not found; moved to root"
                logger.warning(message)
                warnings.append(message)
                continue
            slot.parent_index = parent_index

        cycle = find_cycle({slot.index: slot.parent_index for slot in slots})
        if cycle:
            raise CycleDetected([slots[i].item.label for i in cycle])

        for slot in slots:
            parent = slots[slot.parent_index] if slot.parent_index is not None else None
            slot.item.parent = canonical_ref(parent.item) if parent else None

        inserts = [s.item for s in slots if s.is_new]
        updates: list[WbsItem] = []
        unchanged: list[WbsItem] = []
        for slot in slots:
            if slot.cached is None:
                continue
            (unchanged if slot.item == slot.cached else updates).append(slot.item)
        deletes = [item for item_id, item in existing.items() if item_id not in claimed]

        return ReconcilePlan(
            slots=slots,
            inserts=inserts,
            updates=updates,
            unchanged=unchanged,
            deletes=deletes,
            id_map=id_map,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        project: Project,
        incoming: list[WbsItem],
        actor: str = "system",
    ) -> ReconcileResult:
        """
        Persist ``incoming`` as the project's WBS and sync the remote sheet.

        Args:
            project: Owning project; remote sync runs only if it has a workspace
            incoming: Flattened items in pre-order (see ``TreeFlattener``)
            actor: Recorded in the audit log

        Returns:
            Counts, the temp-to-permanent id map, and per-item remote errors
        """
        plan = self.plan(project.id, incoming)
        self.store.apply_changes(
            inserts=plan.inserts,
            updates=plan.updates,
            delete_ids=[item.id for item in plan.deletes if item.id],
        )

        result = ReconcileResult(
            project_id=project.id,
            created_ids=[item.id for item in plan.inserts if item.id],
            updated_ids=[item.id for item in plan.updates if item.id],
            deleted_ids=[item.id for item in plan.deletes if item.id],
            unchanged=len(plan.unchanged),
            id_map=dict(plan.id_map),
            warnings=list(plan.warnings),
        )
        logger.info(
            f"Saved WBS for {project.code}: {len(result.created_ids)} created, "
            f"{len(result.updated_ids)} updated, {len(result.deleted_ids)} deleted"
        )

        if project.workspace is not None and self.remote is not None:
            result.remote = await self._sync_remote(
                self.remote, project, project.workspace.sheet_id, plan
            )

        self.store.audit(
            actor,
            "wbs.save",
            "project",
            project.id,
            created=len(result.created_ids),
            updated=len(result.updated_ids),
            deleted=len(result.deleted_ids),
            remote_errors=len(result.remote.errors) if result.remote else 0,
        )
        return result

    async def _sync_remote(
        self,
        remote: RetryableRemoteClient,
        project: Project,
        sheet_id: int,
        plan: ReconcilePlan,
    ) -> RemoteSyncResult:
        outcome = RemoteSyncResult()

        try:
            sheet = await remote.get_sheet(sheet_id)
        except NotFound as e:
            logger.warning(f"WBS sheet {sheet_id} of {project.code} no longer exists: {e}")
            self.store.set_workspace(project.id, None)
            outcome.errors.append(ItemError("sheet", f"WBS sheet was deleted: {e}"))
            return outcome
        except (RemoteServiceError, IdempotencyConflict) as e:
            outcome.errors.append(ItemError("sheet", str(e)))
            return outcome

        mapper = WbsRowMapper.for_sheet(sheet, ContactDirectory(self.contacts))
        if not mapper.accessor.has("name"):
            outcome.errors.append(ItemError("sheet", "WBS sheet has no Name column"))
            return outcome

        live_rows = {row.id for row in sheet.rows}
        for slot in plan.slots:
            if slot.item.skip:
                outcome.skipped_headers += 1
                continue
            row_id = slot.item.remote_row_id
            if row_id is not None and row_id not in live_rows:
                # Row deleted out-of-band: forget the link and recreate it
                logger.warning(f"Remote row {row_id} of {slot.item.label} is gone; recreating")
                slot.item.remote_row_id = None
                slot.item.remote_hash = None
                self.store.set_remote_state(slot.item.id, None, None)  # type: ignore[arg-type]

        await self._push_updates(remote, sheet_id, plan, mapper, outcome)
        await self._push_creates(remote, sheet_id, plan, mapper, outcome)
        await self._push_deletes(remote, sheet_id, plan, live_rows, outcome)
        return outcome

    async def _push_updates(
        self,
        remote: RetryableRemoteClient,
        sheet_id: int,
        plan: ReconcilePlan,
        mapper: WbsRowMapper,
        outcome: RemoteSyncResult,
    ) -> None:
        candidates = [
            slot.item
            for slot in plan.slots
            if not slot.item.skip
            and slot.item.remote_row_id is not None
            and mapper.data_hash(slot.item) != slot.item.remote_hash
        ]
        patches = [p for p in (mapper.to_patch(item, for_update=True) for item in candidates) if p]
        if not patches:
            return

        try:
            await remote.update_rows(sheet_id, patches)
        except (RemoteServiceError, IdempotencyConflict) as e:
            logger.warning(f"Batch update of {len(patches)} rows failed: {e}")
            for item in candidates:
                outcome.errors.append(ItemError(item.name, f"update failed: {e}", item.id))
            return

        for item in candidates:
            item.remote_hash = mapper.data_hash(item)
            self.store.set_remote_state(item.id, item.remote_row_id, item.remote_hash)  # type: ignore[arg-type]
        outcome.updated += len(candidates)

    async def _push_creates(
        self,
        remote: RetryableRemoteClient,
        sheet_id: int,
        plan: ReconcilePlan,
        mapper: WbsRowMapper,
        outcome: RemoteSyncResult,
    ) -> None:
        siblings: dict[int | None, list[_Slot]] = defaultdict(list)
        for slot in plan.slots:
            siblings[slot.parent_index].append(slot)

        # Slots are in pre-order, so a parent is always attempted before its children
        for slot in plan.slots:
            item = slot.item
            if item.skip or item.remote_row_id is not None:
                continue

            parent = plan.slots[slot.parent_index] if slot.parent_index is not None else None
            if parent is not None and parent.failed:
                slot.failed = True
                outcome.errors.append(
                    ItemError(item.name, f"parent {parent.item.name!r} was not created", item.id)
                )
                continue

            patch = mapper.to_patch(item)
            if patch is None:
                continue

            preceding = None
            for sibling in siblings[slot.parent_index]:
                if sibling is slot:
                    break
                if sibling.item.remote_row_id is not None:
                    preceding = sibling
            if preceding is not None:
                patch.sibling_id = preceding.item.remote_row_id
                patch.above = False
            elif parent is not None and parent.item.remote_row_id is not None:
                patch.parent_id = parent.item.remote_row_id
            else:
                if parent is not None:
                    logger.warning(f"Parent of {item.label} has no remote row; adding at bottom")
                patch.to_bottom = True

            try:
                row_ids = await remote.add_rows(sheet_id, [patch])
            except (RemoteServiceError, IdempotencyConflict) as e:
                logger.warning(f"Creating remote row for {item.label} failed: {e}")
                slot.failed = True
                outcome.errors.append(ItemError(item.name, f"create failed: {e}", item.id))
                continue

            item.remote_row_id = row_ids[0]
            item.remote_hash = mapper.data_hash(item)
            self.store.set_remote_state(item.id, item.remote_row_id, item.remote_hash)  # type: ignore[arg-type]
            outcome.created += 1

    async def _push_deletes(
        self,
        remote: RetryableRemoteClient,
        sheet_id: int,
        plan: ReconcilePlan,
        live_rows: set[int],
        outcome: RemoteSyncResult,
    ) -> None:
        doomed = [
            item
            for item in plan.deletes
            if not item.skip and item.remote_row_id is not None and item.remote_row_id in live_rows
        ]
        if not doomed:
            return

        try:
            await remote.delete_rows(sheet_id, [item.remote_row_id for item in doomed])  # type: ignore[misc]
        except NotFound:
            logger.info("Rows to delete were already gone")
            return
        except (RemoteServiceError, IdempotencyConflict) as e:
            for item in doomed:
                outcome.errors.append(ItemError(item.name, f"delete failed: {e}", item.id))
            return
        outcome.deleted += len(doomed)
