"""
SQLite-backed persistence for projects, cached WBS items and the audit log.

The store is the local mirror the reconciler diffs against:

- ``projects``: one live row per business code (partial unique index)
- ``wbs_items``: one row per cached item, unique on the remote row id so a
  remote row can never be linked twice, cascading on project delete
- ``audit_log``: append-only; UPDATE and DELETE are rejected by triggers
"""

import json
import logging
import re
import sqlite3
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from .errors import ValidationError
from .models import (
    ApprovalStatus,
    AuditEntry,
    Project,
    WbsItem,
    WbsStatus,
    Workspace,
    ref_from_pair,
    ref_to_pair,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Database schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    code TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    category TEXT,
    approval_status TEXT NOT NULL DEFAULT 'Pending_Approval',
    status TEXT NOT NULL DEFAULT 'Not_Started',
    portfolio_row_id INTEGER,
    requires_wbs INTEGER NOT NULL DEFAULT 0,
    approved_by TEXT,
    assigned_to TEXT,
    start_date TEXT,
    end_date TEXT,
    budget TEXT,
    actual TEXT,
    workspace_folder_id INTEGER,
    workspace_sheet_id INTEGER,
    workspace_sheet_url TEXT,
    workspace_app_url TEXT,
    last_synced_at TEXT,
    remote_updated_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT
);

-- At most one live project per business code
CREATE UNIQUE INDEX IF NOT EXISTS idx_projects_live_code
    ON projects(code) WHERE deleted_at IS NULL;

CREATE TABLE IF NOT EXISTS wbs_items (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    remote_row_id INTEGER UNIQUE,
    parent_kind TEXT,
    parent_ref TEXT,
    name TEXT NOT NULL,
    description TEXT,
    owner TEXT,
    approver TEXT,
    status TEXT NOT NULL DEFAULT 'Not_Started',
    start_date TEXT,
    end_date TEXT,
    budget TEXT,
    actual TEXT,
    variance TEXT,
    notes TEXT,
    at_risk INTEGER NOT NULL DEFAULT 0,
    skip INTEGER NOT NULL DEFAULT 0,
    order_index INTEGER NOT NULL DEFAULT 0,
    remote_hash TEXT,
    last_synced_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_wbs_items_project ON wbs_items(project_id, order_index);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    actor TEXT NOT NULL,
    action TEXT NOT NULL,
    target_type TEXT NOT NULL,
    target_id TEXT NOT NULL,
    payload TEXT,
    created_at TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS audit_log_no_update BEFORE UPDATE ON audit_log
BEGIN
    SELECT RAISE(ABORT, 'audit entries are immutable');
END;

CREATE TRIGGER IF NOT EXISTS audit_log_no_delete BEFORE DELETE ON audit_log
BEGIN
    SELECT RAISE(ABORT, 'audit entries are immutable');
END;
"""

_ITEM_COLUMNS = (
    "id",
    "project_id",
    "remote_row_id",
    "parent_kind",
    "parent_ref",
    "name",
    "description",
    "owner",
    "approver",
    "status",
    "start_date",
    "end_date",
    "budget",
    "actual",
    "variance",
    "notes",
    "at_risk",
    "skip",
    "order_index",
    "remote_hash",
    "last_synced_at",
)

_PROJECT_CODE = re.compile(r"^P-(\d+)$")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _d(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def _item_params(item: WbsItem) -> dict[str, Any]:
    kind, ref = ref_to_pair(item.parent)
    return {
        "id": item.id,
        "project_id": item.project_id,
        "remote_row_id": item.remote_row_id,
        "parent_kind": kind,
        "parent_ref": ref,
        "name": item.name,
        "description": item.description,
        "owner": item.owner,
        "approver": item.approver,
        "status": item.status.value,
        "start_date": _iso(item.start_date),
        "end_date": _iso(item.end_date),
        "budget": item.budget,
        "actual": item.actual,
        "variance": item.variance,
        "notes": item.notes,
        "at_risk": int(item.at_risk),
        "skip": int(item.skip),
        "order_index": item.order_index,
        "remote_hash": item.remote_hash,
        "last_synced_at": _iso(item.last_synced_at),
    }


def _item_from_row(row: sqlite3.Row) -> WbsItem:
    return WbsItem(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        remote_row_id=row["remote_row_id"],
        parent=ref_from_pair(row["parent_kind"], row["parent_ref"]),
        description=row["description"],
        owner=row["owner"],
        approver=row["approver"],
        status=WbsStatus(row["status"]),
        start_date=_d(row["start_date"]),
        end_date=_d(row["end_date"]),
        budget=row["budget"],
        actual=row["actual"],
        variance=row["variance"],
        notes=row["notes"],
        at_risk=bool(row["at_risk"]),
        skip=bool(row["skip"]),
        order_index=row["order_index"],
        remote_hash=row["remote_hash"],
        last_synced_at=_dt(row["last_synced_at"]),
    )


def _project_from_row(row: sqlite3.Row) -> Project:
    workspace = None
    if row["workspace_sheet_id"] is not None:
        workspace = Workspace(
            folder_id=row["workspace_folder_id"],
            sheet_id=row["workspace_sheet_id"],
            sheet_url=row["workspace_sheet_url"],
            app_url=row["workspace_app_url"],
        )
    return Project(
        id=row["id"],
        code=row["code"],
        title=row["title"],
        description=row["description"],
        category=row["category"],
        approval_status=ApprovalStatus(row["approval_status"]),
        status=WbsStatus(row["status"]),
        portfolio_row_id=row["portfolio_row_id"],
        requires_wbs=bool(row["requires_wbs"]),
        approved_by=row["approved_by"],
        assigned_to=row["assigned_to"],
        start_date=_d(row["start_date"]),
        end_date=_d(row["end_date"]),
        budget=row["budget"],
        actual=row["actual"],
        workspace=workspace,
        last_synced_at=_dt(row["last_synced_at"]),
        remote_updated_at=_dt(row["remote_updated_at"]),
        created_at=_dt(row["created_at"]),
        updated_at=_dt(row["updated_at"]),
        deleted_at=_dt(row["deleted_at"]),
    )


# ---------------------------------------------------------------------------
# StoreStats
# ---------------------------------------------------------------------------


@dataclass
class StoreStats:
    """Row counts and size of the cache database."""

    projects: int
    provisioned: int
    items: int
    audit_entries: int
    db_size_bytes: int
    db_path: str


# ---------------------------------------------------------------------------
# CacheStore
# ---------------------------------------------------------------------------


class CacheStore:
    """SQLite persistence for projects, WBS items and audit entries."""

    def __init__(self, db_path: Path | str):
        """
        Args:
            db_path: Path of the database file (parent directories are created)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.debug("Cache store initialised at %s", self.db_path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.executescript(SCHEMA_SQL)

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection; commit on success, roll back on error, always close."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def get_project(self, project_id: str, include_deleted: bool = False) -> Project | None:
        sql = "SELECT * FROM projects WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        with self._conn() as conn:
            row = conn.execute(sql, (project_id,)).fetchone()
        return _project_from_row(row) if row else None

    def get_project_by_code(self, code: str) -> Project | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE code = ? AND deleted_at IS NULL", (code,)
            ).fetchone()
        return _project_from_row(row) if row else None

    def get_project_by_portfolio_row(self, row_id: int) -> Project | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE portfolio_row_id = ? AND deleted_at IS NULL",
                (row_id,),
            ).fetchone()
        return _project_from_row(row) if row else None

    def list_projects(self, include_deleted: bool = False) -> list[Project]:
        sql = "SELECT * FROM projects"
        if not include_deleted:
            sql += " WHERE deleted_at IS NULL"
        with self._conn() as conn:
            rows = conn.execute(sql + " ORDER BY code").fetchall()
        return [_project_from_row(r) for r in rows]

    def save_project(self, project: Project) -> Project:
        """Insert or update a project (workspace columns included)."""
        now = utcnow()
        if not project.id:
            project.id = new_id()
        project.created_at = project.created_at or now
        project.updated_at = now
        ws = project.workspace
        params = {
            "id": project.id,
            "code": project.code,
            "title": project.title,
            "description": project.description,
            "category": project.category,
            "approval_status": project.approval_status.value,
            "status": project.status.value,
            "portfolio_row_id": project.portfolio_row_id,
            "requires_wbs": int(project.requires_wbs),
            "approved_by": project.approved_by,
            "assigned_to": project.assigned_to,
            "start_date": _iso(project.start_date),
            "end_date": _iso(project.end_date),
            "budget": project.budget,
            "actual": project.actual,
            "workspace_folder_id": ws.folder_id if ws else None,
            "workspace_sheet_id": ws.sheet_id if ws else None,
            "workspace_sheet_url": ws.sheet_url if ws else None,
            "workspace_app_url": ws.app_url if ws else None,
            "last_synced_at": _iso(project.last_synced_at),
            "remote_updated_at": _iso(project.remote_updated_at),
            "created_at": _iso(project.created_at),
            "updated_at": _iso(project.updated_at),
            "deleted_at": _iso(project.deleted_at),
        }
        columns = ", ".join(params)
        placeholders = ", ".join(f":{k}" for k in params)
        updates = ", ".join(f"{k} = excluded.{k}" for k in params if k not in ("id", "created_at"))
        try:
            with self._conn() as conn:
                conn.execute(
                    f"INSERT INTO projects ({columns}) VALUES ({placeholders}) "  # noqa: S608
                    f"ON CONFLICT(id) DO UPDATE SET {updates}",
                    params,
                )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Project code {project.code!r} already in use: {e}") from e
        return project

    def set_workspace(self, project_id: str, workspace: Workspace | None) -> None:
        """Attach (or with ``None`` clear) the provisioned workspace of a project."""
        with self._conn() as conn:
            conn.execute(
                """
                UPDATE projects SET workspace_folder_id = ?, workspace_sheet_id = ?,
                    workspace_sheet_url = ?, workspace_app_url = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    workspace.folder_id if workspace else None,
                    workspace.sheet_id if workspace else None,
                    workspace.sheet_url if workspace else None,
                    workspace.app_url if workspace else None,
                    _iso(utcnow()),
                    project_id,
                ),
            )

    def mark_synced(
        self,
        project_id: str,
        synced_at: datetime | None = None,
        remote_updated_at: datetime | None = None,
    ) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE projects SET last_synced_at = ?, remote_updated_at = ? WHERE id = ?",
                (_iso(synced_at or utcnow()), _iso(remote_updated_at), project_id),
            )

    def soft_delete_project(self, project_id: str) -> int:
        """Mark a project deleted and drop its cached items. Returns items removed."""
        with self._conn() as conn:
            cursor = conn.execute("DELETE FROM wbs_items WHERE project_id = ?", (project_id,))
            conn.execute(
                "UPDATE projects SET deleted_at = ?, updated_at = ? WHERE id = ?",
                (_iso(utcnow()), _iso(utcnow()), project_id),
            )
            return cursor.rowcount

    def next_project_code(self) -> str:
        """Next free ``P-####`` code."""
        with self._conn() as conn:
            rows = conn.execute("SELECT code FROM projects WHERE code LIKE 'P-%'").fetchall()
        numbers = [int(m.group(1)) for r in rows if (m := _PROJECT_CODE.match(r["code"]))]
        return f"P-{(max(numbers) + 1) if numbers else 1:04d}"

    # ------------------------------------------------------------------
    # WBS items
    # ------------------------------------------------------------------

    def list_items(self, project_id: str) -> list[WbsItem]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM wbs_items WHERE project_id = ? ORDER BY order_index, rowid",
                (project_id,),
            ).fetchall()
        return [_item_from_row(r) for r in rows]

    def get_item(self, item_id: str) -> WbsItem | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM wbs_items WHERE id = ?", (item_id,)).fetchone()
        return _item_from_row(row) if row else None

    def apply_changes(
        self,
        inserts: Iterable[WbsItem] = (),
        updates: Iterable[WbsItem] = (),
        delete_ids: Iterable[str] = (),
    ) -> None:
        """
        Apply one reconciliation's cache changes in a single transaction.

        Deletes run first so a remote row id released by a deleted item can
        be claimed by an inserted one.

        Raises:
            ValidationError: If a constraint (e.g. duplicate remote row id) fails
        """
        columns = ", ".join(_ITEM_COLUMNS)
        placeholders = ", ".join(f":{c}" for c in _ITEM_COLUMNS)
        assignments = ", ".join(f"{c} = :{c}" for c in _ITEM_COLUMNS if c != "id")
        try:
            with self._conn() as conn:
                conn.executemany(
                    "DELETE FROM wbs_items WHERE id = ?", [(item_id,) for item_id in delete_ids]
                )
                conn.executemany(
                    f"UPDATE wbs_items SET {assignments} WHERE id = :id",  # noqa: S608
                    [_item_params(item) for item in updates],
                )
                conn.executemany(
                    f"INSERT INTO wbs_items ({columns}) VALUES ({placeholders})",  # noqa: S608
                    [_item_params(item) for item in inserts],
                )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Cache constraint violated: {e}") from e

    def set_remote_state(
        self,
        item_id: str,
        remote_row_id: int | None,
        remote_hash: str | None,
    ) -> None:
        """Record that an item now matches remote row ``remote_row_id``."""
        with self._conn() as conn:
            conn.execute(
                """
                UPDATE wbs_items SET remote_row_id = ?, remote_hash = ?, last_synced_at = ?
                WHERE id = ?
                """,
                (remote_row_id, remote_hash, _iso(utcnow()), item_id),
            )

    def clear_items(self, project_id: str | None = None) -> int:
        """Delete cached items for one project, or for all projects."""
        with self._conn() as conn:
            if project_id:
                cursor = conn.execute("DELETE FROM wbs_items WHERE project_id = ?", (project_id,))
            else:
                cursor = conn.execute("DELETE FROM wbs_items")
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        created_at = entry.created_at or utcnow()
        with self._conn() as conn:
            cursor = conn.execute(
                """
                INSERT INTO audit_log (actor, action, target_type, target_id, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.actor,
                    entry.action,
                    entry.target_type,
                    entry.target_id,
                    json.dumps(entry.payload, default=str),
                    _iso(created_at),
                ),
            )
            entry_id = cursor.lastrowid
        return AuditEntry(
            actor=entry.actor,
            action=entry.action,
            target_type=entry.target_type,
            target_id=entry.target_id,
            payload=entry.payload,
            created_at=created_at,
            id=entry_id,
        )

    def audit(
        self,
        actor: str,
        action: str,
        target_type: str,
        target_id: str,
        **payload: Any,
    ) -> AuditEntry:
        """Shorthand for :meth:`append_audit`."""
        return self.append_audit(AuditEntry(actor, action, target_type, target_id, payload))

    def list_audit(self, target_id: str | None = None, limit: int = 100) -> list[AuditEntry]:
        sql = "SELECT * FROM audit_log"
        params: list[Any] = []
        if target_id:
            sql += " WHERE target_id = ?"
            params.append(target_id)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            AuditEntry(
                actor=r["actor"],
                action=r["action"],
                target_type=r["target_type"],
                target_id=r["target_id"],
                payload=json.loads(r["payload"]) if r["payload"] else {},
                created_at=_dt(r["created_at"]),
                id=r["id"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> StoreStats:
        with self._conn() as conn:

            def count(sql: str) -> int:
                return int(conn.execute(sql).fetchone()[0])

            stats = StoreStats(
                projects=count("SELECT COUNT(*) FROM projects WHERE deleted_at IS NULL"),
                provisioned=count(
                    "SELECT COUNT(*) FROM projects "
                    "WHERE deleted_at IS NULL AND workspace_sheet_id IS NOT NULL"
                ),
                items=count("SELECT COUNT(*) FROM wbs_items"),
                audit_entries=count("SELECT COUNT(*) FROM audit_log"),
                db_size_bytes=self.db_path.stat().st_size if self.db_path.exists() else 0,
                db_path=str(self.db_path),
            )
        return stats
