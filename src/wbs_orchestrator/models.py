"""Domain models: identity references, WBS items, projects and audit entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Union

from .errors import ValidationError

# ---------------------------------------------------------------------------
# Identity references
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Permanent:
    """Reference to an item by its locally owned permanent id."""

    id: str

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class Remote:
    """Reference to an item by its Smartsheet row id."""

    row_id: int

    def __str__(self) -> str:
        return f"row:{self.row_id}"


@dataclass(frozen=True)
class Temporary:
    """Reference to a UI-created item that has not been persisted yet."""

    id: str

    def __str__(self) -> str:
        return f"temp:{self.id}"


Ref = Union[Permanent, Remote, Temporary]


def ref_to_pair(ref: Ref | None) -> tuple[str | None, str | None]:
    """Encode a ref as ``(kind, value)`` for storage."""
    if ref is None:
        return None, None
    if isinstance(ref, Permanent):
        return "permanent", ref.id
    if isinstance(ref, Remote):
        return "remote", str(ref.row_id)
    return "temporary", ref.id


def ref_from_pair(kind: str | None, value: str | None) -> Ref | None:
    """Decode a ref stored by :func:`ref_to_pair`."""
    if kind is None or value is None:
        return None
    if kind == "permanent":
        return Permanent(value)
    if kind == "remote":
        return Remote(int(value))
    if kind == "temporary":
        return Temporary(value)
    raise ValidationError(f"Unknown reference kind: {kind!r}")


# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------


class WbsStatus(str, Enum):
    """Local WBS item status."""

    NOT_STARTED = "Not_Started"
    IN_PROGRESS = "In_Progress"
    BLOCKED = "Blocked"
    COMPLETE = "Complete"
    AT_RISK = "At_Risk"
    ON_HOLD = "On_Hold"
    APPROVAL_PENDING = "Approval_Pending"
    APPROVED = "Approved"

    @classmethod
    def parse(cls, value: str | WbsStatus | None) -> WbsStatus:
        """Parse local input; unknown values are rejected."""
        if value is None or value == "":
            return cls.NOT_STARTED
        if isinstance(value, WbsStatus):
            return value
        key = value.strip().replace(" ", "_").lower()
        status = _STATUS_ALIASES.get(key)
        if status is None:
            raise ValidationError(f"Unknown status: {value!r}")
        return status

    @property
    def remote_value(self) -> str:
        """The value written to the remote Status dropdown."""
        return STATUS_TO_REMOTE.get(self, "Not Started")


_STATUS_ALIASES: dict[str, WbsStatus] = {s.value.lower(): s for s in WbsStatus}
_STATUS_ALIASES.update(
    {
        "done": WbsStatus.COMPLETE,
        "completed": WbsStatus.COMPLETE,
        "pending": WbsStatus.APPROVAL_PENDING,
    }
)

# The remote dropdown only accepts these four values.
STATUS_TO_REMOTE: dict[WbsStatus, str] = {
    WbsStatus.NOT_STARTED: "Not Started",
    WbsStatus.IN_PROGRESS: "In Progress",
    WbsStatus.BLOCKED: "Blocked",
    WbsStatus.COMPLETE: "Complete",
}

STATUS_FROM_REMOTE: dict[str, WbsStatus] = {
    "Not Started": WbsStatus.NOT_STARTED,
    "On Hold": WbsStatus.NOT_STARTED,
    "In Progress": WbsStatus.IN_PROGRESS,
    "Complete": WbsStatus.COMPLETE,
    "Blocked": WbsStatus.BLOCKED,
    "At Risk": WbsStatus.AT_RISK,
    "Approval Pending": WbsStatus.APPROVAL_PENDING,
    "Approved": WbsStatus.APPROVED,
}


def status_from_remote(value: Any) -> WbsStatus:
    """Map a remote dropdown value to a local status (lenient)."""
    if value is None:
        return WbsStatus.NOT_STARTED
    return STATUS_FROM_REMOTE.get(str(value).strip(), WbsStatus.NOT_STARTED)


class ApprovalStatus(str, Enum):
    """Portfolio approval state of a project."""

    PENDING = "Pending_Approval"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    ON_HOLD = "On_Hold"

    @classmethod
    def from_remote(cls, value: Any) -> ApprovalStatus:
        text = str(value or "").strip().lower()
        if text == "approved":
            return cls.APPROVED
        if text == "rejected":
            return cls.REJECTED
        if text in ("on hold", "on_hold"):
            return cls.ON_HOLD
        return cls.PENDING


# ---------------------------------------------------------------------------
# WBS items
# ---------------------------------------------------------------------------


@dataclass
class WbsItem:
    """One row of a project's breakdown structure."""

    project_id: str
    name: str
    id: str | None = None
    temp_id: str | None = None
    remote_row_id: int | None = None
    parent: Ref | None = None
    description: str | None = None
    owner: str | None = None
    approver: str | None = None
    status: WbsStatus = WbsStatus.NOT_STARTED
    start_date: date | None = None
    end_date: date | None = None
    budget: str | None = None
    actual: str | None = None
    variance: str | None = None
    notes: str | None = None
    at_risk: bool = False
    skip: bool = False
    order_index: int = 0
    remote_hash: str | None = None
    last_synced_at: datetime | None = None

    @property
    def refs(self) -> list[Ref]:
        """Every reference under which this item may be looked up."""
        keys: list[Ref] = []
        if self.id:
            keys.append(Permanent(self.id))
        if self.remote_row_id is not None:
            keys.append(Remote(self.remote_row_id))
        if self.temp_id:
            keys.append(Temporary(self.temp_id))
        return keys

    @property
    def label(self) -> str:
        """Human-readable identity for logs and error reports."""
        ident = self.id or self.temp_id or (self.remote_row_id and f"row:{self.remote_row_id}")
        return f"{self.name!r} ({ident or 'new'})"


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@dataclass
class Workspace:
    """The remote workspace provisioned for a project."""

    folder_id: int
    sheet_id: int
    sheet_url: str | None
    app_url: str


@dataclass
class Project:
    """One portfolio entry."""

    id: str
    code: str
    title: str
    description: str | None = None
    category: str | None = None
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    status: WbsStatus = WbsStatus.NOT_STARTED
    portfolio_row_id: int | None = None
    requires_wbs: bool = False
    approved_by: str | None = None
    assigned_to: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    budget: str | None = None
    actual: str | None = None
    workspace: Workspace | None = None
    last_synced_at: datetime | None = None
    remote_updated_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_provisioned(self) -> bool:
        return self.workspace is not None


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of a mutating operation."""

    actor: str
    action: str
    target_type: str
    target_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    id: int | None = None


# ---------------------------------------------------------------------------
# Operation outcomes
# ---------------------------------------------------------------------------


class Outcome(str, Enum):
    """User-visible result of an operation."""

    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class ItemError:
    """A per-item failure collected during a bulk operation."""

    item: str
    message: str
    item_id: str | None = None
