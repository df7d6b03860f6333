"""Value conversion between WBS/portfolio rows and local models."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from ..errors import ValidationError
from ..models import (
    ApprovalStatus,
    Remote,
    WbsItem,
    WbsStatus,
    status_from_remote,
)
from ..remote.schemas import PORTFOLIO_SCHEMA, WBS_SCHEMA
from ..remote.types import RemoteRow, RemoteSheet, RowPatch
from .accessor import RowAccessor, normalize_cell_key

logger = logging.getLogger(__name__)

# Fields written to the WBS sheet; formula columns are never listed here.
WRITABLE_WBS_FIELDS = (
    "name",
    "description",
    "owner",
    "approver",
    "status",
    "start_date",
    "end_date",
    "at_risk",
    "budget",
    "actual",
    "notes",
)

_MONEY_STRIP = re.compile(r"[\s$,]")


# ---------------------------------------------------------------------------
# Scalar conversions
# ---------------------------------------------------------------------------


def parse_money(value: Any) -> str | None:
    """
    Normalise a currency value to a decimal string.

    Strips ``$``, thousands separators and whitespace. Floats are converted
    through ``str`` so ``1234.5`` stays ``"1234.5"``.

    Raises:
        ValidationError: If the value is not a finite number.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}")
    if isinstance(value, (int, float, Decimal)):
        text = str(value)
    else:
        text = _MONEY_STRIP.sub("", str(value))
        if not text:
            return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value!r}") from None
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return format(amount, "f")


def parse_date(value: Any) -> date | None:
    """Parse a date, datetime or ISO string. Raises ValidationError on garbage."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        raise ValidationError(f"Invalid date: {value!r}") from None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a remote timestamp to an aware UTC datetime (``None`` if unparseable)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug(f"Unparseable timestamp: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("true", "yes", "y", "1", "x")


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = normalize_cell_key(value)
    return text or None


def extract_last_name(value: str | None) -> str | None:
    """
    Extract a last name from a contact value.

    Handles ``"Approver, Keith Clark"`` (role prefix), emails with dotted
    local parts (``keith.clark@x`` -> ``Clark``), initial-plus-surname
    emails (``jforster@x`` -> ``Forster``) and plain names.
    """
    if not value:
        return None
    text = value.strip()
    if not text:
        return None

    if "," in text:
        text = text.split(",", 1)[1].strip() or text

    if "@" in text:
        local = text.split("@", 1)[0]
        if "." in local:
            last = local.split(".")[-1]
        else:
            last = local[1:] if len(local) > 1 else local
        return last.capitalize() if last else None

    words = text.split()
    if len(words) > 1:
        return words[-1]
    return words[0].capitalize()


def compute_data_hash(data: dict[str, Any]) -> str:
    """Hash of field values for change detection."""
    sorted_items = sorted((k, str(v) if v is not None else "") for k, v in data.items())
    content = json.dumps(sorted_items, sort_keys=True)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Contact directory
# ---------------------------------------------------------------------------


class ContactDirectory:
    """Resolves display names (or last names) to emails for contact columns."""

    def __init__(self, contacts: dict[str, str] | None = None):
        self._by_name: dict[str, str] = {}
        for name, email in (contacts or {}).items():
            self.add(name, email)

    def add(self, name: str | None, email: str | None) -> None:
        if not name or not email or "@" not in email:
            return
        self._by_name.setdefault(name.strip().lower(), email)
        last = extract_last_name(name)
        if last:
            self._by_name.setdefault(last.lower(), email)

    def learn(self, sheet: RemoteSheet, accessor: RowAccessor, fields: tuple[str, ...]) -> None:
        """Record ``display -> email`` pairs seen in contact cells of a sheet."""
        for row in sheet.rows:
            for field in fields:
                value = accessor.get(row, field)
                if isinstance(value, str) and "@" in value:
                    self.add(accessor.display(row, field), value)

    def resolve(self, value: str | None) -> str | None:
        if not value:
            return None
        text = value.strip()
        if "@" in text:
            return text
        return self._by_name.get(text.lower()) or self._by_name.get(
            (extract_last_name(text) or "").lower()
        )


# ---------------------------------------------------------------------------
# WBS rows
# ---------------------------------------------------------------------------


class WbsRowMapper:
    """Maps WBS sheet rows to :class:`WbsItem` and back."""

    schema = WBS_SCHEMA

    def __init__(self, accessor: RowAccessor, contacts: ContactDirectory | None = None):
        self.accessor = accessor
        self.contacts = contacts or ContactDirectory()

    @classmethod
    def for_sheet(cls, sheet: RemoteSheet, contacts: ContactDirectory | None = None) -> WbsRowMapper:
        accessor = RowAccessor.for_sheet(WBS_SCHEMA, sheet)
        contacts = contacts or ContactDirectory()
        contacts.learn(sheet, accessor, ("owner", "approver"))
        return cls(accessor, contacts)

    @staticmethod
    def writable_values(item: WbsItem) -> dict[str, Any]:
        """The values this item would write remotely, in remote vocabulary."""
        return {
            "name": item.name,
            "description": item.description,
            "owner": item.owner,
            "approver": item.approver,
            "status": item.status.remote_value,
            "start_date": item.start_date.isoformat() if item.start_date else None,
            "end_date": item.end_date.isoformat() if item.end_date else None,
            "at_risk": item.at_risk,
            "budget": item.budget,
            "actual": item.actual,
            "notes": item.notes,
        }

    @classmethod
    def data_hash(cls, item: WbsItem) -> str:
        return compute_data_hash(cls.writable_values(item))

    def to_patch(self, item: WbsItem, for_update: bool = False) -> RowPatch | None:
        """
        Build the cells for writing ``item``.

        Skip rows are never written and yield ``None``. Formula columns are
        never included. For updates, empty values are sent as ``""`` so the
        remote cell is cleared; for creates they are omitted.

        Args:
            item: The item to write
            for_update: Whether the patch targets an existing row
        """
        if item.skip:
            return None

        patch = RowPatch(row_id=item.remote_row_id if for_update else None)
        values = self.writable_values(item)
        for field in WRITABLE_WBS_FIELDS:
            value = values[field]
            if field in ("owner", "approver") and value:
                email = self.contacts.resolve(value)
                if email is None:
                    logger.debug(f"No email known for contact {value!r}; not writing {field}")
                    continue
                value = email
            if value is None or value == "":
                if not for_update:
                    continue
                value = ""
            self.accessor.set(patch, field, value, strict=(field == "name"))
        return patch

    def to_item(self, row: RemoteRow, project_id: str, order_index: int) -> WbsItem:
        """Build a cache item from a remote row (lenient about bad values)."""
        acc = self.accessor

        def money(field: str) -> str | None:
            try:
                return parse_money(acc.get(row, field))
            except ValidationError:
                logger.warning(f"Row {row.id}: ignoring malformed {field} {acc.get(row, field)!r}")
                return None

        def day(field: str) -> date | None:
            try:
                return parse_date(acc.get(row, field))
            except ValidationError:
                logger.warning(f"Row {row.id}: ignoring malformed {field} {acc.get(row, field)!r}")
                return None

        def contact(field: str) -> str | None:
            value = acc.get(row, field)
            if isinstance(value, str) and "@" in value:
                return value
            return acc.display(row, field)

        item = WbsItem(
            project_id=project_id,
            name=acc.display(row, "name") or "",
            remote_row_id=row.id,
            parent=Remote(row.parent_id) if row.parent_id else None,
            description=_text(acc.get(row, "description")),
            owner=contact("owner"),
            approver=contact("approver"),
            status=status_from_remote(acc.get(row, "status")),
            start_date=day("start_date"),
            end_date=day("end_date"),
            budget=money("budget"),
            actual=money("actual"),
            variance=money("variance"),
            notes=_text(acc.get(row, "notes")),
            at_risk=parse_bool(acc.get(row, "at_risk")),
            skip=parse_bool(acc.get(row, "skip")),
            order_index=order_index,
        )
        item.remote_hash = self.data_hash(item)
        return item


# ---------------------------------------------------------------------------
# Portfolio rows
# ---------------------------------------------------------------------------


@dataclass
class PortfolioEntry:
    """One portfolio sheet row in local vocabulary."""

    row_id: int
    code: str | None
    title: str
    approval_status: ApprovalStatus
    status: WbsStatus
    description: str | None = None
    category: str | None = None
    approved_by: str | None = None
    assigned_to: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    budget: str | None = None
    actual: str | None = None
    requires_wbs: bool = False
    last_update: datetime | None = None
    project_plan_url: str | None = None


class PortfolioMapper:
    """Reads portfolio rows through a :class:`RowAccessor`."""

    schema = PORTFOLIO_SCHEMA

    def __init__(self, accessor: RowAccessor):
        self.accessor = accessor

    @classmethod
    def for_sheet(cls, sheet: RemoteSheet) -> PortfolioMapper:
        return cls(RowAccessor.for_sheet(PORTFOLIO_SCHEMA, sheet))

    def to_entry(self, row: RemoteRow) -> PortfolioEntry:
        acc = self.accessor
        code = _text(acc.get(row, "code"))

        def money(field: str) -> str | None:
            try:
                return parse_money(acc.get(row, field))
            except ValidationError:
                return None

        def day(field: str) -> date | None:
            try:
                return parse_date(acc.get(row, field))
            except ValidationError:
                return None

        last_update = parse_timestamp(acc.get(row, "last_update")) or parse_timestamp(
            row.modified_at
        )
        return PortfolioEntry(
            row_id=row.id,
            code=code,
            title=acc.display(row, "title") or (f"Project {code}" if code else "Untitled"),
            approval_status=ApprovalStatus.from_remote(acc.get(row, "approval_status")),
            status=status_from_remote(acc.get(row, "status")),
            description=_text(acc.get(row, "description")),
            category=_text(acc.get(row, "category")),
            approved_by=extract_last_name(acc.display(row, "approved_by")),
            assigned_to=extract_last_name(acc.display(row, "assigned_to")),
            start_date=day("start_date"),
            end_date=day("end_date"),
            budget=money("budget"),
            actual=money("actual"),
            requires_wbs=parse_bool(acc.get(row, "requires_wbs")),
            last_update=last_update,
            project_plan_url=acc.hyperlink(row, "project_plan"),
        )
