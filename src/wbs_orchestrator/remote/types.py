"""Plain value types exchanged with the remote spreadsheet gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class RemoteColumn:
    id: int
    title: str
    type: str = "TEXT_NUMBER"
    formula: str | None = None
    primary: bool = False


@dataclass
class RemoteCell:
    column_id: int
    value: Any = None
    display_value: str | None = None
    hyperlink_url: str | None = None


@dataclass
class RemoteRow:
    id: int
    parent_id: int | None = None
    row_number: int | None = None
    cells: list[RemoteCell] = field(default_factory=list)
    modified_at: str | None = None

    def cell(self, column_id: int) -> RemoteCell | None:
        for c in self.cells:
            if c.column_id == column_id:
                return c
        return None


@dataclass
class RemoteSheet:
    id: int
    name: str
    permalink: str | None = None
    columns: list[RemoteColumn] = field(default_factory=list)
    rows: list[RemoteRow] = field(default_factory=list)

    def row(self, row_id: int) -> RemoteRow | None:
        for r in self.rows:
            if r.id == row_id:
                return r
        return None


@dataclass
class RemoteObject:
    """A sheet, folder, report or dashboard reference."""

    id: int
    name: str
    permalink: str | None = None


@dataclass
class FolderContents:
    id: int
    name: str
    folders: list[RemoteObject] = field(default_factory=list)
    sheets: list[RemoteObject] = field(default_factory=list)
    reports: list[RemoteObject] = field(default_factory=list)
    dashboards: list[RemoteObject] = field(default_factory=list)


@dataclass
class CellPatch:
    """One cell of an outgoing row write."""

    column_id: int
    value: Any
    hyperlink_url: str | None = None
    strict: bool = False


@dataclass
class RowPatch:
    """An outgoing row write.

    ``row_id`` is set for updates. For creates exactly one of the position
    fields is used: ``sibling_id`` (with ``above``), ``parent_id`` (first
    child), ``to_top`` or ``to_bottom``.
    """

    cells: list[CellPatch] = field(default_factory=list)
    row_id: int | None = None
    parent_id: int | None = None
    sibling_id: int | None = None
    above: bool | None = None
    to_top: bool = False
    to_bottom: bool = False

    def column_ids(self) -> set[int]:
        return {c.column_id for c in self.cells}


@dataclass
class Webhook:
    id: int
    name: str
    scope_object_id: int | None = None
    callback_url: str | None = None
    enabled: bool = False
    status: str | None = None


class RemoteGateway(Protocol):
    """Operations consumed from the remote spreadsheet service."""

    async def get_sheet(self, sheet_id: int) -> RemoteSheet: ...

    async def add_rows(self, sheet_id: int, rows: list[RowPatch]) -> list[int]: ...

    async def update_rows(self, sheet_id: int, rows: list[RowPatch]) -> None: ...

    async def delete_rows(self, sheet_id: int, row_ids: list[int]) -> None: ...

    async def create_folder(self, name: str, parent_folder_id: int) -> RemoteObject: ...

    async def get_folder(self, folder_id: int) -> FolderContents: ...

    async def copy_sheet(
        self, sheet_id: int, new_name: str, dest_folder_id: int
    ) -> RemoteObject: ...

    async def copy_dashboard(
        self, dashboard_id: int, new_name: str, dest_folder_id: int
    ) -> RemoteObject: ...

    async def create_webhook(self, name: str, sheet_id: int, callback_url: str) -> Webhook: ...

    async def enable_webhook(self, webhook_id: int) -> Webhook: ...

    async def delete_webhook(self, webhook_id: int) -> None: ...

    async def list_webhooks(self) -> list[Webhook]: ...

    async def get_current_user(self) -> str: ...
