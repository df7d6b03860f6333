"""Semantic access to remote rows by field name instead of column position."""

from __future__ import annotations

import logging
from typing import Any

from ..remote.schemas import ColumnSchema, SheetSchema
from ..remote.types import CellPatch, RemoteRow, RemoteSheet, RowPatch

logger = logging.getLogger(__name__)


class RowAccessor:
    """
    Resolves semantic field names to column ids of one concrete sheet.

    Column titles are matched case-insensitively after trimming, and a
    schema column may list alias titles. Formula columns, whether flagged in
    the schema or carrying a formula on the live sheet, can be read but
    never written.
    """

    def __init__(
        self,
        schema: SheetSchema,
        columns: dict[str, int],
        formula_ids: set[int] | None = None,
    ):
        """
        Args:
            schema: Known column schema for the sheet
            columns: Mapping of column title to column id
            formula_ids: Column ids the live sheet reports as formula columns
        """
        self.schema = schema
        self.formula_ids = formula_ids or set()
        normalised = {title.strip().lower(): col_id for title, col_id in columns.items()}
        self._ids: dict[str, int] = {}
        for col in schema.columns:
            for title in col.titles:
                col_id = normalised.get(title.lower())
                if col_id is not None:
                    self._ids[col.field] = col_id
                    break

    @classmethod
    def for_sheet(cls, schema: SheetSchema, sheet: RemoteSheet) -> RowAccessor:
        return cls(
            schema,
            {col.title: col.id for col in sheet.columns},
            formula_ids={col.id for col in sheet.columns if col.formula},
        )

    def has(self, field: str) -> bool:
        return field in self._ids

    def column_id(self, field: str) -> int | None:
        return self._ids.get(field)

    def missing_fields(self) -> list[str]:
        """Schema fields with no matching column in this sheet."""
        return [col.field for col in self.schema.columns if col.field not in self._ids]

    def _column(self, field: str) -> ColumnSchema:
        col = self.schema.get_column(field)
        if col is None:
            raise KeyError(f"Unknown field {field!r} for sheet schema {self.schema.name!r}")
        return col

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get(self, row: RemoteRow, field: str) -> Any:
        """Raw cell value of ``field``, or ``None`` when absent."""
        col_id = self._ids.get(field)
        if col_id is None:
            return None
        cell = row.cell(col_id)
        return cell.value if cell else None

    def display(self, row: RemoteRow, field: str) -> str | None:
        """Display value of ``field`` (falls back to the raw value)."""
        col_id = self._ids.get(field)
        if col_id is None:
            return None
        cell = row.cell(col_id)
        if cell is None:
            return None
        if cell.display_value not in (None, ""):
            return cell.display_value
        if cell.value is None:
            return None
        return str(cell.value)

    def hyperlink(self, row: RemoteRow, field: str) -> str | None:
        col_id = self._ids.get(field)
        cell = row.cell(col_id) if col_id is not None else None
        return cell.hyperlink_url if cell else None

    def as_dict(self, row: RemoteRow) -> dict[str, Any]:
        """Every known field of the row, keyed by field name."""
        return {field: self.get(row, field) for field in self._ids}

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def cell(
        self,
        field: str,
        value: Any,
        hyperlink_url: str | None = None,
        strict: bool = False,
    ) -> CellPatch | None:
        """Build a cell for ``field``; ``None`` if absent or formula-derived."""
        col = self._column(field)
        if col.formula:
            logger.debug(f"Refusing to write formula column {col.title!r}")
            return None
        col_id = self._ids.get(field)
        if col_id is None:
            return None
        if col_id in self.formula_ids:
            logger.debug(f"Refusing to write column {col.title!r}; the sheet computes it")
            return None
        return CellPatch(column_id=col_id, value=value, hyperlink_url=hyperlink_url, strict=strict)

    def set(
        self,
        patch: RowPatch,
        field: str,
        value: Any,
        hyperlink_url: str | None = None,
        strict: bool = False,
    ) -> bool:
        """Append a cell for ``field`` to ``patch``. Returns whether it was added."""
        cell = self.cell(field, value, hyperlink_url=hyperlink_url, strict=strict)
        if cell is None:
            return False
        patch.cells = [c for c in patch.cells if c.column_id != cell.column_id]
        patch.cells.append(cell)
        return True

    def find_row(self, sheet: RemoteSheet, field: str, value: Any) -> RemoteRow | None:
        """First row whose ``field`` equals ``value`` (numeric-tolerant)."""
        target = normalize_cell_key(value)
        for row in sheet.rows:
            if normalize_cell_key(self.get(row, field)) == target:
                return row
        return None


def normalize_cell_key(value: Any) -> str | None:
    """Normalize a cell value to a stable string key.

    TEXT_NUMBER columns turn numeric-looking strings into floats
    (``"12345"`` comes back as ``12345.0``); strip the spurious ``.0``.
    """
    if value is None:
        return None
    if isinstance(value, float) and value == int(value):
        return str(int(value))
    return str(value).strip()
