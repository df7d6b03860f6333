"""Remote spreadsheet service gateway, retry wrapper and column schemas."""

from .client import SmartsheetGateway
from .retry import DedupeGuard, RetryableRemoteClient, RetryPolicy
from .schemas import PORTFOLIO_SCHEMA, WBS_SCHEMA, ColumnSchema, ColumnType, SheetSchema
from .types import (
    CellPatch,
    FolderContents,
    RemoteCell,
    RemoteColumn,
    RemoteGateway,
    RemoteObject,
    RemoteRow,
    RemoteSheet,
    RowPatch,
    Webhook,
)

__all__ = [
    "SmartsheetGateway",
    "DedupeGuard",
    "RetryableRemoteClient",
    "RetryPolicy",
    "PORTFOLIO_SCHEMA",
    "WBS_SCHEMA",
    "ColumnSchema",
    "ColumnType",
    "SheetSchema",
    "CellPatch",
    "FolderContents",
    "RemoteCell",
    "RemoteColumn",
    "RemoteGateway",
    "RemoteObject",
    "RemoteRow",
    "RemoteSheet",
    "RowPatch",
    "Webhook",
]
