"""Smartsheet gateway: async, error-translating wrapper around the Smartsheet SDK."""

import asyncio
import logging
import warnings
from collections.abc import Callable
from typing import Any

import smartsheet
from smartsheet.exceptions import ApiError, SmartsheetException
from smartsheet.models import Cell, ContainerDestination, Folder, Row

from ..errors import AuthError, NotFound, RateLimited, RemoteServiceError
from .types import (
    FolderContents,
    RemoteCell,
    RemoteColumn,
    RemoteObject,
    RemoteRow,
    RemoteSheet,
    RowPatch,
    Webhook,
)

# Suppress DeprecationWarnings from the Smartsheet SDK only (not all libraries)
warnings.filterwarnings("ignore", category=DeprecationWarning, module=r"smartsheet\b")

logger = logging.getLogger(__name__)

NOT_FOUND_CODE = 1006
RATE_LIMIT_CODE = 4003


def _error_details(exc: ApiError) -> tuple[int | None, int | None, str]:
    """Return ``(http_status, smartsheet_code, message)`` for an SDK error.

    The Smartsheet SDK exposes error details on either ``exc.error.result``,
    ``exc.error`` or ``exc.result`` depending on the SDK version and call.
    """
    status: int | None = None
    code: int | None = None
    message = str(exc)
    error = getattr(exc, "error", None)
    candidates = [getattr(error, "result", None), error, getattr(exc, "result", None)]
    for obj in candidates:
        if obj is None:
            continue
        status = status or getattr(obj, "status_code", None)
        code = code or getattr(obj, "code", None) or getattr(obj, "error_code", None)
        text = getattr(obj, "message", None)
        if text:
            message = str(text)
    return status, code, message


def translate_api_error(exc: ApiError, operation: str) -> RemoteServiceError:
    """Map an SDK ``ApiError`` onto the local error taxonomy."""
    status, code, message = _error_details(exc)
    detail = f"{operation}: {message}"
    if code == NOT_FOUND_CODE or status == 404:
        return NotFound(detail)
    if status in (401, 403):
        return AuthError(detail, status)
    if status == 429 or code == RATE_LIMIT_CODE:
        return RateLimited(detail)
    return RemoteServiceError(detail, status)


def _enum_name(value: Any) -> str:
    """Return the bare name of an SDK enumerated value (``TEXT_NUMBER``)."""
    inner = getattr(value, "value", value)
    name = getattr(inner, "name", None)
    return str(name if name else inner)


def _to_object(obj: Any) -> RemoteObject:
    return RemoteObject(id=obj.id, name=obj.name, permalink=getattr(obj, "permalink", None))


class SmartsheetGateway:
    """Async gateway over the synchronous Smartsheet SDK.

    Every call runs in a worker thread and SDK errors are translated into
    :mod:`wbs_orchestrator.errors` exceptions. Retrying is left to
    :class:`~wbs_orchestrator.remote.retry.RetryableRemoteClient`, so the
    SDK's own retry loop is disabled.
    """

    def __init__(self, access_token: str):
        """
        Initialize the gateway.

        Args:
            access_token: Smartsheet API access token
        """
        self.client = smartsheet.Smartsheet(access_token, max_retry_time=0)
        self.client.errors_as_exceptions(True)
        # Suppress noisy SDK "ImportError! Could not load api or model class" messages
        logging.getLogger("smartsheet").setLevel(logging.WARNING)

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiError as exc:
            raise translate_api_error(exc, operation) from exc
        except SmartsheetException as exc:
            raise RemoteServiceError(f"{operation}: {exc}") from exc

    # ==================== Sheet Operations ====================

    async def get_sheet(self, sheet_id: int) -> RemoteSheet:
        """Fetch a sheet with its columns and rows."""
        sheet = await self._call("get_sheet", self.client.Sheets.get_sheet, sheet_id)
        columns = [
            RemoteColumn(
                id=col.id,
                title=col.title,
                type=_enum_name(col.type),
                formula=getattr(col, "formula", None) or None,
                primary=bool(getattr(col, "primary", False)),
            )
            for col in sheet.columns or []
        ]
        rows = []
        for row in sheet.rows or []:
            cells = []
            for cell in row.cells or []:
                hyperlink = getattr(cell, "hyperlink", None)
                cells.append(
                    RemoteCell(
                        column_id=cell.column_id,
                        value=cell.value,
                        display_value=cell.display_value,
                        hyperlink_url=getattr(hyperlink, "url", None) if hyperlink else None,
                    )
                )
            modified = getattr(row, "modified_at", None)
            rows.append(
                RemoteRow(
                    id=row.id,
                    parent_id=getattr(row, "parent_id", None) or None,
                    row_number=getattr(row, "row_number", None),
                    cells=cells,
                    modified_at=modified.isoformat() if hasattr(modified, "isoformat") else modified,
                )
            )
        return RemoteSheet(
            id=sheet.id,
            name=sheet.name,
            permalink=getattr(sheet, "permalink", None),
            columns=columns,
            rows=rows,
        )

    async def copy_sheet(self, sheet_id: int, new_name: str, dest_folder_id: int) -> RemoteObject:
        """Copy a sheet (structure and data) into a folder."""
        destination = ContainerDestination(
            {
                "destination_type": "folder",
                "destination_id": dest_folder_id,
                "new_name": new_name,
            }
        )
        response = await self._call(
            "copy_sheet", self.client.Sheets.copy_sheet, sheet_id, destination, include="data"
        )
        return _to_object(response.result)

    async def copy_dashboard(
        self, dashboard_id: int, new_name: str, dest_folder_id: int
    ) -> RemoteObject:
        """Copy a dashboard (sight) into a folder."""
        destination = ContainerDestination(
            {
                "destination_type": "folder",
                "destination_id": dest_folder_id,
                "new_name": new_name,
            }
        )
        response = await self._call(
            "copy_dashboard", self.client.Sights.copy_sight, dashboard_id, destination
        )
        return _to_object(response.result)

    # ==================== Row Operations ====================

    @staticmethod
    def _build_row(patch: RowPatch) -> Row:
        cells = []
        for cell in patch.cells:
            cell_dict: dict[str, Any] = {
                "column_id": cell.column_id,
                "value": cell.value,
                "strict": cell.strict,
            }
            if cell.hyperlink_url:
                cell_dict["hyperlink"] = {"url": cell.hyperlink_url}
            cells.append(Cell(cell_dict))

        row_dict: dict[str, Any] = {"cells": cells}
        if patch.row_id is not None:
            row_dict["id"] = patch.row_id
        if patch.sibling_id is not None:
            row_dict["sibling_id"] = patch.sibling_id
            row_dict["above"] = bool(patch.above)
        elif patch.parent_id is not None:
            row_dict["parent_id"] = patch.parent_id
        elif patch.to_top:
            row_dict["to_top"] = True
        elif patch.to_bottom:
            row_dict["to_bottom"] = True
        return Row(row_dict)

    async def add_rows(self, sheet_id: int, rows: list[RowPatch]) -> list[int]:
        """Add rows and return the ids Smartsheet assigned, in request order."""
        if not rows:
            return []
        response = await self._call(
            "add_rows", self.client.Sheets.add_rows, sheet_id, [self._build_row(r) for r in rows]
        )
        return [row.id for row in response.result]

    async def update_rows(self, sheet_id: int, rows: list[RowPatch]) -> None:
        """Update rows keyed by row id in one request."""
        if not rows:
            return
        await self._call(
            "update_rows",
            self.client.Sheets.update_rows,
            sheet_id,
            [self._build_row(r) for r in rows],
        )

    async def delete_rows(self, sheet_id: int, row_ids: list[int]) -> None:
        """Delete rows by id."""
        if not row_ids:
            return
        await self._call("delete_rows", self.client.Sheets.delete_rows, sheet_id, row_ids)

    # ==================== Folder Operations ====================

    async def create_folder(self, name: str, parent_folder_id: int) -> RemoteObject:
        """Create a folder inside another folder."""
        logger.info(f"Creating folder: {name} in folder {parent_folder_id}")
        response = await self._call(
            "create_folder",
            self.client.Folders.create_folder_in_folder,
            parent_folder_id,
            Folder({"name": name}),
        )
        return _to_object(response.result)

    async def get_folder(self, folder_id: int) -> FolderContents:
        """List a folder's child folders, sheets, reports and dashboards."""
        meta = await self._call(
            "get_folder", self.client.Folders.get_folder_metadata, folder_id
        )
        contents = FolderContents(id=folder_id, name=meta.name)
        for resource_type, bucket in (
            ("folders", contents.folders),
            ("sheets", contents.sheets),
            ("reports", contents.reports),
            ("sights", contents.dashboards),
        ):
            children = await self._call(
                "get_folder",
                self.client.Folders.get_folder_children,
                folder_id,
                children_resource_types=[resource_type],
            )
            bucket.extend(_to_object(child) for child in children.data or [])
        return contents

    # ==================== Webhooks ====================

    @staticmethod
    def _to_webhook(hook: Any) -> Webhook:
        return Webhook(
            id=hook.id,
            name=hook.name,
            scope_object_id=getattr(hook, "scope_object_id", None),
            callback_url=getattr(hook, "callback_url", None),
            enabled=bool(getattr(hook, "enabled", False)),
            status=str(getattr(hook, "status", "") or "") or None,
        )

    async def create_webhook(self, name: str, sheet_id: int, callback_url: str) -> Webhook:
        """Register a sheet-scoped webhook (created disabled, as Smartsheet requires)."""
        spec = smartsheet.models.Webhook(
            {
                "name": name,
                "callback_url": callback_url,
                "scope": "sheet",
                "scope_object_id": sheet_id,
                "events": ["*.*"],
                "version": 1,
            }
        )
        response = await self._call("create_webhook", self.client.Webhooks.create_webhook, spec)
        return self._to_webhook(response.result)

    async def enable_webhook(self, webhook_id: int) -> Webhook:
        """Enable a webhook; Smartsheet then sends the verification challenge."""
        response = await self._call(
            "enable_webhook",
            self.client.Webhooks.update_webhook,
            webhook_id,
            smartsheet.models.Webhook({"enabled": True}),
        )
        return self._to_webhook(response.result)

    async def delete_webhook(self, webhook_id: int) -> None:
        await self._call("delete_webhook", self.client.Webhooks.delete_webhook, webhook_id)

    async def list_webhooks(self) -> list[Webhook]:
        response = await self._call(
            "list_webhooks", self.client.Webhooks.list_webhooks, include_all=True
        )
        return [self._to_webhook(h) for h in response.data or []]

    # ==================== Account ====================

    async def get_current_user(self) -> str:
        """Return the email of the token's owner (used as a connection check)."""
        user = await self._call("get_current_user", self.client.Users.get_current_user)
        return str(getattr(user, "email", "") or "")
