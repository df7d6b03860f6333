"""Request models and response serialisation for the HTTP API."""

from __future__ import annotations

from datetime import date
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from ..mapper.mappings import parse_money
from ..models import Permanent, Project, Ref, Remote, Temporary, WbsItem, WbsStatus
from ..wbs.tree import WbsNode, WbsTree

# =============================================================================
# Request models
# =============================================================================


class PermanentRefIn(BaseModel):
    kind: Literal["permanent"]
    id: str = Field(..., min_length=1)


class RemoteRefIn(BaseModel):
    kind: Literal["remote"]
    row_id: int


class TemporaryRefIn(BaseModel):
    kind: Literal["temporary"]
    id: str = Field(..., min_length=1)


ParentRefIn = Annotated[
    Union[PermanentRefIn, RemoteRefIn, TemporaryRefIn],
    Field(discriminator="kind"),
]


def ref_from_model(ref: PermanentRefIn | RemoteRefIn | TemporaryRefIn | None) -> Ref | None:
    if ref is None:
        return None
    if isinstance(ref, RemoteRefIn):
        return Remote(ref.row_id)
    if isinstance(ref, TemporaryRefIn):
        return Temporary(ref.id)
    return Permanent(ref.id)


def ref_to_json(ref: Ref | None) -> dict[str, Any] | None:
    if ref is None:
        return None
    if isinstance(ref, Remote):
        return {"kind": "remote", "row_id": ref.row_id}
    if isinstance(ref, Temporary):
        return {"kind": "temporary", "id": ref.id}
    return {"kind": "permanent", "id": ref.id}


class WbsItemIn(BaseModel):
    """One item of an edited tree, as sent by the editor."""

    id: str | None = None
    temp_id: str | None = None
    remote_row_id: int | None = None
    parent: ParentRefIn | None = None
    name: str
    description: str | None = None
    owner: str | None = None
    approver: str | None = None
    status: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    budget: str | float | None = None
    actual: str | float | None = None
    notes: str | None = None
    at_risk: bool = False
    skip: bool = False
    order_index: int = 0

    def to_item(self, project_id: str) -> WbsItem:
        """
        Raises:
            ValidationError: Unknown status or malformed amount
        """
        return WbsItem(
            project_id=project_id,
            name=self.name,
            id=self.id,
            temp_id=self.temp_id,
            remote_row_id=self.remote_row_id,
            parent=ref_from_model(self.parent),
            description=self.description,
            owner=self.owner,
            approver=self.approver,
            status=WbsStatus.parse(self.status),
            start_date=self.start_date,
            end_date=self.end_date,
            budget=parse_money(self.budget),
            actual=parse_money(self.actual),
            notes=self.notes,
            at_risk=self.at_risk,
            skip=self.skip,
            order_index=self.order_index,
        )


class SaveTreeRequest(BaseModel):
    """Request body for saving a project's WBS."""

    items: list[WbsItemIn] = Field(default_factory=list)


class ClearCacheRequest(BaseModel):
    """Request body for clearing cached items (all projects when omitted)."""

    project_id: str | None = None


# =============================================================================
# Response serialisation
# =============================================================================


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def item_to_json(item: WbsItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "remote_row_id": item.remote_row_id,
        "parent": ref_to_json(item.parent),
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
        "at_risk": item.at_risk,
        "skip": item.skip,
        "order_index": item.order_index,
        "last_synced_at": _iso(item.last_synced_at),
    }


def node_to_json(node: WbsNode) -> dict[str, Any]:
    data = item_to_json(node.item)
    data["code"] = node.code
    data["depth"] = node.depth
    data["completion"] = round(node.completion, 1)
    data["children"] = [node_to_json(child) for child in node.children]
    return data


def tree_to_json(tree: WbsTree) -> list[dict[str, Any]]:
    return [node_to_json(root) for root in tree.roots]


def project_to_json(project: Project) -> dict[str, Any]:
    workspace = project.workspace
    return {
        "id": project.id,
        "code": project.code,
        "title": project.title,
        "description": project.description,
        "category": project.category,
        "approval_status": project.approval_status.value,
        "status": project.status.value,
        "portfolio_row_id": project.portfolio_row_id,
        "requires_wbs": project.requires_wbs,
        "approved_by": project.approved_by,
        "assigned_to": project.assigned_to,
        "start_date": _iso(project.start_date),
        "end_date": _iso(project.end_date),
        "budget": project.budget,
        "actual": project.actual,
        "workspace": (
            {
                "folder_id": workspace.folder_id,
                "sheet_id": workspace.sheet_id,
                "sheet_url": workspace.sheet_url,
                "app_url": workspace.app_url,
            }
            if workspace
            else None
        ),
        "last_synced_at": _iso(project.last_synced_at),
    }
