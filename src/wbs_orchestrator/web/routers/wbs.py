"""WBS editor API: read, save, pull from Smartsheet, clear the cache."""

import logging
from typing import Any

from fastapi import APIRouter, Depends

from ...service import WbsService
from ..dependencies import get_actor, get_service
from ..schemas import ClearCacheRequest, SaveTreeRequest, project_to_json, tree_to_json

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["wbs"])


@router.get("/projects")
async def list_projects(service: WbsService = Depends(get_service)) -> dict[str, Any]:
    projects = service.list_projects()
    return {"projects": [project_to_json(p) for p in projects], "total": len(projects)}


@router.get("/projects/{project_id}/wbs")
async def get_wbs(
    project_id: str,
    service: WbsService = Depends(get_service),
) -> dict[str, Any]:
    """Current tree with codes, depth and completion."""
    state = service.get_state(project_id)
    return {
        "project": project_to_json(state.project),
        "items": tree_to_json(state.tree),
        "count": len(state.tree),
    }


@router.post("/projects/{project_id}/wbs")
async def save_wbs(
    project_id: str,
    body: SaveTreeRequest,
    service: WbsService = Depends(get_service),
    actor: str | None = Depends(get_actor),
) -> dict[str, Any]:
    """Save the edited tree and push the difference to the WBS sheet."""
    project = service.get_project(project_id)
    items = [item.to_item(project.id) for item in body.items]
    result = await service.save_tree(project.id, items, actor)

    response = result.to_dict()
    state = service.get_state(project.id)
    response["items"] = tree_to_json(state.tree)
    return response


@router.post("/projects/{project_id}/wbs/sync")
async def sync_wbs(
    project_id: str,
    service: WbsService = Depends(get_service),
    actor: str | None = Depends(get_actor),
) -> dict[str, Any]:
    """Refresh the cache from the remote WBS sheet."""
    result = await service.sync_from_remote(project_id, actor)
    return result.to_dict()


@router.post("/wbs/clear-cache")
async def clear_cache(
    body: ClearCacheRequest | None = None,
    service: WbsService = Depends(get_service),
    actor: str | None = Depends(get_actor),
) -> dict[str, Any]:
    project_id = body.project_id if body else None
    removed = service.clear_cache(project_id, actor)
    return {"cleared": removed, "project_id": project_id}
