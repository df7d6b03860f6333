"""Portfolio API: provisioning check and polling fallback."""

from typing import Any

from fastapi import APIRouter, Depends, Query

from ...service import WbsService
from ..dependencies import get_actor, get_service

router = APIRouter(prefix="/api/portfolio", tags=["portfolio"])


@router.post("/new-projects")
async def check_new_projects(
    verify: bool = Query(False, description="Confirm provisioned sheets still exist"),
    prune: bool = Query(False, description="Soft-delete projects no longer in the portfolio"),
    service: WbsService = Depends(get_service),
    actor: str | None = Depends(get_actor),
) -> dict[str, Any]:
    """Walk the portfolio and provision every approved project without a workspace."""
    result = await service.check_new_projects(verify_existing=verify, prune=prune, actor=actor)
    return result.to_dict()


@router.post("/poll")
async def poll(
    service: WbsService = Depends(get_service),
    actor: str | None = Depends(get_actor),
) -> dict[str, Any]:
    """Reprocess portfolio rows updated since their last sync."""
    result = await service.poll(actor)
    return result.to_dict()
