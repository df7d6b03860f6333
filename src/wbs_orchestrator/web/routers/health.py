"""Liveness endpoint."""

from typing import Any

from fastapi import APIRouter, Depends

from ... import __version__
from ...service import WbsService
from ..dependencies import get_service

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz(service: WbsService = Depends(get_service)) -> dict[str, Any]:
    """Report liveness and cache size; makes no remote calls."""
    stats = service.get_stats()
    return {
        "status": "ok",
        "version": __version__,
        "projects": stats.projects,
        "items": stats.items,
    }
