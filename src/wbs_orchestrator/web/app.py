"""FastAPI application factory."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import AppConfig, load_config
from ..errors import (
    CycleDetected,
    IdempotencyConflict,
    NotFound,
    PartialProvisioningFailure,
    ProjectNotFound,
    RemoteServiceError,
    ValidationError,
    WbsError,
)
from ..models import Outcome
from ..remote.types import RemoteGateway
from ..service import WbsService
from ..store import CacheStore

logger = logging.getLogger(__name__)


def error_status(exc: WbsError) -> int:
    """HTTP status for a domain error."""
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, (ProjectNotFound, NotFound)):
        return 404
    if isinstance(exc, IdempotencyConflict):
        return 409
    if isinstance(exc, (RemoteServiceError, PartialProvisioningFailure)):
        return 502
    return 500


async def _wbs_error_handler(request: Request, exc: WbsError) -> JSONResponse:
    status = error_status(exc)
    body: dict[str, object] = {
        "error": str(exc),
        "type": type(exc).__name__,
        "outcome": Outcome.FAILED.value,
    }
    if isinstance(exc, CycleDetected):
        body["cycle"] = exc.items
    if isinstance(exc, PartialProvisioningFailure):
        body["step"] = exc.step
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({status}): {exc}")
    return JSONResponse(status_code=status, content=body)


def create_app(
    config: AppConfig | None = None,
    gateway: RemoteGateway | None = None,
    store: CacheStore | None = None,
) -> FastAPI:
    """Build and configure the FastAPI application."""
    config = config or load_config()
    app = FastAPI(title="WBS Orchestrator")

    # ── State ─────────────────────────────────────────────────────
    app.state.config = config
    app.state.service = WbsService(config, store=store, gateway=gateway)

    # ── Errors ────────────────────────────────────────────────────
    app.add_exception_handler(WbsError, _wbs_error_handler)  # type: ignore[arg-type]

    # ── Routers ───────────────────────────────────────────────────
    from .routers.health import router as health_router
    from .routers.portfolio import router as portfolio_router
    from .routers.wbs import router as wbs_router
    from .routers.webhooks import router as webhooks_router

    app.include_router(health_router)
    app.include_router(wbs_router)
    app.include_router(portfolio_router)
    app.include_router(webhooks_router)

    return app
