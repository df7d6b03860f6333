"""FastAPI dependency injection helpers."""

from fastapi import Header
from starlette.requests import Request

from ..service import WbsService


def get_service(request: Request) -> WbsService:
    """Retrieve the shared ``WbsService`` from the application."""
    return request.app.state.service  # type: ignore[no-any-return]


def get_actor(x_actor: str | None = Header(default=None)) -> str | None:
    """Actor recorded in audit entries, taken from the ``X-Actor`` header."""
    if x_actor is None or not x_actor.strip():
        return None
    return x_actor.strip()
