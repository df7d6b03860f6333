"""HTTP API for the WBS editor, portfolio processing and Smartsheet webhooks."""

from __future__ import annotations

from ..config import AppConfig
from .app import create_app


def run_web(config: AppConfig, *, host: str = "127.0.0.1", port: int = 8000) -> None:
    """Start the API server."""
    import uvicorn

    app = create_app(config)
    uvicorn.run(app, host=host, port=port, log_level="info")


__all__ = ["create_app", "run_web"]
