"""FastAPI web application for the collaborative CSV workspace.

This module defines the FastAPI application and includes the API
routes.  It also provides a convenience function to launch the server
via Uvicorn.
"""

from __future__ import annotations

from fastapi import FastAPI
import uvicorn

from .routes import router
from ..config.settings import settings


# Create FastAPI app
app = FastAPI(
    title="CSV Collab",
    description="Collaborative row-locked editing of shared CSV datasets",
    version="0.1.0",
)

# Include API routes
app.include_router(router)


def start_server(host: str | None = None, port: int | None = None, reload: bool = False) -> None:
    """Start the Uvicorn web server.

    Parameters
    ----------
    host: str
        Host to bind the server to. Defaults to ``settings.api_host``.
    port: int
        Port to listen on. Defaults to ``settings.api_port``.
    reload: bool
        Whether to enable auto-reload. Useful during development.
    """
    uvicorn.run(
        "csvcollab.web.app:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
    )


if __name__ == "__main__":
    start_server()
