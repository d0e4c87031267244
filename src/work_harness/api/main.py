"""FastAPI application for the dashboard backend."""

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routes import items, progress


def create_app(project_path: Optional[Path] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        project_path: Path to the project being monitored

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Work Harness Dashboard API",
        description="Read-only view of the work graph, progress log and checkpoints",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.state.project_path = Path(project_path) if project_path else None

    app.include_router(items.router, prefix="/api", tags=["items"])
    app.include_router(progress.router, prefix="/api", tags=["progress"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Work Harness Dashboard API",
            "version": "0.1.0",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


def run_dashboard(
    project_path: Path,
    host: str = "127.0.0.1",
    port: int = 8000,
) -> None:
    """Run the dashboard server.

    Args:
        project_path: Path to the project being monitored
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(project_path)
    uvicorn.run(app, host=host, port=port)
