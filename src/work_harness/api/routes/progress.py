"""Progress log and checkpoint history endpoints."""

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from ...checkpoint import CheckpointLog
from ...models import CheckpointEvent
from ...progress import ProgressTracker
from .items import get_config, get_project_path

router = APIRouter()


class ProgressResponse(BaseModel):
    """Progress log content."""
    content: str
    lines: int
    archives: list[str]


@router.get("/progress", response_model=ProgressResponse)
async def get_progress(
    request: Request,
    lines: int = Query(50, ge=1, le=1000),
) -> ProgressResponse:
    """Get the most recent lines of the progress log."""
    project_path = get_project_path(request)
    config = get_config(project_path)
    tracker = ProgressTracker(project_path, config.progress_file)

    content = tracker.read_recent(lines)
    return ProgressResponse(
        content=content,
        lines=len(content.splitlines()),
        archives=[p.name for p in tracker.get_archive_files()],
    )


@router.get("/checkpoints", response_model=list[CheckpointEvent])
async def get_checkpoints(request: Request) -> list[CheckpointEvent]:
    """All checkpoint events, oldest first."""
    project_path = get_project_path(request)
    config = get_config(project_path)
    try:
        return CheckpointLog(project_path / config.state_dir).read_all()
    except ValueError as e:
        raise HTTPException(status_code=500, detail=f"Invalid checkpoint log: {e}")
