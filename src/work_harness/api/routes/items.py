"""Work item endpoints backed by the JSON issue store."""

from pathlib import Path
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from ...config import HarnessConfig, load_config
from ...errors import HarnessError
from ...issue_tracker import JsonIssueTracker
from ...models import BLOCKING_STATES, WorkItem, WorkItemState

router = APIRouter()


class ItemsResponse(BaseModel):
    """All work items plus counts per state."""
    title: Optional[str] = None
    items: list[WorkItem]
    total: int
    by_state: dict[str, int]


class BlockedItem(BaseModel):
    id: str
    title: str
    state: WorkItemState
    blocked_by: list[str]
    failure_reason: Optional[str] = None


def get_project_path(request: Request) -> Path:
    """Get project path from app state."""
    project_path = getattr(request.app.state, "project_path", None)
    if not project_path or not project_path.exists():
        raise HTTPException(status_code=404, detail="Project path not configured")
    return project_path


def get_config(project_path: Path) -> HarnessConfig:
    try:
        return load_config(project_path)
    except ValueError as e:
        raise HTTPException(status_code=500, detail=f"Invalid harness config: {e}")


def open_tracker(request: Request) -> JsonIssueTracker:
    project_path = get_project_path(request)
    config = get_config(project_path)
    try:
        return JsonIssueTracker(project_path / config.state_dir, autosave=False)
    except HarnessError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/items", response_model=ItemsResponse)
async def list_items(
    request: Request,
    state: Optional[WorkItemState] = Query(None),
    label: Optional[str] = Query(None),
) -> ItemsResponse:
    """List work items, optionally filtered by state and label."""
    tracker = open_tracker(request)
    all_items = tracker.list()

    counts = {s.value: 0 for s in WorkItemState}
    for item in all_items:
        counts[item.state.value] += 1

    return ItemsResponse(
        title=tracker.title,
        items=tracker.list(state=state, label=label),
        total=len(all_items),
        by_state=counts,
    )


@router.get("/items/{item_id}", response_model=WorkItem)
async def get_item(request: Request, item_id: str) -> WorkItem:
    """Get one work item, including its transition history."""
    item = open_tracker(request).get(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Work item not found: {item_id}")
    return item


@router.get("/blocked", response_model=list[BlockedItem])
async def get_blocked(request: Request) -> list[BlockedItem]:
    """Blocked and failed items with the dependencies blocking them."""
    items = open_tracker(request).list()
    states = {item.id: item.state for item in items}

    return [
        BlockedItem(
            id=item.id,
            title=item.title,
            state=item.state,
            blocked_by=[dep for dep in item.depends_on if states.get(dep) in BLOCKING_STATES],
            failure_reason=item.failure_reason,
        )
        for item in items
        if item.state in (WorkItemState.BLOCKED, WorkItemState.FAILED)
    ]
