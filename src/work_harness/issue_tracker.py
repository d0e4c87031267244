"""Local JSON issue store.

Implements the IssueTracker protocol on top of ``.harness/issues.json``.
The harness treats this file as the durable record of every work item and
resumes from it on the next run.
"""

import json
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .errors import HarnessError, UnknownItemError
from .models import WorkItem, WorkItemState


ISSUES_FILE = "issues.json"


class IssueStore(BaseModel):
    """On-disk layout of the issue file."""
    title: Optional[str] = None
    items: list[WorkItem] = Field(default_factory=list)


class JsonIssueTracker:
    """Issue tracker persisted as a single JSON document."""

    def __init__(self, state_dir: Path | str, autosave: bool = True):
        """Initialize the tracker.

        Args:
            state_dir: Directory holding issues.json (created on first save)
            autosave: Write the file after every mutation
        """
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / ISSUES_FILE
        self.autosave = autosave
        self.title: Optional[str] = None
        self._items: dict[str, WorkItem] = {}
        self.load()

    def load(self) -> None:
        """Load items from disk, if the file exists.

        Raises:
            HarnessError: If the file exists but cannot be parsed.
        """
        self._items = {}
        if not self.path.exists():
            return
        try:
            store = IssueStore.model_validate(json.loads(self.path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValueError) as e:
            raise HarnessError(f"Corrupted issue store {self.path}: {e}") from e
        self.title = store.title
        self._items = {item.id: item for item in store.items}

    def flush(self) -> None:
        """Write all items to disk."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        store = IssueStore(title=self.title, items=list(self._items.values()))
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(store.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def _changed(self) -> None:
        if self.autosave:
            self.flush()

    def _require(self, item_id: str) -> WorkItem:
        item = self._items.get(item_id)
        if item is None:
            raise UnknownItemError(item_id)
        return item

    def create(self, item: WorkItem) -> str:
        if item.id in self._items:
            raise HarnessError(f"Work item already exists: {item.id}")
        self._items[item.id] = item.model_copy(deep=True)
        self._changed()
        return item.id

    def update_state(self, item_id: str, state: WorkItemState) -> None:
        self._require(item_id).state = state
        self._changed()

    def add_dependency(self, item_id: str, depends_on_id: str) -> None:
        item = self._require(item_id)
        self._require(depends_on_id)
        if depends_on_id not in item.depends_on:
            item.depends_on.append(depends_on_id)
            self._changed()

    def list(
        self,
        state: Optional[WorkItemState] = None,
        label: Optional[str] = None,
    ) -> list[WorkItem]:
        items = sorted(self._items.values(), key=lambda i: i.order)
        if state is not None:
            items = [i for i in items if i.state == state]
        if label is not None:
            items = [i for i in items if label in i.labels]
        return [i.model_copy(deep=True) for i in items]

    def save(self, item: WorkItem) -> None:
        self._items[item.id] = item.model_copy(deep=True)
        self._changed()

    def get(self, item_id: str) -> Optional[WorkItem]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    def __len__(self) -> int:
        return len(self._items)
