"""Tests for the JSON issue store."""

import json

import pytest

from work_harness.errors import HarnessError, UnknownItemError
from work_harness.issue_tracker import ISSUES_FILE, JsonIssueTracker
from work_harness.models import WorkItem, WorkItemState
from work_harness.protocols import IssueTracker


@pytest.fixture
def tracker(tmp_path):
    return JsonIssueTracker(tmp_path / ".harness")


class TestJsonIssueTracker:
    """Tests for JsonIssueTracker."""

    def test_implements_protocol(self, tracker):
        assert isinstance(tracker, IssueTracker)

    def test_empty_without_file(self, tracker):
        assert tracker.list() == []
        assert not tracker.path.exists()

    def test_create_persists(self, tracker, tmp_path):
        tracker.create(WorkItem(id="a", title="A", labels=["backend"]))

        data = json.loads((tmp_path / ".harness" / ISSUES_FILE).read_text())
        assert data["items"][0]["id"] == "a"

        reloaded = JsonIssueTracker(tmp_path / ".harness")
        assert reloaded.get("a").labels == ["backend"]
        assert len(reloaded) == 1

    def test_duplicate_create(self, tracker):
        tracker.create(WorkItem(id="a", title="A"))
        with pytest.raises(HarnessError, match="already exists"):
            tracker.create(WorkItem(id="a", title="A"))

    def test_update_state_and_filters(self, tracker):
        tracker.create(WorkItem(id="a", title="A", labels=["x"]))
        tracker.create(WorkItem(id="b", title="B", order=1))
        tracker.update_state("a", WorkItemState.RUNNABLE)

        assert [i.id for i in tracker.list(state=WorkItemState.RUNNABLE)] == ["a"]
        assert [i.id for i in tracker.list(label="x")] == ["a"]
        assert [i.id for i in tracker.list()] == ["a", "b"]

    def test_add_dependency(self, tracker):
        tracker.create(WorkItem(id="a", title="A"))
        tracker.create(WorkItem(id="b", title="B"))
        tracker.add_dependency("b", "a")
        tracker.add_dependency("b", "a")

        assert tracker.get("b").depends_on == ["a"]
        with pytest.raises(UnknownItemError):
            tracker.add_dependency("b", "missing")

    def test_returns_copies(self, tracker):
        tracker.create(WorkItem(id="a", title="A"))
        tracker.get("a").title = "Changed"
        assert tracker.get("a").title == "A"

    def test_no_autosave(self, tmp_path):
        tracker = JsonIssueTracker(tmp_path, autosave=False)
        tracker.create(WorkItem(id="a", title="A"))
        assert not tracker.path.exists()

        tracker.flush()
        assert JsonIssueTracker(tmp_path).get("a") is not None

    def test_corrupted_file(self, tmp_path):
        (tmp_path / ISSUES_FILE).write_text("{not json")
        with pytest.raises(HarnessError, match="Corrupted"):
            JsonIssueTracker(tmp_path)

    def test_invalid_record(self, tmp_path):
        (tmp_path / ISSUES_FILE).write_text(json.dumps({"items": [{"id": "a"}]}))
        with pytest.raises(HarnessError):
            JsonIssueTracker(tmp_path)
