"""Tests for the dashboard API."""

import pytest
from fastapi.testclient import TestClient

from work_harness.api import create_app
from work_harness.checkpoint import CheckpointLog
from work_harness.issue_tracker import JsonIssueTracker
from work_harness.models import CheckpointEvent, WorkItem, WorkItemState
from work_harness.progress import ProgressTracker


@pytest.fixture
def project(tmp_path):
    tracker = JsonIssueTracker(tmp_path / ".harness")
    tracker.title = "Shop checkout"
    tracker.create(WorkItem(id="a", title="A", state=WorkItemState.FAILED, failure_reason="tests failed"))
    tracker.create(WorkItem(id="b", title="B", depends_on=["a"], state=WorkItemState.BLOCKED, order=1,
                            labels=["frontend"]))
    tracker.create(WorkItem(id="c", title="C", state=WorkItemState.CLOSED, order=2, commit_ref="abc"))
    return tmp_path


@pytest.fixture
def client(project):
    return TestClient(create_app(project))


class TestBasics:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_root(self, client):
        assert client.get("/").json()["docs"] == "/docs"

    def test_no_project(self):
        response = TestClient(create_app()).get("/api/items")
        assert response.status_code == 404


class TestItems:
    """Tests for /api/items and /api/blocked."""

    def test_list(self, client):
        data = client.get("/api/items").json()

        assert data["title"] == "Shop checkout"
        assert data["total"] == 3
        assert [i["id"] for i in data["items"]] == ["a", "b", "c"]
        assert data["by_state"]["blocked"] == 1
        assert data["by_state"]["closed"] == 1

    def test_filters(self, client):
        assert [i["id"] for i in client.get("/api/items?state=closed").json()["items"]] == ["c"]
        assert [i["id"] for i in client.get("/api/items?label=frontend").json()["items"]] == ["b"]

    def test_invalid_state(self, client):
        assert client.get("/api/items?state=sleeping").status_code == 422

    def test_get_item(self, client):
        data = client.get("/api/items/c").json()
        assert data["commit_ref"] == "abc"
        assert data["state"] == "closed"

    def test_get_missing_item(self, client):
        assert client.get("/api/items/zzz").status_code == 404

    def test_blocked(self, client):
        data = client.get("/api/blocked").json()
        assert [(i["id"], i["blocked_by"]) for i in data] == [("a", []), ("b", ["a"])]
        assert data[0]["failure_reason"] == "tests failed"

    def test_corrupted_store(self, client, project):
        (project / ".harness" / "issues.json").write_text("{broken")
        response = client.get("/api/items")
        assert response.status_code == 500
        assert "Corrupted" in response.json()["detail"]


class TestProgressAndCheckpoints:
    """Tests for /api/progress and /api/checkpoints."""

    def test_progress(self, client, project):
        ProgressTracker(project).initialize("Shop")
        data = client.get("/api/progress?lines=2").json()

        assert data["archives"] == []
        assert "truncated" in data["content"]

    def test_progress_missing(self, client):
        data = client.get("/api/progress").json()
        assert data["content"] == ""
        assert data["lines"] == 0

    def test_checkpoints(self, client, project):
        assert client.get("/api/checkpoints").json() == []

        CheckpointLog(project / ".harness").append(CheckpointEvent(id="cp-001", trigger="elapsed"))
        data = client.get("/api/checkpoints").json()
        assert [e["id"] for e in data] == ["cp-001"]
