"""Tests for GitManager against a real git repository."""

import shutil
import subprocess

import pytest

from work_harness.git_manager import GitManager
from work_harness.models import Changeset
from work_harness.protocols import VersionControl

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def repo(tmp_path, monkeypatch):
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Harness Test")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "harness@example.com")
    subprocess.run(["git", "init"], cwd=tmp_path, check=True, capture_output=True)
    return tmp_path


class TestGitManager:
    def test_implements_protocol(self, tmp_path):
        assert isinstance(GitManager(tmp_path), VersionControl)

    def test_commit_returns_hash(self, repo):
        (repo / "cart.py").write_text("TAX = 0.2\n")
        git = GitManager(repo)

        ref = git.commit(Changeset(item_id="cart", title="Cart totals", summary="Adds tax"))

        assert ref and len(ref) == 40
        log = subprocess.run(["git", "log", "-1", "--format=%B"], cwd=repo, capture_output=True, text=True)
        assert log.stdout.startswith("Cart totals [cart]\n\nAdds tax")

    def test_nothing_to_commit(self, repo):
        (repo / "a.txt").write_text("a")
        git = GitManager(repo)
        git.commit(Changeset(item_id="a", title="A"))

        assert git.commit(Changeset(item_id="b", title="B")) is None

    def test_commit_stages_only_changeset_files(self, repo):
        git = GitManager(repo)
        (repo / "a.txt").write_text("a")
        git.commit(Changeset(item_id="a", title="A"))
        (repo / "a.txt").write_text("changed")
        (repo / "b.txt").write_text("b")

        git.commit(Changeset(item_id="b", title="B", files=["b.txt"]))

        shown = subprocess.run(
            ["git", "show", "--name-only", "--format=", "HEAD"],
            cwd=repo, capture_output=True, text=True,
        )
        assert shown.stdout.split() == ["b.txt"]
        status = subprocess.run(["git", "status", "--porcelain"], cwd=repo, capture_output=True, text=True)
        assert status.stdout.strip() == "M a.txt"

    def test_not_a_repository(self, tmp_path):
        with pytest.raises(subprocess.CalledProcessError):
            GitManager(tmp_path).commit(Changeset(item_id="a", title="A"))
