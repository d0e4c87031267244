"""Git operations for the harness.

Implements the VersionControl protocol: a verified item's changeset is
staged and committed, and the resulting hash becomes its commit reference.
"""

import subprocess
from pathlib import Path
from typing import Optional, Sequence

from .models import Changeset


class GitManager:
    """Manages git operations for one repository."""

    def __init__(self, repo_path: Path):
        self.repo_path = Path(repo_path)

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command."""
        return subprocess.run(
            ["git", *args],
            cwd=self.repo_path,
            capture_output=True,
            text=True,
            check=check
        )

    def stage(self, files: Sequence[str] = ()) -> None:
        """Stage the given paths (including deletions), or every change if none are given."""
        if files:
            self._run("add", "-A", "--", *files)
        else:
            self._run("add", "-A")

    def commit(self, changeset: Changeset) -> Optional[str]:
        """Stage the changeset's files and commit them.

        Returns:
            The new commit hash, or None if git refused (e.g. nothing to commit).
        """
        self.stage(changeset.files)
        result = self._run("commit", "-m", changeset.message, check=False)
        if result.returncode != 0:
            return None

        hash_result = self._run("rev-parse", "HEAD")
        return hash_result.stdout.strip() or None
