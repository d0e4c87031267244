"""Protocol definitions for dependency injection.

These protocols are the narrow contracts the harness needs from its
collaborators:
- IssueTracker: durable store of work items and their dependency edges
- VersionControl: turns a verified changeset into a commit reference
- CommandExecutor: runs verification and review commands
- CheckpointReviewer: reviews closed work at a checkpoint
- ProgressLog: session hand-off notes

Tests substitute in-memory implementations of each.
"""

from pathlib import Path
from typing import Optional, Protocol, Sequence, runtime_checkable

from .models import (
    Changeset,
    CheckpointEvent,
    CheckpointFinding,
    ProgressEntry,
    SessionOutcome,
    VerificationResult,
    WorkItem,
    WorkItemState,
)


@runtime_checkable
class IssueTracker(Protocol):
    """Protocol for the issue store backing the scheduler."""

    def create(self, item: WorkItem) -> str:
        """Persist a new item and return its id."""
        ...

    def update_state(self, item_id: str, state: WorkItemState) -> None:
        ...

    def add_dependency(self, item_id: str, depends_on_id: str) -> None:
        ...

    def list(
        self,
        state: Optional[WorkItemState] = None,
        label: Optional[str] = None,
    ) -> list[WorkItem]:
        """List items, optionally filtered by state and label."""
        ...

    def save(self, item: WorkItem) -> None:
        """Persist the full record of an existing item."""
        ...

    def get(self, item_id: str) -> Optional[WorkItem]:
        ...


@runtime_checkable
class VersionControl(Protocol):
    """Protocol for committing verified work."""

    def commit(self, changeset: Changeset) -> Optional[str]:
        """Commit the changeset and return the reference, or None if nothing was committed."""
        ...


@runtime_checkable
class CommandExecutor(Protocol):
    """Protocol for executing shell commands.

    Abstracts command execution for testability.
    """

    def run_command(
        self,
        name: str,
        command: Optional[str],
        timeout: int,
        cwd: Optional[Path] = None,
    ) -> VerificationResult:
        """Execute a shell command and return the result.

        Args:
            name: Name of the command for logging/display
            command: The command to execute (None skips execution)
            timeout: Timeout in seconds
            cwd: Working directory

        Returns:
            VerificationResult with passed status and output
        """
        ...


@runtime_checkable
class CheckpointReviewer(Protocol):
    """Protocol for checkpoint reviews of recently closed work."""

    def review(self, items: Sequence[WorkItem], repository: str) -> list[CheckpointFinding]:
        """Review items closed in a repository since the last checkpoint."""
        ...


@runtime_checkable
class ProgressLog(Protocol):
    """Protocol for progress tracking.

    Abstracts the progress file operations to enable different
    storage backends and easier testing.
    """

    def read_recent(self, lines: int = 50) -> str:
        """Read only recent progress for context efficiency."""
        ...

    def append_entry(self, entry: ProgressEntry) -> None:
        ...

    def log_session_start(self, session_id: str, item: WorkItem, model: Optional[str] = None) -> None:
        ...

    def log_outcome(
        self,
        outcome: SessionOutcome,
        files_changed: Optional[list[str]] = None,
        next_steps: Optional[str] = None
    ) -> None:
        """Log how a session ended, with hand-off notes for the next one."""
        ...

    def log_checkpoint(self, event: CheckpointEvent) -> None:
        ...

    def initialize(self, project_name: str) -> None:
        """Initialize a new progress file for a project."""
        ...
