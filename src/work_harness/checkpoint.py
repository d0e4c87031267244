"""Periodic checkpoint reviews.

Every few finished sessions (or hours) the orchestrator stops starting new
sessions and reviews the work closed since the previous checkpoint for
security, architecture and quality. Critical findings become new P0 work
items; every checkpoint is appended to a JSON-lines log.
"""

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Sequence

from rich.console import Console

from .config import CheckpointConfig, HarnessConfig
from .models import (
    CheckpointEvent,
    CheckpointFinding,
    FindingSeverity,
    ReviewDimension,
    WorkItem,
)
from .protocols import CheckpointReviewer, CommandExecutor
from .routing import RepositoryRouter
from .scheduler import WorkScheduler
from .verification import CommandRunner


console = Console()

CHECKPOINT_LOG = "checkpoints.jsonl"
TRIGGER_SESSIONS = "sessions"
TRIGGER_ELAPSED = "elapsed"


class CheckpointPolicy:
    """Decides when a checkpoint is due."""

    def __init__(self, config: CheckpointConfig, clock: Callable[[], datetime] = datetime.now):
        self.config = config
        self.clock = clock
        self.sessions_since = 0
        self.last_checkpoint_at = clock()

    def record_session(self) -> None:
        self.sessions_since += 1

    def due(self) -> Optional[str]:
        """Return the trigger ("sessions" or "elapsed") if a checkpoint is due."""
        if not self.config.enabled:
            return None
        if self.sessions_since >= self.config.every_sessions:
            return TRIGGER_SESSIONS
        if self.clock() - self.last_checkpoint_at >= timedelta(hours=self.config.every_hours):
            return TRIGGER_ELAPSED
        return None

    def reset(self) -> None:
        self.sessions_since = 0
        self.last_checkpoint_at = self.clock()

    def restore(self, sessions_since: int, last_checkpoint_at: Optional[datetime]) -> None:
        """Resume counting from state recorded by earlier runs."""
        self.sessions_since = sessions_since
        if last_checkpoint_at is not None:
            self.last_checkpoint_at = last_checkpoint_at


class CheckpointLog:
    """Append-only JSON-lines record of checkpoint events."""

    def __init__(self, state_dir: Path | str):
        self.path = Path(state_dir) / CHECKPOINT_LOG

    def append(self, event: CheckpointEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")

    def read_all(self) -> list[CheckpointEvent]:
        if not self.path.exists():
            return []
        events = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                events.append(CheckpointEvent.model_validate(json.loads(line)))
        return events

    def next_id(self) -> str:
        return f"cp-{len(self.read_all()) + 1:03d}"


class CommandCheckpointReviewer:
    """Reviews a repository by running one command per dimension.

    A non-zero exit is a critical finding; a command that cannot run is a
    warning. Dimensions without a command produce no finding.
    """

    def __init__(self, router: RepositoryRouter, executor: Optional[CommandExecutor] = None):
        self.router = router
        self.executor = executor if executor is not None else CommandRunner()

    def review(self, items: Sequence[WorkItem], repository: str) -> list[CheckpointFinding]:
        repo = self.router.repository(repository)
        cwd = self.router.path_for(repository)
        findings = []

        for dimension in ReviewDimension:
            command = repo.review_commands.get(dimension)
            if not command:
                continue
            result = self.executor.run_command(
                f"{dimension.value} review", command, repo.command_timeout_seconds, cwd=cwd
            )
            if result.passed:
                continue
            severity = (
                FindingSeverity.WARNING if result.message.startswith("Could not run")
                else FindingSeverity.CRITICAL
            )
            findings.append(CheckpointFinding(
                dimension=dimension,
                severity=severity,
                summary=f"{dimension.value.capitalize()} review failed in {repository}: {result.message}",
                details=result.details,
                repository=repository,
            ))
        return findings


class CheckpointManager:
    """Runs checkpoint reviews and materializes critical findings."""

    def __init__(
        self,
        scheduler: WorkScheduler,
        reviewer: CheckpointReviewer,
        log: CheckpointLog,
        config: Optional[HarnessConfig] = None,
        policy: Optional[CheckpointPolicy] = None,
    ):
        self.scheduler = scheduler
        self.reviewer = reviewer
        self.log = log
        self.config = config or HarnessConfig()
        self.policy = policy or CheckpointPolicy(self.config.checkpoint)
        events = log.read_all()
        last_event_at = events[-1].ended_at if events else None
        self._last_closed_at: Optional[datetime] = last_event_at
        self._restore_policy(last_event_at)

    def _restore_policy(self, last_event_at: Optional[datetime]) -> None:
        """Carry the session count and clock over from earlier runs.

        Sessions are the claims recorded in item history since the last
        logged checkpoint; with no checkpoint yet, the clock starts at the
        first session ever claimed.
        """
        starts = self.scheduler.sessions_started_since(last_event_at)
        last_at = last_event_at or (starts[0] if starts else None)
        self.policy.restore(len(starts), last_at)

    def due(self) -> Optional[str]:
        return self.policy.due()

    def record_session(self) -> None:
        self.policy.record_session()

    def run(self, trigger: str) -> CheckpointEvent:
        """Review items closed since the last checkpoint.

        Each critical finding becomes a pending item at the configured
        finding priority (P0 by default) with discovered_from set to the
        checkpoint id.
        """
        event = CheckpointEvent(id=self.log.next_id(), trigger=trigger)
        reviewed = self.scheduler.closed_since(self._last_closed_at)
        event.reviewed_item_ids = [i.id for i in reviewed]

        console.print(f"\n[bold magenta]Checkpoint {event.id}[/bold magenta] "
                      f"({trigger}): reviewing {len(reviewed)} closed item(s)")

        by_repository: dict[str, list[WorkItem]] = {}
        for item in reviewed:
            by_repository.setdefault(item.repository or self.config.default_repository, []).append(item)

        for repository, items in by_repository.items():
            event.findings.extend(self.reviewer.review(items, repository))

        for finding in event.critical_findings:
            created = self.scheduler.add_discovered(
                WorkItem(
                    id=f"{event.id}-{finding.dimension.value}",
                    title=finding.summary,
                    description=finding.details or finding.summary,
                    priority=self.config.checkpoint_finding_priority,
                    labels=["checkpoint", finding.dimension.value],
                ),
                discovered_from=event.id,
                repository=finding.repository,
            )
            event.created_item_ids.append(created.id)
            console.print(f"[red]  Critical {finding.dimension.value} finding -> {created.id}[/red]")

        event.ended_at = datetime.now()
        self.log.append(event)
        self.policy.reset()
        if reviewed:
            self._last_closed_at = max(i.closed_at for i in reviewed if i.closed_at)
        return event
