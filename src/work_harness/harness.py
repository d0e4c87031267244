"""Main harness for multi-session autonomous work.

This is the top-level engine that:
1. Loads a work spec into the scheduler (resuming from the issue store)
2. Checks repository baselines
3. Loops through sessions until no runnable work remains
4. Stops gracefully at a session boundary on SIGINT/SIGTERM
"""

import signal
import sys
from pathlib import Path
from typing import Any, Iterable, Optional

from rich.console import Console
from rich.panel import Panel

from .baseline import BaselineHealthCheck
from .checkpoint import CheckpointLog, CheckpointManager, CommandCheckpointReviewer
from .classifier import ComplexityClassifier
from .config import HarnessConfig, load_config
from .issue_tracker import JsonIssueTracker
from .loading import load_spec
from .loading.normalize import slugify, unique_id
from .models import (
    ComplexityTier,
    SessionOutcome,
    SessionStatus,
    WorkItem,
    WorkItemState,
    WorkSpec,
)
from .orchestration import SessionOrchestrator
from .progress import ProgressTracker
from .protocols import CheckpointReviewer, CommandExecutor, IssueTracker, VersionControl
from .routing import RepositoryRouter
from .scheduler import WorkScheduler
from .session import SessionFactory, SessionManager
from .verification import CommandRunner, VerificationRunner


console = Console()

# Outcomes after which the run loop stops
STOP_STATUSES = (SessionStatus.IDLE, SessionStatus.BASELINE_BROKEN)


class WorkHarness:
    """Wires the tracker, scheduler, classifier, router and orchestrator together.

    Every collaborator can be injected; defaults are the JSON issue store,
    git, shell commands and the coding-agent CLI.
    """

    def __init__(
        self,
        project_path: str | Path,
        config: Optional[HarnessConfig] = None,
        *,
        tracker: Optional[IssueTracker] = None,
        session_factory: Optional[SessionFactory] = None,
        executor: Optional[CommandExecutor] = None,
        reviewer: Optional[CheckpointReviewer] = None,
        version_control: Optional[dict[str, VersionControl]] = None,
    ):
        self.project_path = Path(project_path).resolve()
        self.config = config or load_config(self.project_path)
        self.state_dir = self.project_path / self.config.state_dir

        self.router = RepositoryRouter(self.config, self.project_path)
        self.tracker = tracker if tracker is not None else JsonIssueTracker(self.state_dir)
        self.classifier = ComplexityClassifier(self.config)
        self.scheduler = WorkScheduler(self.tracker, self.config, self.classifier, self.router)
        self.progress = ProgressTracker(
            self.project_path,
            self.config.progress_file,
            rotation_threshold_kb=self.config.progress_rotation_threshold_kb,
            keep_entries=self.config.progress_keep_entries
        )

        executor = executor if executor is not None else CommandRunner()
        self.sessions = SessionManager(self.config, session_factory)
        self.checkpoint_log = CheckpointLog(self.state_dir)
        self.checkpoints = CheckpointManager(
            self.scheduler,
            reviewer if reviewer is not None else CommandCheckpointReviewer(self.router, executor),
            self.checkpoint_log,
            self.config,
        )
        self.orchestrator = SessionOrchestrator(
            config=self.config,
            project_path=self.project_path,
            scheduler=self.scheduler,
            router=self.router,
            session_manager=self.sessions,
            verifier=VerificationRunner(self.router, executor),
            baseline=BaselineHealthCheck(self.router, executor),
            checkpoints=self.checkpoints,
            progress=self.progress,
            version_control=version_control,
            project_name=self.project_path.name,
        )

    # ------------------------------------------------------------------
    # Overrides and signals
    # ------------------------------------------------------------------

    def set_overrides(
        self,
        complexity: Optional[ComplexityTier] = None,
        capability: Optional[str] = None,
    ) -> None:
        """Apply command-line tier and capability overrides."""
        self.classifier.command_override = complexity
        self.orchestrator.capability_override = capability

    def _handle_shutdown_signal(self, signum: int, frame: Any) -> None:
        signal_name = signal.Signals(signum).name
        console.print(f"\n[yellow]Shutdown signal received ({signal_name}) - "
                      f"stopping after the current session...[/yellow]")
        self.orchestrator.request_stop()

    def _setup_signal_handlers(self) -> dict:
        """Install graceful-shutdown handlers. Returns the previous handlers."""
        previous = {signal.SIGINT: signal.signal(signal.SIGINT, self._handle_shutdown_signal)}
        # SIGTERM is not available on Windows
        if sys.platform != "win32":
            previous[signal.SIGTERM] = signal.signal(signal.SIGTERM, self._handle_shutdown_signal)
        return previous

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def load(self, spec_path: str | Path) -> WorkSpec:
        """Load a spec into the scheduler.

        Raises:
            SpecFormatError: If the spec is invalid; nothing is scheduled.
        """
        spec = self.router.fan_out(load_spec(spec_path))
        created = self.scheduler.load_spec(spec)

        tier = self.classifier.classify_spec(spec)
        console.print(
            f"Loaded [bold]{spec.title}[/bold]: {len(spec.items)} item(s), "
            f"{len(created)} new, spec tier {tier.value}"
        )
        return spec

    async def start_from_spec(
        self,
        spec_path: str | Path,
        complexity: Optional[ComplexityTier] = None,
        capability: Optional[str] = None,
        max_sessions: Optional[int] = None,
        parallel: int = 1,
    ) -> list[SessionOutcome]:
        """Load a spec and work through it."""
        self.set_overrides(complexity, capability)
        spec = self.load(spec_path)
        self.progress.initialize(spec.title)
        return await self.run(max_sessions=max_sessions, parallel=parallel)

    async def run(
        self,
        max_sessions: Optional[int] = None,
        parallel: int = 1,
        install_signal_handlers: bool = True,
    ) -> list[SessionOutcome]:
        """Run sessions until nothing is runnable, the cap is hit or a stop is requested."""
        if max_sessions is not None:
            self.config.max_sessions = max_sessions

        previous_handlers = self._setup_signal_handlers() if install_signal_handlers else {}
        outcomes: list[SessionOutcome] = []

        console.print(Panel(
            f"[bold]Work Harness[/bold]\n"
            f"Project: {self.project_path.name}",
            title="Harness"
        ))

        try:
            recovered = self.scheduler.recover_interrupted()
            if recovered:
                console.print(f"[yellow]Recovered interrupted items:[/yellow] {', '.join(recovered)}")

            if parallel > 1:
                outcomes = await self.orchestrator.run_concurrent(parallel)
            else:
                while not self.orchestrator.stop_requested and self.sessions.should_continue():
                    outcome = await self.orchestrator.run_next()
                    outcomes.append(outcome)
                    if outcome.status in STOP_STATUSES:
                        break
        finally:
            for signum, handler in previous_handlers.items():
                signal.signal(signum, handler)

        self._print_summary(outcomes)
        return outcomes

    async def work_on(self, item_id: str) -> SessionOutcome:
        """Execute one specific runnable item (after its repository's self-heal, if any)."""
        item = self.scheduler.get(item_id)

        broken = self.orchestrator.ensure_baseline()
        if broken:
            return broken

        # A due checkpoint still holds single-item runs
        self.orchestrator.run_checkpoint_if_due()

        self_heal = self.scheduler.open_self_heal_item(item.repository or self.config.default_repository)
        if self_heal is not None and self_heal.id != item_id:
            if self_heal.state != WorkItemState.RUNNABLE:
                return SessionOutcome(
                    status=SessionStatus.BASELINE_BROKEN,
                    item_id=self_heal.id,
                    message=f"Repository baseline is broken; {self_heal.id} must be finished first",
                )
            outcome = await self.orchestrator.execute(self_heal)
            if outcome.status != SessionStatus.CLOSED:
                return outcome
            self.orchestrator.run_checkpoint_if_due()

        return await self.orchestrator.execute(self.scheduler.get(item_id))

    async def create_and_work(
        self,
        description: str,
        priority: int = 2,
        labels: Iterable[str] = (),
        title: Optional[str] = None,
    ) -> SessionOutcome:
        """Create an ad-hoc item and immediately work on it."""
        title = title or description.strip().splitlines()[0][:80]
        existing = {i.id for i in self.scheduler.list_items()}
        item = self.scheduler.add_item(WorkItem(
            id=unique_id(slugify(title), existing),
            title=title,
            description=description,
            priority=priority,
            labels=list(labels),
        ))
        self.progress.initialize(self.project_path.name)
        return await self.work_on(item.id)

    def cancel(self, item_id: str, reason: str = "cancelled by operator") -> bool:
        return self.scheduler.cancel(item_id, reason)

    def reopen(self, item_id: str) -> None:
        self.scheduler.reopen(item_id)

    def close(self, item_id: str, commit_ref: str) -> None:
        self.scheduler.close(item_id, commit_ref)

    def _print_summary(self, outcomes: list[SessionOutcome]) -> None:
        summary = self.scheduler.progress_summary()
        by_state = summary["by_state"]
        console.print(Panel(
            f"[bold]Steps run:[/bold] {len(outcomes)}\n"
            f"[bold]Closed:[/bold] {summary['closed']}/{summary['total']} "
            f"({summary['percent_closed']}%)\n"
            f"[bold]Failed:[/bold] {by_state['failed']}  "
            f"[bold]Blocked:[/bold] {by_state['blocked']}  "
            f"[bold]Verified (uncommitted):[/bold] {by_state['verified']}",
            title="Summary"
        ))


async def run_harness(
    project_path: str,
    spec_path: str,
    config: Optional[HarnessConfig] = None
) -> list[SessionOutcome]:
    """Convenience function to run the harness on a spec."""
    harness = WorkHarness(project_path, config)
    return await harness.start_from_spec(spec_path)
