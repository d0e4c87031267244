"""Session orchestration - executing one work item per session.

Handles:
- Baseline health checks and self-heal scheduling
- Capability selection from the item's complexity tier
- Agent session retry logic with exponential backoff
- Two-stage verification with repair loops
- Commit and close, discovered-work intake, checkpoints
"""

import asyncio
import random
import subprocess
import uuid
from pathlib import Path
from typing import Iterable, Optional

from rich.console import Console
from rich.panel import Panel

from ..baseline import BaselineHealthCheck
from ..checkpoint import CheckpointManager
from ..config import HarnessConfig, RetryConfig
from ..errors import BaselineBrokenError, UnrecoverableExecutionError, VerificationFailure
from ..git_manager import GitManager
from ..models import (
    ACTIVE_STATES,
    Changeset,
    ComplexityTier,
    ErrorCategory,
    ProgressEntry,
    SessionOutcome,
    SessionStatus,
    VerificationReport,
    WorkItem,
    WorkItemState,
)
from ..prompts import build_work_prompt, load_prompt_template
from ..protocols import ProgressLog, VersionControl
from ..routing import RepositoryRouter
from ..scheduler import SELF_HEAL_LABEL, WorkScheduler
from ..session import SessionManager, SessionResult
from ..verification import VerificationRunner


console = Console()

# Errors that end the item immediately instead of being retried
UNRECOVERABLE_CATEGORIES = (ErrorCategory.BILLING, ErrorCategory.AUTH)

STAGE_LABELS = {"local": "Local", "e2e": "End-to-end"}


class SessionOrchestrator:
    """Orchestrates the execution of work items.

    Dependencies are injected for testability:
    - WorkScheduler: the work graph and lifecycle
    - RepositoryRouter: owning repository of each item
    - SessionManager: creates agent sessions
    - VerificationRunner / BaselineHealthCheck: command checks
    - CheckpointManager: periodic reviews
    - ProgressLog: hand-off notes
    - VersionControl per repository (GitManager by default)
    """

    def __init__(
        self,
        config: HarnessConfig,
        project_path: Path,
        scheduler: WorkScheduler,
        router: RepositoryRouter,
        session_manager: SessionManager,
        verifier: VerificationRunner,
        baseline: BaselineHealthCheck,
        checkpoints: CheckpointManager,
        progress: ProgressLog,
        version_control: Optional[dict[str, VersionControl]] = None,
        capability_override: Optional[str] = None,
        project_name: str = "",
    ):
        self.config = config
        self.project_path = Path(project_path)
        self.scheduler = scheduler
        self.router = router
        self.session_manager = session_manager
        self.verifier = verifier
        self.baseline = baseline
        self.checkpoints = checkpoints
        self.progress = progress
        self.version_control: dict[str, VersionControl] = dict(version_control or {})
        self.capability_override = capability_override
        self.project_name = project_name or self.project_path.name

        self._baseline_checked = False
        self._stop_requested = False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Stop at the next session boundary."""
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def vcs_for(self, repository: str) -> VersionControl:
        if repository not in self.version_control:
            self.version_control[repository] = GitManager(self.router.path_for(repository))
        return self.version_control[repository]

    def _calculate_retry_delay(self, attempt: int, retry_config: RetryConfig) -> float:
        """Calculate delay for exponential backoff with jitter.

        Args:
            attempt: Current retry attempt (0-indexed)
            retry_config: Retry configuration

        Returns:
            Delay in seconds
        """
        # Exponential backoff: base_delay * (exponential_base ^ attempt)
        delay = retry_config.base_delay_seconds * (
            retry_config.exponential_base ** attempt
        )
        delay = min(delay, retry_config.max_delay_seconds)

        # Add jitter (+/- jitter_factor)
        jitter = delay * retry_config.jitter_factor
        delay += random.uniform(-jitter, jitter)

        return max(0, delay)

    def _should_retry(self, result: SessionResult, attempt: int, retry_config: RetryConfig) -> bool:
        """Determine if we should retry based on error category."""
        if attempt >= retry_config.max_retries:
            return False

        if result.success:
            return False

        if result.error_category and result.error_category in retry_config.retryable_categories:
            return True

        # For UNKNOWN errors, retry once
        if result.error_category == ErrorCategory.UNKNOWN and attempt == 0:
            return True

        return False

    def select_model(self, item: WorkItem) -> tuple[str, str]:
        """Return (capability, model) for an item: the override or its tier's capability."""
        tier = item.complexity or ComplexityTier.STANDARD
        capability = self.capability_override or self.config.profile_for(tier).capability
        return capability, self.config.model_for(capability)

    # ------------------------------------------------------------------
    # Baseline
    # ------------------------------------------------------------------

    def ensure_baseline(self) -> Optional[SessionOutcome]:
        """Check every repository's baseline health.

        A broken repository gets a self-heal item, scheduled ahead of all
        other work and never duplicated while one is open.

        Returns:
            A BASELINE_BROKEN outcome if a repository's self-heal item has
            already failed, else None.
        """
        for repository in self.router.repository_names:
            existing = self.scheduler.open_self_heal_item(repository)
            if existing is not None:
                if existing.state == WorkItemState.FAILED:
                    return SessionOutcome(
                        status=SessionStatus.BASELINE_BROKEN,
                        item_id=existing.id,
                        message=f"Self-heal item {existing.id} failed; re-open it after fixing {repository}",
                    )
                continue

            try:
                self.baseline.check(repository)
                console.print(f"[green]OK[/green] Baseline healthy: {repository}")
            except BaselineBrokenError as e:
                item = self.scheduler.add_discovered(
                    WorkItem(
                        id=f"self-heal-{repository}",
                        title=f"Repair baseline of {repository}",
                        description=(
                            f"The repository fails its baseline checks "
                            f"({', '.join(e.failed_checks)}). Make them pass.\n\n{e.details}"
                        ),
                        priority=self.config.self_heal_priority,
                        labels=[SELF_HEAL_LABEL],
                    ),
                    discovered_from="baseline",
                    repository=repository,
                )
                console.print(f"[red]Baseline broken:[/red] {e} -> scheduled {item.id}")
                self.progress.append_entry(ProgressEntry(
                    session_id="baseline",
                    item_id=item.id,
                    action="baseline_broken",
                    summary=str(e),
                ))

        self._baseline_checked = True
        return None

    # ------------------------------------------------------------------
    # Main entry points
    # ------------------------------------------------------------------

    async def run_next(
        self,
        repository: Optional[str] = None,
        exclude_repositories: Iterable[str] = (),
    ) -> SessionOutcome:
        """Run one orchestrator step.

        Runs the baseline check if needed, then a due checkpoint, otherwise
        the next runnable item.
        """
        if not self._baseline_checked:
            broken = self.ensure_baseline()
            if broken:
                return broken

        checkpoint = self.run_checkpoint_if_due()
        if checkpoint:
            return checkpoint

        item = self.scheduler.next_runnable(repository, exclude_repositories)
        if item is None:
            return SessionOutcome(status=SessionStatus.IDLE, message="No runnable work items")

        return await self.execute(item)

    def run_checkpoint_if_due(self) -> Optional[SessionOutcome]:
        trigger = self.checkpoints.due()
        if not trigger:
            return None

        event = self.checkpoints.run(trigger)
        self.progress.log_checkpoint(event)
        return SessionOutcome(
            status=SessionStatus.CHECKPOINT,
            checkpoint_id=event.id,
            discovered_item_ids=list(event.created_item_ids),
            message=(
                f"Checkpoint {event.id}: {len(event.findings)} finding(s), "
                f"{len(event.critical_findings)} critical"
            ),
        )

    async def run_concurrent(self, max_parallel: Optional[int] = None) -> list[SessionOutcome]:
        """Run items in parallel, at most one per repository at a time.

        Each round starts after the previous one has finished, so a due
        checkpoint holds new sessions without aborting running ones.
        """
        limit = max_parallel or len(self.router.repository_names)
        outcomes: list[SessionOutcome] = []

        while not self._stop_requested:
            if not self._baseline_checked:
                broken = self.ensure_baseline()
                if broken:
                    outcomes.append(broken)
                    break

            checkpoint = self.run_checkpoint_if_due()
            if checkpoint:
                outcomes.append(checkpoint)
                continue

            batch: list[WorkItem] = []
            busy: set[str] = set()
            while len(batch) < limit:
                item = self.scheduler.next_runnable(exclude_repositories=busy)
                if item is None:
                    break
                busy.add(item.repository or self.config.default_repository)
                batch.append(item)

            if not batch:
                break

            results = await asyncio.gather(*(self.execute(item) for item in batch))
            outcomes.extend(results)

            if any(o.status == SessionStatus.BASELINE_BROKEN for o in results):
                break
            if not self.session_manager.should_continue():
                break

        return outcomes

    # ------------------------------------------------------------------
    # Item execution
    # ------------------------------------------------------------------

    async def execute(self, item: WorkItem) -> SessionOutcome:
        """Execute one runnable item through verification to closure."""
        run_id = f"run_{uuid.uuid4().hex[:8]}"
        item = self.scheduler.claim(item.id, run_id)
        repository = self.router.route(item)
        capability, model = self.select_model(item)

        console.print(Panel(
            f"[bold green]Item:[/bold green] {item.title} [{item.priority_label}]\n"
            f"[dim]{item.description[:200]}[/dim]\n"
            f"[bold blue]Repository:[/bold blue] {repository}  "
            f"[bold blue]Tier:[/bold blue] {(item.complexity or ComplexityTier.STANDARD).value}  "
            f"[bold blue]Model:[/bold blue] {capability}",
            title="Work Session"
        ))

        try:
            outcome = await self._drive(item, repository, model)
        except UnrecoverableExecutionError as e:
            outcome = self._abort(item, f"Unrecoverable: {e}")
        except Exception as e:
            # Tool or environment fault outside the agent session
            outcome = self._abort(item, f"Unrecoverable: {type(e).__name__}: {e}")

        if item.has_label(SELF_HEAL_LABEL):
            # Re-check the baseline before the next item
            self._baseline_checked = False
            if outcome.status in (SessionStatus.FAILED, SessionStatus.CANCELLED):
                outcome.status = SessionStatus.BASELINE_BROKEN

        self.checkpoints.record_session()
        self.progress.log_outcome(outcome)
        self._print_outcome(outcome)
        return outcome

    def _abort(self, item: WorkItem, reason: str) -> SessionOutcome:
        """Fail an item whose execution raised, releasing its claim."""
        console.print(f"[red]{reason}[/red]")
        if self.scheduler.get(item.id).state in ACTIVE_STATES:
            self.scheduler.fail(item.id, reason)
        return SessionOutcome(status=SessionStatus.FAILED, item_id=item.id, message=reason)

    async def _drive(self, item: WorkItem, repository: str, model: str) -> SessionOutcome:
        budget = self.config.budget
        repair_report: Optional[VerificationReport] = None
        discovered: list[str] = []
        session_id: Optional[str] = None
        files_changed: list[str] = []

        while True:
            cancelled = self._cancelled(item.id, session_id, discovered)
            if cancelled:
                return cancelled

            result = await self._run_agent_with_retry(item, repository, model, repair_report)
            session_id = result.session_id
            files_changed = result.files_changed or files_changed
            discovered += self._intake_discovered(item, result)

            if not result.success:
                if result.error_category in UNRECOVERABLE_CATEGORIES:
                    raise UnrecoverableExecutionError(
                        f"{result.error_category.value} error: {result.error_message}"
                    )
                reason = f"Agent session failed: {result.error_message or 'unknown error'}"
                self.scheduler.fail(item.id, reason)
                return self._outcome(SessionStatus.FAILED, item, session_id, reason, discovered)

            open_deps = self.scheduler.open_dependencies(item.id)
            if open_deps:
                reason = f"Deferred behind discovered work: {', '.join(open_deps)}"
                self.scheduler.defer(item.id, reason)
                return self._outcome(SessionStatus.DEFERRED, item, session_id, reason, discovered)

            cancelled = self._cancelled(item.id, session_id, discovered)
            if cancelled:
                return cancelled

            try:
                # Stage 1: local verification
                await asyncio.to_thread(self.verifier.check_local, item)
                self.scheduler.mark_code_complete(item.id)
                # Stage 2: end-to-end verification, never skipped
                await asyncio.to_thread(self.verifier.check_e2e, item)
            except VerificationFailure as e:
                label = STAGE_LABELS[e.stage]
                limit = budget.max_local_attempts if e.stage == "local" else budget.max_e2e_attempts
                checks = ", ".join(e.failed_checks)
                attempts = self.scheduler.record_attempt(item.id, e.stage, f"{label} verification failed: {checks}")
                if attempts >= limit:
                    reason = f"{label} verification failed {attempts} time(s): {checks}"
                    self.scheduler.fail(item.id, reason)
                    return self._outcome(SessionStatus.FAILED, item, session_id, reason, discovered)
                console.print(f"[yellow]{label} verification failed ({attempts}/{limit}), repairing[/yellow]")
                if e.stage == "e2e":
                    self.scheduler.repair(item.id, "end-to-end repair")
                repair_report = e.report
                continue

            self.scheduler.verify(item.id)
            break

        return await self._commit_and_close(item, repository, session_id, files_changed, discovered)

    def _cancelled(
        self,
        item_id: str,
        session_id: Optional[str],
        discovered: list[str],
    ) -> Optional[SessionOutcome]:
        """Honor a pending cancellation at a safe stopping point."""
        reason = self.scheduler.cancellation_requested(item_id)
        if reason is None:
            return None
        message = f"Cancelled: {reason}"
        self.scheduler.fail(item_id, message)
        return SessionOutcome(
            status=SessionStatus.CANCELLED,
            item_id=item_id,
            session_id=session_id,
            message=message,
            discovered_item_ids=discovered,
        )

    async def _commit_and_close(
        self,
        item: WorkItem,
        repository: str,
        session_id: Optional[str],
        files_changed: list[str],
        discovered: list[str],
    ) -> SessionOutcome:
        if not self.config.auto_commit:
            reason = "Verified; auto-commit disabled, close with a commit reference"
            self.scheduler.record_failure_reason(item.id, reason)
            return self._outcome(SessionStatus.VERIFIED, item, session_id, reason, discovered)

        vcs = self.vcs_for(repository)
        try:
            changeset = Changeset(
                item_id=item.id,
                title=item.title,
                repository=repository,
                summary=f"Verified by work harness session {session_id}",
                files=files_changed,
            )
            commit_ref = await asyncio.to_thread(vcs.commit, changeset)
            error = None
        except (subprocess.CalledProcessError, OSError) as e:
            commit_ref = None
            error = str(e)

        if not commit_ref:
            reason = f"Verified but no commit reference was produced{': ' + error if error else ''}"
            self.scheduler.record_failure_reason(item.id, reason)
            return self._outcome(SessionStatus.VERIFIED, item, session_id, reason, discovered)

        self.scheduler.close(item.id, commit_ref)
        outcome = self._outcome(SessionStatus.CLOSED, item, session_id, f"Closed {item.title}", discovered)
        outcome.commit_ref = commit_ref
        return outcome

    def _outcome(
        self,
        status: SessionStatus,
        item: WorkItem,
        session_id: Optional[str],
        message: str,
        discovered: list[str],
    ) -> SessionOutcome:
        return SessionOutcome(
            status=status,
            item_id=item.id,
            session_id=session_id,
            message=message,
            discovered_item_ids=list(discovered),
        )

    def _intake_discovered(self, item: WorkItem, result: SessionResult) -> list[str]:
        """Feed work reported by the agent into the scheduler."""
        created = []
        for work in result.discovered_work:
            new_item = self.scheduler.add_discovered(
                work,
                discovered_from=result.session_id,
                blocks=[item.id] if work.blocks_current else [],
            )
            created.append(new_item.id)
            console.print(f"[cyan]Discovered work:[/cyan] {new_item.id} ({new_item.priority_label})")
        return created

    async def _run_agent(
        self,
        item: WorkItem,
        repository: str,
        model: str,
        repair_report: Optional[VerificationReport],
    ) -> SessionResult:
        profile = self.config.profile_for(item.complexity or ComplexityTier.STANDARD)
        work_dir = self.router.path_for(repository)
        session = self.session_manager.create_session(
            work_dir, model, profile.max_turns, profile.session_timeout_seconds
        )

        template = load_prompt_template("work", self.project_path, self.config.state_dir)
        prompt = build_work_prompt(
            template,
            session_id=session.session_id,
            project_name=self.project_name,
            item=self.scheduler.get(item.id),
            repository=repository,
            repo=self.router.repository(repository),
            work_dir=work_dir,
            progress_context=self.progress.read_recent(100),
            repair_report=repair_report,
        )

        self.progress.log_session_start(session.session_id, item, model)
        return await session.run(prompt)

    async def _run_agent_with_retry(
        self,
        item: WorkItem,
        repository: str,
        model: str,
        repair_report: Optional[VerificationReport],
    ) -> SessionResult:
        """Run an agent session with automatic retry on transient errors."""
        retry_config = self.config.retry
        result: Optional[SessionResult] = None

        for attempt in range(retry_config.max_retries + 1):
            if attempt > 0 and result is not None:
                delay = self._calculate_retry_delay(attempt - 1, retry_config)
                category = result.error_category.value if result.error_category else "unknown"

                console.print(f"\n[yellow]Retry {attempt}/{retry_config.max_retries}[/yellow] "
                              f"- Error: {category} - Waiting {delay:.1f}s...")
                self.progress.append_entry(ProgressEntry(
                    session_id=result.session_id,
                    item_id=item.id,
                    action="retry_attempt",
                    summary=f"Retry attempt {attempt} after {category} error, waiting {delay:.1f}s"
                ))
                await asyncio.sleep(delay)

            result = await self._run_agent(item, repository, model, repair_report)

            if not self._should_retry(result, attempt, retry_config):
                return result

        return result

    def _print_outcome(self, outcome: SessionOutcome) -> None:
        colors = {
            SessionStatus.CLOSED: "green",
            SessionStatus.VERIFIED: "yellow",
            SessionStatus.DEFERRED: "cyan",
            SessionStatus.FAILED: "red",
            SessionStatus.BASELINE_BROKEN: "red",
            SessionStatus.CANCELLED: "yellow",
        }
        color = colors.get(outcome.status, "white")
        console.print(f"[{color}]{outcome.status.value.upper()}[/{color}] {outcome.item_id}: {outcome.message}")
