"""CLI interface for the work harness."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .checkpoint import CheckpointLog
from .classifier import ComplexityClassifier
from .config import load_config
from .errors import HarnessError
from .harness import WorkHarness
from .issue_tracker import JsonIssueTracker
from .loading import load_spec, topological_order, validate_spec_path
from .models import ComplexityTier, SessionOutcome, SessionStatus, WorkItemState
from .routing import RepositoryRouter

console = Console()

# Windows-compatible symbols (cp1252 doesn't support Unicode checkmarks)
if sys.platform == "win32":
    SYM_OK = "[OK]"
    SYM_FAIL = "[X]"
else:
    SYM_OK = "✓"
    SYM_FAIL = "✗"

TIER_CHOICES = [tier.value for tier in ComplexityTier]

STATE_COLORS = {
    WorkItemState.PENDING: "white",
    WorkItemState.RUNNABLE: "cyan",
    WorkItemState.IN_PROGRESS: "yellow",
    WorkItemState.CODE_COMPLETE: "yellow",
    WorkItemState.VERIFIED: "blue",
    WorkItemState.CLOSED: "green",
    WorkItemState.BLOCKED: "red",
    WorkItemState.FAILED: "red",
    WorkItemState.CANCELLED: "dim",
}

project_option = click.option(
    '--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.',
    help='Project directory (default: current directory)'
)


def _tier(value: Optional[str]) -> Optional[ComplexityTier]:
    return ComplexityTier(value) if value else None


def _harness(project_path: str, **kwargs) -> WorkHarness:
    try:
        return WorkHarness(project_path, **kwargs)
    except (HarnessError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _run(coro):
    """Run a harness coroutine, turning harness errors into a non-zero exit."""
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except HarnessError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _exit_for(outcomes: list[SessionOutcome]) -> None:
    if any(o.status == SessionStatus.BASELINE_BROKEN for o in outcomes):
        sys.exit(2)


def _items_table(title: str, items, scheduler=None) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("State")
    table.add_column("Priority", justify="right")
    table.add_column("Tier")
    table.add_column("Repository")
    table.add_column("Depends on")

    for item in items:
        color = STATE_COLORS.get(item.state, "white")
        priority = item.priority_label
        if scheduler is not None and scheduler.effective_priority(item) != item.priority:
            priority += f" (P{scheduler.effective_priority(item)})"
        table.add_row(
            item.id,
            item.title,
            f"[{color}]{item.state.value}[/{color}]",
            priority,
            item.complexity.value if item.complexity else "-",
            item.repository or "-",
            ", ".join(item.depends_on) or "-",
        )
    return table


@click.group()
@click.version_option()
def main():
    """Work Harness - spec-driven multi-session coding agent runs."""
    pass


@main.command()
@click.argument('spec_file', type=click.Path(exists=True, dir_okay=False))
@project_option
@click.option('--complexity', type=click.Choice(TIER_CHOICES), help='Force a complexity tier for every item')
@click.option('--capability', help='Force a model capability (e.g. opus, sonnet, haiku)')
@click.option('--max-sessions', type=int, help='Maximum agent sessions before stopping')
@click.option('--parallel', default=1, help='Run up to N repositories in parallel')
@click.option('--dry-run', is_flag=True, help='Show the schedule without running sessions')
def start(
    spec_file: str,
    project_path: str,
    complexity: Optional[str],
    capability: Optional[str],
    max_sessions: Optional[int],
    parallel: int,
    dry_run: bool,
):
    """Load a work spec and run sessions until nothing is runnable.

    SPEC_FILE may be YAML, JSON or Markdown. Items already in the issue
    store keep their state, so re-running resumes where the last run stopped.

    \b
    Examples:
        harness start ./spec.yaml
        harness start ./spec.md --complexity complex --max-sessions 5
        harness start ./spec.yaml --dry-run
    """
    if dry_run:
        state_dir = Path(project_path).resolve() / load_config(project_path).state_dir
        harness = _harness(project_path, tracker=JsonIssueTracker(state_dir, autosave=False))
        harness.set_overrides(_tier(complexity), capability)
        try:
            spec = harness.load(spec_file)
        except HarnessError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)
        order = {item.id: i for i, item in enumerate(topological_order(spec.items))}
        items = sorted(harness.scheduler.list_items(), key=lambda i: order.get(i.id, len(order)))
        console.print(_items_table(f"Schedule: {spec.title}", items, harness.scheduler))
        console.print("[yellow]DRY RUN - no sessions started, nothing saved[/yellow]")
        return

    harness = _harness(project_path)
    outcomes = _run(harness.start_from_spec(
        spec_file,
        complexity=_tier(complexity),
        capability=capability,
        max_sessions=max_sessions,
        parallel=parallel,
    ))
    _exit_for(outcomes)


@main.command('run')
@project_option
@click.option('--max-sessions', type=int, help='Maximum agent sessions before stopping')
@click.option('--parallel', default=1, help='Run up to N repositories in parallel')
def run_cmd(project_path: str, max_sessions: Optional[int], parallel: int):
    """Resume work on the items already in the issue store."""
    harness = _harness(project_path)
    outcomes = _run(harness.run(max_sessions=max_sessions, parallel=parallel))
    _exit_for(outcomes)


@main.command('work-on')
@click.argument('item_id')
@project_option
@click.option('--capability', help='Force a model capability')
def work_on(item_id: str, project_path: str, capability: Optional[str]):
    """Run one session on a specific runnable item."""
    harness = _harness(project_path)
    harness.set_overrides(capability=capability)
    outcome = _run(harness.work_on(item_id))
    if outcome.status not in (SessionStatus.CLOSED, SessionStatus.VERIFIED):
        sys.exit(1)


@main.command('create-and-work')
@click.argument('description')
@project_option
@click.option('--title', help='Item title (default: first line of the description)')
@click.option('--priority', default=2, help='Priority (0 = most urgent)')
@click.option('--label', 'labels', multiple=True, help='Label (can specify multiple)')
def create_and_work(description: str, project_path: str, title: Optional[str], priority: int, labels: tuple):
    """Create an ad-hoc work item and immediately run a session on it."""
    harness = _harness(project_path)
    outcome = _run(harness.create_and_work(description, priority=priority, labels=labels, title=title))
    if outcome.status not in (SessionStatus.CLOSED, SessionStatus.VERIFIED):
        sys.exit(1)


@main.command('list')
@project_option
@click.option('--state', type=click.Choice([s.value for s in WorkItemState]), help='Only items in this state')
@click.option('--label', help='Only items with this label')
def list_items(project_path: str, state: Optional[str], label: Optional[str]):
    """Show all work items and their state."""
    harness = _harness(project_path)
    scheduler = harness.scheduler
    items = scheduler.list_items(state=WorkItemState(state) if state else None, label=label)

    if not items:
        console.print("[yellow]No work items. Run 'harness start SPEC' first.[/yellow]")
        return

    console.print(_items_table(f"Work items: {harness.project_path.name}", items, scheduler))

    summary = scheduler.progress_summary()
    by_state = summary["by_state"]
    console.print(f"\n[green]Closed:[/green] {summary['closed']}/{summary['total']} ({summary['percent_closed']}%)  "
                  f"[cyan]Runnable:[/cyan] {by_state['runnable']}  "
                  f"[red]Blocked:[/red] {by_state['blocked']}  "
                  f"[red]Failed:[/red] {by_state['failed']}")


@main.command()
@project_option
def blocked(project_path: str):
    """Show blocked and failed items with what blocks them."""
    harness = _harness(project_path)
    scheduler = harness.scheduler
    stuck = scheduler.list_items(state=WorkItemState.BLOCKED) + scheduler.list_items(state=WorkItemState.FAILED)

    if not stuck:
        console.print(f"[green]{SYM_OK}[/green] Nothing is blocked")
        return

    table = Table(title="Blocked work")
    table.add_column("ID", style="cyan")
    table.add_column("State")
    table.add_column("Blocked by")
    table.add_column("Reason")
    for item in stuck:
        table.add_row(
            item.id,
            f"[red]{item.state.value}[/red]",
            ", ".join(scheduler.blocking_dependencies(item.id)) or "-",
            item.failure_reason or "-",
        )
    console.print(table)


@main.command()
@project_option
@click.option('--lines', default=50, help='Number of recent lines to show')
def progress(project_path: str, lines: int):
    """Show recent progress from the progress file."""
    harness = _harness(project_path)
    content = harness.progress.read_recent(lines)

    if not content:
        console.print("[yellow]No progress file yet. Run 'harness start' to begin.[/yellow]")
        return
    console.print(content)


@main.command()
@click.argument('spec_file', type=click.Path(exists=True, dir_okay=False))
@project_option
@click.option('--complexity', type=click.Choice(TIER_CHOICES), help='Force a complexity tier')
@click.option('--verbose', '-v', is_flag=True, help='Show the reasons behind each tier')
def classify(spec_file: str, project_path: str, complexity: Optional[str], verbose: bool):
    """Classify every item of a spec without running anything."""
    config = load_config(project_path)
    try:
        spec = RepositoryRouter(config, project_path).fan_out(load_spec(spec_file))
    except HarnessError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    classifier = ComplexityClassifier(config, command_override=_tier(complexity))

    table = Table(title=f"Complexity: {spec.title}")
    table.add_column("ID", style="cyan")
    table.add_column("Tier")
    table.add_column("Score", justify="right")
    table.add_column("Model")
    if verbose:
        table.add_column("Reasons")

    for item in spec.items:
        info = classifier.explain(item, spec.complexity)
        tier = info["tier"] + (f" ({info['override_source']} override)" if info["overridden"] else "")
        row = [item.id, tier, str(info["complexity_score"]), info["capability"]]
        if verbose:
            row.append("\n".join(info["reasons"]))
        table.add_row(*row)

    console.print(table)
    console.print(f"\n[bold]Spec tier:[/bold] {classifier.classify_spec(spec).value}")


@main.command()
@click.argument('spec_file', type=click.Path(exists=True, dir_okay=False))
def validate(spec_file: str):
    """Check that a spec parses, resolves and has no dependency cycle."""
    is_valid, message = validate_spec_path(spec_file)
    if not is_valid:
        console.print(f"[red]{SYM_FAIL} Invalid spec:[/red] {message}")
        sys.exit(1)
    console.print(f"[green]{SYM_OK}[/green] {message}")


@main.command()
@click.argument('item_id')
@project_option
@click.option('--reason', default='cancelled by operator', help='Reason recorded on the item')
def cancel(item_id: str, project_path: str, reason: str):
    """Cancel a work item. Its dependents become blocked."""
    harness = _harness(project_path)
    try:
        cancelled = harness.cancel(item_id, reason)
    except HarnessError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    if cancelled:
        console.print(f"[green]{SYM_OK}[/green] Cancelled {item_id}")
    else:
        console.print(f"[yellow]{item_id} is in flight; it will stop at the next safe point[/yellow]")


@main.command()
@click.argument('item_id')
@project_option
def reopen(item_id: str, project_path: str):
    """Re-open a failed item so it can be scheduled again."""
    harness = _harness(project_path)
    try:
        harness.reopen(item_id)
    except HarnessError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"[green]{SYM_OK}[/green] Re-opened {item_id}")


@main.command()
@click.argument('item_id')
@click.argument('commit_ref')
@project_option
def close(item_id: str, commit_ref: str, project_path: str):
    """Close a verified item with the commit that delivered it."""
    harness = _harness(project_path)
    try:
        harness.close(item_id, commit_ref)
    except HarnessError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"[green]{SYM_OK}[/green] Closed {item_id} at {commit_ref}")


@main.command()
@project_option
def checkpoints(project_path: str):
    """Show past checkpoint reviews."""
    config = load_config(project_path)
    events = CheckpointLog(Path(project_path) / config.state_dir).read_all()

    if not events:
        console.print("[yellow]No checkpoints yet.[/yellow]")
        return

    table = Table(title="Checkpoints")
    table.add_column("ID", style="cyan")
    table.add_column("Trigger")
    table.add_column("Reviewed", justify="right")
    table.add_column("Findings", justify="right")
    table.add_column("Critical", justify="right")
    table.add_column("Created items")
    for event in events:
        table.add_row(
            event.id,
            event.trigger,
            str(len(event.reviewed_item_ids)),
            str(len(event.findings)),
            str(len(event.critical_findings)),
            ", ".join(event.created_item_ids) or "-",
        )
    console.print(table)


@main.command()
@project_option
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', default=8000, help='Port to listen on')
def dashboard(project_path: str, host: str, port: int):
    """Start a read-only dashboard server over the issue store.

    Example:
        harness dashboard -p ./my-project --port 8000
    """
    from .api import run_dashboard

    path = Path(project_path).resolve()
    console.print(f"[bold]Starting Work Harness Dashboard[/bold]")
    console.print(f"Project: {path}")
    console.print(f"API: http://{host}:{port}/api/")
    console.print(f"Docs: http://{host}:{port}/docs")
    console.print(f"\nPress Ctrl+C to stop\n")

    try:
        run_dashboard(path, host=host, port=port)
    except KeyboardInterrupt:
        console.print("\n[yellow]Dashboard stopped[/yellow]")


if __name__ == '__main__':
    main()
