"""Two-stage verification of work items.

- Local: the owning repository's test, type-check and lint commands
- End-to-end: the repository's e2e command plus each acceptance
  criterion's verification command

Both stages must pass before an item is verified; end-to-end is never
skipped, though a stage with nothing configured passes trivially.
"""

import os
import subprocess
import time
from pathlib import Path
from typing import Optional

from rich.console import Console

from .config import RepositoryConfig
from .errors import VerificationFailure
from .models import VerificationReport, VerificationResult, WorkItem
from .protocols import CommandExecutor
from .routing import RepositoryRouter


console = Console()

# Output kept per failing command
MAX_OUTPUT_CHARS = 1000


class CommandRunner:
    """Runs shell commands and turns the exit status into a VerificationResult."""

    def __init__(self, env: Optional[dict] = None):
        self.env = env

    def run_command(
        self,
        name: str,
        command: Optional[str],
        timeout: int,
        cwd: Optional[Path] = None,
    ) -> VerificationResult:
        """Run a shell command and return result."""
        if not command:
            return VerificationResult(
                name=name,
                passed=True,
                skipped=True,
                message="Not configured"
            )

        start_time = time.time()

        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self.env or os.environ
            )
        except subprocess.TimeoutExpired:
            return VerificationResult(
                name=name,
                passed=False,
                message=f"Timed out after {timeout} seconds",
                duration_seconds=time.time() - start_time
            )
        except OSError as e:
            return VerificationResult(
                name=name,
                passed=False,
                message=f"Could not run command: {e}",
                duration_seconds=time.time() - start_time
            )

        duration = time.time() - start_time
        if result.returncode == 0:
            return VerificationResult(
                name=name,
                passed=True,
                message="Passed",
                duration_seconds=duration
            )

        output = (result.stdout + result.stderr).strip()
        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:MAX_OUTPUT_CHARS] + "\n... (truncated)"

        return VerificationResult(
            name=name,
            passed=False,
            message=f"Failed (exit code {result.returncode})",
            duration_seconds=duration,
            details=output
        )


def local_checks(repo: RepositoryConfig) -> list[tuple[str, Optional[str]]]:
    return [
        ("Unit Tests", repo.test_command),
        ("Type Check", repo.type_check_command),
        ("Lint Check", repo.lint_command),
    ]


class VerificationRunner:
    """Runs the verification stages for an item in its owning repository."""

    def __init__(self, router: RepositoryRouter, executor: Optional[CommandExecutor] = None):
        self.router = router
        self.executor = executor if executor is not None else CommandRunner()

    def _run(self, item: WorkItem, stage: str, checks: list[tuple[str, Optional[str]]]) -> VerificationReport:
        repo_name = self.router.route(item)
        repo = self.router.repository(repo_name)
        cwd = self.router.path_for(repo_name)

        results = [
            self.executor.run_command(name, command, repo.command_timeout_seconds, cwd=cwd)
            for name, command in checks
        ]
        passed = all(r.passed or r.skipped for r in results)

        for r in results:
            if not r.passed and not r.skipped:
                console.print(f"[red]  {stage}: {r.name} - {r.message}[/red]")

        return VerificationReport(item_id=item.id, stage=stage, passed=passed, results=results)

    def verify_local(self, item: WorkItem) -> VerificationReport:
        """Run the owning repository's test, type-check and lint commands."""
        repo = self.router.repository(self.router.route(item))
        return self._run(item, "local", local_checks(repo))

    def verify_e2e(self, item: WorkItem) -> VerificationReport:
        """Run the repository's e2e command and every acceptance check."""
        repo = self.router.repository(self.router.route(item))
        checks: list[tuple[str, Optional[str]]] = [("E2E Tests", repo.e2e_command)]
        for i, criterion in enumerate(item.acceptance_criteria, start=1):
            if criterion.verify:
                checks.append((f"Acceptance {i}: {criterion.description}", criterion.verify))
        return self._run(item, "e2e", checks)

    def check_local(self, item: WorkItem) -> VerificationReport:
        """Run local verification.

        Raises:
            VerificationFailure: If any configured check fails.
        """
        report = self.verify_local(item)
        if not report.passed:
            raise VerificationFailure(item.id, "local", report)
        return report

    def check_e2e(self, item: WorkItem) -> VerificationReport:
        report = self.verify_e2e(item)
        if not report.passed:
            raise VerificationFailure(item.id, "e2e", report)
        return report
