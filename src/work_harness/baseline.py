"""Baseline health check of target repositories.

Runs before the first session of a run so that work never starts on top of
a repository that is already broken.
"""

from typing import Optional

from .errors import BaselineBrokenError
from .models import VerificationReport
from .protocols import CommandExecutor
from .routing import RepositoryRouter
from .verification import CommandRunner, local_checks


class BaselineHealthCheck:
    """Builds and tests a repository before any agent touches it."""

    def __init__(self, router: RepositoryRouter, executor: Optional[CommandExecutor] = None):
        self.router = router
        self.executor = executor if executor is not None else CommandRunner()

    def run(self, repository: str) -> VerificationReport:
        """Run build, test, type-check and lint commands for a repository."""
        repo = self.router.repository(repository)
        cwd = self.router.path_for(repository)
        checks = [("Build", repo.build_command)] + local_checks(repo)

        results = [
            self.executor.run_command(name, command, repo.command_timeout_seconds, cwd=cwd)
            for name, command in checks
        ]
        return VerificationReport(
            item_id=repository,
            stage="baseline",
            passed=all(r.passed or r.skipped for r in results),
            results=results,
        )

    def check(self, repository: str) -> VerificationReport:
        """Run the baseline check.

        Raises:
            BaselineBrokenError: If any configured check fails.
        """
        report = self.run(repository)
        if not report.passed:
            raise BaselineBrokenError(repository, report.failed_checks, report.failure_summary())
        return report
