"""Exception taxonomy for the harness.

Spec-level errors abort a run; item-level errors are isolated to the item
and its dependents.
"""

from typing import Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import VerificationReport


class HarnessError(Exception):
    """Base class for all harness errors."""


class SpecFormatError(HarnessError):
    """Malformed, unresolved or cyclic work specification."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class BaselineBrokenError(HarnessError):
    """The target repository was unhealthy before any session started."""

    def __init__(self, repository: str, failed_checks: Sequence[str], details: str = ""):
        self.repository = repository
        self.failed_checks = list(failed_checks)
        self.details = details
        super().__init__(
            f"Baseline health check failed for '{repository}': "
            f"{', '.join(self.failed_checks)}"
        )


class VerificationFailure(HarnessError):
    """Local or end-to-end verification did not pass."""

    def __init__(self, item_id: str, stage: str, report: Optional["VerificationReport"] = None):
        self.item_id = item_id
        self.stage = stage
        self.report = report
        failed = ", ".join(report.failed_checks) if report else "unknown"
        super().__init__(f"{stage} verification failed for {item_id}: {failed}")

    @property
    def failed_checks(self) -> list[str]:
        return self.report.failed_checks if self.report else []


class UnrecoverableExecutionError(HarnessError):
    """Tool or environment fault that needs manual intervention."""


class InvalidTransitionError(HarnessError):
    """A state transition not allowed by the lifecycle."""

    def __init__(self, item_id: str, from_state: str, to_state: str, allowed: Sequence[str] = ()):
        self.item_id = item_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition for {item_id}: '{from_state}' -> '{to_state}'. "
            f"Allowed from '{from_state}': {sorted(allowed)}"
        )


class ItemBusyError(HarnessError):
    """A second session tried to claim an item that already has one."""

    def __init__(self, item_id: str, session_id: str):
        self.item_id = item_id
        self.session_id = session_id
        super().__init__(f"Item {item_id} is already held by session {session_id}")


class UnknownItemError(HarnessError, KeyError):
    """No work item with the given id."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Work item not found: {item_id}")

    def __str__(self) -> str:
        return f"Work item not found: {self.item_id}"
