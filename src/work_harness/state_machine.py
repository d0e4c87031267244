"""Work item lifecycle state machine.

State diagram:
    pending       → runnable       (all dependencies verified or closed)
    pending       → blocked        (a dependency failed, was cancelled or is blocked)
    pending       → cancelled
    blocked       → pending        (the blocking dependency was re-opened)
    runnable      → in_progress    (claimed by a session)
    runnable      → pending        (a new unsatisfied dependency was added)
    runnable      → cancelled
    in_progress   → code_complete  (local verification passed)
    in_progress   → failed         (budget exhausted, unrecoverable error, cancelled in flight)
    in_progress   → pending        (deferred behind discovered blocking work)
    code_complete → verified       (end-to-end verification passed)
    code_complete → in_progress    (end-to-end repair)
    code_complete → failed         (end-to-end budget exhausted)
    verified      → closed         (commit reference recorded)
    failed        → pending        (manual re-open)

The scheduler validates every state change against this table.
"""

from .errors import InvalidTransitionError
from .models import WorkItemState


VALID_TRANSITIONS: dict[WorkItemState, frozenset[WorkItemState]] = {
    WorkItemState.PENDING: frozenset([
        WorkItemState.RUNNABLE,
        WorkItemState.BLOCKED,
        WorkItemState.CANCELLED,
    ]),
    WorkItemState.BLOCKED: frozenset([
        WorkItemState.PENDING,
    ]),
    WorkItemState.RUNNABLE: frozenset([
        WorkItemState.IN_PROGRESS,
        WorkItemState.PENDING,
        WorkItemState.CANCELLED,
    ]),
    WorkItemState.IN_PROGRESS: frozenset([
        WorkItemState.CODE_COMPLETE,
        WorkItemState.FAILED,
        WorkItemState.PENDING,
    ]),
    WorkItemState.CODE_COMPLETE: frozenset([
        WorkItemState.VERIFIED,
        WorkItemState.IN_PROGRESS,
        WorkItemState.FAILED,
    ]),
    WorkItemState.VERIFIED: frozenset([
        WorkItemState.CLOSED,
    ]),
    WorkItemState.FAILED: frozenset([
        WorkItemState.PENDING,
    ]),
    # Terminal states: no outgoing transitions
    WorkItemState.CLOSED: frozenset(),
    WorkItemState.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(
    state for state, targets in VALID_TRANSITIONS.items() if not targets
)


def available_transitions(from_state: WorkItemState) -> frozenset[WorkItemState]:
    """Return the set of valid destination states from from_state."""
    return VALID_TRANSITIONS.get(from_state, frozenset())


def can_transition(from_state: WorkItemState, to_state: WorkItemState) -> bool:
    return to_state in available_transitions(from_state)


def validate_transition(item_id: str, from_state: WorkItemState, to_state: WorkItemState) -> None:
    """Validate that a state transition is allowed.

    Raises:
        InvalidTransitionError: if the transition is not in VALID_TRANSITIONS
    """
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(
            item_id,
            from_state.value,
            to_state.value,
            [s.value for s in available_transitions(from_state)],
        )


def is_terminal(state: WorkItemState) -> bool:
    """Return True if no further transitions are possible."""
    return state in TERMINAL_STATES
