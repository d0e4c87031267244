"""Work scheduler: the work graph and the lifecycle state machine.

The scheduler owns the in-memory work graph, mirrors every change to the
issue tracker, and answers "what should run next". Every mutation applies
the state change, the dependents' runnability refresh and the tracker write
under one re-entrant lock, so no reader sees a half-applied closure.
"""

import threading
from datetime import datetime
from typing import Iterable, Optional, Union

from .classifier import ComplexityClassifier
from .config import HarnessConfig
from .errors import (
    HarnessError,
    InvalidTransitionError,
    ItemBusyError,
    SpecFormatError,
    UnknownItemError,
)
from .graph import find_cycle
from .loading.normalize import slugify, unique_id
from .models import (
    ACTIVE_STATES,
    BLOCKING_STATES,
    SATISFIED_STATES,
    DiscoveredWork,
    StateChange,
    WorkItem,
    WorkItemState,
    WorkSpec,
)
from .protocols import IssueTracker
from .routing import RepositoryRouter
from .state_machine import is_terminal, validate_transition


SELF_HEAL_LABEL = "self-heal"
BLOCKER_LABEL = "blocker"


class WorkScheduler:
    """Tracks work items and drives them through their lifecycle.

    Selection policy for next_runnable():
    - A self-heal item always comes first
    - Then the lowest effective priority (P0 first); discovered items
      labelled 'blocker' are promoted by config.blocker_boost levels, clamped at P0
    - Then the earliest declaration order
    """

    def __init__(
        self,
        tracker: IssueTracker,
        config: Optional[HarnessConfig] = None,
        classifier: Optional[ComplexityClassifier] = None,
        router: Optional[RepositoryRouter] = None,
    ):
        self.tracker = tracker
        self.config = config or HarnessConfig()
        self.classifier = classifier or ComplexityClassifier(self.config)
        self.router = router
        self._lock = threading.RLock()
        self._items: dict[str, WorkItem] = {item.id: item for item in tracker.list()}
        self._holders: dict[str, str] = {}
        self._cancel_requests: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, item_id: str) -> WorkItem:
        item = self._items.get(item_id)
        if item is None:
            raise UnknownItemError(item_id)
        return item

    def _transition(self, item: WorkItem, to_state: WorkItemState, reason: Optional[str] = None) -> None:
        validate_transition(item.id, item.state, to_state)
        item.history.append(StateChange(from_state=item.state, to_state=to_state, reason=reason))
        item.state = to_state

        now = datetime.now()
        if to_state == WorkItemState.IN_PROGRESS and item.started_at is None:
            item.started_at = now
        if is_terminal(to_state):
            item.closed_at = now
        self.tracker.save(item)

    def _dependency_states(self, item: WorkItem) -> list[Optional[WorkItemState]]:
        return [
            self._items[dep].state if dep in self._items else None
            for dep in item.depends_on
        ]

    def _refresh(self) -> list[str]:
        """Re-evaluate runnability until nothing changes. Returns changed ids."""
        changed: list[str] = []
        progress = True
        while progress:
            progress = False
            for item in sorted(self._items.values(), key=lambda i: i.order):
                states = self._dependency_states(item)
                blocked = any(s in BLOCKING_STATES for s in states)
                satisfied = all(s in SATISFIED_STATES for s in states)

                target = None
                if item.state == WorkItemState.PENDING:
                    if blocked:
                        target = WorkItemState.BLOCKED
                    elif satisfied:
                        target = WorkItemState.RUNNABLE
                elif item.state == WorkItemState.BLOCKED and not blocked:
                    target = WorkItemState.PENDING
                elif item.state == WorkItemState.RUNNABLE and not satisfied:
                    target = WorkItemState.PENDING

                if target is not None:
                    self._transition(item, target, "dependencies changed")
                    changed.append(item.id)
                    progress = True
        return changed

    def _release(self, item_id: str) -> None:
        self._holders.pop(item_id, None)
        self._cancel_requests.pop(item_id, None)

    def _next_order(self) -> int:
        return max((i.order for i in self._items.values()), default=-1) + 1

    def _insert(self, item: WorkItem) -> WorkItem:
        if self.router:
            self.router.assign(item)
        self.tracker.create(item)
        self._items[item.id] = item
        return item

    def effective_priority(self, item: WorkItem) -> int:
        if item.discovered_from and item.has_label(BLOCKER_LABEL):
            return max(0, item.priority - self.config.blocker_boost)
        return item.priority

    def _selection_key(self, item: WorkItem) -> tuple[int, int, int]:
        return (
            0 if item.has_label(SELF_HEAL_LABEL) else 1,
            self.effective_priority(item),
            item.order,
        )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_spec(self, spec: WorkSpec) -> list[str]:
        """Register every item of a spec that the tracker doesn't know yet.

        Existing items (a resumed run) keep their state. New items are
        classified, routed, mirrored to the tracker and refreshed.

        Returns:
            IDs of newly created items.
        """
        created = []
        with self._lock:
            base_order = self._next_order() if self._items else 0
            for item in spec.items:
                if item.id in self._items:
                    continue
                item = item.model_copy(deep=True)
                item.order = base_order + item.order
                self.classifier.annotate(item, spec_override=spec.complexity)
                self._insert(item)
                created.append(item.id)
            self._refresh()
        return created

    def recover_interrupted(self) -> list[str]:
        """Return items left in flight by a previous run to pending."""
        recovered = []
        with self._lock:
            for item in self._items.values():
                if item.state not in ACTIVE_STATES or item.id in self._holders:
                    continue
                if item.state == WorkItemState.CODE_COMPLETE:
                    self._transition(item, WorkItemState.IN_PROGRESS, "interrupted run")
                self._transition(item, WorkItemState.PENDING, "interrupted run")
                recovered.append(item.id)
            self._refresh()
        return recovered

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, item_id: str) -> WorkItem:
        with self._lock:
            return self._require(item_id).model_copy(deep=True)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._items

    def runnable_items(self, repository: Optional[str] = None) -> list[WorkItem]:
        """Runnable items in selection order."""
        with self._lock:
            items = [
                i for i in self._items.values()
                if i.state == WorkItemState.RUNNABLE
                and (repository is None or i.repository == repository)
            ]
            items.sort(key=self._selection_key)
            return [i.model_copy(deep=True) for i in items]

    def next_runnable(
        self,
        repository: Optional[str] = None,
        exclude_repositories: Iterable[str] = (),
    ) -> Optional[WorkItem]:
        """Return the next item to work on, or None if nothing is runnable."""
        excluded = set(exclude_repositories)
        for item in self.runnable_items(repository):
            if item.repository not in excluded:
                return item
        return None

    def list_items(
        self,
        state: Optional[WorkItemState] = None,
        label: Optional[str] = None,
        repository: Optional[str] = None,
    ) -> list[WorkItem]:
        with self._lock:
            items = sorted(self._items.values(), key=lambda i: i.order)
            return [
                i.model_copy(deep=True) for i in items
                if (state is None or i.state == state)
                and (label is None or i.has_label(label))
                and (repository is None or i.repository == repository)
            ]

    def blocked_items(self) -> list[WorkItem]:
        return self.list_items(state=WorkItemState.BLOCKED)

    def blocking_dependencies(self, item_id: str) -> list[str]:
        """IDs of dependencies that are failed, cancelled or blocked."""
        with self._lock:
            item = self._require(item_id)
            return [
                dep for dep in item.depends_on
                if dep in self._items and self._items[dep].state in BLOCKING_STATES
            ]

    def open_dependencies(self, item_id: str) -> list[str]:
        """IDs of dependencies not yet verified or closed."""
        with self._lock:
            item = self._require(item_id)
            return [
                dep for dep in item.depends_on
                if dep not in self._items or self._items[dep].state not in SATISFIED_STATES
            ]

    def resolved_ids(self) -> set[str]:
        with self._lock:
            return {i.id for i in self._items.values() if i.state in SATISFIED_STATES}

    def sessions_started_since(self, since: Optional[datetime]) -> list[datetime]:
        """Claim times recorded in item history after a point in time, oldest first."""
        with self._lock:
            starts = [
                change.timestamp
                for item in self._items.values()
                for change in item.history
                if change.from_state == WorkItemState.RUNNABLE
                and change.to_state == WorkItemState.IN_PROGRESS
                and (since is None or change.timestamp > since)
            ]
        return sorted(starts)

    def closed_since(self, since: Optional[datetime]) -> list[WorkItem]:
        """Items closed after a point in time (all closed items if None)."""
        return [
            i for i in self.list_items(state=WorkItemState.CLOSED)
            if since is None or (i.closed_at and i.closed_at > since)
        ]

    def open_self_heal_item(self, repository: str) -> Optional[WorkItem]:
        """The self-heal item of a repository that is not yet closed, if any."""
        for item in self.list_items(label=SELF_HEAL_LABEL, repository=repository):
            if item.state not in (WorkItemState.CLOSED, WorkItemState.CANCELLED, WorkItemState.VERIFIED):
                return item
        return None

    def holder(self, item_id: str) -> Optional[str]:
        return self._holders.get(item_id)

    def active_items(self) -> list[WorkItem]:
        return [i for i in self.list_items() if i.state in ACTIVE_STATES]

    def has_unfinished_work(self) -> bool:
        """True while any item can still make progress."""
        with self._lock:
            return any(
                i.state in (WorkItemState.PENDING, WorkItemState.RUNNABLE)
                or i.state in ACTIVE_STATES
                for i in self._items.values()
            )

    def progress_summary(self) -> dict:
        """Counts per state plus overall completion."""
        with self._lock:
            counts = {state.value: 0 for state in WorkItemState}
            for item in self._items.values():
                counts[item.state.value] += 1
            total = len(self._items)
            done = counts[WorkItemState.CLOSED.value]
            return {
                "total": total,
                "by_state": counts,
                "closed": done,
                "percent_closed": round(done / total * 100, 1) if total else 0.0,
            }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def claim(self, item_id: str, session_id: str) -> WorkItem:
        """Move a runnable item to in_progress on behalf of a session.

        Raises:
            ItemBusyError: If another session already holds the item.
            InvalidTransitionError: If the item is not runnable.
        """
        with self._lock:
            item = self._require(item_id)
            if item_id in self._holders:
                raise ItemBusyError(item_id, self._holders[item_id])
            self._transition(item, WorkItemState.IN_PROGRESS, f"claimed by {session_id}")
            item.sessions_spent += 1
            self._holders[item_id] = session_id
            self.tracker.save(item)
            return item.model_copy(deep=True)

    def record_attempt(self, item_id: str, stage: str, reason: Optional[str] = None) -> int:
        """Count a failed verification attempt. Returns the new count for the stage."""
        with self._lock:
            item = self._require(item_id)
            if stage == "local":
                item.local_attempts += 1
                count = item.local_attempts
            elif stage == "e2e":
                item.e2e_attempts += 1
                count = item.e2e_attempts
            else:
                raise ValueError(f"Unknown verification stage: {stage}")
            if reason:
                item.failure_reason = reason
            self.tracker.save(item)
            return count

    def mark_code_complete(self, item_id: str) -> None:
        with self._lock:
            self._transition(self._require(item_id), WorkItemState.CODE_COMPLETE, "local verification passed")

    def repair(self, item_id: str, reason: str) -> None:
        """Send a code_complete item back to in_progress after an end-to-end failure."""
        with self._lock:
            self._transition(self._require(item_id), WorkItemState.IN_PROGRESS, reason)

    def verify(self, item_id: str) -> None:
        """Mark an item verified. Only reachable from code_complete."""
        with self._lock:
            self._transition(self._require(item_id), WorkItemState.VERIFIED, "end-to-end verification passed")
            self._release(item_id)
            self._refresh()

    def close(self, item_id: str, commit_ref: Optional[str]) -> None:
        """Close a verified item.

        Raises:
            HarnessError: If no commit reference is given.
        """
        if not commit_ref or not commit_ref.strip():
            raise HarnessError(f"Closing {item_id} requires a commit reference")
        with self._lock:
            item = self._require(item_id)
            validate_transition(item_id, item.state, WorkItemState.CLOSED)
            item.commit_ref = commit_ref.strip()
            item.failure_reason = None
            self._transition(item, WorkItemState.CLOSED, f"committed {item.commit_ref}")
            self._release(item_id)
            self._refresh()

    def record_failure_reason(self, item_id: str, reason: str) -> None:
        with self._lock:
            item = self._require(item_id)
            item.failure_reason = reason
            self.tracker.save(item)

    def fail(self, item_id: str, reason: str) -> None:
        """Fail an in-flight item; its dependents become blocked."""
        with self._lock:
            item = self._require(item_id)
            item.failure_reason = reason
            self._transition(item, WorkItemState.FAILED, reason)
            self._release(item_id)
            self._refresh()

    def defer(self, item_id: str, reason: str) -> None:
        """Release an in-progress item back to pending (discovered blocker)."""
        with self._lock:
            self._transition(self._require(item_id), WorkItemState.PENDING, reason)
            self._release(item_id)
            self._refresh()

    def cancel(self, item_id: str, reason: str = "cancelled") -> bool:
        """Cancel an item.

        Pending and runnable items are cancelled immediately. For an item
        held by a session, the cancellation is recorded and honored at the
        session's next safe stopping point.

        Returns:
            True if the item was cancelled now, False if the request is deferred.
        """
        with self._lock:
            item = self._require(item_id)
            if item.state in ACTIVE_STATES:
                self._cancel_requests[item_id] = reason
                return False
            self._transition(item, WorkItemState.CANCELLED, reason)
            self._refresh()
            return True

    def cancellation_requested(self, item_id: str) -> Optional[str]:
        return self._cancel_requests.get(item_id)

    def reopen(self, item_id: str) -> None:
        """Manually re-open a failed item. Attempt counters reset, history stays."""
        with self._lock:
            item = self._require(item_id)
            if item.state != WorkItemState.FAILED:
                raise InvalidTransitionError(
                    item_id, item.state.value, WorkItemState.PENDING.value, [WorkItemState.FAILED.value]
                )
            self._transition(item, WorkItemState.PENDING, "re-opened")
            item.local_attempts = 0
            item.e2e_attempts = 0
            item.failure_reason = None
            item.closed_at = None
            self.tracker.save(item)
            self._refresh()

    # ------------------------------------------------------------------
    # Graph changes
    # ------------------------------------------------------------------

    def add_dependency(self, item_id: str, depends_on_id: str) -> None:
        """Add a dependency edge, rejecting cycles.

        Raises:
            SpecFormatError: If the edge would create a cycle.
        """
        with self._lock:
            item = self._require(item_id)
            self._require(depends_on_id)
            if depends_on_id in item.depends_on:
                return

            edges = {i.id: list(i.depends_on) for i in self._items.values()}
            edges[item_id].append(depends_on_id)
            cycle = find_cycle(edges)
            if cycle:
                raise SpecFormatError("depends_on", f"dependency cycle: {' -> '.join(cycle)}")

            item.depends_on.append(depends_on_id)
            self.tracker.add_dependency(item_id, depends_on_id)
            self.tracker.save(item)
            self._refresh()

    def add_item(self, item: WorkItem) -> WorkItem:
        """Insert a new pending item (classified and routed)."""
        with self._lock:
            if item.id in self._items:
                raise HarnessError(f"Work item already exists: {item.id}")
            item = item.model_copy(deep=True)
            item.state = WorkItemState.PENDING
            if item.order == 0:
                item.order = self._next_order()
            self.classifier.annotate(item, resolved=self.resolved_ids())
            self._insert(item)
            self._refresh()
            return item.model_copy(deep=True)

    def add_discovered(
        self,
        work: Union[DiscoveredWork, WorkItem],
        discovered_from: str,
        blocks: Iterable[str] = (),
        repository: Optional[str] = None,
    ) -> WorkItem:
        """Feed newly discovered work into the graph.

        Args:
            work: The discovered work
            discovered_from: Lineage reference (session or checkpoint id)
            blocks: IDs of items that cannot finish before this one
            repository: Owning repository (routed by label if None)

        Returns:
            The created item.
        """
        blocks = list(blocks)
        with self._lock:
            if isinstance(work, WorkItem):
                item = work.model_copy(deep=True)
            else:
                item = WorkItem(
                    id=slugify(work.title),
                    title=work.title,
                    description=work.description,
                    priority=work.priority,
                    labels=list(work.labels),
                )
            item.id = unique_id(item.id, set(self._items))
            item.state = WorkItemState.PENDING
            item.discovered_from = discovered_from
            item.order = self._next_order()
            item.repository = repository or item.repository
            if blocks and not item.has_label(BLOCKER_LABEL):
                item.labels.append(BLOCKER_LABEL)

            self.classifier.annotate(item, resolved=self.resolved_ids())
            self._insert(item)

            for blocked_id in blocks:
                self.add_dependency(blocked_id, item.id)

            self._refresh()
            return item.model_copy(deep=True)
