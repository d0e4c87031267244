"""Tests for the work scheduler."""

import threading

import pytest

from conftest import InMemoryIssueTracker
from work_harness.errors import (
    HarnessError,
    InvalidTransitionError,
    ItemBusyError,
    SpecFormatError,
    UnknownItemError,
)
from work_harness.loading import normalize_spec
from work_harness.models import ComplexityTier, DiscoveredWork, WorkItem, WorkItemState
from work_harness.scheduler import BLOCKER_LABEL, SELF_HEAL_LABEL, WorkScheduler


def make_scheduler(features, tracker=None) -> WorkScheduler:
    scheduler = WorkScheduler(tracker if tracker is not None else InMemoryIssueTracker())
    scheduler.load_spec(normalize_spec({"title": "T", "features": features}))
    return scheduler


def finish(scheduler: WorkScheduler, item_id: str, ref: str = "abc123") -> None:
    scheduler.claim(item_id, "s1")
    scheduler.mark_code_complete(item_id)
    scheduler.verify(item_id)
    scheduler.close(item_id, ref)


def state_of(scheduler: WorkScheduler, item_id: str) -> WorkItemState:
    return scheduler.get(item_id).state


# =============================================================================
# Loading
# =============================================================================

class TestLoadSpec:
    """Tests for registering a spec."""

    def test_items_without_dependencies_are_runnable(self):
        scheduler = make_scheduler([{"title": "A"}, {"title": "B", "depends_on": ["A"]}])

        assert state_of(scheduler, "a") == WorkItemState.RUNNABLE
        assert state_of(scheduler, "b") == WorkItemState.PENDING

    def test_items_are_classified(self):
        scheduler = make_scheduler([{"title": "Rewrite everything across the app"}])
        assert scheduler.get("rewrite-everything-across-the-app").complexity == ComplexityTier.STANDARD

    def test_mirrored_to_tracker(self):
        tracker = InMemoryIssueTracker()
        make_scheduler([{"title": "A"}], tracker)
        assert tracker.items["a"].state == WorkItemState.RUNNABLE

    def test_resume_keeps_existing_state(self):
        tracker = InMemoryIssueTracker([WorkItem(id="a", title="A", state=WorkItemState.CLOSED)])
        scheduler = WorkScheduler(tracker)

        created = scheduler.load_spec(normalize_spec({
            "title": "T",
            "features": [{"title": "A"}, {"title": "B", "depends_on": ["A"]}],
        }))

        assert created == ["b"]
        assert state_of(scheduler, "a") == WorkItemState.CLOSED
        assert state_of(scheduler, "b") == WorkItemState.RUNNABLE

    def test_unknown_item(self):
        scheduler = make_scheduler([{"title": "A"}])
        assert "a" in scheduler
        assert "zzz" not in scheduler
        with pytest.raises(UnknownItemError):
            scheduler.get("zzz")


# =============================================================================
# Selection
# =============================================================================

class TestSelection:
    """Tests for next_runnable ordering."""

    def test_priority_then_declaration_order(self):
        scheduler = make_scheduler([
            {"title": "Low", "priority": 3},
            {"title": "First high", "priority": 1},
            {"title": "Second high", "priority": 1},
        ])
        assert [i.id for i in scheduler.runnable_items()] == ["first-high", "second-high", "low"]

    def test_declared_blocker_label_does_not_promote(self):
        scheduler = make_scheduler([
            {"title": "Plain", "priority": 1},
            {"title": "Urgent", "priority": 2, "labels": [BLOCKER_LABEL]},
        ])

        assert scheduler.effective_priority(scheduler.get("urgent")) == 2
        assert [i.id for i in scheduler.runnable_items()] == ["plain", "urgent"]

    def test_discovered_blocker_promotes(self):
        scheduler = make_scheduler([{"title": "Plain", "priority": 1}])
        urgent = scheduler.add_discovered(
            DiscoveredWork(title="Urgent", priority=2, labels=[BLOCKER_LABEL]), discovered_from="s1"
        )
        top = scheduler.add_discovered(
            DiscoveredWork(title="Top", priority=0, labels=[BLOCKER_LABEL]), discovered_from="s1"
        )

        assert scheduler.effective_priority(scheduler.get(urgent.id)) == 1
        assert scheduler.effective_priority(scheduler.get(top.id)) == 0
        # Ties with "plain" on priority, loses on declaration order
        assert [i.id for i in scheduler.runnable_items()] == ["top", "plain", "urgent"]

    def test_self_heal_comes_first(self):
        scheduler = make_scheduler([{"title": "A", "priority": 0}])
        scheduler.add_item(WorkItem(id="heal", title="Heal", priority=3, labels=[SELF_HEAL_LABEL]))

        assert scheduler.next_runnable().id == "heal"

    def test_nothing_runnable(self):
        scheduler = make_scheduler([{"title": "A"}])
        scheduler.claim("a", "s1")
        assert scheduler.next_runnable() is None

    def test_repository_filters(self):
        scheduler = make_scheduler([{"title": "A", "priority": 1}])
        scheduler.add_item(WorkItem(id="w", title="W", priority=0, repository="web"))

        assert scheduler.next_runnable().id == "w"
        assert scheduler.next_runnable(repository="web").id == "w"
        assert scheduler.next_runnable(exclude_repositories=["web"]).id == "a"


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:
    """Tests for state changes through the scheduler."""

    def test_full_lifecycle_unblocks_dependent(self):
        scheduler = make_scheduler([{"title": "A"}, {"title": "B", "depends_on": ["A"]}])

        scheduler.claim("a", "s1")
        assert state_of(scheduler, "a") == WorkItemState.IN_PROGRESS
        assert scheduler.get("a").sessions_spent == 1
        scheduler.mark_code_complete("a")
        scheduler.verify("a")

        # Verified already satisfies dependents
        assert state_of(scheduler, "b") == WorkItemState.RUNNABLE

        scheduler.close("a", "abc123")
        item = scheduler.get("a")
        assert item.state == WorkItemState.CLOSED
        assert item.commit_ref == "abc123"
        assert item.closed_at is not None
        assert [h.to_state for h in item.history] == [
            WorkItemState.RUNNABLE,
            WorkItemState.IN_PROGRESS,
            WorkItemState.CODE_COMPLETE,
            WorkItemState.VERIFIED,
            WorkItemState.CLOSED,
        ]

    def test_second_claim_is_rejected(self):
        scheduler = make_scheduler([{"title": "A"}])
        scheduler.claim("a", "s1")
        with pytest.raises(ItemBusyError) as exc:
            scheduler.claim("a", "s2")
        assert exc.value.session_id == "s1"

    def test_claim_requires_runnable(self):
        scheduler = make_scheduler([{"title": "A"}, {"title": "B", "depends_on": ["A"]}])
        with pytest.raises(InvalidTransitionError):
            scheduler.claim("b", "s1")

    def test_verify_requires_code_complete(self):
        scheduler = make_scheduler([{"title": "A"}])
        scheduler.claim("a", "s1")
        with pytest.raises(InvalidTransitionError):
            scheduler.verify("a")

    @pytest.mark.parametrize("ref", [None, "", "   "])
    def test_close_requires_commit_ref(self, ref):
        scheduler = make_scheduler([{"title": "A"}])
        scheduler.claim("a", "s1")
        scheduler.mark_code_complete("a")
        scheduler.verify("a")
        with pytest.raises(HarnessError, match="commit reference"):
            scheduler.close("a", ref)
        assert state_of(scheduler, "a") == WorkItemState.VERIFIED

    def test_close_requires_verified(self):
        scheduler = make_scheduler([{"title": "A"}])
        with pytest.raises(InvalidTransitionError):
            scheduler.close("a", "abc")

    def test_failure_blocks_dependents_transitively(self):
        scheduler = make_scheduler([
            {"title": "A"},
            {"title": "B", "depends_on": ["A"]},
            {"title": "C", "depends_on": ["B"]},
        ])
        scheduler.claim("a", "s1")
        scheduler.fail("a", "budget exhausted")

        assert scheduler.get("a").failure_reason == "budget exhausted"
        assert state_of(scheduler, "b") == WorkItemState.BLOCKED
        assert state_of(scheduler, "c") == WorkItemState.BLOCKED
        assert scheduler.blocking_dependencies("b") == ["a"]
        assert [i.id for i in scheduler.blocked_items()] == ["b", "c"]
        assert not scheduler.has_unfinished_work()

    def test_reopen_unblocks(self):
        scheduler = make_scheduler([{"title": "A"}, {"title": "B", "depends_on": ["A"]}])
        scheduler.claim("a", "s1")
        scheduler.record_attempt("a", "local", "tests failed")
        scheduler.fail("a", "budget exhausted")

        scheduler.reopen("a")

        a = scheduler.get("a")
        assert a.state == WorkItemState.RUNNABLE
        assert a.local_attempts == 0
        assert a.failure_reason is None
        assert state_of(scheduler, "b") == WorkItemState.PENDING

    def test_reopen_only_from_failed(self):
        scheduler = make_scheduler([{"title": "A"}])
        with pytest.raises(InvalidTransitionError):
            scheduler.reopen("a")

    def test_reopen_in_flight_keeps_claim(self):
        scheduler = make_scheduler([{"title": "A"}])
        scheduler.claim("a", "s1")

        with pytest.raises(InvalidTransitionError):
            scheduler.reopen("a")

        assert state_of(scheduler, "a") == WorkItemState.IN_PROGRESS
        assert scheduler.holder("a") == "s1"
        scheduler.mark_code_complete("a")
        scheduler.verify("a")
        assert state_of(scheduler, "a") == WorkItemState.VERIFIED

    def test_concurrent_claims_yield_one_holder(self):
        scheduler = make_scheduler([{"title": "A"}])
        barrier = threading.Barrier(8)
        winners = []
        losers = []

        def attempt(session_id):
            barrier.wait()
            try:
                scheduler.claim("a", session_id)
                winners.append(session_id)
            except (ItemBusyError, InvalidTransitionError):
                losers.append(session_id)

        threads = [threading.Thread(target=attempt, args=(f"s{n}",)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert len(losers) == 7
        assert scheduler.holder("a") == winners[0]
        assert scheduler.get("a").sessions_spent == 1

    def test_record_attempt_counts_per_stage(self):
        scheduler = make_scheduler([{"title": "A"}])
        assert scheduler.record_attempt("a", "e2e") == 1
        assert scheduler.record_attempt("a", "e2e") == 2
        assert scheduler.record_attempt("a", "local") == 1
        with pytest.raises(ValueError):
            scheduler.record_attempt("a", "nightly")

    def test_defer_returns_to_pending(self):
        scheduler = make_scheduler([{"title": "A"}])
        scheduler.claim("a", "s1")
        scheduler.defer("a", "waiting")
        assert scheduler.holder("a") is None
        # No open dependencies, so immediately runnable again
        assert state_of(scheduler, "a") == WorkItemState.RUNNABLE

    def test_recover_interrupted(self):
        tracker = InMemoryIssueTracker([
            WorkItem(id="a", title="A", state=WorkItemState.CODE_COMPLETE),
            WorkItem(id="b", title="B", state=WorkItemState.IN_PROGRESS, order=1),
        ])
        scheduler = WorkScheduler(tracker)

        assert scheduler.recover_interrupted() == ["a", "b"]
        assert state_of(scheduler, "a") == WorkItemState.RUNNABLE
        assert state_of(scheduler, "b") == WorkItemState.RUNNABLE

    def test_progress_summary(self):
        scheduler = make_scheduler([{"title": "A"}, {"title": "B"}, {"title": "C", "depends_on": ["A"]}])
        finish(scheduler, "a")

        summary = scheduler.progress_summary()
        assert summary["total"] == 3
        assert summary["closed"] == 1
        assert summary["by_state"]["runnable"] == 2
        assert summary["percent_closed"] == 33.3


# =============================================================================
# Cancellation
# =============================================================================

class TestCancel:
    """Tests for cancelling items."""

    def test_cancel_runnable_blocks_dependents(self):
        scheduler = make_scheduler([{"title": "A"}, {"title": "B", "depends_on": ["A"]}])

        assert scheduler.cancel("a", "requirements changed") is True
        assert state_of(scheduler, "a") == WorkItemState.CANCELLED
        assert state_of(scheduler, "b") == WorkItemState.BLOCKED

    def test_cancel_in_flight_is_deferred(self):
        scheduler = make_scheduler([{"title": "A"}])
        scheduler.claim("a", "s1")

        assert scheduler.cancel("a", "requirements changed") is False
        assert state_of(scheduler, "a") == WorkItemState.IN_PROGRESS
        assert scheduler.cancellation_requested("a") == "requirements changed"

    def test_cancel_closed_is_rejected(self):
        scheduler = make_scheduler([{"title": "A"}])
        finish(scheduler, "a")
        with pytest.raises(InvalidTransitionError):
            scheduler.cancel("a")


# =============================================================================
# Graph changes
# =============================================================================

class TestGraphChanges:
    """Tests for dependencies and items added at run time."""

    def test_add_dependency_makes_runnable_pending(self):
        scheduler = make_scheduler([{"title": "A"}, {"title": "B"}])
        scheduler.add_dependency("b", "a")
        assert state_of(scheduler, "b") == WorkItemState.PENDING
        assert scheduler.open_dependencies("b") == ["a"]

    def test_add_dependency_rejects_cycle(self):
        scheduler = make_scheduler([{"title": "A"}, {"title": "B", "depends_on": ["A"]}])
        with pytest.raises(SpecFormatError) as exc:
            scheduler.add_dependency("a", "b")
        assert "cycle" in exc.value.message
        assert scheduler.get("a").depends_on == []

    def test_add_item_duplicate(self):
        scheduler = make_scheduler([{"title": "A"}])
        with pytest.raises(HarnessError, match="already exists"):
            scheduler.add_item(WorkItem(id="a", title="A again"))

    def test_discovered_blocking_work(self):
        scheduler = make_scheduler([{"title": "A"}])
        scheduler.claim("a", "s1")

        item = scheduler.add_discovered(
            DiscoveredWork(title="Fix schema", priority=1),
            discovered_from="s1",
            blocks=["a"],
        )

        assert item.id == "fix-schema"
        assert item.discovered_from == "s1"
        assert item.has_label(BLOCKER_LABEL)
        assert item.state == WorkItemState.RUNNABLE
        assert scheduler.get("a").depends_on == ["fix-schema"]

    def test_discovered_ids_stay_unique(self):
        scheduler = make_scheduler([{"title": "Fix schema"}])
        item = scheduler.add_discovered(DiscoveredWork(title="Fix schema"), discovered_from="s1")
        assert item.id == "fix-schema-1"
        assert not item.has_label(BLOCKER_LABEL)
