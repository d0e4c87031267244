"""Tests for checkpoint policy, log, reviewer and manager."""

from datetime import datetime, timedelta

import pytest

from conftest import FakeExecutor, FakeReviewer, InMemoryIssueTracker
from work_harness.checkpoint import (
    TRIGGER_ELAPSED,
    TRIGGER_SESSIONS,
    CheckpointLog,
    CheckpointManager,
    CheckpointPolicy,
    CommandCheckpointReviewer,
)
from work_harness.config import CheckpointConfig, HarnessConfig, RepositoryConfig
from work_harness.loading import normalize_spec
from work_harness.models import (
    CheckpointEvent,
    CheckpointFinding,
    FindingSeverity,
    ReviewDimension,
    VerificationResult,
    WorkItemState,
)
from work_harness.protocols import CheckpointReviewer
from work_harness.routing import RepositoryRouter
from work_harness.scheduler import WorkScheduler


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 9, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def closed_scheduler(*titles: str) -> WorkScheduler:
    scheduler = WorkScheduler(InMemoryIssueTracker())
    scheduler.load_spec(normalize_spec({"title": "T", "features": [{"title": t} for t in titles]}))
    for item in scheduler.list_items():
        scheduler.claim(item.id, "s1")
        scheduler.mark_code_complete(item.id)
        scheduler.verify(item.id)
        scheduler.close(item.id, f"ref-{item.id}")
    return scheduler


def critical(dimension=ReviewDimension.SECURITY, summary="SQL injection in cart") -> CheckpointFinding:
    return CheckpointFinding(dimension=dimension, severity=FindingSeverity.CRITICAL, summary=summary)


# =============================================================================
# Policy
# =============================================================================

class TestCheckpointPolicy:
    """Tests for when checkpoints are due."""

    def test_due_after_sessions(self):
        policy = CheckpointPolicy(CheckpointConfig(every_sessions=2), clock=FakeClock())
        policy.record_session()
        assert policy.due() is None
        policy.record_session()
        assert policy.due() == TRIGGER_SESSIONS

    def test_due_after_elapsed_time(self):
        clock = FakeClock()
        policy = CheckpointPolicy(CheckpointConfig(every_hours=2), clock=clock)
        clock.advance(hours=1, minutes=59)
        assert policy.due() is None
        clock.advance(minutes=1)
        assert policy.due() == TRIGGER_ELAPSED

    def test_reset(self):
        clock = FakeClock()
        policy = CheckpointPolicy(CheckpointConfig(every_sessions=1, every_hours=1), clock=clock)
        policy.record_session()
        clock.advance(hours=2)
        policy.reset()
        assert policy.due() is None

    def test_disabled(self):
        policy = CheckpointPolicy(CheckpointConfig(enabled=False, every_sessions=1))
        policy.record_session()
        assert policy.due() is None


# =============================================================================
# Log
# =============================================================================

class TestCheckpointLog:
    """Tests for the JSON-lines checkpoint log."""

    def test_append_and_read(self, tmp_path):
        log = CheckpointLog(tmp_path)
        assert log.read_all() == []
        assert log.next_id() == "cp-001"

        log.append(CheckpointEvent(id="cp-001", trigger="sessions", findings=[critical()]))

        events = log.read_all()
        assert [e.id for e in events] == ["cp-001"]
        assert events[0].critical_findings[0].dimension == ReviewDimension.SECURITY
        assert log.next_id() == "cp-002"


# =============================================================================
# Reviewer
# =============================================================================

class UnrunnableExecutor(FakeExecutor):
    def run_command(self, name, command, timeout, cwd=None):
        return VerificationResult(name=name, passed=False, message="Could not run command: not found")


class TestCommandCheckpointReviewer:
    """Tests for command-backed reviews."""

    @pytest.fixture
    def router(self, tmp_path):
        config = HarnessConfig(repositories={"primary": RepositoryConfig(review_commands={
            ReviewDimension.SECURITY: "bandit -r src",
            ReviewDimension.QUALITY: "radon cc src",
        })})
        return RepositoryRouter(config, tmp_path)

    def test_implements_protocol(self, router):
        assert isinstance(CommandCheckpointReviewer(router), CheckpointReviewer)

    def test_failing_command_is_critical(self, router):
        executor = FakeExecutor({"bandit -r src": [False]})
        findings = CommandCheckpointReviewer(router, executor).review([], "primary")

        assert len(findings) == 1
        assert findings[0].dimension == ReviewDimension.SECURITY
        assert findings[0].severity == FindingSeverity.CRITICAL
        assert findings[0].repository == "primary"
        assert executor.commands_run("radon cc src") == 1

    def test_unrunnable_command_is_warning(self, router):
        findings = CommandCheckpointReviewer(router, UnrunnableExecutor()).review([], "primary")
        assert {f.severity for f in findings} == {FindingSeverity.WARNING}

    def test_passing_review(self, router):
        assert CommandCheckpointReviewer(router, FakeExecutor()).review([], "primary") == []


# =============================================================================
# Manager
# =============================================================================

class TestCheckpointManager:
    """Tests for running a checkpoint."""

    def test_critical_findings_become_p0_items(self, tmp_path):
        scheduler = closed_scheduler("A", "B")
        reviewer = FakeReviewer([
            critical(),
            CheckpointFinding(
                dimension=ReviewDimension.QUALITY,
                severity=FindingSeverity.WARNING,
                summary="Long function",
            ),
        ])
        manager = CheckpointManager(scheduler, reviewer, CheckpointLog(tmp_path))

        event = manager.run(TRIGGER_SESSIONS)

        assert event.id == "cp-001"
        assert event.reviewed_item_ids == ["a", "b"]
        assert reviewer.calls == [(["a", "b"], "primary")]
        assert event.created_item_ids == ["cp-001-security"]
        assert event.ended_at is not None

        created = scheduler.get("cp-001-security")
        assert created.priority == 0
        assert created.discovered_from == "cp-001"
        assert created.state == WorkItemState.RUNNABLE
        assert created.title == "SQL injection in cart"

    def test_only_new_closures_are_reviewed(self, tmp_path):
        scheduler = closed_scheduler("A")
        reviewer = FakeReviewer()
        log = CheckpointLog(tmp_path)
        manager = CheckpointManager(scheduler, reviewer, log)

        manager.run(TRIGGER_SESSIONS)
        second = manager.run(TRIGGER_ELAPSED)

        assert second.id == "cp-002"
        assert second.reviewed_item_ids == []
        assert len(reviewer.calls) == 1
        assert [e.trigger for e in log.read_all()] == ["sessions", "elapsed"]

    def test_run_resets_policy(self, tmp_path):
        config = HarnessConfig(checkpoint=CheckpointConfig(every_sessions=1))
        manager = CheckpointManager(
            closed_scheduler("A"), FakeReviewer(), CheckpointLog(tmp_path), config=config
        )
        manager.record_session()
        assert manager.due() == TRIGGER_SESSIONS

        manager.run(manager.due())
        assert manager.due() is None

    def test_resumes_from_log(self, tmp_path):
        scheduler = closed_scheduler("A")
        log = CheckpointLog(tmp_path)
        log.append(CheckpointEvent(id="cp-001", trigger="sessions", ended_at=datetime.now() + timedelta(hours=1)))

        event = CheckpointManager(scheduler, FakeReviewer(), log).run(TRIGGER_SESSIONS)

        assert event.id == "cp-002"
        assert event.reviewed_item_ids == []

    def test_session_count_restored_from_history(self, tmp_path):
        config = HarnessConfig(checkpoint=CheckpointConfig(every_sessions=3, every_hours=1000))
        manager = CheckpointManager(
            closed_scheduler("A", "B"), FakeReviewer(), CheckpointLog(tmp_path), config=config
        )

        assert manager.policy.sessions_since == 2
        assert manager.due() is None
        manager.record_session()
        assert manager.due() == TRIGGER_SESSIONS

    def test_sessions_before_last_checkpoint_not_counted(self, tmp_path):
        log = CheckpointLog(tmp_path)
        log.append(CheckpointEvent(id="cp-001", trigger="sessions", ended_at=datetime.now() + timedelta(hours=1)))

        manager = CheckpointManager(closed_scheduler("A", "B"), FakeReviewer(), log)

        assert manager.policy.sessions_since == 0

    def test_elapsed_clock_restored_from_log(self, tmp_path):
        log = CheckpointLog(tmp_path)
        log.append(CheckpointEvent(id="cp-001", trigger="sessions", ended_at=datetime(2026, 1, 1, 9, 0)))
        clock = FakeClock()
        clock.advance(hours=5)
        config = HarnessConfig(checkpoint=CheckpointConfig(every_sessions=100, every_hours=4))
        policy = CheckpointPolicy(config.checkpoint, clock=clock)

        manager = CheckpointManager(
            WorkScheduler(InMemoryIssueTracker()), FakeReviewer(), log, config=config, policy=policy
        )

        assert manager.due() == TRIGGER_ELAPSED
