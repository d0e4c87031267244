"""Shared fakes and fixtures for the work harness tests.

The fakes implement the protocols in work_harness.protocols so the
scheduler and orchestrator run without git, shell commands or an agent.
"""

import functools
import re
from pathlib import Path
from typing import Callable, Optional

import pytest
import yaml

from work_harness.config import CheckpointConfig, HarnessConfig, RepositoryConfig, RetryConfig
from work_harness.errors import HarnessError, UnknownItemError
from work_harness.harness import WorkHarness
from work_harness.models import Changeset, CheckpointFinding, VerificationResult, WorkItem, WorkItemState
from work_harness.session import MockSession


ITEM_ID_LINE = re.compile(r"^- ID: (\S+)$", re.MULTILINE)


def item_id_of(prompt: str) -> str:
    """The work item id named in a rendered work prompt."""
    return ITEM_ID_LINE.search(prompt).group(1)


class FakeExecutor:
    """CommandExecutor with scripted outcomes per command.

    ``outcomes`` maps a command string to a list of booleans consumed one per
    call; once exhausted (or for unknown commands) the command passes.
    """

    def __init__(self, outcomes: Optional[dict[str, list[bool]]] = None):
        self.outcomes = {cmd: list(results) for cmd, results in (outcomes or {}).items()}
        self.calls: list[tuple[str, Optional[str]]] = []

    def run_command(self, name, command, timeout, cwd=None) -> VerificationResult:
        if not command:
            return VerificationResult(name=name, passed=True, skipped=True, message="Not configured")
        self.calls.append((name, command))
        scripted = self.outcomes.get(command)
        passed = scripted.pop(0) if scripted else True
        return VerificationResult(
            name=name,
            passed=passed,
            message="Passed" if passed else "Failed (exit code 1)",
            details=None if passed else f"{command}: assertion failed",
        )

    def commands_run(self, command: str) -> int:
        return sum(1 for _, c in self.calls if c == command)


class FakeVersionControl:
    """VersionControl that hands out sequential commit references."""

    def __init__(self, refs: Optional[list[Optional[str]]] = None):
        self.refs = refs
        self.changesets: list[Changeset] = []

    def commit(self, changeset: Changeset) -> Optional[str]:
        self.changesets.append(changeset)
        if self.refs is not None:
            return self.refs.pop(0) if self.refs else None
        return f"c{len(self.changesets):04d}"


class FakeReviewer:
    """CheckpointReviewer returning scripted findings per repository."""

    def __init__(self, findings: Optional[list[CheckpointFinding]] = None):
        self.findings = list(findings or [])
        self.calls: list[tuple[list[str], str]] = []

    def review(self, items, repository) -> list[CheckpointFinding]:
        self.calls.append(([i.id for i in items], repository))
        return [f for f in self.findings if (f.repository or repository) == repository]


class InMemoryIssueTracker:
    """IssueTracker kept in a dict."""

    def __init__(self, items: Optional[list[WorkItem]] = None):
        self.items: dict[str, WorkItem] = {i.id: i.model_copy(deep=True) for i in items or []}
        self.saves = 0

    def create(self, item: WorkItem) -> str:
        if item.id in self.items:
            raise HarnessError(f"Work item already exists: {item.id}")
        self.items[item.id] = item.model_copy(deep=True)
        return item.id

    def update_state(self, item_id: str, state: WorkItemState) -> None:
        self.items[item_id].state = state

    def add_dependency(self, item_id: str, depends_on_id: str) -> None:
        if depends_on_id not in self.items[item_id].depends_on:
            self.items[item_id].depends_on.append(depends_on_id)

    def list(self, state=None, label=None) -> list:
        return [
            i.model_copy(deep=True) for i in sorted(self.items.values(), key=lambda i: i.order)
            if (state is None or i.state == state) and (label is None or label in i.labels)
        ]

    def save(self, item: WorkItem) -> None:
        if item.id not in self.items:
            raise UnknownItemError(item.id)
        self.items[item.id] = item.model_copy(deep=True)
        self.saves += 1

    def get(self, item_id: str) -> Optional[WorkItem]:
        item = self.items.get(item_id)
        return item.model_copy(deep=True) if item else None


def make_config(**overrides) -> HarnessConfig:
    """Config with one repository, instant retries and fast checkpoints."""
    values = dict(
        repositories={
            "primary": RepositoryConfig(test_command="run-tests", e2e_command="run-e2e"),
        },
        retry=RetryConfig(base_delay_seconds=0, jitter_factor=0),
        checkpoint=CheckpointConfig(enabled=False),
    )
    values.update(overrides)
    return HarnessConfig(**values)


def write_spec(directory: Path, spec: dict, name: str = "spec.yaml") -> Path:
    path = Path(directory) / name
    path.write_text(yaml.safe_dump(spec, sort_keys=False), encoding="utf-8")
    return path


def session_factory(handler: Optional[Callable] = None):
    """A SessionManager factory producing MockSessions driven by ``handler``."""
    return functools.partial(MockSession, handler=handler)


class ScriptedAgent:
    """Mock agent handler that records each session and answers per item.

    ``replies`` maps an item id to a list of answers consumed one per
    session (a SessionResult or raw output string); unlisted items succeed.
    """

    def __init__(self, replies: Optional[dict[str, list]] = None):
        self.replies = {k: list(v) for k, v in (replies or {}).items()}
        self.sessions: list[tuple[str, str]] = []
        self.prompts: list[str] = []

    def __call__(self, prompt: str, session: MockSession):
        item_id = item_id_of(prompt)
        self.sessions.append((item_id, session.model))
        self.prompts.append(prompt)
        queued = self.replies.get(item_id)
        if queued:
            return queued.pop(0)
        return f"Implemented {item_id}"

    def items_worked(self) -> list[str]:
        return [item_id for item_id, _ in self.sessions]


@pytest.fixture
def config() -> HarnessConfig:
    return make_config()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def vcs() -> FakeVersionControl:
    return FakeVersionControl()


@pytest.fixture
def agent() -> ScriptedAgent:
    return ScriptedAgent()


@pytest.fixture
def make_harness(tmp_path, vcs):
    """Build a WorkHarness over tmp_path with fakes for every side effect."""

    def _make(
        config: Optional[HarnessConfig] = None,
        agent: Optional[ScriptedAgent] = None,
        executor: Optional[FakeExecutor] = None,
        reviewer: Optional[FakeReviewer] = None,
        version_control: Optional[dict] = None,
    ) -> WorkHarness:
        config = config or make_config()
        return WorkHarness(
            tmp_path,
            config,
            session_factory=session_factory(agent or ScriptedAgent()),
            executor=executor or FakeExecutor(),
            reviewer=reviewer or FakeReviewer(),
            version_control=version_control or {name: vcs for name in config.repositories},
        )

    return _make
