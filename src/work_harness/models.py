"""Data models for the work harness.

Uses Pydantic for validation. Every record the harness persists (work items,
checkpoint events, progress entries) round-trips through JSON.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class WorkItemState(str, Enum):
    """Lifecycle state of a work item."""
    PENDING = "pending"
    RUNNABLE = "runnable"
    IN_PROGRESS = "in_progress"
    CODE_COMPLETE = "code_complete"
    VERIFIED = "verified"
    CLOSED = "closed"
    BLOCKED = "blocked"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Dependencies in these states count as satisfied
SATISFIED_STATES = frozenset([WorkItemState.VERIFIED, WorkItemState.CLOSED])

# Dependencies in these states block their dependents
BLOCKING_STATES = frozenset([
    WorkItemState.FAILED,
    WorkItemState.CANCELLED,
    WorkItemState.BLOCKED,
])

# States in which a session holds the item
ACTIVE_STATES = frozenset([WorkItemState.IN_PROGRESS, WorkItemState.CODE_COMPLETE])


class ComplexityTier(str, Enum):
    """Execution tier chosen by the classifier."""
    TRIVIAL = "trivial"
    SIMPLE = "simple"
    STANDARD = "standard"
    COMPLEX = "complex"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)


TIER_ORDER = [
    ComplexityTier.TRIVIAL,
    ComplexityTier.SIMPLE,
    ComplexityTier.STANDARD,
    ComplexityTier.COMPLEX,
]


class ErrorCategory(str, Enum):
    """Classification of agent errors for retry decisions.

    Categories determine whether to retry and how long to wait.
    """
    TRANSIENT = "transient"      # Network, timeout - retry with short delay
    RATE_LIMIT = "rate_limit"    # 429 - retry with longer delay
    AGENT_CRASH = "agent_crash"  # Agent process exited abnormally - retry
    BILLING = "billing"          # Out of credits - stop
    AUTH = "auth"                # Invalid API key - stop
    UNKNOWN = "unknown"          # Unexpected - retry once, then stop


class AcceptanceCriterion(BaseModel):
    """A single acceptance criterion, optionally backed by a command."""
    description: str
    verify: Optional[str] = Field(
        default=None,
        description="Shell command that must exit 0 during end-to-end verification"
    )


class StateChange(BaseModel):
    """Audit record of one state transition."""
    from_state: WorkItemState
    to_state: WorkItemState
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class WorkItem(BaseModel):
    """A unit of schedulable work (an "issue")."""

    # Declared before the `property` field, which shadows the builtin below
    @property
    def priority_label(self) -> str:
        return f"P{self.priority}"

    def has_label(self, label: str) -> bool:
        return label in self.labels

    id: str = Field(..., description="Unique identifier for the item")
    title: str
    description: str = ""
    priority: int = Field(default=2, ge=0, description="Lower number = more urgent (P0 first)")
    labels: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(
        default_factory=list,
        description="IDs of items that must be verified or closed first"
    )
    state: WorkItemState = Field(default=WorkItemState.PENDING)
    acceptance_criteria: list[AcceptanceCriterion] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    property: Optional[str] = None
    repository: Optional[str] = None

    # Classification audit
    complexity: Optional[ComplexityTier] = None
    complexity_score: Optional[int] = None
    complexity_overridden: bool = False
    complexity_override: Optional[ComplexityTier] = Field(
        default=None,
        description="Explicit per-item tier from the spec"
    )

    # Lineage (non-owning)
    discovered_from: Optional[str] = None

    # Declaration order, used to break priority ties
    order: int = 0

    # Tracking
    sessions_spent: int = 0
    local_attempts: int = 0
    e2e_attempts: int = 0
    failure_reason: Optional[str] = None
    commit_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    history: list[StateChange] = Field(default_factory=list)

class WorkSpec(BaseModel):
    """The normalized, validated work specification for one run."""
    title: str
    property: Optional[str] = None
    complexity: Optional[ComplexityTier] = None
    items: list[WorkItem] = Field(default_factory=list)
    requirements: list[str] = Field(default_factory=list)
    success: list[str] = Field(default_factory=list)
    source_format: str = "structured"

    def get_item(self, item_id: str) -> Optional[WorkItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


class FindingSeverity(str, Enum):
    """Severity of a checkpoint review finding."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ReviewDimension(str, Enum):
    """Dimensions covered by a checkpoint review."""
    SECURITY = "security"
    ARCHITECTURE = "architecture"
    QUALITY = "quality"


class CheckpointFinding(BaseModel):
    """A single finding produced during a checkpoint review."""
    dimension: ReviewDimension
    severity: FindingSeverity
    summary: str
    details: Optional[str] = None
    repository: Optional[str] = None


class CheckpointEvent(BaseModel):
    """A periodic review barrier and what it produced."""
    id: str
    trigger: str = Field(..., description="'sessions' or 'elapsed'")
    started_at: datetime = Field(default_factory=datetime.now)
    ended_at: Optional[datetime] = None
    reviewed_item_ids: list[str] = Field(default_factory=list)
    findings: list[CheckpointFinding] = Field(default_factory=list)
    created_item_ids: list[str] = Field(default_factory=list)

    @property
    def critical_findings(self) -> list[CheckpointFinding]:
        return [f for f in self.findings if f.severity == FindingSeverity.CRITICAL]


class ProgressEntry(BaseModel):
    """A single entry in the progress log."""
    timestamp: datetime = Field(default_factory=datetime.now)
    session_id: str
    item_id: Optional[str] = None
    action: str  # e.g., "session_started", "verified", "closed", "checkpoint"
    summary: str
    files_changed: list[str] = Field(default_factory=list)
    commit_ref: Optional[str] = None


class Changeset(BaseModel):
    """The working-tree changes of one verified item, ready to commit."""
    item_id: str
    title: str
    repository: Optional[str] = None
    summary: str = ""
    files: list[str] = Field(default_factory=list)

    @property
    def message(self) -> str:
        header = f"{self.title} [{self.item_id}]"
        return f"{header}\n\n{self.summary}".strip() if self.summary else header


class DiscoveredWork(BaseModel):
    """New work reported by an agent during a session."""
    title: str
    description: str = ""
    priority: int = Field(default=2, ge=0)
    labels: list[str] = Field(default_factory=list)
    blocks_current: bool = Field(
        default=False,
        description="The in-flight item cannot finish before this is done"
    )


class VerificationResult(BaseModel):
    """Result of a single verification command."""
    name: str
    passed: bool
    message: str
    details: Optional[str] = None
    skipped: bool = False
    duration_seconds: Optional[float] = None


class VerificationReport(BaseModel):
    """Result of one verification stage for an item."""
    item_id: str
    stage: str = Field(..., description="'local', 'e2e' or 'baseline'")
    passed: bool
    results: list[VerificationResult] = Field(default_factory=list)

    @property
    def failed_checks(self) -> list[str]:
        return [r.name for r in self.results if not r.passed and not r.skipped]

    def failure_summary(self, max_length: int = 1000) -> str:
        """Condensed failure output, used as repair context for the agent."""
        parts = []
        for r in self.results:
            if r.passed or r.skipped:
                continue
            parts.append(f"{r.name}: {r.message}")
            if r.details:
                parts.append(r.details)
        text = "\n".join(parts)
        if len(text) > max_length:
            text = text[:max_length] + "\n... (truncated)"
        return text


class SessionStatus(str, Enum):
    """How a session ended, from the orchestrator's point of view."""
    CLOSED = "closed"
    VERIFIED = "verified"          # verified but commit reference missing
    FAILED = "failed"
    DEFERRED = "deferred"          # blocked by discovered work
    CANCELLED = "cancelled"
    IDLE = "idle"                  # nothing runnable
    CHECKPOINT = "checkpoint"      # a checkpoint ran instead of a session
    BASELINE_BROKEN = "baseline_broken"


class SessionOutcome(BaseModel):
    """Outcome of one orchestrator step."""
    status: SessionStatus
    item_id: Optional[str] = None
    session_id: Optional[str] = None
    message: str = ""
    commit_ref: Optional[str] = None
    discovered_item_ids: list[str] = Field(default_factory=list)
    checkpoint_id: Optional[str] = None
