"""Harness configuration.

Configuration lives in ``harness.json`` (or ``harness.yaml``) at the project
root. Every field has a default, so an empty project runs against a single
repository rooted at the project directory.
"""

import json
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from .models import ComplexityTier, ErrorCategory, ReviewDimension


CONFIG_FILENAMES = ("harness.json", "harness.yaml", "harness.yml")

# Capability aliases resolved to concrete agent models, most to least capable
MODELS = {
    "opus": "claude-opus-4-5-20251101",
    "sonnet": "claude-sonnet-4-20250514",
    "haiku": "claude-haiku-4-5-20251001",
}


class RetryConfig(BaseModel):
    """Configuration for retry logic with exponential backoff.

    Applies to agent sessions that end with a transient error.
    """
    max_retries: int = Field(
        default=3,
        description="Maximum retry attempts before giving up"
    )
    base_delay_seconds: float = Field(
        default=5.0,
        description="Initial delay between retries"
    )
    max_delay_seconds: float = Field(
        default=300.0,
        description="Maximum delay between retries (5 minutes)"
    )
    exponential_base: float = Field(
        default=2.0,
        description="Multiplier for exponential backoff"
    )
    jitter_factor: float = Field(
        default=0.1,
        description="Random jitter factor (0.1 = +/- 10%)"
    )
    retryable_categories: list[ErrorCategory] = Field(
        default_factory=lambda: [
            ErrorCategory.TRANSIENT,
            ErrorCategory.RATE_LIMIT,
            ErrorCategory.AGENT_CRASH,
        ],
        description="Error categories that should be retried"
    )


class VerificationBudget(BaseModel):
    """How many times an item may fail each verification stage."""
    max_local_attempts: int = Field(
        default=3,
        ge=1,
        description="Local verification failures before the item fails"
    )
    max_e2e_attempts: int = Field(
        default=3,
        ge=1,
        description="End-to-end verification failures before the item fails"
    )


class CheckpointConfig(BaseModel):
    """When checkpoint reviews run."""
    enabled: bool = True
    every_sessions: int = Field(default=3, ge=1)
    every_hours: float = Field(default=4.0, gt=0)


class RepositoryConfig(BaseModel):
    """A target repository and the commands that check its health."""
    path: str = Field(default=".", description="Path relative to the project root")
    build_command: Optional[str] = None
    test_command: Optional[str] = None
    type_check_command: Optional[str] = None
    lint_command: Optional[str] = None
    e2e_command: Optional[str] = None
    command_timeout_seconds: int = 300
    review_commands: dict[ReviewDimension, str] = Field(
        default_factory=dict,
        description="Checkpoint review command per dimension; non-zero exit is critical"
    )


class TierProfile(BaseModel):
    """Capability and overhead budget bound to a complexity tier."""
    capability: str
    max_turns: int
    session_timeout_seconds: int


DEFAULT_TIER_PROFILES = {
    ComplexityTier.TRIVIAL: TierProfile(capability="haiku", max_turns=20, session_timeout_seconds=600),
    ComplexityTier.SIMPLE: TierProfile(capability="haiku", max_turns=40, session_timeout_seconds=900),
    ComplexityTier.STANDARD: TierProfile(capability="sonnet", max_turns=100, session_timeout_seconds=1800),
    ComplexityTier.COMPLEX: TierProfile(capability="opus", max_turns=200, session_timeout_seconds=3600),
}


class HarnessConfig(BaseModel):
    """Configuration for the harness."""
    # Repositories and routing
    repositories: dict[str, RepositoryConfig] = Field(
        default_factory=lambda: {"primary": RepositoryConfig()}
    )
    default_repository: str = "primary"
    label_routes: dict[str, str] = Field(
        default_factory=dict,
        description="Fixed label -> repository table"
    )

    # Agent
    agent_command: str = Field(default="claude", description="Coding agent CLI executable")
    capability_models: dict[str, str] = Field(default_factory=lambda: dict(MODELS))
    tier_profiles: dict[ComplexityTier, TierProfile] = Field(
        default_factory=lambda: dict(DEFAULT_TIER_PROFILES)
    )

    # Budgets
    retry: RetryConfig = Field(default_factory=RetryConfig)
    budget: VerificationBudget = Field(default_factory=VerificationBudget)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    max_sessions: Optional[int] = Field(
        default=None,
        description="Maximum sessions before stopping (None = unlimited)"
    )

    # Scheduling
    blocker_boost: int = Field(
        default=1,
        ge=0,
        description="Priority levels a discovered 'blocker' item is promoted by (clamped at P0)"
    )
    self_heal_priority: int = 1
    checkpoint_finding_priority: int = 0

    # Paths
    state_dir: str = Field(default=".harness")
    progress_file: str = Field(default="harness-progress.txt")

    # Behavior
    auto_commit: bool = Field(default=True, description="Commit the changeset when an item is verified")
    progress_rotation_threshold_kb: int = 50
    progress_keep_entries: int = 100

    def model_for(self, capability: str) -> str:
        """Resolve a capability alias to a concrete model id."""
        return self.capability_models.get(capability, capability)

    def profile_for(self, tier: ComplexityTier) -> TierProfile:
        return self.tier_profiles.get(tier, DEFAULT_TIER_PROFILES[tier])


def find_config_file(project_path: Path) -> Optional[Path]:
    """Return the first config file present in the project root."""
    for name in CONFIG_FILENAMES:
        candidate = Path(project_path) / name
        if candidate.exists():
            return candidate
    return None


def load_config(project_path: Path | str, config_file: Optional[Path | str] = None) -> HarnessConfig:
    """Load harness configuration for a project.

    Args:
        project_path: Project root directory
        config_file: Explicit config file (defaults to harness.json/.yaml in the root)

    Returns:
        Validated HarnessConfig (defaults if no file exists)
    """
    path = Path(config_file) if config_file else find_config_file(Path(project_path))
    if path is None:
        return HarnessConfig()

    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    return HarnessConfig.model_validate(data)
