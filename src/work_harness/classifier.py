"""Complexity classification of work items.

Scores each item on scope keywords, file count, subsystem spread and
unresolved dependencies, buckets the score into a ComplexityTier and maps
the tier to a capability alias (resolved to a concrete model by config).
"""

import re
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from .config import HarnessConfig
from .models import ComplexityTier, WorkItem, WorkSpec


# Keywords that indicate broad scope
BROAD_SCOPE_KEYWORDS = [
    "all",
    "every",
    "entire",
    "migrate",
    "migration",
    "refactor",
    "rewrite",
    "overhaul",
    "across",
    "restructure",
    "redesign",
]

KEYWORD_WEIGHT = 3
SPAN_WEIGHT = 2
UNRESOLVED_DEPENDENCY_WEIGHT = 1

# Files listed or implied at or above this count force a complex tier
FORCE_COMPLEX_FILES = 15

# Minimum score per tier, checked from most to least complex
TIER_THRESHOLDS = [
    (5, ComplexityTier.COMPLEX),
    (3, ComplexityTier.STANDARD),
    (1, ComplexityTier.SIMPLE),
]

# File paths mentioned in a description
FILE_REFERENCE = re.compile(
    r"(?<![\w/.-])((?:[\w-]+/)*[\w-]+\.(?:py|pyi|js|jsx|ts|tsx|go|rs|java|kt|rb|c|h|cpp|hpp|cs|"
    r"sql|json|yaml|yml|toml|md|html|css|scss|sh|cfg|ini))\b"
)

KEYWORD_PATTERNS = [
    (keyword, re.compile(rf"\b{re.escape(keyword)}\b")) for keyword in BROAD_SCOPE_KEYWORDS
]


class Classification(BaseModel):
    """Result of classifying one item, kept for audit."""
    tier: ComplexityTier
    score: int
    capability: str
    model: str
    reasons: list[str] = Field(default_factory=list)
    overridden: bool = False
    override_source: Optional[str] = Field(
        default=None,
        description="'command', 'item' or 'spec' when an explicit override applied"
    )


def tier_for_score(score: int) -> ComplexityTier:
    """Bucket a score; a score on a boundary resolves to the higher tier."""
    for threshold, tier in TIER_THRESHOLDS:
        if score >= threshold:
            return tier
    return ComplexityTier.TRIVIAL


def highest_tier(tiers: Iterable[ComplexityTier]) -> ComplexityTier:
    return max(tiers, key=lambda t: t.rank, default=ComplexityTier.TRIVIAL)


class ComplexityClassifier:
    """Chooses the execution tier for work items.

    Strategy:
    - Broad-scope wording weighs most
    - More files, more subsystems and more open dependencies add weight
    - Fifteen or more files are always complex
    - Explicit overrides (command > item > spec) always win and are recorded

    Classification is pure: the same item always yields the same tier.
    """

    def __init__(
        self,
        config: Optional[HarnessConfig] = None,
        command_override: Optional[ComplexityTier] = None,
    ):
        """Initialize the classifier.

        Args:
            config: Harness configuration (tier profiles, label routes)
            command_override: Tier forced from the command line for every item
        """
        self.config = config or HarnessConfig()
        self.command_override = command_override

    def implied_files(self, item: WorkItem) -> list[str]:
        """Files listed on the item plus file paths mentioned in its text."""
        files = list(dict.fromkeys(item.files))
        for match in FILE_REFERENCE.finditer(f"{item.title}\n{item.description}"):
            if match.group(1) not in files:
                files.append(match.group(1))
        return files

    def _subsystems(self, files: list[str]) -> set[str]:
        return {f.strip("./").split("/")[0] for f in files if "/" in f.strip("./")}

    def _repositories(self, item: WorkItem) -> set[str]:
        routes = self.config.label_routes
        return {routes[label] for label in item.labels if label in routes}

    def score(
        self,
        item: WorkItem,
        resolved: Optional[set[str]] = None,
    ) -> tuple[int, bool, list[str]]:
        """Calculate the complexity score of an item.

        Args:
            item: The item to analyze
            resolved: IDs of dependencies already verified or closed

        Returns:
            Tuple of (score, forced_complex, reasons)
        """
        score = 0
        reasons: list[str] = []
        text = f"{item.title} {item.description}".lower()

        # (a) Broad scope wording, counted once
        for keyword, pattern in KEYWORD_PATTERNS:
            if pattern.search(text):
                score += KEYWORD_WEIGHT
                reasons.append(f"Broad-scope keyword '{keyword}' (+{KEYWORD_WEIGHT})")
                break

        # (b) Files listed or implied
        files = self.implied_files(item)
        forced = len(files) >= FORCE_COMPLEX_FILES
        if forced:
            reasons.append(f"Touches {len(files)} files (>= {FORCE_COMPLEX_FILES}, forced complex)")
        elif len(files) >= 5:
            score += 2
            reasons.append(f"Touches {len(files)} files (+2)")
        elif len(files) >= 2:
            score += 1
            reasons.append(f"Touches {len(files)} files (+1)")

        # (c) Spans more than one subsystem or repository
        subsystems = self._subsystems(files)
        repositories = self._repositories(item)
        if len(subsystems) > 1:
            score += SPAN_WEIGHT
            reasons.append(f"Spans subsystems {sorted(subsystems)} (+{SPAN_WEIGHT})")
        elif len(repositories) > 1:
            score += SPAN_WEIGHT
            reasons.append(f"Spans repositories {sorted(repositories)} (+{SPAN_WEIGHT})")

        # (d) Unresolved dependencies
        resolved = resolved or set()
        unresolved = [dep for dep in item.depends_on if dep not in resolved]
        if len(unresolved) >= 2:
            score += UNRESOLVED_DEPENDENCY_WEIGHT
            reasons.append(f"{len(unresolved)} unresolved dependencies (+{UNRESOLVED_DEPENDENCY_WEIGHT})")

        return score, forced, reasons

    def classify_item(
        self,
        item: WorkItem,
        spec_override: Optional[ComplexityTier] = None,
        resolved: Optional[set[str]] = None,
    ) -> Classification:
        """Classify a single item, honoring overrides."""
        score, forced, reasons = self.score(item, resolved)

        if self.command_override is not None:
            tier, source = self.command_override, "command"
        elif item.complexity_override is not None:
            tier, source = item.complexity_override, "item"
        elif spec_override is not None:
            tier, source = spec_override, "spec"
        else:
            tier = ComplexityTier.COMPLEX if forced else tier_for_score(score)
            source = None

        if source:
            reasons.insert(0, f"Using explicit {source} override: {tier.value}")

        capability = self.config.profile_for(tier).capability
        return Classification(
            tier=tier,
            score=score,
            capability=capability,
            model=self.config.model_for(capability),
            reasons=reasons,
            overridden=source is not None,
            override_source=source,
        )

    def classify(
        self,
        item: WorkItem,
        spec_override: Optional[ComplexityTier] = None,
        resolved: Optional[set[str]] = None,
    ) -> ComplexityTier:
        return self.classify_item(item, spec_override, resolved).tier

    def annotate(
        self,
        item: WorkItem,
        spec_override: Optional[ComplexityTier] = None,
        resolved: Optional[set[str]] = None,
    ) -> Classification:
        """Classify an item and record the result on it."""
        result = self.classify_item(item, spec_override, resolved)
        item.complexity = result.tier
        item.complexity_score = result.score
        item.complexity_overridden = result.overridden
        return result

    def classify_spec(self, spec: WorkSpec) -> ComplexityTier:
        """Classify a whole spec: its override if present, else the highest item tier."""
        if self.command_override is not None:
            return self.command_override
        if spec.complexity is not None:
            return spec.complexity
        return highest_tier(self.classify(item) for item in spec.items)

    def explain(self, item: WorkItem, spec_override: Optional[ComplexityTier] = None) -> dict:
        """Explain why an item got its tier.

        Returns:
            Dict with tier, score, capability, model and reasons
        """
        result = self.classify_item(item, spec_override)
        return {
            "item_id": item.id,
            "tier": result.tier.value,
            "complexity_score": result.score,
            "capability": result.capability,
            "model": result.model,
            "overridden": result.overridden,
            "override_source": result.override_source,
            "reasons": result.reasons or ["No complexity signals (trivial)"],
        }

