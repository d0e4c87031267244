"""Normalization boundary between the spec surface syntaxes and WorkSpec.

Both parsers (declarative and informal text) produce a plain mapping; this
module is the only place that turns such a mapping into a validated
WorkSpec. All validation errors are SpecFormatError naming the field.
"""

import re
from typing import Any, Optional

from ..errors import SpecFormatError
from ..graph import find_cycle
from ..models import AcceptanceCriterion, ComplexityTier, WorkItem, WorkSpec


DEFAULT_PRIORITY = 2

PRIORITY_PATTERN = re.compile(r"^[Pp]?(\d+)$")

# Keys accepted for an acceptance criterion's verification command
VERIFY_KEYS = ("verify", "verification_command", "command")


def slugify(title: str) -> str:
    """Turn a title into an item id ("User login" -> "user-login")."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug or "item"


def unique_id(base: str, used: set[str]) -> str:
    candidate = base
    counter = 1
    while candidate in used:
        candidate = f"{base}-{counter}"
        counter += 1
    used.add(candidate)
    return candidate


def parse_priority(value: Any, field: str) -> int:
    """Parse an integer or "P<n>" priority."""
    if value is None or value == "":
        return DEFAULT_PRIORITY
    if isinstance(value, bool):
        raise SpecFormatError(field, f"invalid priority {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise SpecFormatError(field, f"priority must be >= 0, got {value}")
        return value
    if isinstance(value, str):
        match = PRIORITY_PATTERN.match(value.strip())
        if match:
            return int(match.group(1))
    raise SpecFormatError(field, f"invalid priority {value!r} (use an integer or P0, P1, ...)")


def parse_tier(value: Any, field: str) -> Optional[ComplexityTier]:
    if value is None or value == "":
        return None
    if isinstance(value, ComplexityTier):
        return value
    if isinstance(value, str):
        try:
            return ComplexityTier(value.strip().lower())
        except ValueError:
            pass
    allowed = ", ".join(t.value for t in ComplexityTier)
    raise SpecFormatError(field, f"unknown complexity {value!r} (expected one of: {allowed})")


def _optional_str(value: Any, field: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise SpecFormatError(field, f"expected a string, got {type(value).__name__}")
    text = str(value).strip()
    return text or None


def _string_list(value: Any, field: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, list):
        raise SpecFormatError(field, f"expected a list, got {type(value).__name__}")

    result: list[str] = []
    for i, entry in enumerate(value):
        text = _optional_str(entry, f"{field}[{i}]")
        if text and text not in result:
            result.append(text)
    return result


def _parse_acceptance(value: Any, field: str) -> list[AcceptanceCriterion]:
    if value is None:
        return []
    if isinstance(value, (str, dict)):
        value = [value]
    if not isinstance(value, list):
        raise SpecFormatError(field, f"expected a list, got {type(value).__name__}")

    criteria = []
    for i, entry in enumerate(value):
        entry_field = f"{field}[{i}]"
        if isinstance(entry, str):
            if entry.strip():
                criteria.append(AcceptanceCriterion(description=entry.strip()))
            continue
        if not isinstance(entry, dict):
            raise SpecFormatError(entry_field, "expected a string or a {description, verify} mapping")

        verify = None
        for key in VERIFY_KEYS:
            if entry.get(key):
                verify = _optional_str(entry[key], f"{entry_field}.{key}")
                break
        description = _optional_str(entry.get("description"), f"{entry_field}.description")
        if not description:
            if not verify:
                raise SpecFormatError(f"{entry_field}.description", "missing description")
            description = verify
        criteria.append(AcceptanceCriterion(description=description, verify=verify))
    return criteria


def normalize_spec(raw: Any, source_format: str = "structured") -> WorkSpec:
    """Validate a raw spec mapping and build the canonical WorkSpec.

    Args:
        raw: Mapping produced by one of the surface parsers
        source_format: "structured" or "text", recorded on the WorkSpec

    Returns:
        The validated WorkSpec, items in declaration order, all pending.

    Raises:
        SpecFormatError: On any malformed field, unresolved dependency or cycle.
    """
    if not isinstance(raw, dict):
        raise SpecFormatError("<document>", "expected a mapping at the top level")

    title = _optional_str(raw.get("title"), "title")
    if not title:
        raise SpecFormatError("title", "missing spec title")

    property_tag = _optional_str(raw.get("property"), "property")
    complexity = parse_tier(raw.get("complexity"), "complexity")

    features = raw.get("features")
    if features is None:
        raise SpecFormatError("features", "missing features list")
    if not isinstance(features, list):
        raise SpecFormatError("features", f"expected a list, got {type(features).__name__}")
    if not features:
        raise SpecFormatError("features", "at least one feature is required")

    # First pass: titles -> ids, so depends_on can point forward
    ids_by_title: dict[str, str] = {}
    used_ids: set[str] = set()
    for i, feature in enumerate(features):
        if not isinstance(feature, dict):
            raise SpecFormatError(f"features[{i}]", "expected a mapping")
        feature_title = _optional_str(feature.get("title"), f"features[{i}].title")
        if not feature_title:
            raise SpecFormatError(f"features[{i}].title", "missing feature title")
        key = feature_title.casefold()
        if key in ids_by_title:
            raise SpecFormatError(f"features[{i}].title", f"duplicate feature title '{feature_title}'")
        ids_by_title[key] = unique_id(slugify(feature_title), used_ids)

    items: list[WorkItem] = []
    for i, feature in enumerate(features):
        prefix = f"features[{i}]"
        feature_title = _optional_str(feature.get("title"), f"{prefix}.title")

        depends_on: list[str] = []
        for j, dep in enumerate(_string_list(feature.get("depends_on"), f"{prefix}.depends_on")):
            dep_id = ids_by_title.get(dep.casefold())
            if dep_id is None:
                raise SpecFormatError(
                    f"{prefix}.depends_on[{j}]",
                    f"unresolved reference '{dep}' (no feature with that title)"
                )
            if dep_id not in depends_on:
                depends_on.append(dep_id)

        items.append(WorkItem(
            id=ids_by_title[feature_title.casefold()],
            title=feature_title,
            description=_optional_str(feature.get("description"), f"{prefix}.description") or "",
            priority=parse_priority(feature.get("priority"), f"{prefix}.priority"),
            labels=_string_list(feature.get("labels"), f"{prefix}.labels"),
            depends_on=depends_on,
            acceptance_criteria=_parse_acceptance(feature.get("acceptance"), f"{prefix}.acceptance"),
            files=_string_list(feature.get("files"), f"{prefix}.files"),
            property=property_tag,
            complexity_override=parse_tier(feature.get("complexity"), f"{prefix}.complexity"),
            order=i,
        ))

    edges = {item.id: item.depends_on for item in items}
    cycle = find_cycle(edges)
    if cycle:
        titles = {item.id: item.title for item in items}
        members = " -> ".join(titles[item_id] for item_id in cycle)
        raise SpecFormatError("depends_on", f"dependency cycle: {members}")

    return WorkSpec(
        title=title,
        property=property_tag,
        complexity=complexity,
        items=items,
        requirements=_string_list(raw.get("requirements"), "requirements"),
        success=_string_list(raw.get("success"), "success"),
        source_format=source_format,
    )
