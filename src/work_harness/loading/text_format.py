"""Parser for the informal structured-text (Markdown) spec syntax.

Expected layout::

    # Shop checkout
    Property: shop
    Complexity: standard

    ## Features

    ### Feature: Cart totals
    Priority: P1
    Labels: backend
    Depends on: Price catalog
    Cart totals include tax and discounts.

    Files:
    - src/cart.py

    Acceptance:
    - Totals are correct `pytest tests/test_cart.py`

    ## Requirements
    - Python 3.11

    ## Success Criteria
    - Checkout works end to end

The parser only extracts a raw mapping; validation happens in normalize_spec.
"""

import re
from typing import Any, Optional


FEATURE_SECTIONS = {"features", "feature list", "work items"}
REQUIREMENT_SECTIONS = {"requirements", "cross-cutting requirements"}
SUCCESS_SECTIONS = {"success", "success criteria"}

# Feature metadata keys (normalized) -> raw mapping field
FEATURE_KEYS = {
    "priority": "priority",
    "labels": "labels",
    "label": "labels",
    "depends on": "depends_on",
    "dependencies": "depends_on",
    "complexity": "complexity",
    "files": "files",
    "acceptance": "acceptance",
    "acceptance criteria": "acceptance",
    "description": "description",
}

LIST_FIELDS = {"labels", "depends_on", "files", "acceptance"}

TOP_LEVEL_KEYS = {"title", "property", "complexity"}

HEADING = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
KEY_VALUE = re.compile(r"^\*{0,2}([A-Za-z][A-Za-z _-]*?)\*{0,2}\s*:\s*(.*)$")
BULLET = re.compile(r"^\s*[-*+]\s+(?:\[[ xX]\]\s+)?(.*)$")
TRAILING_COMMAND = re.compile(r"^(.*?)[\s:\-]*`([^`]+)`\s*$")
FEATURE_PREFIX = re.compile(r"^feature\s*[:\-]\s*", re.IGNORECASE)


def _normalize_key(key: str) -> str:
    return re.sub(r"[\s_-]+", " ", key.strip().lower())


def _split_inline_list(value: str) -> list[str]:
    if value.strip().lower() in ("", "none", "-", "n/a"):
        return []
    return [part.strip().strip("`") for part in value.split(",") if part.strip()]


def _acceptance_entry(text: str) -> Any:
    match = TRAILING_COMMAND.match(text)
    if not match:
        return text
    description, command = match.group(1).strip(), match.group(2).strip()
    return {"description": description or command, "verify": command}


class TextSpecParser:
    """Line-oriented parser for Markdown work specs."""

    def __init__(self):
        self.raw: dict[str, Any] = {}
        self._section: Optional[str] = None
        self._feature: Optional[dict[str, Any]] = None
        self._list_field: Optional[str] = None
        self._description: list[str] = []

    def parse(self, text: str) -> dict[str, Any]:
        """Parse Markdown text into a raw spec mapping."""
        self.raw = {"features": [], "requirements": [], "success": []}
        self._section = None
        self._feature = None
        self._list_field = None
        self._description = []

        for line in text.splitlines():
            self._parse_line(line.rstrip())

        self._finish_feature()
        return self.raw

    def _parse_line(self, line: str) -> None:
        heading = HEADING.match(line)
        if heading:
            self._on_heading(len(heading.group(1)), heading.group(2))
            return

        if not line.strip():
            return

        bullet = BULLET.match(line)
        if bullet:
            self._on_bullet(bullet.group(1).strip())
            return

        key_value = KEY_VALUE.match(line.strip())
        if key_value and self._on_key_value(key_value.group(1), key_value.group(2).strip()):
            return

        # Free text
        self._list_field = None
        if self._feature is not None:
            self._description.append(line.strip())

    def _on_heading(self, level: int, text: str) -> None:
        name = _normalize_key(text)

        if level == 1:
            self._finish_feature()
            self.raw.setdefault("title", text)
            self._section = None
            return

        is_feature_heading = bool(FEATURE_PREFIX.match(text))
        if (level >= 3 and self._section == "features") or is_feature_heading:
            self._finish_feature()
            self._section = "features"
            self._feature = {"title": FEATURE_PREFIX.sub("", text).strip()}
            return

        self._finish_feature()
        if name in FEATURE_SECTIONS:
            self._section = "features"
        elif name in REQUIREMENT_SECTIONS:
            self._section = "requirements"
        elif name in SUCCESS_SECTIONS:
            self._section = "success"
        else:
            self._section = "other"

    def _on_bullet(self, text: str) -> None:
        if self._feature is not None:
            if self._list_field is None:
                self._description.append(f"- {text}")
                return
            entry = _acceptance_entry(text) if self._list_field == "acceptance" else text.strip("`")
            self._feature.setdefault(self._list_field, []).append(entry)
            return

        if self._section in ("requirements", "success"):
            self.raw[self._section].append(text)

    def _on_key_value(self, key: str, value: str) -> bool:
        """Handle a "Key: value" line. Returns False if the key is not ours."""
        name = _normalize_key(key)

        if self._feature is None:
            if self._section is None and name in TOP_LEVEL_KEYS:
                self.raw[name] = value
                return True
            return False

        field = FEATURE_KEYS.get(name)
        if field is None:
            return False

        if field in LIST_FIELDS:
            self._list_field = field
            items = self._feature.setdefault(field, [])
            if field == "acceptance":
                if value:
                    items.append(_acceptance_entry(value))
            else:
                items.extend(_split_inline_list(value))
        else:
            self._list_field = None
            self._feature[field] = value
        return True

    def _finish_feature(self) -> None:
        if self._feature is None:
            return
        if self._description and "description" not in self._feature:
            self._feature["description"] = "\n".join(self._description)
        self.raw["features"].append(self._feature)
        self._feature = None
        self._list_field = None
        self._description = []


def parse_text(text: str) -> dict[str, Any]:
    """Parse informal Markdown spec text into a raw mapping."""
    return TextSpecParser().parse(text)
