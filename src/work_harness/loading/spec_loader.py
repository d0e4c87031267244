"""Load work specifications from disk or memory.

Two surface syntaxes are supported: declarative YAML/JSON and informal
Markdown. Both are parsed into a raw mapping and handed to normalize_spec,
so every spec reaching the scheduler went through the same validation.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from ..errors import SpecFormatError
from ..models import WorkSpec
from .normalize import normalize_spec
from .text_format import parse_text


STRUCTURED_EXTENSIONS: set[str] = {".yaml", ".yml", ".json"}
TEXT_EXTENSIONS: set[str] = {".md", ".markdown", ".txt", ".spec"}
SUPPORTED_EXTENSIONS = STRUCTURED_EXTENSIONS | TEXT_EXTENSIONS

FORMAT_BY_EXTENSION = {
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".md": "text",
    ".markdown": "text",
    ".txt": "text",
    ".spec": "text",
}


def _parse_structured(text: str, fmt: str) -> Any:
    try:
        if fmt == "json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise SpecFormatError("<document>", f"invalid {fmt.upper()}: {e}") from e


def parse_spec_text(text: str, fmt: str = "yaml") -> WorkSpec:
    """Parse in-memory spec content.

    Args:
        text: Document content
        fmt: "yaml", "json" or "text" (Markdown)

    Raises:
        SpecFormatError: If the content is malformed, references an unknown
            dependency, or contains a dependency cycle.
    """
    if fmt == "text":
        return normalize_spec(parse_text(text), source_format="text")
    if fmt in ("yaml", "json"):
        return normalize_spec(_parse_structured(text, fmt), source_format="structured")
    raise SpecFormatError("<format>", f"unknown spec format '{fmt}'")


def load_spec(spec_path: Path | str) -> WorkSpec:
    """Load a spec file, choosing the parser by file extension.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        SpecFormatError: If the extension is unsupported or the content invalid.
    """
    path = Path(spec_path)
    if not path.exists():
        raise FileNotFoundError(f"Specification file not found: {path}")
    if not path.is_file():
        raise SpecFormatError("<path>", f"not a file: {path}")

    fmt = FORMAT_BY_EXTENSION.get(path.suffix.lower())
    if fmt is None:
        raise SpecFormatError(
            "<path>",
            f"unsupported file extension '{path.suffix}'. "
            f"Supported: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )

    return parse_spec_text(path.read_text(encoding="utf-8"), fmt)


def validate_spec_path(path: Path | str) -> tuple[bool, str]:
    """Validate a potential spec file.

    Args:
        path: Path to validate.

    Returns:
        Tuple of (is_valid, message). The message summarizes the spec when
        valid and explains the problem otherwise.
    """
    try:
        spec = load_spec(path)
    except FileNotFoundError:
        return False, f"File not found: {path}"
    except UnicodeDecodeError:
        return False, "File is not valid UTF-8 text"
    except SpecFormatError as e:
        return False, str(e)
    except OSError as e:
        return False, f"Cannot read file: {e}"

    return True, f"{spec.title}: {len(spec.items)} feature(s)"
