"""Spec loading.

- Declarative YAML/JSON and informal Markdown parsing (spec_loader.py, text_format.py)
- The single normalization boundary producing a WorkSpec (normalize.py)
"""

from ..graph import topological_order
from .normalize import normalize_spec, slugify
from .spec_loader import load_spec, parse_spec_text, validate_spec_path

__all__ = [
    "load_spec",
    "normalize_spec",
    "parse_spec_text",
    "slugify",
    "topological_order",
    "validate_spec_path",
]
