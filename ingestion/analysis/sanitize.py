"""
JSON Tree Sanitizer

Walks arbitrary JSON-like values ({null, string, list, dict, scalar}) and
strips non-ASCII characters from every string, collapsing whitespace. The
result reports whether anything changed so callers can skip needless writes.
"""

import re
from dataclasses import dataclass
from functools import singledispatch
from typing import Any

_NON_ASCII = re.compile(r'[^\x00-\x7F]')
_WHITESPACE = re.compile(r'\s+')


@dataclass(frozen=True)
class SanitizeResult:
    """Sanitized value and whether it differs from the input."""
    value: Any
    changed: bool


def sanitize_text(text: str) -> str:
    """Remove non-ASCII characters and normalize whitespace."""
    return _WHITESPACE.sub(' ', _NON_ASCII.sub('', text)).strip()


@singledispatch
def sanitize_tree(value: Any) -> SanitizeResult:
    """Sanitize a JSON tree. Scalars other than strings pass through unchanged."""
    return SanitizeResult(value, False)


@sanitize_tree.register(type(None))
def _(value: None) -> SanitizeResult:
    return SanitizeResult(None, False)


@sanitize_tree.register(str)
def _(value: str) -> SanitizeResult:
    cleaned = sanitize_text(value)
    return SanitizeResult(cleaned, cleaned != value)


@sanitize_tree.register(list)
@sanitize_tree.register(tuple)
def _(value) -> SanitizeResult:
    results = [sanitize_tree(item) for item in value]
    return SanitizeResult(
        [r.value for r in results],
        any(r.changed for r in results)
    )


@sanitize_tree.register(dict)
def _(value: dict) -> SanitizeResult:
    results = {key: sanitize_tree(item) for key, item in value.items()}
    return SanitizeResult(
        {key: r.value for key, r in results.items()},
        any(r.changed for r in results.values())
    )
