"""
Upsert key extraction.

A document field is an upsert key when its name matches one of the
configured regular expressions (``re.search`` semantics, so patterns match
anywhere in the name unless anchored) and its value is a JSON scalar.
Keys are collected pattern by pattern in configuration order, and within a
pattern in document field order; a field matched by two patterns yields two
keys. Matching fields holding objects, arrays or null are skipped silently,
they cannot serve as a lookup filter.
"""

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Pattern, Sequence, Tuple

Patterns = Sequence[Pattern[str]]


@dataclass(frozen=True)
class UpsertKey:
    """One (pattern, field, value) triple identifying a document."""

    pattern: str
    field: str
    value: Any

    @property
    def lookup_pair(self) -> Tuple[str, str, Any]:
        """
        Hashable identity of the (field, value) filter.

        Booleans are kept apart from numbers (``True == 1`` in Python but
        not in Cypher) while ints and floats share a kind, as they compare
        equal in the store.
        """
        return (self.field, _value_kind(self.value), self.value)


UpsertKeySet = Tuple[UpsertKey, ...]


def _value_kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    return "string"


def is_scalar(value: Any) -> bool:
    """True for JSON strings, numbers and booleans (not null)."""
    return isinstance(value, (str, bool, int, float))


def compile_patterns(patterns: Iterable[str]) -> List[Pattern[str]]:
    """
    Compile upsert key patterns, preserving order.

    Raises:
        ValueError: If a pattern is not a valid regular expression
    """
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise ValueError(f"invalid upsert pattern {pattern!r}: {e}")
    return compiled


def extract_upsert_keys(document: Mapping[str, Any], patterns: Patterns) -> UpsertKeySet:
    """
    Compute the upsert keys of a document.

    Args:
        document: Parsed JSON object
        patterns: Compiled patterns in configuration order

    Returns:
        Tuple of UpsertKey, empty when no field qualifies (pure insert)
    """
    keys = []
    for pattern in patterns:
        for field, value in document.items():
            if is_scalar(value) and pattern.search(field):
                keys.append(UpsertKey(pattern.pattern, field, value))
    return tuple(keys)
