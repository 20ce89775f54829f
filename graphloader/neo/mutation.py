"""
Mutation value types shared by the planner and the store.

Node references are strings: either a store-assigned element id or a blank
reference (``_:b0``) naming a node created inside the current transaction.
Blank references and the ids they resolve to are only meaningful within a
single transaction attempt.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

BLANK_PREFIX = "_:"


def blank_ref(index: int) -> str:
    return f"{BLANK_PREFIX}b{index}"


def is_blank(ref: str) -> bool:
    return ref.startswith(BLANK_PREFIX)


@dataclass
class NodeCreate:
    ref: str
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NodeUpdate:
    element_id: str
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EdgeMerge:
    source: str
    field: str
    target: str


@dataclass
class Mutation:
    """Node creations, property merges and edges for one transaction attempt."""

    creates: List[NodeCreate] = field(default_factory=list)
    updates: List[NodeUpdate] = field(default_factory=list)
    edges: List[EdgeMerge] = field(default_factory=list)

    @property
    def property_count(self) -> int:
        """Properties set plus edges merged; the progress unit."""
        props = sum(len(c.properties) for c in self.creates)
        props += sum(len(u.properties) for u in self.updates)
        return props + len(self.edges)
