"""
Mutation planning: from batch documents to store mutations.

Each document expands into a tree of NodeSpecs. Nested JSON objects, and
arrays whose items are all objects, become child nodes linked to their
parent by an edge named after the field; each child carries its own upsert
keys. Planning an attempt is a pure function of the expanded batch and the
lookup results of that attempt:

1. ``collect_lookup_pairs`` gathers every distinct (field, value) filter
2. the store answers the lookup
3. ``resolve_lookup`` picks, per node, the first key that resolved
4. ``plan_mutation`` turns resolved nodes into updates, the rest into
   creates, and links parents to children

Nodes in one batch that share an upsert key, directly or through a chain of
other nodes, are planned onto one target regardless of their order, so a
batch never creates two nodes for one key.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from graphloader.neo.mutation import EdgeMerge, Mutation, NodeCreate, NodeUpdate, blank_ref, is_blank

from .upsert_keys import Patterns, UpsertKeySet, extract_upsert_keys, is_scalar

GEOJSON_TYPES = frozenset(
    {
        "Point",
        "LineString",
        "Polygon",
        "MultiPoint",
        "MultiLineString",
        "MultiPolygon",
        "GeometryCollection",
        "Feature",
        "FeatureCollection",
    }
)

LookupPair = Tuple[str, str, Any]


def is_geojson(value: Any) -> bool:
    return isinstance(value, dict) and value.get("type") in GEOJSON_TYPES


def is_node(value: Any) -> bool:
    """True when a JSON value becomes a node of its own."""
    return isinstance(value, dict) and not is_geojson(value)


def is_node_list(value: Any) -> bool:
    return isinstance(value, list) and bool(value) and all(is_node(v) for v in value)


def _property_value(value: Any) -> Any:
    # Neo4j properties hold scalars or homogeneous scalar lists, never maps
    if isinstance(value, list) and all(is_scalar(v) for v in value):
        return list(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return value


@dataclass
class NodeSpec:
    """One node to be written, addressed by its path inside the batch."""

    path: str
    properties: Dict[str, Any]
    upsert_keys: UpsertKeySet = ()
    children: List[Tuple[str, "NodeSpec"]] = field(default_factory=list)

    def walk(self) -> Iterator["NodeSpec"]:
        """Yield this node and its descendants, parents first."""
        yield self
        for _, child in self.children:
            yield from child.walk()


def expand_document(
    document: Mapping[str, Any],
    patterns: Patterns,
    path: str,
    upsert_keys: Optional[UpsertKeySet] = None,
) -> NodeSpec:
    """
    Expand a document into its node tree.

    Args:
        document: JSON object
        patterns: Compiled upsert key patterns, applied at every level
        path: Address of this node, e.g. ``3`` or ``3.owner[0]``
        upsert_keys: Precomputed keys for this level, if already extracted

    Returns:
        Root NodeSpec; JSON nulls are omitted from properties
    """
    properties: Dict[str, Any] = {}
    children: List[Tuple[str, NodeSpec]] = []

    for name, value in document.items():
        if value is None:
            continue
        if is_node(value):
            children.append((name, expand_document(value, patterns, f"{path}.{name}")))
        elif is_node_list(value):
            for index, item in enumerate(value):
                children.append(
                    (name, expand_document(item, patterns, f"{path}.{name}[{index}]"))
                )
        else:
            properties[name] = _property_value(value)

    if upsert_keys is None:
        upsert_keys = extract_upsert_keys(document, patterns)

    return NodeSpec(path, properties, upsert_keys, children)


def walk_all(roots: Iterable[NodeSpec]) -> Iterator[NodeSpec]:
    for root in roots:
        yield from root.walk()


@dataclass
class LookupPlan:
    """Distinct lookup filters of a batch, in first-seen order."""

    pairs: List[Tuple[str, Any]] = field(default_factory=list)
    index: Dict[LookupPair, int] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.pairs)


def collect_lookup_pairs(roots: Iterable[NodeSpec]) -> LookupPlan:
    plan = LookupPlan()
    for node in walk_all(roots):
        for key in node.upsert_keys:
            pair = key.lookup_pair
            if pair not in plan.index:
                plan.index[pair] = len(plan.pairs)
                plan.pairs.append((key.field, key.value))
    return plan


def resolve_lookup(
    roots: Iterable[NodeSpec], plan: LookupPlan, found: Mapping[int, str]
) -> Dict[str, str]:
    """
    Map node paths to existing element ids.

    A node resolves through the first of its keys, in key order, that the
    store matched. Nodes absent from the result are new.
    """
    resolved: Dict[str, str] = {}
    for node in walk_all(roots):
        for key in node.upsert_keys:
            element_id = found.get(plan.index[key.lookup_pair])
            if element_id is not None:
                resolved[node.path] = element_id
                break
    return resolved


def _group_nodes(nodes: Sequence[NodeSpec]) -> List[int]:
    """
    Partition nodes that share any upsert key, directly or through other nodes.

    Returns, for each node, the index of the first node in its group.
    """
    parent = list(range(len(nodes)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    first_with: Dict[LookupPair, int] = {}
    for i, node in enumerate(nodes):
        for key in node.upsert_keys:
            a, b = find(i), find(first_with.setdefault(key.lookup_pair, i))
            if a != b:
                parent[max(a, b)] = min(a, b)
    return [find(i) for i in range(len(nodes))]


def plan_mutation(roots: Sequence[NodeSpec], resolved: Mapping[str, str]) -> Mutation:
    """
    Build the mutation for one transaction attempt.

    Nodes sharing an upsert key form one target: the first existing node any
    of them resolved to, or else one new node. Properties of nodes planned
    onto the same target merge in batch order, later values winning.
    """
    nodes = list(walk_all(roots))
    groups = _group_nodes(nodes)

    targets: Dict[int, str] = {}
    for node, group in zip(nodes, groups):
        element_id = resolved.get(node.path)
        if element_id is not None:
            targets.setdefault(group, element_id)

    creates: Dict[str, NodeCreate] = {}
    updates: Dict[str, NodeUpdate] = {}
    refs: Dict[str, str] = {}

    for node, group in zip(nodes, groups):
        ref = targets.get(group)
        if ref is None:
            ref = blank_ref(len(creates))
            targets[group] = ref
            creates[ref] = NodeCreate(ref)

        if is_blank(ref):
            creates[ref].properties.update(node.properties)
        else:
            updates.setdefault(ref, NodeUpdate(ref)).properties.update(node.properties)
        refs[node.path] = ref

    edges: Dict[EdgeMerge, None] = {}
    for node in nodes:
        for name, child in node.children:
            edges.setdefault(EdgeMerge(refs[node.path], name, refs[child.path]), None)

    return Mutation(
        creates=list(creates.values()),
        updates=list(updates.values()),
        edges=list(edges),
    )
