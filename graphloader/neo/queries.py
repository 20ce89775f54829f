"""
Cypher templates for upsert loading.

Labels, relationship types and lookup property names are interpolated as
backtick-quoted identifiers: the first two cannot be parameters, and a
literal property name lets a property index serve the match. Everything
else is a parameter.
"""


def quote_identifier(name: str) -> str:
    """Backtick-quote a label, relationship type or property name for Cypher."""
    if not name:
        raise ValueError("Cypher identifier must not be empty")
    return "`" + name.replace("`", "``") + "`"


def lookup_query(label: str, field: str) -> str:
    """
    Resolve upsert keys on one property to existing nodes.

    Parameters: ``keys`` - list of ``{idx, value}``.
    Returns one row per key that matched, with the smallest element id
    among matching nodes so resolution is deterministic.
    """
    return f"""
UNWIND $keys AS key
MATCH (n:{quote_identifier(label)})
WHERE n.{quote_identifier(field)} = key.value
WITH key, min(elementId(n)) AS node_id
RETURN key.idx AS idx, node_id
"""


def create_query(label: str) -> str:
    """
    Create new nodes.

    Parameters: ``rows`` - list of ``{ref, props}``.
    Returns the blank reference and the element id assigned to it.
    """
    return f"""
UNWIND $rows AS row
CREATE (n:{quote_identifier(label)})
SET n = row.props
RETURN row.ref AS ref, elementId(n) AS node_id
"""


def update_query(label: str) -> str:
    """
    Merge properties into existing nodes.

    Parameters: ``rows`` - list of ``{node_id, props}``.
    Returns the number of nodes actually matched.
    """
    return f"""
UNWIND $rows AS row
MATCH (n:{quote_identifier(label)})
WHERE elementId(n) = row.node_id
SET n += row.props
RETURN count(n) AS matched
"""


def edge_query(rel_type: str) -> str:
    """
    Link parent nodes to nested child nodes.

    Parameters: ``rows`` - list of ``{source, target}`` element ids.
    MERGE keeps replays from duplicating relationships.
    """
    return f"""
UNWIND $rows AS row
MATCH (a) WHERE elementId(a) = row.source
MATCH (b) WHERE elementId(b) = row.target
MERGE (a)-[:{quote_identifier(rel_type)}]->(b)
RETURN count(*) AS merged
"""
