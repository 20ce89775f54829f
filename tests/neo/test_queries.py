import pytest

from graphloader.neo.queries import (
    create_query,
    edge_query,
    lookup_query,
    quote_identifier,
    update_query,
)


def test_quote_identifier_escapes_backticks():
    assert quote_identifier("Document") == "`Document`"
    assert quote_identifier("we`ird") == "`we``ird`"


def test_quote_identifier_rejects_empty():
    with pytest.raises(ValueError):
        quote_identifier("")


def test_lookup_names_the_key_property():
    query = lookup_query("Document", "xid")
    assert "MATCH (n:`Document`)" in query
    assert "WHERE n.`xid` = key.value" in query
    assert "n[" not in query
    assert "min(elementId(n))" in query
    assert "UNWIND $keys" in query


def test_lookup_quotes_odd_property_names():
    assert "n.`first name` = key.value" in lookup_query("Document", "first name")


def test_create_replaces_update_merges():
    assert "SET n = row.props" in create_query("Document")
    assert "SET n += row.props" in update_query("Document")
    assert "count(n) AS matched" in update_query("Document")


def test_edges_are_merged():
    query = edge_query("owner")
    assert "MERGE (a)-[:`owner`]->(b)" in query
