"""
graphloader - concurrent upsert loader for line-delimited JSON into Neo4j.

Documents are grouped into fixed-size transactional batches, resolved
against existing nodes by configurable upsert key patterns and committed
under bounded parallelism with conflict retry.
"""

__version__ = "0.1.0"
