"""
Transactional graph store contract and its Neo4j implementation.

The transaction executor only talks to ``GraphStore`` / ``StoreTransaction``:
begin a transaction, look up upsert keys, apply a mutation, commit or abort.
``Neo4jGraphStore`` maps those onto the async Neo4j driver, one session and
one explicit transaction per attempt.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from neo4j import AsyncDriver, AsyncSession, AsyncTransaction

from . import queries
from .errors import ConflictError, StoreValidationError
from .mutation import Mutation, is_blank

LookupPairs = Sequence[Tuple[str, Any]]


class StoreTransaction(ABC):
    """One open transaction. Not reusable after commit or abort."""

    @abstractmethod
    async def lookup(self, pairs: LookupPairs) -> Dict[int, str]:
        """
        Find existing nodes by property value.

        Args:
            pairs: (field, value) filters

        Returns:
            Mapping from index into ``pairs`` to the element id of a
            matching node; indexes without a match are absent
        """

    @abstractmethod
    async def mutate(self, mutation: Mutation) -> Dict[str, str]:
        """
        Apply creates, updates and edges.

        Returns:
            Mapping from blank reference to the element id assigned to it
        """

    @abstractmethod
    async def commit(self) -> None:
        """Commit; raises on conflict or any other failure."""

    @abstractmethod
    async def abort(self) -> None:
        """Roll back and release the transaction. Safe to call after a failed commit."""


class GraphStore(ABC):
    """Factory for store transactions."""

    @abstractmethod
    async def begin(self) -> StoreTransaction:
        """Open a fresh transaction."""


class Neo4jTransaction(StoreTransaction):
    def __init__(self, session: AsyncSession, tx: AsyncTransaction, label: str):
        self._session = session
        self._tx = tx
        self._label = label

    async def lookup(self, pairs: LookupPairs) -> Dict[int, str]:
        by_field: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for idx, (field, value) in enumerate(pairs):
            by_field[field].append({"idx": idx, "value": value})

        found: Dict[int, str] = {}
        for field, keys in by_field.items():
            result = await self._tx.run(
                queries.lookup_query(self._label, field), keys=keys
            )
            async for record in result:
                if record["node_id"] is not None:
                    found[record["idx"]] = record["node_id"]
        return found

    async def mutate(self, mutation: Mutation) -> Dict[str, str]:
        assigned: Dict[str, str] = {}

        if mutation.creates:
            rows = [{"ref": c.ref, "props": c.properties} for c in mutation.creates]
            result = await self._tx.run(queries.create_query(self._label), rows=rows)
            async for record in result:
                assigned[record["ref"]] = record["node_id"]

        if mutation.updates:
            rows = [
                {"node_id": u.element_id, "props": u.properties}
                for u in mutation.updates
            ]
            result = await self._tx.run(queries.update_query(self._label), rows=rows)
            record = await result.single()
            matched = record["matched"] if record else 0
            if matched != len(rows):
                # A node resolved by lookup disappeared before we wrote to it
                raise ConflictError(
                    f"{len(rows) - matched} of {len(rows)} resolved nodes vanished "
                    "before update"
                )

        if mutation.edges:
            by_type: Dict[str, List[Dict[str, str]]] = defaultdict(list)
            for edge in mutation.edges:
                by_type[edge.field].append(
                    {
                        "source": self._resolve(edge.source, assigned),
                        "target": self._resolve(edge.target, assigned),
                    }
                )
            for rel_type, rows in by_type.items():
                result = await self._tx.run(queries.edge_query(rel_type), rows=rows)
                await result.consume()

        return assigned

    @staticmethod
    def _resolve(ref: str, assigned: Dict[str, str]) -> str:
        if not is_blank(ref):
            return ref
        try:
            return assigned[ref]
        except KeyError:
            raise StoreValidationError(f"edge references unknown blank node {ref}")

    async def commit(self) -> None:
        try:
            await self._tx.commit()
        finally:
            await self._session.close()

    async def abort(self) -> None:
        try:
            await self._tx.close()
        finally:
            await self._session.close()


class Neo4jGraphStore(GraphStore):
    """
    GraphStore backed by an async Neo4j driver.

    Args:
        driver: Connected AsyncDriver (owned by the caller)
        label: Label carried by every loaded node
        database: Target database, ``None`` for the server default
    """

    def __init__(self, driver: AsyncDriver, label: str, database: Optional[str] = None):
        self._driver = driver
        self._label = label
        self._database = database

    async def begin(self) -> StoreTransaction:
        session = self._driver.session(database=self._database)
        try:
            tx = await session.begin_transaction()
        except BaseException:
            await session.close()
            raise
        return Neo4jTransaction(session, tx, self._label)
