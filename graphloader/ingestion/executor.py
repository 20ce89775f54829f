"""
Transaction executor: commits one batch, retrying on write conflicts.

Every attempt runs in a fresh store transaction: lookup, plan, mutate,
commit. Nothing planned in one attempt (lookup results, blank node ids,
the mutation) survives into the next, so a retried batch is re-resolved
against whatever concurrent transactions committed in the meantime.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from graphloader.neo.errors import ErrorClass, ErrorClassifier
from graphloader.neo.store import GraphStore, StoreTransaction
from graphloader.shared.config import RetryConfig
from graphloader.shared.observability import get_logger, metrics

from .chunker import Batch
from .planner import (
    LookupPlan,
    NodeSpec,
    collect_lookup_pairs,
    expand_document,
    plan_mutation,
    resolve_lookup,
)
from .upsert_keys import Patterns

logger = get_logger(__name__)

CANCELLED_MESSAGE = "load cancelled"


class TransactionOutcome(str, Enum):
    COMMITTED = "committed"
    CONFLICT_RETRYABLE = "conflict_retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class BatchResult:
    """Final outcome of executing one batch."""

    sequence: int
    outcome: TransactionOutcome
    attempts: int
    conflicts: int = 0
    properties_written: int = 0
    error: Optional[str] = None
    error_class: Optional[ErrorClass] = None

    @property
    def committed(self) -> bool:
        return self.outcome is TransactionOutcome.COMMITTED


class TransactionExecutor:
    """
    Executes batches against a GraphStore.

    Args:
        store: Transaction factory
        retry: Conflict retry budget and backoff curve
        classify: Maps an attempt failure to its ErrorClass
        patterns: Compiled upsert key patterns (used for nested nodes)
        sleep: Awaitable used for backoff, replaceable in tests
    """

    def __init__(
        self,
        store: GraphStore,
        retry: RetryConfig,
        classify: ErrorClassifier,
        patterns: Patterns,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._retry = retry
        self._classify = classify
        self._patterns = patterns
        self._sleep = sleep

    def backoff_delay(self, retry: int) -> float:
        """Delay before retry number ``retry`` (0-based), jitter included."""
        delay = min(
            self._retry.backoff_max_seconds,
            self._retry.backoff_base_seconds * (2**retry),
        )
        if self._retry.jitter_seconds:
            delay += random.uniform(0, self._retry.jitter_seconds)
        return delay

    def _expand(self, batch: Batch) -> List[NodeSpec]:
        return [
            expand_document(record.document, self._patterns, str(index), keys)
            for index, (record, keys) in enumerate(
                zip(batch.records, batch.upsert_keys)
            )
        ]

    async def execute(
        self, batch: Batch, cancelled: Optional[asyncio.Event] = None
    ) -> BatchResult:
        """
        Commit a batch, retrying conflicts within the retry budget.

        Args:
            batch: Records to commit together
            cancelled: Load-wide cancellation signal; checked before each retry

        Returns:
            BatchResult with outcome committed or fatal
        """
        roots = self._expand(batch)
        plan = collect_lookup_pairs(roots)
        attempts = 0
        conflicts = 0

        metrics.transactions_in_flight.inc()
        try:
            while True:
                attempts += 1
                outcome, written, exc, error_class = await self._attempt(roots, plan)

                if outcome is TransactionOutcome.COMMITTED:
                    logger.debug(
                        "batch_committed",
                        sequence=batch.sequence,
                        lines=batch.line_span,
                        attempts=attempts,
                        properties_written=written,
                    )
                    return BatchResult(
                        sequence=batch.sequence,
                        outcome=outcome,
                        attempts=attempts,
                        conflicts=conflicts,
                        properties_written=written,
                    )

                if outcome is TransactionOutcome.CONFLICT_RETRYABLE:
                    conflicts += 1
                    metrics.transaction_conflicts_total.inc()
                    if conflicts > self._retry.max_retries:
                        return self._fail(
                            batch,
                            attempts,
                            conflicts,
                            f"conflict retries exhausted after {attempts} attempts: {exc}",
                            ErrorClass.CONFLICT,
                        )
                    if cancelled is not None and cancelled.is_set():
                        return self._fail(batch, attempts, conflicts, CANCELLED_MESSAGE)

                    delay = self.backoff_delay(conflicts - 1)
                    logger.info(
                        "batch_conflict_retry",
                        sequence=batch.sequence,
                        attempt=attempts,
                        delay_seconds=round(delay, 3),
                        error=str(exc),
                    )
                    await self._sleep(delay)
                    if cancelled is not None and cancelled.is_set():
                        return self._fail(batch, attempts, conflicts, CANCELLED_MESSAGE)
                    continue

                return self._fail(batch, attempts, conflicts, str(exc), error_class)
        finally:
            metrics.transactions_in_flight.dec()

    def _fail(
        self,
        batch: Batch,
        attempts: int,
        conflicts: int,
        error: str,
        error_class: Optional[ErrorClass] = None,
    ) -> BatchResult:
        logger.warning(
            "batch_failed",
            sequence=batch.sequence,
            lines=batch.line_span,
            attempts=attempts,
            error=error,
            error_class=error_class.value if error_class else None,
        )
        return BatchResult(
            sequence=batch.sequence,
            outcome=TransactionOutcome.FATAL,
            attempts=attempts,
            conflicts=conflicts,
            error=error,
            error_class=error_class,
        )

    async def _attempt(
        self, roots: List[NodeSpec], plan: LookupPlan
    ) -> Tuple[TransactionOutcome, int, Optional[Exception], Optional[ErrorClass]]:
        """Run one transaction attempt and classify its result."""
        started = time.monotonic()
        try:
            written = await self._run_transaction(roots, plan)
        except Exception as e:
            error_class = self._classify(e)
            metrics.transaction_errors_total.labels(error_class=error_class.value).inc()
            metrics.transaction_duration_seconds.labels(
                outcome=error_class.value
            ).observe(time.monotonic() - started)
            if error_class is ErrorClass.CONFLICT:
                return TransactionOutcome.CONFLICT_RETRYABLE, 0, e, error_class
            return TransactionOutcome.FATAL, 0, e, error_class

        metrics.transaction_duration_seconds.labels(outcome="committed").observe(
            time.monotonic() - started
        )
        return TransactionOutcome.COMMITTED, written, None, None

    async def _run_transaction(self, roots: List[NodeSpec], plan: LookupPlan) -> int:
        tx = await self._store.begin()
        try:
            found = await tx.lookup(plan.pairs) if plan else {}
            mutation = plan_mutation(roots, resolve_lookup(roots, plan, found))
            await tx.mutate(mutation)
            await tx.commit()
        except BaseException:
            await self._abort(tx)
            raise
        return mutation.property_count

    @staticmethod
    async def _abort(tx: StoreTransaction) -> None:
        try:
            await tx.abort()
        except Exception as e:
            logger.warning("transaction_abort_failed", error=str(e))
