"""
Load run progress tracker.

Accumulates record and batch outcomes for one load run. Written from the
dispatch workers and from the producer thread (parse errors), read by the
progress renderer, and snapshotted at shutdown; every mutation and read
goes through one lock so snapshots are internally consistent.

Usage in the CLI:
    from graphloader.ingestion.run_stats import ProgressTracker

    tracker = ProgressTracker.start_new(max_failure_details=1000)

    # Dispatch pool, per batch:
    tracker.record_batch(batch, result)

    # Shutdown:
    tracker.emit_summary()
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import IO, Any, Callable, Dict, List, Optional

import structlog

from graphloader.shared.observability import metrics

from .chunker import Batch
from .source import ParseError

logger = structlog.get_logger(__name__)

RejectSink = Callable[[str], None]


@dataclass(frozen=True)
class FailedRecord:
    """Details of a permanently failed input record."""

    line_number: int
    error: str
    batch_sequence: Optional[int] = None
    error_class: Optional[str] = None


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable view of the tracker at one instant."""

    records_committed: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    batches_committed: int = 0
    batches_failed: int = 0
    batches_skipped: int = 0
    conflicts: int = 0
    properties_written: int = 0
    elapsed_seconds: float = 0.0

    @property
    def records_processed(self) -> int:
        return self.records_committed + self.records_failed + self.records_skipped

    @property
    def properties_per_second(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.properties_written / self.elapsed_seconds


class RejectWriter:
    """Appends the raw text of failed records to a file, one per line."""

    def __init__(self, path: str):
        self.path = path
        self._file: Optional[IO[str]] = None

    def open(self) -> "RejectWriter":
        self._file = open(self.path, "w", encoding="utf-8")
        return self

    def __call__(self, raw: str) -> None:
        if self._file is None:
            raise RuntimeError("RejectWriter is not open")
        self._file.write(raw + "\n")
        self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> "RejectWriter":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass
class ProgressTracker:
    """
    Thread-safe accumulator for one load run.

    Counts stay exact; per-record failure details are kept only up to
    ``max_failure_details``.
    """

    run_id: str
    start_time: float
    end_time: Optional[float] = None
    max_failure_details: int = 1000
    reject_sink: Optional[RejectSink] = None

    # Record counts
    records_committed: int = 0
    records_failed: int = 0
    records_skipped: int = 0

    # Batch counts
    batches_committed: int = 0
    batches_failed: int = 0
    batches_skipped: int = 0

    conflicts: int = 0
    properties_written: int = 0

    # Failure details
    failed_records: List[FailedRecord] = field(default_factory=list)
    failures_truncated: int = 0

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def start_new(
        cls,
        max_failure_details: int = 1000,
        reject_sink: Optional[RejectSink] = None,
    ) -> "ProgressTracker":
        """Create a tracker with a generated run_id, clock started now."""
        return cls(
            run_id=f"load_{datetime.now().strftime('%Y%m%d_%H%M%S')}",
            start_time=time.monotonic(),
            max_failure_details=max_failure_details,
            reject_sink=reject_sink,
        )

    def _add_failure(self, raw: str, failure: FailedRecord) -> None:
        # Caller holds the lock
        if len(self.failed_records) < self.max_failure_details:
            self.failed_records.append(failure)
        else:
            self.failures_truncated += 1
        if self.reject_sink is not None:
            self.reject_sink(raw)

    def record_parse_error(self, error: ParseError) -> None:
        """Count a malformed input line as permanently failed."""
        with self._lock:
            self.records_failed += 1
            self._add_failure(
                error.raw,
                FailedRecord(line_number=error.line_number, error=error.message),
            )
        metrics.records_total.labels(status="failed").inc()

    def record_batch(self, batch: Batch, result: Any) -> None:
        """
        Record the final outcome of a batch.

        Args:
            batch: The executed batch
            result: BatchResult from the transaction executor
        """
        error_class = result.error_class.value if result.error_class else None
        with self._lock:
            self.conflicts += result.conflicts
            if result.committed:
                self.batches_committed += 1
                self.records_committed += len(batch)
                self.properties_written += result.properties_written
            else:
                self.batches_failed += 1
                self.records_failed += len(batch)
                for record in batch.records:
                    self._add_failure(
                        record.raw,
                        FailedRecord(
                            line_number=record.line_number,
                            error=result.error or "unknown error",
                            batch_sequence=batch.sequence,
                            error_class=error_class,
                        ),
                    )

        if result.committed:
            metrics.batches_total.labels(outcome="committed").inc()
            metrics.records_total.labels(status="committed").inc(len(batch))
            metrics.properties_written_total.inc(result.properties_written)
        else:
            metrics.batches_total.labels(outcome="fatal").inc()
            metrics.records_total.labels(status="failed").inc(len(batch))

    def record_skipped(self, batch: Batch) -> None:
        """Count a batch dropped by cancellation before it was attempted."""
        with self._lock:
            self.batches_skipped += 1
            self.records_skipped += len(batch)
            for record in batch.records:
                self._add_failure(
                    record.raw,
                    FailedRecord(
                        line_number=record.line_number,
                        error="skipped: load cancelled",
                        batch_sequence=batch.sequence,
                    ),
                )
        metrics.batches_total.labels(outcome="skipped").inc()
        metrics.records_total.labels(status="skipped").inc(len(batch))

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            end = self.end_time if self.end_time is not None else time.monotonic()
            return ProgressSnapshot(
                records_committed=self.records_committed,
                records_failed=self.records_failed,
                records_skipped=self.records_skipped,
                batches_committed=self.batches_committed,
                batches_failed=self.batches_failed,
                batches_skipped=self.batches_skipped,
                conflicts=self.conflicts,
                properties_written=self.properties_written,
                elapsed_seconds=end - self.start_time,
            )

    def failures(self) -> List[FailedRecord]:
        with self._lock:
            return sorted(self.failed_records, key=lambda f: f.line_number)

    @property
    def has_failures(self) -> bool:
        with self._lock:
            return (self.records_failed + self.records_skipped) > 0

    def finalize(self) -> Dict[str, Any]:
        """
        Stop the clock and build the summary dict.

        Returns:
            Complete summary dictionary for logging
        """
        with self._lock:
            if self.end_time is None:
                self.end_time = time.monotonic()
        snap = self.snapshot()

        return {
            "run_id": self.run_id,
            "duration_seconds": round(snap.elapsed_seconds, 2),
            "records": {
                "committed": snap.records_committed,
                "failed": snap.records_failed,
                "skipped": snap.records_skipped,
            },
            "batches": {
                "committed": snap.batches_committed,
                "failed": snap.batches_failed,
                "skipped": snap.batches_skipped,
            },
            "conflicts": snap.conflicts,
            "properties_written": snap.properties_written,
            "failures": [
                {
                    "line_number": f.line_number,
                    "batch_sequence": f.batch_sequence,
                    "error": f.error,
                    "error_class": f.error_class,
                }
                for f in self.failures()
            ],
            "failures_truncated": self.failures_truncated,
        }

    def emit_summary(self) -> Dict[str, Any]:
        """
        Emit the run summary as a structured log event.

        Returns:
            The summary dict that was logged
        """
        summary = self.finalize()

        logger.info(
            "load_run_summary",
            run_id=summary["run_id"],
            duration_seconds=summary["duration_seconds"],
            records_committed=summary["records"]["committed"],
            records_failed=summary["records"]["failed"],
            records_skipped=summary["records"]["skipped"],
            batches_committed=summary["batches"]["committed"],
            batches_failed=summary["batches"]["failed"],
            batches_skipped=summary["batches"]["skipped"],
            conflicts=summary["conflicts"],
            properties_written=summary["properties_written"],
        )

        if summary["records"]["failed"] or summary["records"]["skipped"]:
            logger.warning(
                "load_run_had_failures",
                run_id=self.run_id,
                failed_count=summary["records"]["failed"],
                skipped_count=summary["records"]["skipped"],
                failures=summary["failures"],
                failures_truncated=summary["failures_truncated"],
            )

        return summary
