"""
Dispatch pool: bounded-parallel batch execution.

A daemon reader thread pulls batches from the chunk builder and hands them
to the event loop; ``concurrency`` worker tasks take batches off the queue
and run one executor invocation each, to completion, before taking the
next. At most ``2 * concurrency`` batches are read but unfinished at any
time, so input is read no faster than the store absorbs it.

Cancellation (transport failure, input error, or a signal) stops the
reader, makes workers report every batch still queued as skipped, and
lets in-flight executors finish their current attempt. ``run`` returns
once the workers are done, even while the reader is still blocked on
input that never arrives.
"""

import asyncio
import threading
import traceback
from dataclasses import dataclass
from typing import Coroutine, Iterator, Optional

from graphloader.neo.errors import ErrorClass
from graphloader.shared.observability import get_logger

from .chunker import Batch
from .executor import BatchResult, TransactionExecutor, TransactionOutcome
from .run_stats import ProgressSnapshot, ProgressTracker

log = get_logger(__name__)

_STOP = object()


def log_task_exception_callback(task: asyncio.Task) -> None:
    """Log a dispatch task's exception the moment the task ends."""
    try:
        exception = task.exception()
        if exception is not None:
            log.error(
                "dispatch_task_failed",
                task_name=task.get_name(),
                exception_type=type(exception).__name__,
                exception_str=str(exception),
                traceback="".join(
                    traceback.format_exception(
                        type(exception), exception, exception.__traceback__
                    )
                ),
            )
    except asyncio.CancelledError:
        log.debug("dispatch_task_cancelled", task_name=task.get_name())


def create_monitored_task(coro: Coroutine, name: str | None = None) -> asyncio.Task:
    """Start a worker or reporter task whose failure is logged even if never awaited."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(log_task_exception_callback)
    return task


@dataclass(frozen=True)
class LoadReport:
    """What a finished (or cancelled) load run produced."""

    snapshot: ProgressSnapshot
    cancelled: bool = False
    cancel_reason: Optional[str] = None
    max_in_flight: int = 0

    @property
    def succeeded(self) -> bool:
        return (
            not self.cancelled
            and self.snapshot.records_failed == 0
            and self.snapshot.records_skipped == 0
        )


class DispatchPool:
    """
    Runs batches through a TransactionExecutor with bounded parallelism.

    Args:
        executor: Commits one batch per invocation
        tracker: Receives every batch outcome
        concurrency: Maximum simultaneous executor invocations
    """

    def __init__(
        self,
        executor: TransactionExecutor,
        tracker: ProgressTracker,
        concurrency: int,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be positive, got {concurrency}")
        self._executor = executor
        self._tracker = tracker
        self._concurrency = concurrency
        self._cancelled = asyncio.Event()
        self._cancel_reason: Optional[str] = None
        self._in_flight = 0
        self._max_in_flight = 0

        # Read-but-unfinished batches; the reader acquires, workers release
        self._slots = threading.Semaphore(2 * concurrency)
        self._queue: Optional[asyncio.Queue] = None
        self._stopping = False
        self._input_error: Optional[BaseException] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def cancel(self, reason: str) -> None:
        """
        Request cancellation; the first reason given is kept.

        Must be called on the event loop running ``run``.
        """
        if self._cancelled.is_set():
            return
        self._cancel_reason = reason
        log.warning("load_cancelled", reason=reason, in_flight=self._in_flight)
        self._cancelled.set()
        # Wake a reader waiting for a slot so it sees the cancellation
        self._slots.release()
        self._stop_workers()

    async def run(self, batches: Iterator[Batch]) -> LoadReport:
        """
        Execute every batch the iterator yields.

        The iterator is advanced in a daemon thread, one batch at a time.
        After cancellation that thread is abandoned rather than joined.

        Returns:
            LoadReport with the final tracker snapshot

        Raises:
            Exception: Whatever the batch iterator raised (after draining)
        """
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()

        workers = [
            create_monitored_task(self._worker(self._queue), name=f"dispatch-worker-{i}")
            for i in range(self._concurrency)
        ]
        reader = threading.Thread(
            target=self._read_input,
            args=(batches, loop),
            name="batch-reader",
            daemon=True,
        )
        reader.start()

        results = await asyncio.gather(*workers, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        if self._input_error is not None:
            raise self._input_error

        return LoadReport(
            snapshot=self._tracker.snapshot(),
            cancelled=self.cancelled,
            cancel_reason=self._cancel_reason,
            max_in_flight=self._max_in_flight,
        )

    def _read_input(self, batches: Iterator[Batch], loop: asyncio.AbstractEventLoop) -> None:
        # Runs on the reader thread; everything that touches the loop goes
        # through call_soon_threadsafe.
        error: Optional[BaseException] = None
        try:
            for batch in batches:
                self._slots.acquire()
                if self._cancelled.is_set():
                    self._tracker.record_skipped(batch)
                    break
                loop.call_soon_threadsafe(self._accept, batch)
        except Exception as e:
            error = e
        try:
            loop.call_soon_threadsafe(self._input_finished, error)
        except RuntimeError:
            # Loop already closed: the load returned without this reader
            log.debug("batch_reader_abandoned", error=str(error) if error else None)

    def _accept(self, batch: Batch) -> None:
        if self._stopping:
            self._tracker.record_skipped(batch)
            self._slots.release()
            return
        self._queue.put_nowait(batch)

    def _input_finished(self, error: Optional[BaseException]) -> None:
        if error is not None:
            if self._stopping:
                log.debug("input_error_after_stop", error=str(error))
                return
            self._input_error = error
            self.cancel(f"input error: {error}")
        self._stop_workers()

    def _stop_workers(self) -> None:
        if self._stopping or self._queue is None:
            return
        self._stopping = True
        for _ in range(self._concurrency):
            self._queue.put_nowait(_STOP)

    async def _worker(self, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            if item is _STOP:
                return
            try:
                if self._cancelled.is_set():
                    self._tracker.record_skipped(item)
                    continue
                await self._dispatch(item)
            finally:
                self._slots.release()

    async def _dispatch(self, batch: Batch) -> None:
        self._in_flight += 1
        self._max_in_flight = max(self._max_in_flight, self._in_flight)
        try:
            result = await self._executor.execute(batch, self._cancelled)
        except Exception as e:
            log.exception("batch_dispatch_error", sequence=batch.sequence)
            result = BatchResult(
                sequence=batch.sequence,
                outcome=TransactionOutcome.FATAL,
                attempts=0,
                error=f"unexpected error: {e}",
                error_class=ErrorClass.TRANSPORT,
            )
        finally:
            self._in_flight -= 1

        self._tracker.record_batch(batch, result)
        if result.error_class is ErrorClass.TRANSPORT:
            self.cancel(f"transport failure: {result.error}")
