"""
graphload: bulk upsert loader for line-delimited JSON into Neo4j.

Reads documents from a file or stdin, groups them into fixed-size batches
and commits each batch as one transaction, matching documents to existing
nodes through configurable upsert key patterns.

Examples:
    graphload -a neo4j://localhost:7687 -c 8 -s 500 -U '^xid$' data.jsonl
    zcat dump.jsonl.gz | graphload -a bolt://db:7687 -c 4 -s 100 -U 'Id$' -

Exit status: 0 when every record committed, 1 when any record failed or was
skipped (or the store was unreachable), 2 for usage and configuration
errors.
"""

import argparse
import asyncio
import contextlib
import signal
import sys
import time
from typing import AsyncIterator, List, Optional, TextIO, Tuple

from graphloader.ingestion.chunker import build_batches
from graphloader.ingestion.dispatch import DispatchPool, LoadReport, create_monitored_task
from graphloader.ingestion.executor import TransactionExecutor
from graphloader.ingestion.run_stats import (
    ProgressSnapshot,
    ProgressTracker,
    RejectWriter,
)
from graphloader.ingestion.source import open_input, read_records
from graphloader.ingestion.upsert_keys import compile_patterns
from graphloader.neo.errors import InputError, TransportError, make_error_classifier
from graphloader.neo.store import GraphStore, Neo4jGraphStore
from graphloader.shared.config import (
    Config,
    ConfigurationError,
    Settings,
    apply_overrides,
    load_config,
)
from graphloader.shared.connections import ConnectionManager
from graphloader.shared.observability import (
    get_logger,
    set_correlation_id,
    setup_logging,
    setup_metrics,
)

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_USAGE = 2


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {number}")
    return number


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="graphload",
        description="Upsert line-delimited JSON documents into Neo4j",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="The Neo4j password is read from the NEO4J_PASSWORD environment variable.",
    )
    parser.add_argument(
        "-a", "--endpoint", required=True, help="Neo4j URI, e.g. neo4j://host:7687"
    )
    parser.add_argument(
        "-c",
        "--concurrency",
        required=True,
        type=positive_int,
        help="Number of transactions in flight",
    )
    parser.add_argument(
        "-s",
        "--chunk-size",
        required=True,
        type=positive_int,
        help="Documents per transaction",
    )
    parser.add_argument(
        "-U",
        "--upsert-pattern",
        action="append",
        dest="upsert_patterns",
        metavar="REGEX",
        help="Field name pattern identifying upsert keys (repeatable, ordered)",
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="No progress or final summary"
    )
    parser.add_argument("--label", help="Label for loaded nodes (default: Document)")
    parser.add_argument("--database", help="Target database (default: server default)")
    parser.add_argument("--user", help="Neo4j user (default: NEO4J_USER or neo4j)")
    parser.add_argument(
        "--max-retries",
        type=non_negative_int,
        help="Conflict retries per batch before it fails",
    )
    parser.add_argument(
        "--reject-file",
        metavar="PATH",
        help="Write the raw text of every failed record here, for replay",
    )
    parser.add_argument(
        "--metrics-port", type=positive_int, help="Expose Prometheus metrics on this port"
    )
    parser.add_argument(
        "--log-level", help="Log level for stderr JSON logs (default: WARNING)"
    )
    parser.add_argument(
        "input", nargs="?", default="-", help="Input file, or - for stdin (default)"
    )
    return parser


class ProgressUI:
    """Single-line progress renderer for terminal output."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stderr
        self._rendered = False

    def render(self, snap: ProgressSnapshot, in_flight: int = 0) -> None:
        """
        Overwrite the progress line with the current counts.

        Args:
            snap: Tracker snapshot
            in_flight: Transactions currently running
        """
        mins = int(snap.elapsed_seconds // 60)
        secs = int(snap.elapsed_seconds % 60)
        time_str = f"{mins}m{secs:02d}s" if mins > 0 else f"{secs}s"

        self.stream.write(
            f"\r{time_str:>7} | committed {snap.records_committed:>9} | "
            f"failed {snap.records_failed:>6} | conflicts {snap.conflicts:>5} | "
            f"in flight {in_flight:>3} | {snap.properties_per_second:,.0f} props/s"
        )
        self.stream.flush()
        self._rendered = True

    def finish(self) -> None:
        if self._rendered:
            self.stream.write("\n")
            self.stream.flush()
            self._rendered = False


def print_summary(report: LoadReport, tracker: ProgressTracker, stream: TextIO) -> None:
    snap = report.snapshot
    print("\n" + "=" * 60, file=stream)
    print("Load Summary", file=stream)
    print("=" * 60, file=stream)
    print(f"Run ID:             {tracker.run_id}", file=stream)
    print(f"Duration:           {snap.elapsed_seconds:.1f}s", file=stream)
    print(
        f"Records:            {snap.records_committed} committed, "
        f"{snap.records_failed} failed, {snap.records_skipped} skipped",
        file=stream,
    )
    print(
        f"Batches:            {snap.batches_committed} committed, "
        f"{snap.batches_failed} failed, {snap.batches_skipped} skipped",
        file=stream,
    )
    print(f"Conflicts retried:  {snap.conflicts}", file=stream)
    print(
        f"Properties written: {snap.properties_written} "
        f"({snap.properties_per_second:,.0f}/s)",
        file=stream,
    )
    if report.cancelled:
        print(f"Cancelled:          {report.cancel_reason}", file=stream)

    failures = tracker.failures()
    if failures:
        print("\nFailed records:", file=stream)
        for failure in failures[:20]:
            print(f"  line {failure.line_number}: {failure.error}", file=stream)
        hidden = len(failures) - 20 + tracker.failures_truncated
        if hidden > 0:
            print(f"  ... and {hidden} more", file=stream)
    print("=" * 60, file=stream)


@contextlib.asynccontextmanager
async def open_store(settings: Settings, config: Config) -> AsyncIterator[GraphStore]:
    """Connect to Neo4j and yield a store; the driver is closed on exit."""
    manager = ConnectionManager(
        settings=settings,
        neo4j_config=config.neo4j,
        pool_size=config.loader.concurrency,
    )
    try:
        driver = await manager.get_neo4j_driver()
        yield Neo4jGraphStore(driver, config.loader.node_label, manager.database)
    finally:
        await manager.close_all()


async def _report_progress(
    tracker: ProgressTracker, pool: DispatchPool, ui: ProgressUI, interval: float
) -> None:
    while True:
        await asyncio.sleep(interval)
        ui.render(tracker.snapshot(), pool.in_flight)


def _install_signal_handlers(pool: DispatchPool) -> List[int]:
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pool.cancel, f"received {sig.name}")
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    return installed


async def run_load(
    config: Config,
    settings: Settings,
    input_path: Optional[str],
    quiet: bool = False,
    reject_file: Optional[str] = None,
) -> Tuple[LoadReport, ProgressTracker]:
    """
    Run one load from ``input_path`` into the configured store.

    Raises:
        InputError: If the input cannot be opened
        TransportError: If the store is unreachable at start-up
    """
    patterns = compile_patterns(config.loader.upsert_patterns)
    classify = make_error_classifier(
        config.errors.conflict_codes, config.errors.transport_codes
    )

    try:
        stream_ctx = open_input(input_path)
    except OSError as e:
        raise InputError(f"cannot open input {input_path}: {e}") from e

    with contextlib.ExitStack() as stack:
        stream = stack.enter_context(stream_ctx)
        reject_sink = (
            stack.enter_context(RejectWriter(reject_file)) if reject_file else None
        )
        tracker = ProgressTracker.start_new(
            max_failure_details=config.loader.max_failure_details,
            reject_sink=reject_sink,
        )
        set_correlation_id(tracker.run_id)
        logger.info(
            "load_started",
            run_id=tracker.run_id,
            input=input_path,
            chunk_size=config.loader.chunk_size,
            concurrency=config.loader.concurrency,
            upsert_patterns=config.loader.upsert_patterns,
        )

        async with open_store(settings, config) as store:
            executor = TransactionExecutor(store, config.retry, classify, patterns)
            pool = DispatchPool(executor, tracker, config.loader.concurrency)
            batches = build_batches(
                read_records(stream),
                patterns,
                config.loader.chunk_size,
                on_parse_error=tracker.record_parse_error,
            )

            ui = None if quiet else ProgressUI()
            progress_task = None
            if ui is not None:
                progress_task = create_monitored_task(
                    _report_progress(
                        tracker, pool, ui, config.loader.progress_interval_seconds
                    ),
                    name="progress-reporter",
                )

            signals = _install_signal_handlers(pool)
            try:
                report = await pool.run(batches)
            finally:
                loop = asyncio.get_running_loop()
                for sig in signals:
                    loop.remove_signal_handler(sig)
                if progress_task is not None:
                    progress_task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await progress_task
                    ui.render(tracker.snapshot(), 0)
                    ui.finish()

        tracker.emit_summary()

    return report, tracker


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        config, settings = load_config()
        config = apply_overrides(
            config,
            chunk_size=args.chunk_size,
            concurrency=args.concurrency,
            upsert_patterns=args.upsert_patterns,
            node_label=args.label,
            max_retries=args.max_retries,
        )
        settings = settings.model_copy(
            update={
                "neo4j_uri": args.endpoint,
                "neo4j_user": args.user or settings.neo4j_user,
                "neo4j_database": args.database or settings.neo4j_database,
            }
        )
        setup_logging(args.log_level or settings.log_level)
    except (ConfigurationError, FileNotFoundError, ValueError) as e:
        print(f"graphload: configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE

    setup_metrics(
        args.metrics_port,
        endpoint=settings.neo4j_uri,
        label=config.loader.node_label,
    )

    started = time.monotonic()
    try:
        report, tracker = asyncio.run(
            run_load(
                config,
                settings,
                args.input,
                quiet=args.quiet,
                reject_file=args.reject_file,
            )
        )
    except InputError as e:
        print(f"graphload: {e}", file=sys.stderr)
        return EXIT_USAGE
    except TransportError as e:
        logger.error("load_aborted", error=str(e))
        print(f"graphload: {e}", file=sys.stderr)
        return EXIT_FAILURES
    except OSError as e:
        logger.error("load_aborted", error=str(e))
        print(f"graphload: input error: {e}", file=sys.stderr)
        return EXIT_FAILURES

    if not args.quiet:
        print_summary(report, tracker, sys.stdout)

    logger.info(
        "load_finished",
        run_id=tracker.run_id,
        succeeded=report.succeeded,
        duration_seconds=round(time.monotonic() - started, 2),
    )
    return EXIT_OK if report.succeeded else EXIT_FAILURES


if __name__ == "__main__":
    sys.exit(main())
