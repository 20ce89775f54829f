import asyncio
import threading

import pytest
from neo4j.exceptions import ServiceUnavailable, TransientError

from graphloader.ingestion.dispatch import DispatchPool
from graphloader.ingestion.executor import TransactionExecutor
from graphloader.ingestion.run_stats import ProgressTracker
from graphloader.ingestion.upsert_keys import compile_patterns
from graphloader.neo.errors import make_error_classifier
from tests.fakes import creates_property, fail_first, jsonl, make_batches, no_sleep


def make_pool(store, retry_config, concurrency, patterns=()):
    tracker = ProgressTracker.start_new()
    executor = TransactionExecutor(
        store,
        retry_config,
        make_error_classifier(),
        compile_patterns(patterns),
        sleep=no_sleep,
    )
    return DispatchPool(executor, tracker, concurrency), tracker


async def load(store, retry_config, documents, chunk_size, concurrency, patterns=()):
    pool, tracker = make_pool(store, retry_config, concurrency, patterns)
    batches = iter(
        make_batches(
            jsonl(*documents),
            patterns=patterns,
            chunk_size=chunk_size,
            on_parse_error=tracker.record_parse_error,
        )
    )
    report = await pool.run(batches)
    return report, tracker


@pytest.mark.asyncio
async def test_every_record_committed_once(store, retry_config):
    documents = [{"n": i} for i in range(23)]
    report, _ = await load(store, retry_config, documents, chunk_size=5, concurrency=3)

    assert report.succeeded
    assert report.snapshot.records_committed == 23
    assert report.snapshot.batches_committed == 5
    assert sorted(n["n"] for n in store.nodes.values()) == list(range(23))


@pytest.mark.asyncio
async def test_concurrency_is_bounded(store, retry_config):
    store.commit_delay = 0.01
    documents = [{"n": i} for i in range(40)]
    report, _ = await load(store, retry_config, documents, chunk_size=2, concurrency=4)

    assert report.succeeded
    assert 1 < store.max_active <= 4
    assert report.max_in_flight <= 4


@pytest.mark.asyncio
async def test_single_worker_is_sequential(store, retry_config):
    store.commit_delay = 0.005
    documents = [{"n": i} for i in range(10)]
    await load(store, retry_config, documents, chunk_size=1, concurrency=1)

    assert store.max_active == 1
    assert [n["n"] for n in store.nodes.values()] == list(range(10))


@pytest.mark.asyncio
async def test_same_key_in_one_batch_yields_one_node(store, retry_config):
    documents = [{"xid": "a", "name": "x"}, {"xid": "a", "name": "y"}]
    report, _ = await load(
        store, retry_config, documents, chunk_size=2, concurrency=1, patterns=["^xid$"]
    )

    assert report.snapshot.records_committed == 2
    assert list(store.nodes.values()) == [{"xid": "a", "name": "y"}]


@pytest.mark.asyncio
async def test_malformed_line_fails_alone(store, retry_config):
    documents = [{"n": i} for i in range(10)]
    documents[3] = '{"n": 3,'
    report, tracker = await load(store, retry_config, documents, chunk_size=5, concurrency=2)

    assert not report.succeeded
    assert report.snapshot.records_committed == 9
    assert report.snapshot.records_failed == 1
    assert [f.line_number for f in tracker.failures()] == [4]
    assert sorted(n["n"] for n in store.nodes.values()) == [0, 1, 2, 4, 5, 6, 7, 8, 9]


@pytest.mark.asyncio
async def test_persistent_conflict_fails_one_batch(store, retry_config):
    always = creates_property("n", 7)
    store.fail_commit_if = lambda m: TransientError("deadlock") if always(m) else None
    documents = [{"n": i} for i in range(12)]

    report, tracker = await load(store, retry_config, documents, chunk_size=3, concurrency=2)

    assert not report.cancelled
    assert report.snapshot.batches_failed == 1
    assert report.snapshot.records_failed == 3
    assert report.snapshot.records_committed == 9
    assert report.snapshot.conflicts == retry_config.max_retries + 1
    assert [f.line_number for f in tracker.failures()] == [7, 8, 9]
    assert {f.batch_sequence for f in tracker.failures()} == {2}


@pytest.mark.asyncio
async def test_transient_conflicts_counted_exactly_once(store, retry_config):
    store.fail_commit_if = fail_first(2, lambda: TransientError("deadlock"))
    documents = [{"n": i} for i in range(6)]

    report, _ = await load(store, retry_config, documents, chunk_size=2, concurrency=2)

    assert report.succeeded
    assert report.snapshot.records_committed == 6
    assert report.snapshot.conflicts == 2
    assert len(store.nodes) == 6


@pytest.mark.asyncio
async def test_transport_failure_cancels_load(store, retry_config):
    store.fail_commit_if = fail_first(
        1, lambda: ServiceUnavailable("gone"), creates_property("n", 0)
    )
    documents = [{"n": i} for i in range(20)]

    report, _ = await load(store, retry_config, documents, chunk_size=2, concurrency=1)

    snap = report.snapshot
    assert report.cancelled
    assert "transport failure" in report.cancel_reason
    assert not report.succeeded
    assert snap.batches_failed == 1
    assert snap.records_committed == 0
    # Only batches already read from input are reported; the rest is never read
    assert 0 < snap.records_skipped <= 6
    assert snap.records_failed + snap.records_skipped + snap.records_committed < 20


@pytest.mark.asyncio
async def test_replay_creates_no_duplicates(store, retry_config):
    documents = [{"xid": f"k{i}", "v": i} for i in range(15)]
    for _ in range(2):
        report, _ = await load(
            store, retry_config, documents, chunk_size=4, concurrency=3, patterns=["^xid$"]
        )
        assert report.succeeded

    assert len(store.nodes) == 15


@pytest.mark.asyncio
async def test_external_cancel_skips_queued_batches(store, retry_config):
    pool, _ = make_pool(store, retry_config, concurrency=1)
    store.commit_delay = 0.01
    loop = asyncio.get_running_loop()

    def cancelling_batches():
        for batch in make_batches(jsonl(*({"n": i} for i in range(10))), chunk_size=1):
            if batch.sequence == 2:
                loop.call_soon_threadsafe(pool.cancel, "received SIGINT")
            yield batch

    report = await pool.run(cancelling_batches())

    assert report.cancelled
    assert report.cancel_reason == "received SIGINT"
    assert report.snapshot.records_committed <= 2
    assert report.snapshot.records_skipped >= 1


@pytest.mark.asyncio
async def test_transport_failure_returns_while_input_stalls(store, retry_config):
    store.fail_commit_if = fail_first(1, lambda: ServiceUnavailable("gone"))
    pool, _ = make_pool(store, retry_config, concurrency=2)
    release = threading.Event()

    def stalling_batches():
        yield from make_batches(jsonl({"n": 0}), chunk_size=1)
        release.wait(10)

    try:
        report = await asyncio.wait_for(pool.run(stalling_batches()), timeout=2)
    finally:
        release.set()

    assert report.cancelled
    assert "transport failure" in report.cancel_reason
    assert report.snapshot.batches_failed == 1


@pytest.mark.asyncio
async def test_signal_returns_while_input_stalls(store, retry_config):
    pool, _ = make_pool(store, retry_config, concurrency=1)
    release = threading.Event()

    def stalling_batches():
        yield from make_batches(jsonl({"n": 0}), chunk_size=1)
        release.wait(10)

    asyncio.get_running_loop().call_later(0.05, pool.cancel, "received SIGINT")
    try:
        report = await asyncio.wait_for(pool.run(stalling_batches()), timeout=2)
    finally:
        release.set()

    assert report.cancelled
    assert report.cancel_reason == "received SIGINT"
    assert report.snapshot.records_committed == 1
    assert [n["n"] for n in store.nodes.values()] == [0]


@pytest.mark.asyncio
async def test_input_error_cancels_and_propagates(store, retry_config):
    pool, _ = make_pool(store, retry_config, concurrency=2)

    def broken_batches():
        yield from make_batches(jsonl({"n": 1}), chunk_size=1)
        raise OSError("read failed")

    with pytest.raises(OSError, match="read failed"):
        await pool.run(broken_batches())
    assert pool.cancelled


def test_concurrency_must_be_positive(store, retry_config):
    with pytest.raises(ValueError):
        make_pool(store, retry_config, concurrency=0)


@pytest.mark.asyncio
async def test_empty_input(store, retry_config):
    report, _ = await load(store, retry_config, [], chunk_size=3, concurrency=2)
    assert report.succeeded
    assert report.snapshot.records_processed == 0
