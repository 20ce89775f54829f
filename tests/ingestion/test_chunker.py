import math

import pytest

from graphloader.ingestion.chunker import build_batches
from graphloader.ingestion.source import read_records
from tests.fakes import jsonl, make_batches


@pytest.mark.parametrize("count,chunk_size", [(10, 3), (9, 3), (1, 5), (5, 1), (7, 7)])
def test_batch_sizes(count, chunk_size):
    batches = make_batches(jsonl(*({"n": i} for i in range(count))), chunk_size=chunk_size)
    assert len(batches) == math.ceil(count / chunk_size)
    assert all(len(b) == chunk_size for b in batches[:-1])
    assert 1 <= len(batches[-1]) <= chunk_size
    assert sum(len(b) for b in batches) == count


def test_sequence_numbers_follow_input_order():
    batches = make_batches(jsonl(*({"n": i} for i in range(7))), chunk_size=2)
    assert [b.sequence for b in batches] == [0, 1, 2, 3]
    assert [r.document["n"] for b in batches for r in b.records] == list(range(7))


def test_parse_errors_reported_not_batched():
    errors = []
    stream = jsonl({"n": 0}, "{broken", {"n": 2}, {"n": 3})
    batches = make_batches(stream, chunk_size=2, on_parse_error=errors.append)
    assert [e.line_number for e in errors] == [2]
    assert [b.line_numbers for b in batches] == [[1, 3], [4]]


def test_upsert_keys_attached_per_record():
    stream = jsonl({"xid": "a", "n": 1}, {"n": 2})
    (batch,) = make_batches(stream, patterns=["^xid$"], chunk_size=5)
    assert [len(k) for k in batch.upsert_keys] == [1, 0]
    assert batch.upsert_keys[0][0].value == "a"


def test_line_span():
    (batch,) = make_batches(jsonl({"n": 1}, {"n": 2}, {"n": 3}), chunk_size=5)
    assert batch.line_span == "1-3"


def test_empty_input_yields_nothing():
    assert make_batches(jsonl(), chunk_size=3) == []


def test_invalid_chunk_size():
    with pytest.raises(ValueError):
        next(build_batches(read_records(jsonl({"n": 1})), [], 0))
