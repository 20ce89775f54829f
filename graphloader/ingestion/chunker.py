"""
Chunk builder: groups records into fixed-size transactional batches.

Batches hold exactly ``chunk_size`` records except the last, which holds
the remainder. Parse errors never enter a batch; they are handed to the
``on_parse_error`` callback (normally the progress tracker) as permanently
failed records. Sequence numbers follow input order.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

from .source import ParseError, Record, SourceEntry
from .upsert_keys import Patterns, UpsertKeySet, extract_upsert_keys


@dataclass(frozen=True)
class Batch:
    """Records committed together in one transaction."""

    sequence: int
    records: Tuple[Record, ...]
    upsert_keys: Tuple[UpsertKeySet, ...]

    def __len__(self) -> int:
        return len(self.records)

    @property
    def line_numbers(self) -> List[int]:
        return [record.line_number for record in self.records]

    @property
    def line_span(self) -> str:
        """Human-readable input line range, e.g. ``11-20``."""
        first = self.records[0].line_number
        last = self.records[-1].line_number
        return str(first) if first == last else f"{first}-{last}"


def _make_batch(sequence: int, records: List[Record], patterns: Patterns) -> Batch:
    return Batch(
        sequence=sequence,
        records=tuple(records),
        upsert_keys=tuple(extract_upsert_keys(r.document, patterns) for r in records),
    )


def build_batches(
    entries: Iterable[SourceEntry],
    patterns: Patterns,
    chunk_size: int,
    on_parse_error: Optional[Callable[[ParseError], None]] = None,
) -> Iterator[Batch]:
    """
    Lazily split a record stream into batches.

    Args:
        entries: Output of ``read_records``
        patterns: Compiled upsert key patterns
        chunk_size: Records per batch (>= 1)
        on_parse_error: Called once per malformed line

    Yields:
        Batch objects with sequence numbers 0, 1, 2, ...

    Raises:
        ValueError: If chunk_size is less than 1
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    sequence = 0
    pending: List[Record] = []

    for entry in entries:
        if isinstance(entry, ParseError):
            if on_parse_error is not None:
                on_parse_error(entry)
            continue

        pending.append(entry)
        if len(pending) == chunk_size:
            yield _make_batch(sequence, pending, patterns)
            sequence += 1
            pending = []

    if pending:
        yield _make_batch(sequence, pending, patterns)
