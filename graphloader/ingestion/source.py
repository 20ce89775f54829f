"""
Record source: line-delimited JSON input.

Reads a binary stream one line at a time and yields either a parsed Record
or a ParseError for that line. A bad line never ends the stream. Lines are
numbered from 1 so failures can be located and replayed.
"""

import json
import sys
from contextlib import nullcontext
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, BinaryIO, ContextManager, Iterable, Iterator, Mapping, Optional, Union

from graphloader.shared.observability import get_logger

logger = get_logger(__name__)

# Node identifiers are assigned by the store, never by input documents
RESERVED_ID_FIELD = "uid"

_JSON_TYPE_NAMES = {
    list: "array",
    str: "string",
    int: "number",
    float: "number",
    bool: "boolean",
    type(None): "null",
}


@dataclass(frozen=True)
class Record:
    """A well-formed input document and where it came from."""

    line_number: int
    raw: str
    document: Mapping[str, Any]


@dataclass(frozen=True)
class ParseError:
    """An input line that could not be turned into a document."""

    line_number: int
    raw: str
    message: str


SourceEntry = Union[Record, ParseError]


# Object and array nesting limit; key extraction and planning walk documents
# recursively
MAX_NESTING_DEPTH = 100


def _document_problem(document: dict) -> Optional[str]:
    """Describe why a parsed document cannot be loaded, or return None."""
    stack = [(document, "", 1)]
    while stack:
        value, path, depth = stack.pop()
        if depth > MAX_NESTING_DEPTH:
            return f"nested deeper than {MAX_NESTING_DEPTH} levels (at {path})"
        if isinstance(value, dict):
            if RESERVED_ID_FIELD in value:
                return (
                    f"setting {RESERVED_ID_FIELD!r} explicitly is not supported "
                    f"(at {path or '<root>'})"
                )
            children = [
                (child, f"{path}.{field}" if path else field)
                for field, child in value.items()
            ]
        else:
            children = [(item, f"{path}[{index}]") for index, item in enumerate(value)]
        # Reversed so the first offending field in document order is reported
        stack.extend(
            (child, child_path, depth + 1)
            for child, child_path in reversed(children)
            if isinstance(child, (dict, list))
        )
    return None


def parse_line(line_number: int, raw: bytes) -> Optional[SourceEntry]:
    """
    Parse one input line.

    Returns:
        Record, ParseError, or None for a blank line
    """
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        return ParseError(
            line_number,
            raw.decode("utf-8", errors="replace").rstrip("\r\n"),
            f"invalid UTF-8: {e}",
        )

    text = text.rstrip("\r\n")
    if line_number == 1 and text.startswith("\ufeff"):
        text = text[1:]
    if not text.strip():
        return None

    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        return ParseError(line_number, text, f"invalid JSON: {e}")
    except RecursionError:
        return ParseError(line_number, text, "invalid JSON: nested too deeply to decode")

    if not isinstance(value, dict):
        kind = _JSON_TYPE_NAMES.get(type(value), type(value).__name__)
        return ParseError(line_number, text, f"expected a JSON object, found {kind}")

    problem = _document_problem(value)
    if problem:
        return ParseError(line_number, text, problem)

    return Record(line_number, text, MappingProxyType(value))


def read_records(stream: Iterable[bytes]) -> Iterator[SourceEntry]:
    """
    Lazily parse a line-delimited JSON stream.

    Single forward pass; the stream is consumed as the iterator advances.

    Args:
        stream: Binary line iterable (an open file or ``sys.stdin.buffer``)

    Yields:
        Record for each document, ParseError for each malformed line
    """
    for line_number, raw in enumerate(stream, start=1):
        entry = parse_line(line_number, raw)
        if entry is None:
            continue
        if isinstance(entry, ParseError):
            logger.debug(
                "input_line_rejected", line_number=line_number, error=entry.message
            )
        yield entry


def open_input(path: Optional[str]) -> ContextManager[BinaryIO]:
    """
    Open the input as a binary stream.

    ``None`` or ``-`` selects standard input, which is left open on exit.
    """
    if path in (None, "-"):
        return nullcontext(sys.stdin.buffer)
    return open(path, "rb")
