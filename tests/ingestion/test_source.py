import io

import pytest

from graphloader.ingestion.source import (
    MAX_NESTING_DEPTH,
    ParseError,
    Record,
    open_input,
    parse_line,
    read_records,
)


def entries(data: bytes):
    return list(read_records(io.BytesIO(data)))


class TestParseLine:
    def test_object_becomes_record(self):
        entry = parse_line(3, b'{"xid": "a", "n": 1}\n')
        assert isinstance(entry, Record)
        assert entry.line_number == 3
        assert entry.raw == '{"xid": "a", "n": 1}'
        assert dict(entry.document) == {"xid": "a", "n": 1}

    def test_document_is_read_only(self):
        entry = parse_line(1, b'{"a": 1}')
        with pytest.raises(TypeError):
            entry.document["a"] = 2

    def test_field_order_preserved(self):
        entry = parse_line(1, b'{"z": 1, "a": 2, "m": 3}')
        assert list(entry.document) == ["z", "a", "m"]

    def test_blank_line_is_skipped(self):
        assert parse_line(1, b"   \r\n") is None

    def test_invalid_json(self):
        entry = parse_line(7, b'{"a": }\n')
        assert isinstance(entry, ParseError)
        assert entry.line_number == 7
        assert entry.message.startswith("invalid JSON")
        assert entry.raw == '{"a": }'

    @pytest.mark.parametrize(
        "raw,kind",
        [(b"[1, 2]", "array"), (b'"text"', "string"), (b"42", "number"), (b"null", "null")],
    )
    def test_non_object_rejected(self, raw, kind):
        entry = parse_line(1, raw)
        assert isinstance(entry, ParseError)
        assert entry.message == f"expected a JSON object, found {kind}"

    def test_invalid_utf8(self):
        entry = parse_line(2, b'{"a": "\xff"}')
        assert isinstance(entry, ParseError)
        assert "UTF-8" in entry.message

    def test_bom_stripped_on_first_line(self):
        entry = parse_line(1, b'\xef\xbb\xbf{"a": 1}')
        assert isinstance(entry, Record)
        assert entry.document["a"] == 1

    def test_reserved_id_field_rejected(self):
        entry = parse_line(1, b'{"uid": "0x1", "name": "x"}')
        assert isinstance(entry, ParseError)
        assert "'uid'" in entry.message

    def test_reserved_id_field_rejected_when_nested(self):
        entry = parse_line(1, b'{"name": "x", "owner": [{"uid": "0x2"}]}')
        assert isinstance(entry, ParseError)
        assert "owner[0]" in entry.message

    def test_nesting_too_deep_to_decode(self):
        entry = parse_line(1, b'{"a":' * 5000 + b"1" + b"}" * 5000)
        assert isinstance(entry, ParseError)
        assert entry.line_number == 1

    def test_nesting_limit(self):
        def nested(depth):
            return b'{"a":' * depth + b"1" + b"}" * depth

        assert isinstance(parse_line(1, nested(MAX_NESTING_DEPTH)), Record)

        entry = parse_line(1, nested(MAX_NESTING_DEPTH + 1))
        assert isinstance(entry, ParseError)
        assert "nested deeper" in entry.message

    def test_nesting_counts_arrays(self):
        raw = b'{"a":' + b"[" * MAX_NESTING_DEPTH + b"]" * MAX_NESTING_DEPTH + b"}"
        assert isinstance(parse_line(1, raw), ParseError)


class TestReadRecords:
    def test_bad_line_does_not_end_stream(self):
        result = entries(b'{"a": 1}\nnot json\n{"a": 3}\n')
        assert [type(e) for e in result] == [Record, ParseError, Record]
        assert [e.line_number for e in result] == [1, 2, 3]

    def test_deep_line_does_not_end_stream(self):
        deep = b'{"a":' * 5000 + b"1" + b"}" * 5000
        result = entries(b'{"a": 1}\n' + deep + b'\n{"a": 3}\n')
        assert [type(e) for e in result] == [Record, ParseError, Record]

    def test_line_numbers_count_blank_lines(self):
        result = entries(b'{"a": 1}\n\n{"a": 2}')
        assert [e.line_number for e in result] == [1, 3]

    def test_lazy(self):
        class Exploding:
            def __iter__(self):
                yield b'{"a": 1}\n'
                raise OSError("disk gone")

        iterator = read_records(Exploding())
        first = next(iterator)
        assert first.document["a"] == 1
        with pytest.raises(OSError):
            next(iterator)

    def test_empty_stream(self):
        assert entries(b"") == []


class TestOpenInput:
    def test_file_path(self, tmp_path):
        path = tmp_path / "in.jsonl"
        path.write_bytes(b'{"a": 1}\n')
        with open_input(str(path)) as stream:
            assert [e.document["a"] for e in read_records(stream)] == [1]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            open_input(str(tmp_path / "missing.jsonl"))
