"""Tests for LineFramer newline framing and JSON decoding."""
from __future__ import annotations

import json

from relay.engine.framer import LineFramer, RawLine, StructuredLine, decode_line


def _frame_all(chunks: list[bytes]) -> list:
    framer = LineFramer()
    lines = []
    for chunk in chunks:
        lines.extend(framer.feed(chunk))
    lines.extend(framer.flush())
    return lines


def test_partial_line_is_held_until_newline():
    framer = LineFramer()
    assert framer.feed(b'{"type": "sys') == []
    assert framer.pending == b'{"type": "sys'

    lines = framer.feed(b'tem"}\nplain text\n')
    assert lines == [
        StructuredLine(value={"type": "system"}, text='{"type": "system"}'),
        RawLine(text="plain text"),
    ]
    assert framer.pending == b""


def test_framing_is_chunk_boundary_invariant():
    stream = (
        json.dumps({"type": "assistant", "message": {"content": "héllo ✓"}}).encode("utf-8")
        + b"\nnot json at all\n\n"
        + json.dumps([1, 2, 3]).encode("utf-8")
        + b"\ntrailing"
    )
    expected = _frame_all([stream])
    assert len(expected) == 4

    for cut in range(1, len(stream)):
        assert _frame_all([stream[:cut], stream[cut:]]) == expected, cut

    one_byte_at_a_time = [stream[i:i + 1] for i in range(len(stream))]
    assert _frame_all(one_byte_at_a_time) == expected


def test_multibyte_character_split_across_reads():
    encoded = "日本語\n".encode("utf-8")
    framer = LineFramer()
    assert framer.feed(encoded[:2]) == []
    assert framer.feed(encoded[2:]) == [RawLine(text="日本語")]


def test_blank_lines_are_dropped_and_crlf_is_stripped():
    framer = LineFramer()
    lines = framer.feed(b'\n   \n{"a": 1}\r\nraw\r\n')
    assert lines == [
        StructuredLine(value={"a": 1}, text='{"a": 1}'),
        RawLine(text="raw"),
    ]


def test_flush_emits_unterminated_remainder_once():
    framer = LineFramer()
    framer.feed(b"first\nsecond")
    assert framer.flush() == [RawLine(text="second")]
    assert framer.flush() == []


def test_str_chunks_are_accepted():
    framer = LineFramer()
    assert framer.feed('{"ok": true}\n') == [StructuredLine(value={"ok": True}, text='{"ok": true}')]


def test_invalid_utf8_is_replaced_not_raised():
    framer = LineFramer()
    [line] = framer.feed(b"bad \xff byte\n")
    assert isinstance(line, RawLine)
    assert "�" in line.text


def test_decode_line_scalars_and_garbage():
    assert decode_line("42") == StructuredLine(value=42, text="42")
    assert decode_line("null") == StructuredLine(value=None, text="null")
    assert decode_line("{broken") == RawLine(text="{broken")
    assert decode_line("NaN") == RawLine(text="NaN")
    assert decode_line("-Infinity") == RawLine(text="-Infinity")
    assert decode_line('{"cost": Infinity}') == RawLine(text='{"cost": Infinity}')
