"""Incremental newline framing with best-effort JSON decoding.

The agent writes one JSON object per line, but pipe reads arrive in
arbitrary chunks. ``LineFramer`` keeps a single byte buffer, cuts it on
``\\n`` and decodes each complete line:

    framer = LineFramer()
    framer.feed(b'{"type": "sys')        # -> []
    framer.feed(b'tem"}\\nplain text\\n')  # -> [StructuredLine(...), RawLine("plain text")]

Splitting happens on bytes, before UTF-8 decoding, so a multi-byte
character cut across two reads is reassembled intact.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class StructuredLine:
    """A line that parsed as strict JSON."""
    value: Any
    text: str


@dataclass(frozen=True)
class RawLine:
    """A line that is not JSON; forwarded as plain text."""
    text: str


Line = Union[StructuredLine, RawLine]


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def decode_line(text: str) -> Line:
    try:
        return StructuredLine(value=json.loads(text, parse_constant=_reject_constant), text=text)
    except ValueError:
        return RawLine(text=text)



class LineFramer:
    """Reassembles a chunked byte stream into decoded lines."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes of the current unterminated line."""
        return bytes(self._buffer)

    def feed(self, chunk: bytes | str) -> list[Line]:
        if isinstance(chunk, str):
            chunk = chunk.encode(self._encoding)
        self._buffer.extend(chunk)
        if b"\n" not in chunk:
            return []
        *complete, rest = bytes(self._buffer).split(b"\n")
        self._buffer = bytearray(rest)
        return [line for line in map(self._decode, complete) if line is not None]

    def flush(self) -> list[Line]:
        """Emit whatever is left once the stream has ended."""
        rest = bytes(self._buffer)
        self._buffer.clear()
        line = self._decode(rest)
        return [line] if line is not None else []

    def _decode(self, raw: bytes) -> Line | None:
        text = raw.decode(self._encoding, errors="replace")
        if not text.strip():
            return None
        # Tolerate CRLF from agents running under Windows-style wrappers.
        return decode_line(text.rstrip("\r"))
