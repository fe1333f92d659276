from __future__ import annotations

import codecs
import json
from dataclasses import dataclass, field
from typing import Any

from .openai_compat import to_plain_text


@dataclass(frozen=True)
class Decoded:
    event: dict[str, Any]


@dataclass(frozen=True)
class Skipped:
    line: str
    reason: str


LineResult = Decoded | Skipped


def decode_line(line: str) -> LineResult:
    try:
        evt = json.loads(line)
    except ValueError as e:
        return Skipped(line=line, reason=f"invalid json: {e}")
    if not isinstance(evt, dict):
        return Skipped(line=line, reason=f"expected object, got {type(evt).__name__}")
    return Decoded(event=evt)


def extract_assistant_text(evt: dict[str, Any]) -> str | None:
    """Return the cumulative assistant text carried by `evt`, if any."""
    if evt.get("type") != "assistant":
        return None
    message = evt.get("message")
    if not isinstance(message, dict) or message.get("content") is None:
        return None
    return to_plain_text(message["content"])


@dataclass
class TextAssembler:
    """
    Track the longest assistant text seen so far.

    Claude Code repeats the whole message in every `assistant` event, so the
    delta is whatever extends past the previously recorded length. Shorter or
    equal texts are ignored and never shrink what has been recorded.
    """

    text: str = ""

    def update(self, text: str) -> str:
        if len(text) <= len(self.text):
            return ""
        delta = text[len(self.text) :]
        self.text = text
        return delta


@dataclass
class StreamDecoder:
    """Incremental NDJSON decoder for one agent's stdout."""

    assembler: TextAssembler = field(default_factory=TextAssembler)
    decoded: int = 0
    skipped: int = 0
    _buffer: str = ""
    _utf8: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )

    @property
    def text(self) -> str:
        return self.assembler.text

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        deltas: list[str] = []
        for line in lines:
            delta = self._process_line(line)
            if delta:
                deltas.append(delta)
        return deltas

    def close(self) -> str:
        """Drop and return the unterminated trailing fragment, if any."""
        rest = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        return rest

    def _process_line(self, line: str) -> str:
        if not line.strip():
            return ""
        result = decode_line(line)
        if isinstance(result, Skipped):
            self.skipped += 1
            return ""
        self.decoded += 1
        text = extract_assistant_text(result.event)
        if text is None:
            return ""
        return self.assembler.update(text)


def decode_output(raw: bytes | str) -> StreamDecoder:
    """Parse a complete stdout capture; the last line need not end with a newline."""
    decoder = StreamDecoder()
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    decoder.feed(raw + "\n")
    return decoder
