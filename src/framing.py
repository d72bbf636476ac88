"""
Newline-delimited JSON framing.

Each message on the wire is one UTF-8 JSON value followed by "\n". Reads from
a pipe or socket arrive in arbitrary chunks: a chunk can end in the middle of
a frame, or even in the middle of a multi-byte UTF-8 character. FrameCodec
buffers whatever is incomplete and only emits whole lines.

A line that fails to parse becomes a MalformedFrame entry for that line alone;
decoding resumes at the next newline. Blank lines are skipped.
"""

import codecs
import json
from dataclasses import dataclass
from typing import Any

from src.errors import MalformedFrame


@dataclass(frozen=True)
class Frame:
    """
    One complete line from the stream.

    Exactly one of `message` / `error` is meaningful: a successfully decoded
    line has error None, a malformed one carries the MalformedFrame.
    """

    line: str
    message: Any = None
    error: MalformedFrame | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class FrameCodec:
    """Incremental decoder for the incoming stream plus the outgoing encoder."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Text received after the last newline (an incomplete frame)."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[Frame]:
        """
        Append a chunk and return every frame it completes, in order.

        Args:
            chunk: Raw bytes from the stream (or already-decoded text)
        """
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        *lines, self._buffer = self._buffer.split("\n")
        return [frame for frame in map(self._decode_line, lines) if frame is not None]

    def flush(self) -> list[Frame]:
        """
        Decode whatever is left at end of stream.

        A peer that exits without a trailing newline still gets its last
        message delivered.
        """
        self._buffer += self._decoder.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        frame = self._decode_line(line)
        return [frame] if frame is not None else []

    @staticmethod
    def _decode_line(line: str) -> Frame | None:
        line = line.rstrip("\r")
        if not line.strip():
            return None
        try:
            return Frame(line=line, message=json.loads(line))
        except json.JSONDecodeError as e:
            return Frame(line=line, error=MalformedFrame(f"Invalid JSON: {e}", line=line))

    @staticmethod
    def encode(message: Any) -> bytes:
        """Serialize one message as a single `<json>\\n` frame."""
        # Compact separators; json.dumps escapes any newline inside strings.
        text = json.dumps(message, separators=(",", ":"), ensure_ascii=False)
        return (text + "\n").encode("utf-8")
