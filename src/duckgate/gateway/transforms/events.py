"""Upstream event-stream framing.

The upstream answers with newline-delimited lines; relevant lines start with
`data: ` followed by a JSON object whose `message` field is a text fragment.
"""

import codecs
import json

from duckgate.gateway.errors import ProtocolError

DATA_PREFIX = "data: "


def parse_event_line(line: str) -> str | None:
    """Extract the message fragment from one upstream line.

    Returns None for lines that carry no text (non-data lines, `[DONE]`,
    objects without a `message` field).

    Raises:
        ProtocolError: If a data line does not hold valid JSON.
    """
    line = line.rstrip("\r")
    if not line.startswith(DATA_PREFIX):
        return None

    payload = line[len(DATA_PREFIX) :].strip()
    if not payload or payload == "[DONE]":
        return None

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Undecodable event line: {e}", line) from e

    if not isinstance(data, dict):
        return None
    message = data.get("message")
    if isinstance(message, str) and message:
        return message
    return None


def is_error_body(text: str) -> bool:
    """Check whether a full response body is an upstream error object."""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return False
    return isinstance(parsed, dict) and parsed.get("action") == "error"


class LineBuffer:
    """Reassembles lines from network reads that split lines and UTF-8 sequences.

    Example:
        buffer = LineBuffer()
        buffer.feed(b'data: {"mess')   # -> []
        buffer.feed(b'age":"Hi"}\\n')   # -> ['data: {"message":"Hi"}']
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> list[str]:
        """Add raw bytes and return every line completed by them."""
        self._pending += self._decoder.decode(data)
        *lines, self._pending = self._pending.split("\n")
        return lines

    def flush(self) -> list[str]:
        """Return the trailing partial line, if any, once the stream ends."""
        self._pending += self._decoder.decode(b"", final=True)
        rest, self._pending = self._pending, ""
        return [rest] if rest else []
