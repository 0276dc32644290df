"""Incremental decoding of line-oriented event streams."""

import codecs
import json
import logging

logger = logging.getLogger(__name__)

SSE_PREFIX = "data: "
SSE_DONE = "[DONE]"


class StreamDecoder:
    """Turn arbitrarily-chunked bytes into complete JSON objects.

    Only complete lines are decoded, and only as bytes -> text once the
    line terminator has arrived, so the decoded sequence does not depend on
    where the chunk boundaries fall. Lines that don't start with ``prefix``
    are ignored; with ``prefix=None`` every non-blank line is decoded.
    Malformed JSON is dropped.
    """

    def __init__(self, prefix: str | None = SSE_PREFIX):
        self.prefix = prefix
        self._buffer = b""

    @property
    def pending(self) -> bytes:
        """Bytes received after the last complete line."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[dict]:
        if not chunk:
            return []
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        out = []
        for raw in lines:
            payload = self._decode_line(raw)
            if payload is not None:
                out.append(payload)
        return out

    def close(self) -> bytes:
        """Discard and return any trailing incomplete line."""
        rest, self._buffer = self._buffer, b""
        if rest:
            logger.debug("discarding %d trailing bytes at end of stream", len(rest))
        return rest

    def _decode_line(self, raw: bytes) -> dict | None:
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        if not line.strip():
            return None
        if self.prefix is not None:
            if not line.startswith(self.prefix):
                return None
            line = line[len(self.prefix) :]
            if line.strip() == SSE_DONE:
                return None
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("dropping malformed stream line: %.200s", line)
            return None
        if not isinstance(payload, dict):
            logger.debug("dropping non-object stream line: %.200s", line)
            return None
        return payload


class RawTextDecoder:
    """Incremental UTF-8 decoder for backends that stream plain text."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> bytes:
        return self._decoder.getstate()[0]

    def feed(self, chunk: bytes) -> str:
        return self._decoder.decode(chunk)

    def close(self) -> str:
        return self._decoder.decode(b"", final=True)


def find_error_object(data: bytes | str) -> str | None:
    """Look for an embedded ``{"error": {"message": ...}}`` object.

    Tries the whole text first (a plain JSON error body), then each line,
    with or without an SSE ``data:`` prefix. Returns the error message, or
    None if nothing error-shaped is found.
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    text = data.strip()
    if not text:
        return None

    candidates = [text]
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("data:"):
            line = line[len("data:") :].strip()
        if line:
            candidates.append(line)

    for candidate in candidates:
        try:
            obj = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, list) and obj and isinstance(obj[0], dict):
            obj = obj[0]
        if not isinstance(obj, dict) or "error" not in obj:
            continue
        err = obj["error"]
        if isinstance(err, dict):
            return str(err.get("message") or json.dumps(err))
        return str(err)
    return None
