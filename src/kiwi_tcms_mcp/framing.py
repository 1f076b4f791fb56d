"""Line framing for the worker's stdout stream.

The worker writes one JSON-RPC message per line. Output arrives in
arbitrary chunks, so a line may be split across reads and a single read
may carry several lines. Anything on stdout that is not a JSON object
(startup banners, stray log output) is dropped here.
"""

import codecs
import json
import logging
from typing import Any

from kiwi_tcms_mcp.errors import MalformedMessage

logger = logging.getLogger(__name__)

LINE_DELIMITER = "\n"

# Characters of a rejected line included in log output
PREVIEW_CHARS = 200


class LineFramer:
    """Split a chunked text stream into complete lines.

    Between calls to :meth:`feed` the framer holds at most one incomplete
    trailing fragment, which is prefixed to the next chunk.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pieces: list[str] = []

    @property
    def pending(self) -> str:
        """The incomplete trailing fragment, if any."""
        return "".join(self._pieces)

    def feed(self, chunk: bytes | str) -> list[str]:
        """Add a chunk and return every line it completes.

        Args:
            chunk: Raw bytes (decoded incrementally) or already decoded text.

        Returns:
            Complete lines in arrival order, without line terminators.
        """
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []

        if LINE_DELIMITER not in text:
            self._pieces.append(text)
            return []

        parts = text.split(LINE_DELIMITER)
        parts[0] = "".join(self._pieces) + parts[0]
        tail = parts.pop()
        self._pieces = [tail] if tail else []
        return [part[:-1] if part.endswith("\r") else part for part in parts]

    def flush(self) -> str | None:
        """Return and clear the trailing fragment at end of stream."""
        tail = self.pending + self._decoder.decode(b"", final=True)
        self._pieces = []
        self._decoder.reset()
        return tail or None


def parse_message(line: str) -> dict[str, Any]:
    """Parse one framed line as a JSON object.

    Args:
        line: A complete line of worker output.

    Returns:
        The decoded message.

    Raises:
        MalformedMessage: If the line is blank, not JSON, or not an object.
    """
    text = line.strip()
    if not text:
        raise MalformedMessage("Empty line", line)
    try:
        message = json.loads(text)
    except ValueError as e:
        raise MalformedMessage(f"Invalid JSON: {e}", line) from e
    if not isinstance(message, dict):
        raise MalformedMessage(f"Expected a JSON object, got {type(message).__name__}", line)
    return message


def _looks_like_json(line: str) -> bool:
    return line.lstrip().startswith(("{", "["))


class FramedReader:
    """Turn worker stdout chunks into decoded messages.

    Malformed lines never raise: they cannot be attributed to a request,
    so they are logged and discarded.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._framer = LineFramer(encoding)
        self.dropped = 0

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        """Frame a chunk and return the messages it completes, in order."""
        messages = []
        for line in self._framer.feed(chunk):
            try:
                messages.append(parse_message(line))
            except MalformedMessage as e:
                self._drop(e)
        return messages

    def flush(self) -> str | None:
        """Discard and return any incomplete output left at end of stream."""
        tail = self._framer.flush()
        if tail is not None and tail.strip():
            logger.debug("Discarding incomplete worker output: %s", tail[:PREVIEW_CHARS])
        return tail

    def _drop(self, error: MalformedMessage) -> None:
        self.dropped += 1
        line = error.line
        if not line.strip():
            return
        if _looks_like_json(line):
            logger.warning("Failed to parse worker message: %s", error)
            logger.warning("Message text: %s", line.strip()[:PREVIEW_CHARS])
        else:
            # Plain log output from the worker
            logger.debug("Worker output: %s", line.strip()[:PREVIEW_CHARS])
