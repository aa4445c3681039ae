"""StreamFramer: split an unbounded byte stream into sentinel-delimited HTML records."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

# Must match the launcher script byte-for-byte.
SEPARATOR = b"<!-- __DUMP_SEPARATOR__ -->"


class StreamFramer:
    """Buffer incoming chunks and emit complete records.

    A record is only emitted once its trailing sentinel has been fully
    seen, so a half-written dump never reaches the classifier. Input with
    no sentinel stays buffered; bounding that is the supervisor's job
    (restart), not the framer's.
    """

    def __init__(self, separator: bytes = SEPARATOR) -> None:
        if not separator:
            raise ValueError("separator must be non-empty")
        self.separator = separator
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes received after the last sentinel."""
        return bytes(self._buffer)

    def feed(self, chunk: bytes) -> list[str]:
        """Append *chunk* and return every record it completes, in stream order."""
        if chunk:
            self._buffer.extend(chunk)

        records: list[str] = []
        sep_len = len(self.separator)
        start = 0
        while True:
            idx = self._buffer.find(self.separator, start)
            if idx == -1:
                break
            # Decode only whole records so split UTF-8 sequences survive.
            text = self._buffer[start:idx].decode("utf-8", errors="replace").strip()
            if text:
                records.append(text)
            start = idx + sep_len
        if start:
            del self._buffer[:start]
        return records

    def reset(self) -> None:
        """Drop buffered partial data (new subprocess or connection)."""
        self._buffer.clear()

    def iter_records(self, chunks: Iterable[bytes]) -> Iterator[str]:
        """Lazily frame an iterable of chunks."""
        for chunk in chunks:
            yield from self.feed(chunk)
