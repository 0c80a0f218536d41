from __future__ import annotations

import codecs
import logging
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List, Optional


logger = logging.getLogger("gateway.sse")

DATA_PREFIX = "data:"


class LineDecoder:
    """Split a byte stream into complete newline-terminated lines.

    Bytes are decoded incrementally so a multi-byte UTF-8 character split
    across two transport buffers is reassembled before splitting. The text
    after the last newline is held back and prefixed onto the next buffer.
    Splitting is purely on ``\\n``; JSON structure is never inspected.

    When ``prefix`` is set, lines that are blank after trimming or do not
    start with it are dropped, and the prefix is removed from the rest.
    """

    def __init__(self, prefix: Optional[str] = DATA_PREFIX) -> None:
        self.prefix = prefix
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def tail(self) -> str:
        """Unterminated fragment currently held back."""
        return self._buffer

    def feed(self, data: bytes) -> List[str]:
        self._buffer += self._decoder.decode(data)
        if "\n" not in self._buffer:
            return []
        *complete, self._buffer = self._buffer.split("\n")
        return [out for out in (self._accept(line) for line in complete) if out is not None]

    def close(self) -> None:
        """End of stream. A final fragment without a newline is discarded."""
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer.strip():
            logger.debug("[proxy] discarding unterminated trailing fragment: %r", self._buffer[:100])
        self._buffer = ""

    def _accept(self, line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if not line.strip():
            return None
        if self.prefix is None:
            return line
        if not line.startswith(self.prefix):
            return None
        return line[len(self.prefix):].strip()


def iter_lines(chunks: Iterable[bytes], prefix: Optional[str] = DATA_PREFIX) -> Iterator[str]:
    decoder = LineDecoder(prefix)
    for chunk in chunks:
        yield from decoder.feed(chunk)
    decoder.close()


async def aiter_lines(chunks: AsyncIterable[bytes], prefix: Optional[str] = DATA_PREFIX) -> AsyncIterator[str]:
    decoder = LineDecoder(prefix)
    async for chunk in chunks:
        for line in decoder.feed(chunk):
            yield line
    decoder.close()
