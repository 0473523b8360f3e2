from __future__ import annotations

from collections.abc import Iterable, Iterator

from ..errors import ConfigurationError
from ..models.chunk import Chunk
from ..models.row import Row

"""ChunkAccumulator: buffer rows into fixed-capacity chunks in source order.

capacity=None disables chunking (the whole input becomes one chunk).
For R rows and capacity C the accumulator emits ceil(R / C) chunks, the last
one holding R mod C rows (or C when R mod C == 0). Empty chunks are never emitted.
"""

__all__ = [
    "ChunkAccumulator",
    "iter_chunks",
]


class ChunkAccumulator:
    def __init__(self, capacity: int | None) -> None:
        if capacity is not None and capacity <= 0:
            raise ConfigurationError(f"chunk capacity must be > 0, got {capacity}")
        self.capacity = capacity
        self._buffer: list[Row] = []
        self._emitted = 0

    @property
    def emitted(self) -> int:
        """Number of chunks emitted so far."""
        return self._emitted

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def push(self, row: Row) -> Chunk | None:
        """Buffer a row; return a completed chunk once capacity is reached."""
        self._buffer.append(row)
        if self.capacity is not None and len(self._buffer) >= self.capacity:
            return self._emit()
        return None

    def flush(self) -> Chunk | None:
        """Emit the buffered tail (source exhausted). None when nothing is buffered."""
        if not self._buffer:
            return None
        return self._emit()

    def _emit(self) -> Chunk:
        self._emitted += 1
        chunk = Chunk(index=self._emitted, rows=tuple(self._buffer))
        self._buffer = []
        return chunk


def iter_chunks(rows: Iterable[Row], capacity: int | None) -> Iterator[Chunk]:
    """Group `rows` into chunks lazily (one chunk buffered at a time)."""
    acc = ChunkAccumulator(capacity)
    for row in rows:
        chunk = acc.push(row)
        if chunk is not None:
            yield chunk
    tail = acc.flush()
    if tail is not None:
        yield tail
