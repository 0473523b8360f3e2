from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from .row import Row

"""Chunk domain model and ChunkStatus enum.

A chunk is the unit of atomicity: its rows are validated together and then
committed or rolled back as one transactional scope.
"""


class ChunkStatus(Enum):
    """Lifecycle of a chunk.

    State transitions: pending → processing → (committed | rolled_back)

    - PENDING: rows buffered, transaction scope not opened yet
    - PROCESSING: scope open, rows being persisted
    - COMMITTED: scope finalized, effects are permanent
    - ROLLED_BACK: every effect of this chunk discarded
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_final(self) -> bool:
        return self in (ChunkStatus.COMMITTED, ChunkStatus.ROLLED_BACK)


@dataclass
class Chunk:
    """Ordered, bounded batch of rows.

    `index` is 1-based. `rows` is never empty. `status` is mutated only by the
    TransactionCoordinator.
    """
    index: int
    rows: tuple[Row, ...]
    status: ChunkStatus = field(default=ChunkStatus.PENDING)

    def __post_init__(self) -> None:
        if not self.rows:
            raise ValueError("chunk must contain at least one row")

    @property
    def first_position(self) -> int:
        return self.rows[0].position

    @property
    def last_position(self) -> int:
        return self.rows[-1].position

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)
