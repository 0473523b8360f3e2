from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..models.row import Row
from ..source.heading import AttributeMap
from .catalogue import is_empty

"""Evaluation contexts handed to rule checks.

ChunkContext is built once per chunk and caches per-column lookups so that
row-dependent (wildcard) rules stay linear in the chunk size.
RuleInput is the per (row, attribute) view a single check receives.
"""

__all__ = [
    "ChunkContext",
    "RuleInput",
]


def _distinct_key(value: Any, ignore_case: bool) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value.casefold() if ignore_case else value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class ChunkContext:
    """Read-only view of every row of a chunk plus the attribute map."""

    def __init__(self, rows: Sequence[Row], attributes: AttributeMap) -> None:
        self.rows: tuple[Row, ...] = tuple(rows)
        self.attributes = attributes
        self._first_positions: dict[tuple[int, bool], dict[Any, int]] = {}

    def first_positions(self, index: int, ignore_case: bool = False) -> dict[Any, int]:
        """Value -> position of its first occurrence in this chunk (empty values excluded)."""
        cache_key = (index, ignore_case)
        cached = self._first_positions.get(cache_key)
        if cached is not None:
            return cached
        positions: dict[Any, int] = {}
        for row in self.rows:
            value = row.get(index)
            if is_empty(value):
                continue
            positions.setdefault(_distinct_key(value, ignore_case), row.position)
        self._first_positions[cache_key] = positions
        return positions

    def __len__(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class RuleInput:
    """What a single rule check may look at.

    chunk is None for plain (per-row) rules; only wildcard rules see siblings.
    """
    row: Row
    index: int
    attributes: AttributeMap
    numeric: bool = False
    chunk: ChunkContext | None = None

    def other_value(self, reference: str) -> Any:
        return self.row.get(self.attributes.index_of(reference))

    def first_occurrence(self, value: Any, ignore_case: bool = False) -> int:
        if self.chunk is None:
            return self.row.position
        positions = self.chunk.first_positions(self.index, ignore_case)
        return positions.get(_distinct_key(value, ignore_case), self.row.position)
