from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Sequence
from typing import Any

from ..errors import ConfigurationError
from ..models.row import Row

"""Heading row resolution.

The heading row (1st row by default, configurable via heading_row) defines the
attribute names for every following row. Rows before the heading row are
discarded; the heading row itself is not a data row.

Without a heading row, attributes are the stringified column indexes ("0", "1", ...).
"""

__all__ = [
    "AttributeMap",
    "HeadingResolver",
    "normalize_heading",
]

_NON_ALNUM = re.compile(r"[^0-9a-z]+")


def normalize_heading(value: Any, index: int) -> str:
    """Normalize a heading cell to an attribute name.

    "  E-Mail Address " -> "e_mail_address". Empty cells fall back to the index.
    """
    if value is None:
        return str(index)
    text = str(value).strip().lower()
    slug = _NON_ALNUM.sub("_", text).strip("_")
    return slug or str(index)


class AttributeMap:
    """Column index <-> attribute name mapping.

    Identity mode (no heading) maps index i to str(i). Columns beyond the heading
    width also fall back to str(i).
    """

    def __init__(self, names: Sequence[str] | None = None) -> None:
        self._names: tuple[str, ...] = tuple(names or ())
        self._index = {name: i for i, name in enumerate(self._names)}

    @classmethod
    def identity(cls) -> AttributeMap:
        return cls()

    @property
    def is_identity(self) -> bool:
        return not self._names

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    def name_of(self, index: int) -> str:
        if 0 <= index < len(self._names):
            return self._names[index]
        return str(index)

    def index_of(self, reference: str) -> int:
        """Resolve a column reference (attribute name or stringified index).

        Raises:
            ConfigurationError: the reference matches no column
        """
        if reference in self._index:
            return self._index[reference]
        if reference.isdigit():
            idx = int(reference)
            # 見出しありの場合でも列番号指定は許容 (見出し幅の範囲内のみ)
            if self.is_identity or idx < len(self._names):
                return idx
        raise ConfigurationError(f"unknown column reference: {reference!r}")

    def __len__(self) -> int:
        return len(self._names)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AttributeMap):
            return NotImplemented
        return self._names == other._names

    def __hash__(self) -> int:
        return hash(self._names)

    def __repr__(self) -> str:
        if self.is_identity:
            return "AttributeMap(identity)"
        return f"AttributeMap({list(self._names)!r})"


class HeadingResolver:
    """Split a row stream into (AttributeMap, data rows).

    Parameters
    ----------
    use_heading_row: 見出し行を使用するか
    heading_row: 見出し行の位置 (1-based)
    """

    def __init__(self, use_heading_row: bool = False, heading_row: int = 1) -> None:
        if heading_row < 1:
            raise ConfigurationError(f"heading_row must be >= 1, got {heading_row}")
        self.use_heading_row = use_heading_row
        self.heading_row = heading_row

    def build(self, heading: Row) -> AttributeMap:
        """Build the AttributeMap from the heading row.

        Raises:
            ConfigurationError: two headings collide after normalization
        """
        names = [normalize_heading(v, i) for i, v in enumerate(heading.values)]
        seen: dict[str, int] = {}
        duplicates: list[str] = []
        for name in names:
            seen[name] = seen.get(name, 0) + 1
            if seen[name] == 2:
                duplicates.append(name)
        if duplicates:
            raise ConfigurationError(
                f"heading row {heading.position} has duplicate attribute names: {sorted(duplicates)}"
            )
        return AttributeMap(names)

    def resolve(self, rows: Iterable[Row]) -> tuple[AttributeMap, Iterator[Row]]:
        """Consume the heading (if enabled) and return the map plus remaining data rows.

        An input that ends before the heading row yields an identity map and no
        data rows.
        """
        it = iter(rows)
        if not self.use_heading_row:
            return AttributeMap.identity(), it

        for row in it:
            if row.position < self.heading_row:
                continue  # 見出し行より前の行 (タイトル行など) は破棄
            return self.build(row), it
        return AttributeMap.identity(), iter(())
