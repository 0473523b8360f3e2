from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..source.heading import AttributeMap

"""Row model: raw cell values plus the original 1-based position.

Position is assigned once when the row is pulled from the source and never
changes afterwards (heading row / pre-heading rows also consume positions).
"""

__all__ = [
    "Row",
]


@dataclass(frozen=True)
class Row:
    """One input row.

    Attributes:
        position: 1-based original position in the source
        values: cell values in column order
    """
    position: int
    values: tuple[Any, ...]

    @classmethod
    def from_raw(cls, position: int, raw: Sequence[Any]) -> Row:
        return cls(position=position, values=tuple(raw))

    def get(self, index: int) -> Any:
        """Cell value at `index`, None when the row is shorter."""
        if 0 <= index < len(self.values):
            return self.values[index]
        return None

    def is_empty(self) -> bool:
        for v in self.values:
            if v is None:
                continue
            if isinstance(v, str) and v.strip() == "":
                continue
            return False
        return True

    def to_dict(self, attributes: AttributeMap) -> dict[str, Any]:
        """Attribute name -> value mapping (used by row consumers)."""
        return {attributes.name_of(i): v for i, v in enumerate(self.values)}

    def __len__(self) -> int:
        return len(self.values)
