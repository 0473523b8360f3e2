from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import asdict, dataclass

"""Failure model: one rule violation set tied to a single row and attribute.

The Failure surface is fixed: {row, attribute, errors}. Serialization helpers
follow the same JSON Lines approach as ErrorRecord (no extra keys).
"""

__all__ = [
    "Failure",
    "sort_failures",
]


@dataclass(frozen=True)
class Failure:
    """Rule violations for one (row, attribute) pair.

    Attributes:
        row: 1-based original row position
        attribute: attribute reference (heading name or stringified column index)
        errors: ordered error messages (rule declaration order)
    """
    row: int
    attribute: str
    errors: tuple[str, ...]

    @property
    def sort_key(self) -> tuple[int, int, str]:
        # 列番号の属性は数値順 ("2" < "10"), 見出し名はその前に名前順
        column = int(self.attribute) if self.attribute.isdigit() else -1
        return (self.row, column, self.attribute)

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["errors"] = list(self.errors)
        return data

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def sort_failures(failures: Iterable[Failure]) -> list[Failure]:
    """Order failures by row position, then attribute (column indexes numerically)."""
    return sorted(failures, key=lambda f: f.sort_key)
