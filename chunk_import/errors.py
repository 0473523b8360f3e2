from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models.failure import Failure

"""Error taxonomy for the chunked import engine.

- ValidationError: aggregate of rule violations (raised at import end or on fail-fast)
- PersistenceError: the row consumer / store failed while persisting a chunk
- SourceReadError: the row source failed to produce the next row (always fatal)
- ConfigurationError: invalid session / rules / headings (always fatal)
- ImportCancelled: abort signal received while streaming
"""

__all__ = [
    "ChunkImportError",
    "ConfigurationError",
    "SourceReadError",
    "PersistenceError",
    "ValidationError",
    "ImportCancelled",
]


class ChunkImportError(Exception):
    """Base class for all errors raised by the import engine."""


class ConfigurationError(ChunkImportError):
    pass


class SourceReadError(ChunkImportError):
    """Raised when the row source cannot produce the next row.

    Attributes:
        position: 1-based position of the row that could not be read (-1 if unknown)
    """

    def __init__(self, message: str, position: int = -1) -> None:
        super().__init__(message)
        self.position = position


class PersistenceError(ChunkImportError):
    """Raised when a row (or a whole chunk batch) could not be stored.

    Attributes:
        row: 1-based row position, or -1 for chunk-level errors (batch insert, commit)
        chunk: 1-based chunk index, or -1 if unknown
    """

    def __init__(self, message: str, row: int = -1, chunk: int = -1) -> None:
        super().__init__(message)
        self.row = row
        self.chunk = chunk


class ValidationError(ChunkImportError):
    """Aggregate validation error carrying every collected Failure in report order."""

    def __init__(self, failures: Sequence[Failure]) -> None:
        self.failures: list[Failure] = list(failures)
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        count = len(self.failures)
        if not count:
            return "validation failed"
        first = self.failures[0]
        head = f"row {first.row} [{first.attribute}]: {'; '.join(first.errors)}"
        if count == 1:
            return f"1 validation failure: {head}"
        return f"{count} validation failures (first: {head})"

    def errors(self) -> list[dict[str, Any]]:
        """Failure surface: list of {row, attribute, errors} dicts."""
        return [f.to_dict() for f in self.failures]


class ImportCancelled(ChunkImportError):
    pass
