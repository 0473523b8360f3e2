from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from .failure import Failure

"""ErrorRecord model for the structured error log.

Each record is one JSON Lines entry. row=-1 is the sentinel for chunk-level or
import-level errors where a specific row cannot be determined (batch insert
failure, commit failure, source read failure before the first row).
"""

__all__ = [
    "ErrorRecord",
]


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record for JSON Lines logging.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        source: name of the input being imported
        chunk: 1-based chunk index (-1 if not tied to a chunk)
        row: 1-based row position. -1 when unknown
        error_type: classification in UPPER_SNAKE_CASE
        message: error message (validation messages joined with '; ')
    """
    timestamp: str  # ISO8601 UTC
    source: str
    chunk: int
    row: int  # 行番号。不明な場合 -1 許容
    error_type: str  # UPPER_SNAKE
    message: str

    @staticmethod
    def create(source: str, chunk: int, row: int, error_type: str, message: str) -> ErrorRecord:
        """Create a new ErrorRecord stamped with the current UTC time."""
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            source=source,
            chunk=chunk,
            row=row,
            error_type=error_type,
            message=message,
        )

    @staticmethod
    def from_failure(source: str, chunk: int, failure: Failure) -> ErrorRecord:
        return ErrorRecord.create(
            source=source,
            chunk=chunk,
            row=failure.row,
            error_type="VALIDATION_FAILURE",
            message=f"{failure.attribute}: {'; '.join(failure.errors)}",
        )

    def to_json_line(self) -> str:
        """Serialize to a JSON Lines entry (contract: no extra keys)."""
        return json.dumps(asdict(self), ensure_ascii=False)
