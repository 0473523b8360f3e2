"""Domain models for the chunked import engine.

This package contains the value objects that flow through the pipeline:
rows, chunks, failures, the session policy and the import result.
"""

from .chunk import Chunk, ChunkStatus
from .error_record import ErrorRecord
from .failure import Failure, sort_failures
from .import_result import BatchStatsAccumulator, ChunkStat, ImportResult, ImportState
from .row import Row
from .session import ImportSession

__all__ = [
    # Pipeline values
    "Row",
    "Chunk",
    "ChunkStatus",
    "Failure",
    "sort_failures",
    # Policy
    "ImportSession",
    # Results
    "ImportState",
    "ImportResult",
    "ChunkStat",
    "BatchStatsAccumulator",
    "ErrorRecord",
]
