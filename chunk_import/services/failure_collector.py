from __future__ import annotations

import logging
from collections.abc import Sequence

from ..errors import ValidationError
from ..models.chunk import Chunk
from ..models.failure import Failure, sort_failures
from ..models.session import FailureCallback

logger = logging.getLogger(__name__)

"""FailureCollector: aggregate validation failures across chunks.

Aggregate mode (skip_on_failure=False):
    failures are kept ordered by (row position, attribute); raise_if_failed()
    raises one ValidationError carrying the full list.
Skip mode (skip_on_failure=True):
    each chunk's failures are delivered to on_failure once per chunk and never
    turn into a terminal error.
"""

__all__ = [
    "FailureCollector",
]


class FailureCollector:
    def __init__(self, skip_on_failure: bool, on_failure: FailureCallback | None = None) -> None:
        self.skip_on_failure = skip_on_failure
        self.on_failure = on_failure
        self._failures: list[Failure] = []
        self._count = 0
        self._failed_chunks: list[int] = []

    @property
    def failures(self) -> list[Failure]:
        """Aggregated failures in report order (empty in skip mode)."""
        return list(self._failures)

    @property
    def count(self) -> int:
        """Total failures recorded in either mode."""
        return self._count

    @property
    def failed_chunks(self) -> list[int]:
        return list(self._failed_chunks)

    def has_failures(self) -> bool:
        return self._count > 0

    def record(self, chunk: Chunk, failures: Sequence[Failure]) -> list[Failure]:
        """Record one chunk's failures; returns them in report order."""
        ordered = sort_failures(failures)
        if not ordered:
            return ordered
        self._count += len(ordered)
        self._failed_chunks.append(chunk.index)

        if self.skip_on_failure:
            if self.on_failure is not None:
                self.on_failure(list(ordered))
            else:
                for f in ordered:
                    logger.warning("row=%d attribute=%s skipped: %s", f.row, f.attribute, "; ".join(f.errors))
            return ordered

        # チャンクは位置順に処理されるため末尾追加で全体順序を維持できる
        if self._failures and ordered[0].sort_key < self._failures[-1].sort_key:
            self._failures = sort_failures([*self._failures, *ordered])
        else:
            self._failures.extend(ordered)
        return ordered

    def to_error(self) -> ValidationError:
        return ValidationError(self._failures)

    def raise_if_failed(self) -> None:
        """Raise the aggregate ValidationError (aggregate mode only)."""
        if not self.skip_on_failure and self._failures:
            raise self.to_error()
