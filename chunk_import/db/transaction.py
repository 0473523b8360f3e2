from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from ..errors import PersistenceError
from ..models.chunk import Chunk, ChunkStatus
from ..models.row import Row
from ..source.heading import AttributeMap
from .row_consumer import RowConsumer

logger = logging.getLogger(__name__)

"""TransactionCoordinator: one atomic scope per chunk.

State machine per chunk: BEGIN → PROCESSING → (COMMIT | ROLLBACK)

- BEGIN / COMMIT / ROLLBACK are issued as SQL on the DB-API cursor
  (connection must run with autocommit=False semantics handled by the caller)
- cursor=None is mock mode: scopes and statuses are tracked, no SQL is sent
- with row_savepoints=True each persisted row is wrapped in a SAVEPOINT so a
  failing row can be skipped without aborting the chunk transaction
- only one scope may be open at a time and chunks finalize in index order;
  a committed chunk is never reopened or reverted
"""

__all__ = [
    "TransactionCoordinator",
    "ROW_SAVEPOINT",
]

ROW_SAVEPOINT = "chunk_row"


class TransactionCoordinator:
    def __init__(self, cursor: Any = None, *, row_savepoints: bool = False) -> None:
        self.cursor = cursor
        self.row_savepoints = row_savepoints
        self._current: Chunk | None = None
        self._last_finalized = 0
        self.last_commit_seconds = 0.0

    @property
    def is_open(self) -> bool:
        return self._current is not None

    @property
    def current(self) -> Chunk | None:
        return self._current

    def _execute(self, sql: str) -> None:
        if self.cursor is not None:
            self.cursor.execute(sql)

    def begin(self, chunk: Chunk) -> None:
        if self._current is not None:
            raise RuntimeError(
                f"chunk {self._current.index} scope still open; cannot begin chunk {chunk.index}"
            )
        if chunk.status is not ChunkStatus.PENDING:
            raise RuntimeError(f"chunk {chunk.index} already {chunk.status.value}")
        if chunk.index <= self._last_finalized:
            raise RuntimeError(
                f"chunk {chunk.index} out of order (last finalized {self._last_finalized})"
            )
        try:
            self._execute("BEGIN")
        except Exception as e:
            raise PersistenceError(f"failed to begin transaction: {e}", chunk=chunk.index) from e
        chunk.status = ChunkStatus.PROCESSING
        self._current = chunk
        logger.debug("chunk=%d BEGIN rows=%d", chunk.index, len(chunk))

    def _require_open(self, chunk: Chunk) -> None:
        if self._current is not chunk or chunk.status is not ChunkStatus.PROCESSING:
            raise RuntimeError(f"chunk {chunk.index} has no open scope (status={chunk.status.value})")

    def persist(self, consumer: RowConsumer, chunk: Chunk, row: Row, attributes: AttributeMap) -> None:
        """Persist one row inside the chunk scope.

        Raises:
            PersistenceError: the consumer failed (chained from the original exception).
                With row_savepoints the chunk transaction stays usable afterwards.
        """
        self._require_open(chunk)
        if self.row_savepoints:
            self._execute(f"SAVEPOINT {ROW_SAVEPOINT}")
        try:
            consumer.persist(row, attributes)
        except Exception as e:
            if self.row_savepoints:
                try:
                    self._execute(f"ROLLBACK TO SAVEPOINT {ROW_SAVEPOINT}")
                except Exception as sp_e:
                    raise PersistenceError(
                        f"row {row.position}: {e} (savepoint rollback failed: {sp_e})",
                        row=row.position,
                        chunk=chunk.index,
                    ) from e
            if isinstance(e, PersistenceError):
                e.row = row.position if e.row == -1 else e.row
                e.chunk = chunk.index
                raise
            raise PersistenceError(f"row {row.position}: {e}", row=row.position, chunk=chunk.index) from e
        if self.row_savepoints:
            self._execute(f"RELEASE SAVEPOINT {ROW_SAVEPOINT}")

    def persist_many(
        self, consumer: Any, chunk: Chunk, rows: Sequence[Row], attributes: AttributeMap
    ) -> int:
        """Persist rows with the consumer's batch path (chunk-level error on failure)."""
        self._require_open(chunk)
        try:
            return int(consumer.persist_many(rows, attributes))
        except PersistenceError as e:
            e.chunk = chunk.index
            raise
        except Exception as e:
            raise PersistenceError(f"chunk {chunk.index} batch failed: {e}", chunk=chunk.index) from e

    def commit(self, chunk: Chunk) -> None:
        """Finalize the scope irreversibly.

        Raises:
            PersistenceError: COMMIT failed (the scope is rolled back first)
        """
        self._require_open(chunk)
        start = time.perf_counter()
        try:
            self._execute("COMMIT")
        except Exception as e:
            logger.error("chunk=%d COMMIT failed: %s", chunk.index, e)
            self._finalize(chunk, ChunkStatus.ROLLED_BACK)
            try:
                self._execute("ROLLBACK")
            except Exception:
                logger.debug("rollback after failed commit also failed", exc_info=True)
            raise PersistenceError(f"commit failed: {e}", chunk=chunk.index) from e
        self.last_commit_seconds = time.perf_counter() - start
        self._finalize(chunk, ChunkStatus.COMMITTED)
        logger.debug("chunk=%d COMMIT", chunk.index)

    def rollback(self, chunk: Chunk) -> None:
        """Discard every effect of this chunk (prior commits untouched).

        Raises:
            PersistenceError: ROLLBACK failed
        """
        self._require_open(chunk)
        self._finalize(chunk, ChunkStatus.ROLLED_BACK)
        try:
            self._execute("ROLLBACK")
        except Exception as e:
            raise PersistenceError(f"rollback failed: {e}", chunk=chunk.index) from e
        logger.debug("chunk=%d ROLLBACK", chunk.index)

    def abort(self) -> None:
        """Roll back the open scope (if any) without raising; used on fatal paths."""
        chunk = self._current
        if chunk is None:
            return
        try:
            self.rollback(chunk)
        except PersistenceError as e:
            # 元の例外を優先するためここでは記録のみ
            logger.error("chunk=%d rollback during abort failed: %s", chunk.index, e)

    def _finalize(self, chunk: Chunk, status: ChunkStatus) -> None:
        chunk.status = status
        self._current = None
        self._last_finalized = chunk.index

    @contextmanager
    def scope(self, chunk: Chunk) -> Iterator[Chunk]:
        """BEGIN on enter; any exception rolls back before propagating.

        The caller decides COMMIT or ROLLBACK explicitly inside the block; a
        scope left open on normal exit is rolled back.
        """
        self.begin(chunk)
        try:
            yield chunk
        except BaseException:
            if self._current is chunk:
                self.abort()
            raise
        if self._current is chunk:
            logger.warning("chunk=%d scope exited without decision -> ROLLBACK", chunk.index)
            self.rollback(chunk)
