from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any

from ..db.row_consumer import RowConsumer
from ..db.transaction import TransactionCoordinator
from ..errors import ImportCancelled, PersistenceError, SourceReadError
from ..models.chunk import Chunk, ChunkStatus
from ..models.failure import Failure
from ..models.import_result import BatchStatsAccumulator, ChunkStat, ImportResult, ImportState
from ..models.row import Row
from ..models.session import ImportSession
from ..rules.evaluator import RuleEvaluator
from ..source.heading import AttributeMap, HeadingResolver
from .chunking import iter_chunks
from .failure_collector import FailureCollector
from .progress import ProgressTracker

logger = logging.getLogger(__name__)

"""Import orchestration: drive rows through heading resolution, chunking,
validation and per-chunk transactions, applying the session's skip policies.

State machine:
    INIT → STREAMING → (VALIDATING → COMMITTING | ROLLING_BACK → STREAMING)* → COMPLETE | ABORTED

Per chunk:
- no failures: BEGIN, persist every row, COMMIT
- failures, skip_on_failure=False: BEGIN, ROLLBACK (nothing persisted)
    fail_fast=True  -> ABORTED, ValidationError with the failures so far
    fail_fast=False -> keep streaming; later chunks are validated and rolled
                       back, never committed; aggregate ValidationError at the end
- failures, skip_on_failure=True: persist rows without failures, on_failure, COMMIT

Persistence errors abort (ROLLBACK current chunk, ABORTED) unless skip_on_error
routes them to on_error. Source / configuration errors and cancellation are
always fatal.
"""

__all__ = [
    "ImportOrchestrator",
    "run_import",
]


class ImportOrchestrator:
    """Owns one import run and its terminal outcome.

    Parameters
    ----------
    session: policy flags and callbacks
    evaluator: rule set with message / attribute overrides
    consumer: row consumer (persist, optionally persist_many)
    cursor: DB-API cursor for BEGIN/COMMIT/ROLLBACK (None = mock mode)
    progress: optional ProgressTracker advanced per chunk
    """

    def __init__(
        self,
        session: ImportSession,
        evaluator: RuleEvaluator,
        consumer: RowConsumer,
        cursor: Any = None,
        *,
        progress: ProgressTracker | None = None,
    ) -> None:
        self.session = session
        self.evaluator = evaluator
        self.consumer = consumer
        self.cursor = cursor
        self.progress = progress

        self.state = ImportState.INIT
        self.result: ImportResult | None = None
        self.attributes: AttributeMap = AttributeMap.identity()
        self.current_chunk = -1

        self._cancel = threading.Event()
        self._stop_reading = threading.Event()  # 中断後は先読みスレッドも行を読まない
        self._coordinator = TransactionCoordinator(cursor, row_savepoints=session.skip_on_error)
        self._collector = FailureCollector(session.skip_on_failure, session.on_failure)
        self._commit_stats = BatchStatsAccumulator()
        self._chunk_stats: dict[int, ChunkStat] = {}
        self._active: Chunk | None = None
        self._halted = False  # gather-all モード: 失敗検出後はコミットしない
        self._rows_read = 0
        self._persisted_rows = 0
        self._skipped_errors = 0
        self._start_time = datetime.now(UTC)

    # ------------------------------------------------------------------ public

    @property
    def failures(self) -> list[Failure]:
        """Failures aggregated so far (aggregate mode)."""
        return self._collector.failures

    def cancel(self) -> None:
        """Request an abort: row pulling stops and the open chunk is rolled back."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self, source: Iterable[Sequence[Any]]) -> ImportResult:
        """Run the import over `source` (forward-only raw rows).

        Returns:
            ImportResult (also kept on self.result, in every outcome)

        Raises:
            ValidationError: failures collected and skip_on_failure is off
            PersistenceError: a row / commit failed and skip_on_error is off
            SourceReadError, ConfigurationError, ImportCancelled: fatal
        """
        if self.state is not ImportState.INIT:
            raise RuntimeError("an ImportOrchestrator instance runs only once")
        self._start_time = datetime.now(UTC)
        self._set_state(ImportState.STREAMING)

        chunks: Iterator[Chunk] | None = None
        try:
            rows = self._iter_rows(source)
            resolver = HeadingResolver(self.session.use_heading_row, self.session.heading_row)
            self.attributes, data_rows = resolver.resolve(rows)
            self.evaluator.check_references(self.attributes)
            logger.debug("attributes=%r", self.attributes)

            chunks = iter_chunks(self._data_rows(data_rows), self.session.chunk_size)
            if self.session.read_ahead:
                chunks = self._read_ahead(chunks)
            for chunk in chunks:
                self._process_chunk(chunk)
        except BaseException as e:
            self._stop_reading.set()
            self._coordinator.abort()
            self._record_aborted_chunk()
            self._set_state(ImportState.ABORTED)
            self.result = self._build_result()
            logger.error("import aborted at chunk=%d: %s", self.current_chunk, e)
            raise
        finally:
            close = getattr(chunks, "close", None)
            if close is not None:
                close()

        self._set_state(ImportState.COMPLETE)
        self.result = self._build_result()
        self._collector.raise_if_failed()
        return self.result

    # --------------------------------------------------------------- streaming

    def _iter_rows(self, source: Iterable[Sequence[Any]]) -> Iterator[Row]:
        """Assign 1-based positions; wrap source failures as SourceReadError."""
        try:
            it = iter(source)
        except SourceReadError:
            raise
        except Exception as e:
            raise SourceReadError(f"cannot open row source: {e}", 1) from e

        position = 0
        while True:
            if self._cancel.is_set():
                raise ImportCancelled(f"import cancelled before row {position + 1}")
            if self._stop_reading.is_set():
                return
            try:
                raw = next(it)
            except StopIteration:
                return
            except SourceReadError:
                raise
            except Exception as e:
                raise SourceReadError(f"row {position + 1}: {e}", position + 1) from e
            position += 1
            if isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
                raise SourceReadError(
                    f"row {position}: expected a sequence of cells, got {type(raw).__name__}", position
                )
            yield Row.from_raw(position, raw)

    def _data_rows(self, rows: Iterator[Row]) -> Iterator[Row]:
        for row in rows:
            if self.session.skip_empty_rows and row.is_empty():
                continue
            self._rows_read += 1
            yield row

    def _read_ahead(self, chunks: Iterator[Chunk]) -> Iterator[Chunk]:
        """Assemble chunk N+1 on a worker thread while chunk N is processed.

        Commit decisions stay on the calling thread, in chunk order.
        """
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="chunk-read-ahead") as pool:
            future = pool.submit(next, chunks, None)
            while True:
                chunk = future.result()
                if chunk is None:
                    return
                future = pool.submit(next, chunks, None)
                yield chunk

    # ------------------------------------------------------------------ chunks

    def _process_chunk(self, chunk: Chunk) -> None:
        started = time.perf_counter()
        self._active = chunk
        self.current_chunk = chunk.index

        self._set_state(ImportState.VALIDATING)
        failures = self.evaluator.evaluate_chunk(chunk.rows, self.attributes)
        ordered = self._collector.record(chunk, failures)

        if ordered and not self.session.skip_on_failure:
            self._halted = True
            self._discard(chunk)
            logger.warning(
                "chunk=%d rows=%d-%d rolled back: %d failure(s)",
                chunk.index, chunk.first_position, chunk.last_position, len(ordered),
            )
            self._finish_chunk(chunk, persisted=0, failures=len(ordered), skipped=0, started=started)
            if self.session.fail_fast:
                raise self._collector.to_error()
            return

        if self._halted:
            # 先行チャンクで失敗済み: 検証のみ (コミットしない)
            self._discard(chunk)
            self._finish_chunk(chunk, persisted=0, failures=0, skipped=0, started=started)
            return

        self._set_state(ImportState.COMMITTING)
        failed_positions = {f.row for f in ordered}
        valid_rows = [r for r in chunk.rows if r.position not in failed_positions]

        self._coordinator.begin(chunk)
        persisted, skipped = self._persist(chunk, valid_rows)
        self._coordinator.commit(chunk)
        self._commit_stats.add_batch_time(self._coordinator.last_commit_seconds)
        self._persisted_rows += persisted
        logger.debug(
            "chunk=%d rows=%d-%d committed persisted=%d skipped_failures=%d skipped_errors=%d",
            chunk.index, chunk.first_position, chunk.last_position,
            persisted, len(failed_positions), skipped,
        )
        self._finish_chunk(chunk, persisted=persisted, failures=len(ordered), skipped=skipped, started=started)

    def _discard(self, chunk: Chunk) -> None:
        self._set_state(ImportState.ROLLING_BACK)
        self._coordinator.begin(chunk)
        self._coordinator.rollback(chunk)

    def _persist(self, chunk: Chunk, rows: list[Row]) -> tuple[int, int]:
        """Persist rows inside the open scope; returns (persisted, skipped_errors)."""
        persist_many = getattr(self.consumer, "persist_many", None)
        if self.session.batch_inserts and not self.session.skip_on_error and callable(persist_many):
            if self._cancel.is_set():
                raise ImportCancelled(f"import cancelled in chunk {chunk.index}")
            if not rows:
                return 0, 0
            return self._coordinator.persist_many(self.consumer, chunk, rows, self.attributes), 0

        persisted = 0
        skipped = 0
        for row in rows:
            if self._cancel.is_set():
                raise ImportCancelled(f"import cancelled in chunk {chunk.index} at row {row.position}")
            try:
                self._coordinator.persist(self.consumer, chunk, row, self.attributes)
            except PersistenceError as e:
                if not self.session.skip_on_error:
                    raise
                skipped += 1
                self._skipped_errors += 1
                if self.session.on_error is not None:
                    self.session.on_error(e)
                else:
                    logger.warning("row=%d skipped after persistence error: %s", row.position, e)
                continue
            persisted += 1
        return persisted, skipped

    def _finish_chunk(self, chunk: Chunk, *, persisted: int, failures: int, skipped: int, started: float) -> None:
        self._chunk_stats[chunk.index] = ChunkStat(
            index=chunk.index,
            first_row=chunk.first_position,
            last_row=chunk.last_position,
            status=chunk.status.value,
            rows=len(chunk),
            persisted_rows=persisted,
            failures=failures,
            skipped_errors=skipped,
            elapsed_seconds=time.perf_counter() - started,
        )
        self._active = None
        if self.progress is not None:
            self.progress.advance(len(chunk))
            self.progress.set_postfix(
                committed=self._count_status(ChunkStatus.COMMITTED),
                failures=self._collector.count,
            )
        self._set_state(ImportState.STREAMING)

    def _record_aborted_chunk(self) -> None:
        chunk = self._active
        if chunk is None or chunk.index in self._chunk_stats or not chunk.status.is_final:
            return
        self._chunk_stats[chunk.index] = ChunkStat(
            index=chunk.index,
            first_row=chunk.first_position,
            last_row=chunk.last_position,
            status=chunk.status.value,
            rows=len(chunk),
            persisted_rows=0,
            failures=0,
            skipped_errors=0,
            elapsed_seconds=0.0,
        )

    # ------------------------------------------------------------------ result

    def _set_state(self, state: ImportState) -> None:
        if self.state is not state:
            logger.debug("state %s -> %s", self.state.value, state.value)
        self.state = state

    def _count_status(self, status: ChunkStatus) -> int:
        return sum(1 for s in self._chunk_stats.values() if s.status == status.value)

    def _build_result(self) -> ImportResult:
        end_time = datetime.now(UTC)
        elapsed = (end_time - self._start_time).total_seconds()
        total_commits, avg_commit, p95_commit = self._commit_stats.get_stats()
        stats = [self._chunk_stats[i] for i in sorted(self._chunk_stats)]
        return ImportResult(
            state=self.state,
            total_chunks=len(stats),
            committed_chunks=self._count_status(ChunkStatus.COMMITTED),
            rolled_back_chunks=self._count_status(ChunkStatus.ROLLED_BACK),
            rows_read=self._rows_read,
            persisted_rows=self._persisted_rows,
            failures=self._collector.count,
            skipped_errors=self._skipped_errors,
            start_time=self._start_time,
            end_time=end_time,
            elapsed_seconds=elapsed,
            throughput_rows_per_sec=(self._persisted_rows / elapsed) if elapsed > 0 else 0.0,
            chunk_stats=stats,
            total_commits=total_commits,
            avg_commit_seconds=avg_commit,
            p95_commit_seconds=p95_commit,
        )


def run_import(
    source: Iterable[Sequence[Any]],
    session: ImportSession,
    rules: Mapping[str, str | Sequence[str]],
    consumer: RowConsumer,
    cursor: Any = None,
) -> ImportResult:
    """Build an evaluator from the session's override tables and run one import."""
    evaluator = RuleEvaluator(
        rules,
        custom_messages=session.custom_messages,
        custom_attributes=session.custom_attributes,
    )
    return ImportOrchestrator(session, evaluator, consumer, cursor).run(source)
