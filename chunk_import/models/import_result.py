from __future__ import annotations

import statistics
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

"""Import result models: terminal state, per-chunk statistics and aggregated metrics.

ImportResult feeds the SUMMARY line; ChunkStat keeps per-chunk detail;
BatchStatsAccumulator collects commit timings for avg / p95 reporting.
"""


class ImportState(Enum):
    """Orchestrator state machine.

    INIT → STREAMING → (VALIDATING → COMMITTING | ROLLING_BACK → STREAMING)* → COMPLETE | ABORTED
    """
    INIT = "init"
    STREAMING = "streaming"
    VALIDATING = "validating"
    COMMITTING = "committing"
    ROLLING_BACK = "rolling_back"
    COMPLETE = "complete"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ChunkStat:
    """Per-chunk processing statistics."""
    index: int  # チャンク番号 (1-based)
    first_row: int
    last_row: int
    status: str  # committed / rolled_back
    rows: int  # チャンク内の行数
    persisted_rows: int
    failures: int
    skipped_errors: int
    elapsed_seconds: float


@dataclass(frozen=True)
class ImportResult:
    """Aggregated results for one import run (basis for the SUMMARY line)."""
    state: ImportState
    total_chunks: int
    committed_chunks: int
    rolled_back_chunks: int
    rows_read: int  # データ行数 (見出し行を除く)
    persisted_rows: int
    failures: int  # 収集された Failure 数
    skipped_errors: int  # skip_on_error で飛ばした永続化エラー数
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    throughput_rows_per_sec: float  # persisted_rows / elapsed
    chunk_stats: list[ChunkStat] | None = None
    total_commits: int = 0
    avg_commit_seconds: float = 0.0
    p95_commit_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state is ImportState.COMPLETE and self.failures == 0 and self.skipped_errors == 0


class BatchStatsAccumulator:
    """Accumulate timing measurements and summarize them as (count, mean, p95)."""

    def __init__(self) -> None:
        self.batch_times: list[float] = []

    def add_batch_time(self, elapsed_seconds: float) -> None:
        self.batch_times.append(elapsed_seconds)

    def get_stats(self) -> tuple[int, float, float]:
        """Calculate timing statistics.

        Returns:
            tuple: (total_batches, avg_batch_seconds, p95_batch_seconds)
        """
        if not self.batch_times:
            return (0, 0.0, 0.0)

        total_batches = len(self.batch_times)
        avg_batch_seconds = statistics.mean(self.batch_times)

        if total_batches == 1:
            p95_batch_seconds = self.batch_times[0]
        else:
            p95_batch_seconds = statistics.quantiles(
                self.batch_times, n=20, method='inclusive'
            )[18]  # 95th percentile (19th of 20 quantiles, 0-indexed)

        return (total_batches, avg_batch_seconds, p95_batch_seconds)
