from __future__ import annotations

from ..models.import_result import ImportResult

"""SUMMARY line rendering.

Format:
SUMMARY state={state} chunks={total} committed={committed} rolled_back={rolled_back}
rows={rows_read} persisted={persisted} failures={failures} errors={skipped_errors}
elapsed_sec={elapsed} throughput_rps={throughput}
"""


def _format_number(value: float) -> str:
    # 整数値は小数点なし、極小値は指数表記を避ける
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        return f"{value:.6f}".rstrip('0').rstrip('.')
    return str(round(value, 3))


def render_summary_line(result: ImportResult) -> str:
    """Render the SUMMARY line for an ImportResult.

    Examples:
        >>> from datetime import datetime, timezone
        >>> from chunk_import.models.import_result import ImportState
        >>> start = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
        >>> end = datetime(2024, 1, 1, 10, 0, 2, tzinfo=timezone.utc)
        >>> result = ImportResult(
        ...     state=ImportState.COMPLETE, total_chunks=2, committed_chunks=2,
        ...     rolled_back_chunks=0, rows_read=1000, persisted_rows=1000, failures=0,
        ...     skipped_errors=0, start_time=start, end_time=end,
        ...     elapsed_seconds=2.0, throughput_rows_per_sec=500.0,
        ... )
        >>> render_summary_line(result)  # doctest: +ELLIPSIS
        'SUMMARY state=complete chunks=2 committed=2 rolled_back=0 rows=1000 persisted=1000 ...'
    """
    return (
        f"SUMMARY state={result.state.value} "
        f"chunks={result.total_chunks} "
        f"committed={result.committed_chunks} "
        f"rolled_back={result.rolled_back_chunks} "
        f"rows={result.rows_read} "
        f"persisted={result.persisted_rows} "
        f"failures={result.failures} "
        f"errors={result.skipped_errors} "
        f"elapsed_sec={_format_number(result.elapsed_seconds)} "
        f"throughput_rps={_format_number(result.throughput_rows_per_sec)}"
    )
