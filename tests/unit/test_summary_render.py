from __future__ import annotations

from datetime import UTC, datetime

from chunk_import.models.import_result import ImportResult, ImportState
from chunk_import.services.summary import render_summary_line


def make_result(**overrides) -> ImportResult:
    values = dict(
        state=ImportState.COMPLETE,
        total_chunks=5,
        committed_chunks=4,
        rolled_back_chunks=1,
        rows_read=4500,
        persisted_rows=3998,
        failures=2,
        skipped_errors=0,
        start_time=datetime(2024, 1, 1, 10, 0, 0, tzinfo=UTC),
        end_time=datetime(2024, 1, 1, 10, 0, 2, tzinfo=UTC),
        elapsed_seconds=2.5,
        throughput_rows_per_sec=1599.2,
    )
    values.update(overrides)
    return ImportResult(**values)


def test_render_summary_line():
    assert render_summary_line(make_result()) == (
        "SUMMARY state=complete chunks=5 committed=4 rolled_back=1 rows=4500 "
        "persisted=3998 failures=2 errors=0 elapsed_sec=2.5 throughput_rps=1599.2"
    )


def test_render_summary_aborted_and_zero_values():
    line = render_summary_line(
        make_result(
            state=ImportState.ABORTED, total_chunks=0, committed_chunks=0, rolled_back_chunks=0,
            rows_read=0, persisted_rows=0, failures=0, elapsed_seconds=0.0, throughput_rows_per_sec=0.0,
        )
    )
    assert line.startswith("SUMMARY state=aborted chunks=0")
    assert line.endswith("elapsed_sec=0 throughput_rps=0")


def test_small_elapsed_avoids_scientific_notation():
    line = render_summary_line(make_result(elapsed_seconds=0.000123, throughput_rows_per_sec=1000.0))
    assert "elapsed_sec=0.000123" in line
    assert "throughput_rps=1000" in line
    assert "e-" not in line
