from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from psycopg2.extras import execute_values

from ..errors import PersistenceError
from ..models.row import Row
from ..source.heading import AttributeMap

"""Row consumers: turn validated rows into stored records.

The engine only relies on the RowConsumer protocol (`persist`, optionally
`persist_many`). TableRowConsumer is the concrete PostgreSQL consumer:
- persist: single-row INSERT (used per row, and always under skip_on_error)
- persist_many: psycopg2.extras.execute_values batch INSERT (batch_inserts mode)

Both run on the cursor owned by TransactionCoordinator, so every effect stays
inside the chunk's transactional scope.
"""

__all__ = [
    "RowConsumer",
    "TableRowConsumer",
    "DiscardConsumer",
    "BatchMetrics",
    "InsertResult",
    "batch_insert",
]


@runtime_checkable
class RowConsumer(Protocol):
    def persist(self, row: Row, attributes: AttributeMap) -> None: ...


@dataclass(frozen=True)
class BatchMetrics:
    """Timing data for a single batch insert."""
    batch_size: int  # バッチ内の行数
    elapsed_seconds: float  # execute_values 所要時間
    start_time: float  # time.time()
    end_time: float  # time.time()


@dataclass(frozen=True)
class InsertResult:
    inserted_rows: int
    returned_values: list[tuple[Any, ...]] | None = None


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def batch_insert(
    cursor: Any,
    table: str,
    columns: Sequence[str],
    rows: Sequence[Sequence[Any]],
    returning: bool = False,
    page_size: int = 1000,
    metrics_callback: Callable[[BatchMetrics], None] | None = None,
) -> InsertResult:
    """Perform a batched INSERT using psycopg2.extras.execute_values.

    Parameters
    ----------
    cursor: psycopg2 cursor
    table: 対象テーブル名 (サニタイズ済み想定)
    columns: 挿入列
    rows: 行シーケンス (列順)
    returning: True の場合 RETURNING * を付与
    page_size: execute_values の page_size (性能調整)
    metrics_callback: receives BatchMetrics after the statement ran (not invoked
        for empty `rows`)

    Raises
    ------
    PersistenceError: the driver rejected the statement
    """
    rows_list = list(rows)
    if not rows_list:
        return InsertResult(inserted_rows=0, returned_values=[] if returning else None)

    cols_sql = ",".join(_quote(c) for c in columns)
    base_sql = f"INSERT INTO {table} ({cols_sql}) VALUES %s"
    if returning:
        base_sql += " RETURNING *"

    start_time = time.time()
    try:
        execute_values(cursor, base_sql, rows_list, page_size=page_size)
    except Exception as e:
        raise PersistenceError(f"batch insert into {table} failed: {e}") from e
    finally:
        end_time = time.time()
        if metrics_callback is not None:
            metrics_callback(
                BatchMetrics(
                    batch_size=len(rows_list),
                    elapsed_seconds=end_time - start_time,
                    start_time=start_time,
                    end_time=end_time,
                )
            )

    returned = None
    if returning:
        try:
            returned = cursor.fetchall()
        except Exception as e:  # pragma: no cover
            raise PersistenceError(f"failed fetching RETURNING rows: {e}") from e

    return InsertResult(inserted_rows=len(rows_list), returned_values=returned)


class TableRowConsumer:
    """Insert rows into one PostgreSQL table.

    column_map maps attribute -> table column. When given, only mapped
    attributes are inserted; otherwise every attribute is inserted under its own
    name (which requires a heading row for meaningful column names).
    """

    def __init__(
        self,
        cursor: Any,
        table: str,
        column_map: Mapping[str, str] | None = None,
        page_size: int = 1000,
        metrics_callback: Callable[[BatchMetrics], None] | None = None,
    ) -> None:
        self.cursor = cursor
        self.table = table
        self.column_map = dict(column_map) if column_map else None
        self.page_size = page_size
        self.metrics_callback = metrics_callback

    def _width(self, rows: Sequence[Row], attributes: AttributeMap) -> int:
        # 見出し幅と最長行の大きい方 (短い行があってもセルを落とさない)
        return max([len(attributes), *(len(r) for r in rows)])

    def _columns(self, width: int, attributes: AttributeMap) -> list[str]:
        if self.column_map is None:
            return [attributes.name_of(i) for i in range(width)]
        return list(self.column_map.values())

    def _values(self, row: Row, width: int, attributes: AttributeMap) -> list[Any]:
        if self.column_map is None:
            return [row.get(i) for i in range(width)]
        record = row.to_dict(attributes)
        return [record.get(attr) for attr in self.column_map]

    def persist(self, row: Row, attributes: AttributeMap) -> None:
        width = self._width([row], attributes)
        columns = self._columns(width, attributes)
        cols_sql = ",".join(_quote(c) for c in columns)
        placeholders = ",".join(["%s"] * len(columns))
        self.cursor.execute(
            f"INSERT INTO {self.table} ({cols_sql}) VALUES ({placeholders})",
            self._values(row, width, attributes),
        )

    def persist_many(self, rows: Sequence[Row], attributes: AttributeMap) -> int:
        if not rows:
            return 0
        width = self._width(rows, attributes)
        result = batch_insert(
            self.cursor,
            self.table,
            self._columns(width, attributes),
            [self._values(r, width, attributes) for r in rows],
            page_size=self.page_size,
            metrics_callback=self.metrics_callback,
        )
        return result.inserted_rows


class DiscardConsumer:
    """Consumer for dry runs: counts rows, stores nothing."""

    def __init__(self) -> None:
        self.count = 0

    def persist(self, row: Row, attributes: AttributeMap) -> None:
        self.count += 1
