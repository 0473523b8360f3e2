# Shared pytest fixtures
from __future__ import annotations

import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from chunk_import.logging.init import reset_logging
from chunk_import.models.row import Row
from chunk_import.source.heading import AttributeMap


@pytest.fixture(autouse=True)
def clean_logging():
    # stdout ハンドラは capsys 差し替え前の stream を掴むため毎回リセット
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        monkeypatch.setenv("DISABLE_DB_CONNECT", "1")
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """source: ./data/people.csv
table: people
column_map:
  name: full_name
  email: email
chunk_size: 2
use_heading_row: true
rules:
  name: required
  email: required|email
  "*.email": distinct
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def people_csv(temp_workdir: Path) -> Path:
    f = temp_workdir / "data" / "people.csv"
    f.write_text(
        "Name,Email\n"
        "Alice,alice@example.com\n"
        "Bob,bob@example.com\n"
        "Carol,carol@example.com\n",
        encoding="utf-8",
    )
    return f


def make_rows(raw: Sequence[Sequence[Any]], start: int = 1) -> list[Row]:
    return [Row.from_raw(start + i, r) for i, r in enumerate(raw)]


class FakeStoreCursor:
    """In-memory transactional store speaking the statements the coordinator issues.

    Records written outside BEGIN..COMMIT are rejected; ROLLBACK discards the
    open transaction; SAVEPOINT / ROLLBACK TO SAVEPOINT truncate to the mark.
    """

    def __init__(self, fail_on: Sequence[str] = ()) -> None:
        self.statements: list[str] = []
        self.committed: list[dict[str, Any]] = []
        self.fail_on = set(fail_on)
        self._tx: list[dict[str, Any]] | None = None
        self._mark: int | None = None

    @property
    def in_transaction(self) -> bool:
        return self._tx is not None

    def execute(self, sql: str, params: Any = None) -> None:
        self.statements.append(sql)
        if sql in self.fail_on:
            raise RuntimeError(f"{sql} failed")
        if sql == "BEGIN":
            self._tx = []
        elif sql == "COMMIT":
            self.committed.extend(self._tx or [])
            self._tx = None
        elif sql == "ROLLBACK":
            self._tx = None
        elif sql.startswith("SAVEPOINT"):
            self._mark = len(self._tx or [])
        elif sql.startswith("RELEASE SAVEPOINT"):
            self._mark = None
        elif sql.startswith("ROLLBACK TO SAVEPOINT"):
            assert self._tx is not None and self._mark is not None
            del self._tx[self._mark:]

    def write(self, record: dict[str, Any]) -> None:
        if self._tx is None:
            raise RuntimeError("write outside transaction")
        self._tx.append(record)


class StoreConsumer:
    """Row consumer writing into FakeStoreCursor; rows in fail_positions raise after writing."""

    def __init__(self, cursor: FakeStoreCursor, fail_positions: Sequence[int] = ()) -> None:
        self.cursor = cursor
        self.fail_positions = set(fail_positions)
        self.batches: list[int] = []

    def persist(self, row: Row, attributes: AttributeMap) -> None:
        self.cursor.write({"_position": row.position, **row.to_dict(attributes)})
        if row.position in self.fail_positions:
            raise RuntimeError(f"duplicate key for row {row.position}")

    def persist_many(self, rows: Sequence[Row], attributes: AttributeMap) -> int:
        self.batches.append(len(rows))
        for row in rows:
            self.persist(row, attributes)
        return len(rows)


@pytest.fixture()
def store() -> FakeStoreCursor:
    return FakeStoreCursor()


@pytest.fixture()
def consumer(store: FakeStoreCursor) -> StoreConsumer:
    return StoreConsumer(store)
