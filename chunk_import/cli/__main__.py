from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import psycopg2
from dotenv import load_dotenv

from ..config.loader import DEFAULT_CONFIG_PATH, DatabaseConfig, ImportConfig, load_config
from ..db.row_consumer import DiscardConsumer, RowConsumer, TableRowConsumer
from ..errors import (
    ChunkImportError,
    ConfigurationError,
    ImportCancelled,
    PersistenceError,
    SourceReadError,
    ValidationError,
)
from ..logging.error_log import ErrorLogBuffer
from ..logging.init import log_summary, setup_logging
from ..models.error_record import ErrorRecord
from ..models.failure import Failure
from ..models.import_result import ImportResult
from ..models.row import Row
from ..rules.evaluator import RuleEvaluator
from ..services.orchestrator import ImportOrchestrator
from ..services.progress import ProgressTracker
from ..services.summary import render_summary_line
from ..source.heading import HeadingResolver
from ..source.reader import read_rows

"""CLI entrypoint.

    python -m chunk_import.cli [SOURCE] [--config PATH] [--dry-run] [--inspect] [--debug]

Flow: load .env and config -> open the row source -> run ImportOrchestrator on
a live PostgreSQL cursor (or in mock / dry-run mode) -> write the error log ->
print the SUMMARY line.

Exit codes:
    0  every chunk committed, no failures and no skipped errors
    2  completed with skipped failures / errors, or aggregate ValidationError
    1  fatal: configuration, source, persistence abort, cancellation
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

INSPECT_ROWS = 3

_ERROR_TYPES: dict[type[BaseException], str] = {
    ConfigurationError: "CONFIGURATION_ERROR",
    SourceReadError: "SOURCE_READ_ERROR",
    PersistenceError: "PERSISTENCE_ERROR",
    ImportCancelled: "IMPORT_CANCELLED",
}


def _resolve_dsn(db_cfg: DatabaseConfig) -> str:
    """Build the connection string.

    接続情報の解決優先順位 (.env を最優先):
        1. `.env` で読み込まれた環境変数 (main() 冒頭で上書き済み)
           - DATABASE_URL / PGDSN があれば DSN 全体をそのまま使用
           - 個別 PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE
        2. config の database セクション (不足分のフォールバック)
    """
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn:
        return dsn
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


@contextmanager
def _db_connection(cfg: ImportConfig) -> Iterator[Any]:  # pragma: no cover (thin wrapper)
    """Yield a psycopg2 cursor; the connection is closed on exit.

    autocommit=True: transaction boundaries are the BEGIN / COMMIT / ROLLBACK
    statements issued by TransactionCoordinator, one scope per chunk.
    """
    conn = psycopg2.connect(_resolve_dsn(cfg.database))
    conn.autocommit = True
    try:
        with conn.cursor() as cur:
            yield cur
    finally:
        conn.close()


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env using python-dotenv (override=True: .env wins over the process env)."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="chunk-import",
        description="Validate tabular rows and import them into PostgreSQL chunk by chunk",
    )
    p.add_argument("source", nargs="?", help="CSV / XLSX file (overrides `source` in the config)")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="YAML config path")
    p.add_argument("--dry-run", action="store_true", help="Validate and chunk without writing to the database")
    p.add_argument("--inspect", action="store_true", help="Print resolved attributes & first rows then exit")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    return p.parse_args(argv)


def _open_source(cfg: ImportConfig, source_path: Path) -> Iterator[list[Any]]:
    return read_rows(
        source_path,
        sheet=cfg.sheet,
        keep_na_strings=cfg.keep_na_strings,
        null_sentinels=cfg.null_sentinels,
    )


def _inspect(cfg: ImportConfig, source_path: Path) -> int:
    """Print the attribute map and the first data rows."""
    position = 0

    def positioned() -> Iterator[Row]:
        nonlocal position
        for raw in _open_source(cfg, source_path):
            position += 1
            yield Row.from_raw(position, raw)

    resolver = HeadingResolver(cfg.session.use_heading_row, cfg.session.heading_row)
    attributes, rows = resolver.resolve(positioned())
    print(f"SOURCE: {source_path.name}")
    print(f"  attributes={list(attributes.names) if not attributes.is_identity else 'identity'}")
    for _, row in zip(range(INSPECT_ROWS), rows):
        # datetime を含む場合があるため isoformat で文字列化
        record = {k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in row.to_dict(attributes).items()}
        print(f"  row {row.position}: {record}")
    return EXIT_SUCCESS_ALL


def _chunk_of(result: ImportResult | None, row: int) -> int:
    if result is None or not result.chunk_stats:
        return -1
    for stat in result.chunk_stats:
        if stat.first_row <= row <= stat.last_row:
            return stat.index
    return -1


def _run(
    cfg: ImportConfig,
    source_path: Path,
    consumer: RowConsumer,
    cursor: Any,
    error_log: ErrorLogBuffer,
    logger: logging.Logger,
) -> int:
    source_name = source_path.name
    orchestrator: ImportOrchestrator | None = None

    def on_failure(failures: list[Failure]) -> None:
        chunk = orchestrator.current_chunk if orchestrator is not None else -1
        error_log.extend([ErrorRecord.from_failure(source_name, chunk, f) for f in failures])
        error_log.flush()

    def on_error(error: PersistenceError) -> None:
        logger.warning(f"row={error.row} skipped: {error}")
        error_log.append(ErrorRecord.create(source_name, error.chunk, error.row, "PERSISTENCE_ERROR", str(error)))
        error_log.flush()

    session = cfg.session.with_callbacks(on_failure=on_failure, on_error=on_error)
    evaluator = RuleEvaluator(
        cfg.rules,
        custom_messages=session.custom_messages,
        custom_attributes=session.custom_attributes,
    )
    rows = _open_source(cfg, source_path)

    exit_code = EXIT_SUCCESS_ALL
    with ProgressTracker(description=source_name) as progress:
        orchestrator = ImportOrchestrator(session, evaluator, consumer, cursor, progress=progress)
        try:
            result = orchestrator.run(rows)
        except ValidationError as e:
            result = orchestrator.result
            error_log.extend(
                [ErrorRecord.from_failure(source_name, _chunk_of(result, f.row), f) for f in e.failures]
            )
            logger.error(f"validation: {e}")
            exit_code = EXIT_PARTIAL_FAILURE
        except ChunkImportError as e:
            result = orchestrator.result
            row = getattr(e, "row", getattr(e, "position", -1))
            chunk = getattr(e, "chunk", orchestrator.current_chunk)
            error_type = _ERROR_TYPES.get(type(e), "IMPORT_ERROR")
            error_log.append(ErrorRecord.create(source_name, chunk, row, error_type, str(e)))
            logger.error(f"import aborted: {e}")
            exit_code = EXIT_FATAL
        except KeyboardInterrupt:
            result = orchestrator.result
            logger.error("import interrupted")
            exit_code = EXIT_FATAL

    log_path = error_log.flush()
    if log_path is not None:
        logger.info(f"error log: {log_path}")

    if result is not None:
        if exit_code == EXIT_SUCCESS_ALL and (result.failures > 0 or result.skipped_errors > 0):
            exit_code = EXIT_PARTIAL_FAILURE
        # log_summary が "SUMMARY " ラベルを付与するため先頭を除去
        log_summary(render_summary_line(result)[len("SUMMARY "):])
    return exit_code


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # None のときのみシステム引数を読む (空リストはそのまま)
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    if args.debug:
        logger = setup_logging(debug=True)
        logger.debug("debug mode enabled")

    # .env を最優先で読み込む (DB 接続パラメータ優先順位保証)
    _load_env_file(Path(".env"), override=True)
    try:
        cfg = load_config(args.config)
    except ConfigurationError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    source_path = Path(args.source) if args.source else Path(cfg.source)
    if not source_path.exists():
        logger.error(f"source not found: {source_path}")
        return EXIT_FATAL

    if args.inspect:
        try:
            return _inspect(cfg, source_path)
        except ChunkImportError as e:
            logger.error(f"inspect: {e}")
            return EXIT_FATAL

    # DB 接続制御: テスト等で完全に無効化したい場合 DISABLE_DB_CONNECT=1
    mock = args.dry_run or os.getenv("DISABLE_DB_CONNECT") == "1"
    mode = "dry-run" if args.dry_run else ("mock" if mock else "live")
    logger.info(
        f"import started source={source_path} table={cfg.table} "
        f"chunk_size={cfg.session.chunk_size} mode={mode}"
    )

    error_log = ErrorLogBuffer()
    try:
        if mock:
            return _run(cfg, source_path, DiscardConsumer(), None, error_log, logger)
        with _db_connection(cfg) as cur:
            consumer = TableRowConsumer(cur, cfg.table, cfg.column_map, page_size=cfg.page_size)
            return _run(cfg, source_path, consumer, cur, error_log, logger)
    except ConfigurationError as e:
        # ルール定義の不整合 (evaluator 構築時)
        logger.error(f"config: {e}")
        return EXIT_FATAL
    except SourceReadError as e:
        logger.error(f"source: {e}")
        return EXIT_FATAL
    except psycopg2.Error as e:
        logger.error(f"database connection failed: {e}")
        return EXIT_FATAL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
