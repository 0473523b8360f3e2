from __future__ import annotations

from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

import openpyxl
import pandas as pd

from ..errors import SourceReadError

"""Concrete row sources (CSV / XLSX) built on pandas and openpyxl.

Rows are produced forward-only, one pass, in file order, without loading the
whole file: CSV is read in pandas chunks, XLSX through openpyxl read-only mode.
No header is applied here; heading handling belongs to HeadingResolver.

Cell normalization:
- NaN / NaT -> None
- strings whose stripped upper-case form is in null_sentinels -> None
"""

__all__ = [
    "read_rows",
    "read_csv_rows",
    "read_xlsx_rows",
    "SUPPORTED_SUFFIXES",
]

SUPPORTED_SUFFIXES = (".csv", ".xlsx")
DEFAULT_READ_CHUNKSIZE = 5000


def _normalize_cell(val: Any, null_sentinels: set[str] | None) -> Any:
    if val is None:
        return None
    if isinstance(val, str):
        if null_sentinels and val.strip().upper() in null_sentinels:
            return None
        return val
    try:
        if pd.isna(val):
            return None
    except (TypeError, ValueError):  # 配列など pd.isna がスカラを返さない値
        pass
    return val


def _normalize_row(raw: Iterable[Any], null_sentinels: set[str] | None) -> list[Any]:
    return [_normalize_cell(v, null_sentinels) for v in raw]


def read_csv_rows(
    path: Path,
    *,
    encoding: str = "utf-8",
    delimiter: str = ",",
    keep_na_strings: list[str] | None = None,
    null_sentinels: set[str] | None = None,
    read_chunksize: int = DEFAULT_READ_CHUNKSIZE,
) -> Iterator[list[Any]]:
    """Stream raw rows from a CSV file.

    Parameters
    ----------
    path: CSV ファイルパス
    keep_na_strings: pandas の既定 NaN 変換から除外する文字列 (例: ['NA'])
    null_sentinels: None に変換する文字列集合 (大文字で比較)
    read_chunksize: pandas が一度に読み込む行数 (メモリ上限の調整)
    """
    import pandas._libs.parsers as parsers

    if keep_na_strings:
        na_values: list[str] | None = list(parsers.STR_NA_VALUES - set(keep_na_strings))
        keep_default_na = False
    else:
        na_values = None
        keep_default_na = True

    try:
        reader = pd.read_csv(
            path,
            header=None,
            dtype=object,
            sep=delimiter,
            encoding=encoding,
            keep_default_na=keep_default_na,
            na_values=na_values,
            skip_blank_lines=False,
            chunksize=read_chunksize,
        )
    except (OSError, ValueError) as e:
        raise SourceReadError(f"cannot open {path}: {e}") from e

    with reader:
        for frame in reader:
            for raw in frame.itertuples(index=False, name=None):
                yield _normalize_row(raw, null_sentinels)


def read_xlsx_rows(
    path: Path,
    *,
    sheet: str | None = None,
    null_sentinels: set[str] | None = None,
) -> Iterator[list[Any]]:
    """Stream raw rows from one worksheet (active sheet when `sheet` is None)."""
    try:
        wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
    except (OSError, ValueError, KeyError) as e:
        raise SourceReadError(f"cannot open {path}: {e}") from e
    try:
        if sheet is not None:
            if sheet not in wb.sheetnames:
                raise SourceReadError(f"sheet '{sheet}' not found in {path.name}")
            ws = wb[sheet]
        else:
            ws = wb.active
        for raw in ws.iter_rows(values_only=True):
            yield _normalize_row(raw, null_sentinels)
    finally:
        wb.close()


def read_rows(
    path: Path,
    *,
    sheet: str | None = None,
    keep_na_strings: list[str] | None = None,
    null_sentinels: set[str] | None = None,
) -> Iterator[list[Any]]:
    """Open `path` as a row source based on its suffix.

    Raises:
        SourceReadError: missing file or unsupported format
    """
    if not path.exists():
        raise SourceReadError(f"source not found: {path}")
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return read_csv_rows(path, keep_na_strings=keep_na_strings, null_sentinels=null_sentinels)
    if suffix == ".xlsx":
        return read_xlsx_rows(path, sheet=sheet, null_sentinels=null_sentinels)
    raise SourceReadError(f"unsupported source format: {path.suffix} (expected {SUPPORTED_SUFFIXES})")
