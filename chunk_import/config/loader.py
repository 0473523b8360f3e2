from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError as SchemaValidationError

from ..errors import ConfigurationError
from ..models.session import ImportSession
from ..rules.catalogue import parse_rule_expression

"""Config loader.

Responsibilities:
- Load YAML (config/import.yml by default)
- Validate against import_schema.json (shipped inside the package)
- Apply defaults and map to frozen dataclasses; the policy part becomes an
  ImportSession so invalid chunk_size / heading_row surface here
- Parse every rule expression once so unknown rule kinds fail before any row
  is read
"""

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "SCHEMA_PATH",
    "DatabaseConfig",
    "ImportConfig",
    "load_config",
    "config_from_dict",
]

DEFAULT_CONFIG_PATH = Path("config/import.yml")
SCHEMA_PATH = Path(__file__).with_name("import_schema.json")

# ImportSession のフィールドに直接写す設定キー
_SESSION_KEYS = (
    "chunk_size",
    "skip_on_failure",
    "skip_on_error",
    "use_heading_row",
    "heading_row",
    "fail_fast",
    "skip_empty_rows",
    "batch_inserts",
    "read_ahead",
)


@dataclass(frozen=True)
class DatabaseConfig:
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class ImportConfig:
    source: str
    table: str
    rules: dict[str, str | list[str]]
    session: ImportSession
    sheet: str | None = None
    column_map: dict[str, str] | None = None
    keep_na_strings: list[str] | None = None
    null_sentinels: set[str] = field(default_factory=set)
    page_size: int = 1000
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


def _validate_config_schema(data: Any) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigurationError: schema file missing / not valid JSON, or the data
            violates the schema (missing required keys, wrong types, unknown keys)
    """
    if not SCHEMA_PATH.exists():
        raise ConfigurationError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"invalid schema file: {e}") from e
    except SchemaValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigurationError(f"config validation failed at {where}: {e.message}") from e


def config_from_dict(data: dict[str, Any]) -> ImportConfig:
    """Build an ImportConfig from already-parsed YAML data."""
    _validate_config_schema(data)

    rules: dict[str, str | list[str]] = dict(data["rules"])
    for reference, expression in rules.items():
        try:
            parse_rule_expression(expression)
        except ConfigurationError as e:
            raise ConfigurationError(f"rules[{reference!r}]: {e}") from e

    session = ImportSession(
        custom_messages=dict(data.get("custom_messages", {})),
        custom_attributes=dict(data.get("custom_attributes", {})),
        **{k: data[k] for k in _SESSION_KEYS if k in data},
    )

    db_raw = data.get("database", {})
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    return ImportConfig(
        source=data["source"],
        table=data["table"],
        rules=rules,
        session=session,
        sheet=data.get("sheet"),
        column_map=dict(data["column_map"]) if data.get("column_map") else None,
        keep_na_strings=list(data["keep_na_strings"]) if data.get("keep_na_strings") else None,
        null_sentinels={s.strip().upper() for s in data.get("null_sentinels", [])},
        page_size=data.get("page_size", 1000),
        database=db,
    )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> ImportConfig:
    if not path.exists():
        raise ConfigurationError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid yaml: {e}") from e
    return config_from_dict(data)
