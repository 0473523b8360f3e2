from __future__ import annotations

import math
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from ..errors import ConfigurationError

if TYPE_CHECKING:
    from .context import RuleInput

"""Rule catalogue: expression parsing and per-kind checks.

Expression forms:
- pipe-delimited string: "required|email|max:255"
- list of strings: ["required", "regex:/^(a|b)$/"] (needed when a parameter contains '|')

Each check returns True when the value passes. Checks never see empty values
(None / blank string); emptiness is handled by `required` alone.
"""

__all__ = [
    "RuleSpec",
    "RuleKind",
    "RULE_KINDS",
    "parse_rule_expression",
    "is_empty",
]

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")
TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


@dataclass(frozen=True)
class RuleSpec:
    """One parsed rule: kind plus raw string parameters."""
    kind: str
    params: tuple[str, ...] = ()
    pattern: re.Pattern[str] | None = None  # regex 用にコンパイル済みパターン

    def __str__(self) -> str:
        if not self.params:
            return self.kind
        return f"{self.kind}:{','.join(self.params)}"


@dataclass(frozen=True)
class RuleKind:
    """Behavior of a rule kind.

    check: None for marker rules (required / nullable) handled by the evaluator
    row_dependent: needs sibling rows of the chunk (wildcard key only)
    min_params: minimum number of parameters
    raw_param: keep the parameter unsplit (regex, date_format)
    """
    check: Callable[[Any, RuleSpec, RuleInput], bool] | None
    row_dependent: bool = False
    min_params: int = 0
    raw_param: bool = False


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _size(value: Any, ri: RuleInput) -> float:
    """Numeric value for numeric attributes / numbers, string length otherwise."""
    if ri.numeric or (isinstance(value, (int, float)) and not isinstance(value, bool)):
        number = _as_number(value)
        if number is not None:
            return number
    if isinstance(value, (list, tuple, set, dict)):
        return float(len(value))
    return float(len(str(value)))


def _check_string(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    return isinstance(value, str)


def _check_numeric(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    return _as_number(value) is not None


def _check_integer(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        return value.is_integer()
    if isinstance(value, str):
        return INTEGER_PATTERN.match(value.strip()) is not None
    return False


def _check_boolean(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        return value in (0, 1)
    if isinstance(value, str):
        return value.strip().lower() in TRUE_VALUES | FALSE_VALUES
    return False


def _check_email(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    return isinstance(value, str) and EMAIL_PATTERN.match(value.strip()) is not None


def _check_date(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value.strip())
    except ValueError:
        return False
    return True


def _check_date_format(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    if not isinstance(value, str):
        return False
    try:
        datetime.strptime(value.strip(), rule.params[0])
    except ValueError:
        return False
    return True


def _check_min(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    return _size(value, ri) >= float(rule.params[0])


def _check_max(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    return _size(value, ri) <= float(rule.params[0])


def _check_between(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    size = _size(value, ri)
    return float(rule.params[0]) <= size <= float(rule.params[1])


def _stringify(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _check_in(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    return _stringify(value) in rule.params


def _check_not_in(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    return _stringify(value) not in rule.params


def _check_regex(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    if rule.pattern is None:
        raise ConfigurationError(f"regex rule has no compiled pattern: {rule.params!r}")
    return rule.pattern.search(str(value)) is not None


def _check_same(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    return ri.other_value(rule.params[0]) == value


def _check_different(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    return ri.other_value(rule.params[0]) != value


def _check_distinct(value: Any, rule: RuleSpec, ri: RuleInput) -> bool:
    # 最初の出現行は合格、以降の重複行のみ失敗
    ignore_case = "ignore_case" in rule.params
    return ri.first_occurrence(value, ignore_case) == ri.row.position


RULE_KINDS: dict[str, RuleKind] = {
    "required": RuleKind(check=None),
    "nullable": RuleKind(check=None),
    "string": RuleKind(check=_check_string),
    "numeric": RuleKind(check=_check_numeric),
    "integer": RuleKind(check=_check_integer),
    "boolean": RuleKind(check=_check_boolean),
    "email": RuleKind(check=_check_email),
    "date": RuleKind(check=_check_date),
    "date_format": RuleKind(check=_check_date_format, min_params=1, raw_param=True),
    "min": RuleKind(check=_check_min, min_params=1),
    "max": RuleKind(check=_check_max, min_params=1),
    "between": RuleKind(check=_check_between, min_params=2),
    "in": RuleKind(check=_check_in, min_params=1),
    "not_in": RuleKind(check=_check_not_in, min_params=1),
    "regex": RuleKind(check=_check_regex, min_params=1, raw_param=True),
    "same": RuleKind(check=_check_same, min_params=1),
    "different": RuleKind(check=_check_different, min_params=1),
    "distinct": RuleKind(check=_check_distinct, row_dependent=True),
}

_NUMERIC_PARAM_KINDS = {"min", "max", "between"}


def _compile_regex(raw: str) -> re.Pattern[str]:
    pattern = raw
    flags = 0
    # "/pattern/i" 形式の区切り文字を許容
    if len(raw) >= 2 and raw.startswith("/"):
        end = raw.rfind("/")
        if end > 0:
            pattern = raw[1:end]
            if "i" in raw[end + 1:]:
                flags |= re.IGNORECASE
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise ConfigurationError(f"invalid regex rule {raw!r}: {e}") from e


def _parse_one(token: str) -> RuleSpec:
    token = token.strip()
    kind, sep, rest = token.partition(":")
    kind = kind.strip().lower()
    if kind not in RULE_KINDS:
        raise ConfigurationError(f"unknown rule kind: {kind!r}")
    rule_kind = RULE_KINDS[kind]

    params: tuple[str, ...] = ()
    if sep:
        params = (rest,) if rule_kind.raw_param else tuple(p.strip() for p in rest.split(","))
    if len(params) < rule_kind.min_params:
        raise ConfigurationError(f"rule {kind!r} requires {rule_kind.min_params} parameter(s)")

    if kind in _NUMERIC_PARAM_KINDS:
        for p in params:
            try:
                float(p)
            except ValueError as e:
                raise ConfigurationError(f"rule {token!r} has a non-numeric parameter") from e

    pattern = _compile_regex(params[0]) if kind == "regex" else None
    return RuleSpec(kind=kind, params=params, pattern=pattern)


def parse_rule_expression(expression: str | Sequence[str]) -> tuple[RuleSpec, ...]:
    """Parse a rule expression into RuleSpecs, keeping declaration order.

    Raises:
        ConfigurationError: unknown kind, missing or malformed parameters
    """
    if isinstance(expression, str):
        tokens = [t for t in expression.split("|") if t.strip()]
    else:
        tokens = [t for t in expression if isinstance(t, str) and t.strip()]
        if len(tokens) != len(list(expression)):
            raise ConfigurationError(f"rule list must contain non-empty strings: {expression!r}")
    if not tokens:
        raise ConfigurationError("empty rule expression")
    return tuple(_parse_one(t) for t in tokens)
