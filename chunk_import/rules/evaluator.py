from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from ..errors import ConfigurationError
from ..models.failure import Failure, sort_failures
from ..models.row import Row
from ..source.heading import AttributeMap
from .catalogue import RULE_KINDS, RuleSpec, is_empty, parse_rule_expression
from .context import ChunkContext, RuleInput
from .messages import MessageResolver

logger = logging.getLogger(__name__)

"""RuleEvaluator: evaluate rows (or a whole chunk) against a declarative rule set.

Rule keys:
- plain "email" / "1": evaluated per row, no visibility into sibling rows
- wildcard "*.email" / "*.1": evaluated with the whole chunk as context
  (chunk-local uniqueness via `distinct`)

Errors for the same (row, attribute) from plain and wildcard rules are merged
into one Failure: plain rules first, each in declaration order.

Evaluation is a pure function of (row, chunk, rules, overrides); rows are never mutated.
"""

__all__ = [
    "RuleEvaluator",
    "AttributeRules",
]

WILDCARD_PREFIX = "*."
_NUMERIC_KINDS = {"numeric", "integer"}


@dataclass(frozen=True)
class AttributeRules:
    """Parsed rules for one column reference."""
    reference: str
    rules: tuple[RuleSpec, ...]
    wildcard: bool = False

    @property
    def kinds(self) -> set[str]:
        return {r.kind for r in self.rules}

    @property
    def numeric(self) -> bool:
        return bool(self.kinds & _NUMERIC_KINDS)


def _replacements(rule: RuleSpec) -> dict[str, str]:
    if rule.kind in ("min", "max"):
        return {rule.kind: rule.params[0]}
    if rule.kind == "between":
        return {"min": rule.params[0], "max": rule.params[1]}
    if rule.kind in ("in", "not_in"):
        return {"values": ", ".join(rule.params)}
    if rule.kind in ("same", "different"):
        return {"other": rule.params[0]}
    if rule.kind == "date_format":
        return {"format": rule.params[0]}
    return {}


class RuleEvaluator:
    """Evaluate rows against a rule set with message / attribute overrides.

    Parameters
    ----------
    rules: column reference -> rule expression (string or list of strings)
    custom_messages: "<attribute>.<kind>" (or "<kind>") -> message template
    custom_attributes: attribute -> display name used in messages

    Raises
    ------
    ConfigurationError: unknown rule kind, bad parameters, or a row-dependent
        rule declared under a plain (non-wildcard) key
    """

    def __init__(
        self,
        rules: Mapping[str, str | Sequence[str]],
        custom_messages: Mapping[str, str] | None = None,
        custom_attributes: Mapping[str, str] | None = None,
    ) -> None:
        self.messages = MessageResolver(custom_messages, custom_attributes)
        self.row_rules: list[AttributeRules] = []
        self.chunk_rules: list[AttributeRules] = []
        for key, expression in rules.items():
            key = str(key).strip()
            wildcard = key.startswith(WILDCARD_PREFIX)
            reference = key[len(WILDCARD_PREFIX):] if wildcard else key
            if not reference:
                raise ConfigurationError(f"empty column reference in rule key {key!r}")
            specs = parse_rule_expression(expression)
            if not wildcard:
                dependent = [s.kind for s in specs if RULE_KINDS[s.kind].row_dependent]
                if dependent:
                    raise ConfigurationError(
                        f"rule(s) {dependent} on {key!r} compare sibling rows; "
                        f"use the wildcard key '{WILDCARD_PREFIX}{key}'"
                    )
            target = self.chunk_rules if wildcard else self.row_rules
            target.append(AttributeRules(reference=reference, rules=specs, wildcard=wildcard))

    @property
    def has_chunk_rules(self) -> bool:
        return bool(self.chunk_rules)

    def check_references(self, attributes: AttributeMap) -> None:
        """Resolve every column reference (rule keys and same/different targets).

        Raises:
            ConfigurationError: a reference matches no column
        """
        for rule_set in (*self.row_rules, *self.chunk_rules):
            attributes.index_of(rule_set.reference)
            for rule in rule_set.rules:
                if rule.kind in ("same", "different"):
                    attributes.index_of(rule.params[0])

    def context_for(self, chunk: Sequence[Row], attributes: AttributeMap) -> ChunkContext:
        return ChunkContext(chunk, attributes)

    def evaluate(self, row: Row, context: ChunkContext) -> list[Failure]:
        """Evaluate one row; wildcard rules see the chunk carried by `context`.

        Returns failures ordered by attribute.
        """
        attributes = context.attributes
        errors: dict[str, list[str]] = {}
        for rule_set in self.row_rules:
            self._apply(rule_set, row, attributes, None, errors)
        for rule_set in self.chunk_rules:
            self._apply(rule_set, row, attributes, context, errors)
        failures = [
            Failure(row=row.position, attribute=attribute, errors=tuple(messages))
            for attribute, messages in errors.items()
            if messages
        ]
        return sort_failures(failures)

    def evaluate_chunk(self, rows: Sequence[Row], attributes: AttributeMap) -> list[Failure]:
        """Evaluate every row of a chunk, failures ordered by (row, attribute)."""
        context = self.context_for(rows, attributes)
        failures: list[Failure] = []
        for row in context.rows:
            failures.extend(self.evaluate(row, context))
        logger.debug(
            "evaluated rows=%d first=%s failures=%d",
            len(context),
            context.rows[0].position if context.rows else None,
            len(failures),
        )
        return failures

    def _apply(
        self,
        rule_set: AttributeRules,
        row: Row,
        attributes: AttributeMap,
        chunk: ChunkContext | None,
        errors: dict[str, list[str]],
    ) -> None:
        index = attributes.index_of(rule_set.reference)
        attribute = attributes.name_of(index)
        value = row.get(index)
        bucket = errors.setdefault(attribute, [])

        if is_empty(value):
            # 空値は required のみ検査 (他のルールは適用しない)
            if "required" in rule_set.kinds:
                bucket.append(self.messages.render(attribute, "required", wildcard=rule_set.wildcard))
            return

        rule_input = RuleInput(
            row=row,
            index=index,
            attributes=attributes,
            numeric=rule_set.numeric,
            chunk=chunk,
        )
        for rule in rule_set.rules:
            check = RULE_KINDS[rule.kind].check
            if check is None:
                continue
            if not check(value, rule, rule_input):
                bucket.append(
                    self.messages.render(
                        attribute, rule.kind, _replacements(rule), wildcard=rule_set.wildcard
                    )
                )
