"""Declarative row validation: rule parsing, evaluation contexts and messages."""

from .catalogue import RULE_KINDS, RuleSpec, parse_rule_expression
from .context import ChunkContext, RuleInput
from .evaluator import AttributeRules, RuleEvaluator
from .messages import DEFAULT_MESSAGES, MessageResolver

__all__ = [
    "RuleEvaluator",
    "AttributeRules",
    "ChunkContext",
    "RuleInput",
    "RuleSpec",
    "RULE_KINDS",
    "parse_rule_expression",
    "DEFAULT_MESSAGES",
    "MessageResolver",
]
