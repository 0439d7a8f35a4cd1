"""Business rule parsing and compilation."""

from worldbuilder.rules.expressions import (
    TRIGGER_BINDINGS,
    ConditionSyntaxError,
    EntityScope,
    FieldPath,
    PathError,
    parse_condition,
    resolve_path,
)
from worldbuilder.rules.compiler import CallOut, RuleCompiler, RuleFragment

__all__ = [
    "CallOut",
    "ConditionSyntaxError",
    "EntityScope",
    "FieldPath",
    "PathError",
    "RuleCompiler",
    "RuleFragment",
    "TRIGGER_BINDINGS",
    "parse_condition",
    "resolve_path",
]
