"""Project specification: data model, loading and structural validation."""

from worldbuilder.spec.loader import load_spec, parse_spec
from worldbuilder.spec.models import (
    ActionType,
    BusinessRule,
    EntityDef,
    FieldDef,
    Integration,
    ProjectSpec,
    RelationKind,
    RelationRef,
    RuleKind,
    Trigger,
    WorkerDef,
)
from worldbuilder.spec.validator import (
    SpecValidator,
    ValidatedProject,
    ValidationReport,
    ensure_valid,
    validate_spec,
)

__all__ = [
    "ActionType",
    "BusinessRule",
    "EntityDef",
    "FieldDef",
    "Integration",
    "ProjectSpec",
    "RelationKind",
    "RelationRef",
    "RuleKind",
    "SpecValidator",
    "Trigger",
    "ValidatedProject",
    "ValidationReport",
    "WorkerDef",
    "ensure_valid",
    "load_spec",
    "parse_spec",
    "validate_spec",
]
