"""Error hierarchy for the Worldbuilder generator.

Every failure the generator can report derives from :class:`WorldbuilderError`
and carries a stable ``kind`` plus enough context (entity, field, rule name)
for the caller to locate the problem in the project specification.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ValidationIssue(BaseModel):
    """One structural problem found in a project specification."""

    kind: str = Field(..., description="Stable error kind, e.g. 'duplicate_entity'")
    message: str = Field(..., description="Human-readable description")
    entity: str | None = Field(default=None)
    field: str | None = Field(default=None)
    rule: str | None = Field(default=None)
    integration: str | None = Field(default=None)
    worker: str | None = Field(default=None)

    def context(self) -> dict[str, str]:
        """Return the non-empty context keys of this issue."""
        keys = ("entity", "field", "rule", "integration", "worker")
        return {k: getattr(self, k) for k in keys if getattr(self, k)}

    def __str__(self) -> str:
        ctx = ", ".join(f"{k}={v}" for k, v in self.context().items())
        return f"[{self.kind}] {self.message}" + (f" ({ctx})" if ctx else "")


class WorldbuilderError(Exception):
    """Base class for every generator error."""

    kind = "worldbuilder_error"


class SpecValidationError(WorldbuilderError):
    """Raised when a specification fails structural validation.

    Carries the complete list of issues found in one pass.
    """

    kind = "spec_validation"

    def __init__(self, issues: list[ValidationIssue]) -> None:
        self.issues = list(issues)
        summary = "; ".join(str(i) for i in self.issues[:5])
        more = f" (+{len(self.issues) - 5} more)" if len(self.issues) > 5 else ""
        super().__init__(f"{len(self.issues)} validation issue(s): {summary}{more}")

    def kinds(self) -> set[str]:
        return {issue.kind for issue in self.issues}


class TypeResolutionError(WorldbuilderError):
    """A domain type has no entry in one of the resolver's lookup tables."""

    kind = "type_resolution"

    def __init__(
        self,
        domain_type: str,
        table: str,
        *,
        entity: str | None = None,
        field: str | None = None,
    ) -> None:
        self.domain_type = domain_type
        self.table = table
        self.entity = entity
        self.field = field
        where = f" for {entity}.{field}" if entity and field else ""
        super().__init__(
            f"Domain type '{domain_type}' has no entry in the {table} table{where}"
        )

    def with_context(self, entity: str, field: str) -> "TypeResolutionError":
        """Return a copy of this error annotated with the owning entity/field."""
        return TypeResolutionError(self.domain_type, self.table, entity=entity, field=field)


class RuleCompilationError(WorldbuilderError):
    """A business rule condition could not be compiled into a guard."""

    kind = "rule_compilation"

    def __init__(
        self,
        rule: str,
        reason: str,
        *,
        entity: str | None = None,
        path: str | None = None,
    ) -> None:
        self.rule = rule
        self.reason = reason
        self.entity = entity
        self.path = path
        at = f" at '{path}'" if path else ""
        super().__init__(f"Rule '{rule}'{at}: {reason}")


class AssemblyError(WorldbuilderError):
    """The rendered artifact set is inconsistent or could not be written.

    Nothing is written to disk when this is raised.
    """

    kind = "assembly"

    def __init__(self, problems: list[str], *, cause: Any = None) -> None:
        self.problems = list(problems)
        self.cause = cause
        super().__init__("Assembly failed: " + "; ".join(self.problems))
