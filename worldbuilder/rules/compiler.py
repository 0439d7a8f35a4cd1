"""Compile business rules into guard predicates and call-out descriptors.

A compiled rule is a :class:`RuleFragment`: plain data the enforcer template
renders.  Every field path is resolved against the owning entity (or one of
its direct relations) and rebound to the record name the trigger supplies
before any source text is produced, so an unresolvable name never reaches
generated code.
"""

from __future__ import annotations

import ast
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..errors import RuleCompilationError
from ..naming import NameForms, kebab_case, pascal_case, snake_case
from ..spec.models import ActionType, BusinessRule, RuleKind
from .expressions import (
    TRIGGER_BINDINGS,
    ConditionSyntaxError,
    EntityScope,
    FieldPath,
    PathError,
    literal_value,
    parse_condition,
    path_segments,
    resolve_path,
)

if TYPE_CHECKING:
    from ..spec.validator import ValidatedProject

# Name of the runtime accessor emitted predicates read fields through.
FIELD_ACCESSOR = "field_value"
# Runtime helper ordering comparisons go through; a missing operand fails them.
COMPARE_HELPER = "compare"

_ORDERING_OPS: dict[type, str] = {ast.Lt: "<", ast.LtE: "<=", ast.Gt: ">", ast.GtE: ">="}


@dataclass(frozen=True)
class CallOut:
    """What a side-effect or permission rule reaches out to at runtime.

    ``parameters`` lists the integration method's declared parameter names;
    generated code fills them from same-named fields of the bound record.
    """

    integration: str | None = None
    method: str | None = None
    parameters: tuple[str, ...] = ()
    capability: str | None = None

    @property
    def helper_class(self) -> str | None:
        return f"{pascal_case(self.integration)}Helper" if self.integration else None

    @property
    def helper_logical_name(self) -> str | None:
        return f"helpers/{kebab_case(self.integration)}.helper" if self.integration else None


@dataclass(frozen=True)
class RuleFragment:
    """A compiled business rule."""

    rule: str
    entity: str
    trigger: str
    kind: str
    binding: str
    predicate: str
    message: str
    paths: tuple[FieldPath, ...] = ()
    callout: CallOut | None = None
    description: str = ""
    helpers: tuple[str, ...] = ()
    names: NameForms = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "names", NameForms.of(self.rule))

    @property
    def unconditional(self) -> bool:
        return self.predicate == "True"

    @property
    def logical_name(self) -> str:
        return f"enforcers/{self.names.kebab}.enforcer"


class _PathRewriter(ast.NodeTransformer):
    """Replace field paths with ``field_value(<binding>, "<path>")`` calls."""

    def __init__(self, rule: BusinessRule, scope: EntityScope, binding: str) -> None:
        self.rule = rule
        self.scope = scope
        self.binding = binding
        self.paths: list[FieldPath] = []
        self.helpers: set[str] = set()

    def _rewrite(self, node: ast.expr) -> ast.expr:
        is_literal, value = literal_value(node)
        if is_literal:
            return ast.copy_location(ast.Constant(value=value), node)
        segments = path_segments(node)
        if segments is None:
            raise RuleCompilationError(
                self.rule.name, "unsupported expression", entity=self.rule.entity
            )
        try:
            resolved = resolve_path(segments, self.scope, self.binding)
        except PathError as exc:
            raise RuleCompilationError(
                self.rule.name, exc.reason, entity=self.rule.entity, path=exc.path
            ) from None
        self.paths.append(resolved)
        self.helpers.add(FIELD_ACCESSOR)
        call = ast.Call(
            func=ast.Name(id=FIELD_ACCESSOR, ctx=ast.Load()),
            args=[ast.Name(id=self.binding, ctx=ast.Load()), ast.Constant(value=resolved.dotted)],
            keywords=[],
        )
        return ast.copy_location(call, node)

    def visit_Name(self, node: ast.Name) -> ast.expr:
        return self._rewrite(node)

    def visit_Attribute(self, node: ast.Attribute) -> ast.expr:
        return self._rewrite(node)

    def visit_Compare(self, node: ast.Compare) -> ast.expr:
        """Route ordering comparisons through the None-safe runtime helper.

        A chain such as ``1 < a <= 5`` becomes one call per link joined with
        ``and``; equality, membership and identity tests are left in place.
        """
        self.generic_visit(node)
        operands = [node.left, *node.comparators]
        links: list[ast.expr] = []
        for left, op, right in zip(operands, node.ops, operands[1:]):
            symbol = _ORDERING_OPS.get(type(op))
            if symbol is None:
                links.append(ast.Compare(left=left, ops=[op], comparators=[right]))
                continue
            self.helpers.add(COMPARE_HELPER)
            links.append(
                ast.Call(
                    func=ast.Name(id=COMPARE_HELPER, ctx=ast.Load()),
                    args=[ast.Constant(value=symbol), left, right],
                    keywords=[],
                )
            )
        result = links[0] if len(links) == 1 else ast.BoolOp(op=ast.And(), values=links)
        return ast.copy_location(result, node)


class RuleCompiler:
    """Compiles the business rules of a validated project."""

    def __init__(self, project: "ValidatedProject") -> None:
        self.project = project

    def compile(self, rule: BusinessRule) -> RuleFragment:
        """Compile one rule.

        Raises:
            RuleCompilationError: if the trigger is unknown, the condition is
                malformed, or any path fails to resolve for the trigger's
                record binding.
        """
        binding = TRIGGER_BINDINGS.get(rule.trigger)
        if binding is None:
            raise RuleCompilationError(
                rule.name, f"unknown trigger '{rule.trigger}'", entity=rule.entity
            )
        try:
            scope = self.project.scope(rule.entity)
        except KeyError:
            raise RuleCompilationError(
                rule.name, f"entity '{rule.entity}' is not defined", entity=rule.entity
            ) from None

        predicate, paths, helpers = self._compile_condition(rule, scope, binding)
        callout, message = self._compile_action(rule)
        return RuleFragment(
            rule=rule.name,
            entity=scope.name,
            trigger=rule.trigger,
            kind=rule.kind,
            binding=binding,
            predicate=predicate,
            message=message,
            paths=tuple(paths),
            callout=callout,
            description=rule.description,
            helpers=helpers,
        )

    def compile_entity(self, entity_name: str) -> list[RuleFragment]:
        """Compile every rule owned by *entity_name*, in declaration order."""
        return [self.compile(rule) for rule in self.project.rules_for(entity_name)]

    # -- internals ---------------------------------------------------------

    def _compile_condition(
        self, rule: BusinessRule, scope: EntityScope, binding: str
    ) -> tuple[str, list[FieldPath], tuple[str, ...]]:
        if not rule.condition.strip():
            if rule.kind == RuleKind.CONSTRAINT.value:
                raise RuleCompilationError(
                    rule.name, "constraint rules need a condition", entity=rule.entity
                )
            return "True", [], ()
        try:
            tree = parse_condition(rule.condition)
        except ConditionSyntaxError as exc:
            raise RuleCompilationError(rule.name, str(exc), entity=rule.entity) from None

        rewriter = _PathRewriter(rule, scope, binding)
        rewritten = ast.fix_missing_locations(rewriter.visit(tree))
        return ast.unparse(rewritten.body), rewriter.paths, tuple(sorted(rewriter.helpers))

    def _compile_action(self, rule: BusinessRule) -> tuple[CallOut | None, str]:
        action = rule.action
        if rule.kind == RuleKind.SIDE_EFFECT.value:
            if action.type is not ActionType.INVOKE or not action.integration or not action.method:
                raise RuleCompilationError(
                    rule.name,
                    "side-effect rules need an invoke action with integration and method",
                    entity=rule.entity,
                )
            try:
                integration = self.project.integration(action.integration)
            except KeyError:
                raise RuleCompilationError(
                    rule.name,
                    f"integration '{action.integration}' is not defined",
                    entity=rule.entity,
                ) from None
            method = next(
                (m for m in integration.methods if snake_case(m.name) == snake_case(action.method)),
                None,
            )
            if method is None:
                raise RuleCompilationError(
                    rule.name,
                    f"integration '{integration.name}' has no method '{action.method}'",
                    entity=rule.entity,
                )
            callout = CallOut(
                integration=integration.name,
                method=snake_case(method.name),
                parameters=tuple(snake_case(p.name) for p in method.parameters),
            )
            return callout, ""
        if rule.kind == RuleKind.PERMISSION.value:
            capability = (rule.capability or "").strip()
            if not capability:
                raise RuleCompilationError(
                    rule.name, "permission rules need a capability", entity=rule.entity
                )
            message = action.message or f"Missing capability '{capability}'"
            return CallOut(capability=capability), message
        if rule.kind == RuleKind.CONSTRAINT.value:
            return None, action.message or f"Rule '{rule.name}' violated"
        raise RuleCompilationError(
            rule.name, f"unknown rule kind '{rule.kind}'", entity=rule.entity
        )
