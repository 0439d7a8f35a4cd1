"""Condition expression parsing and field-path resolution.

Conditions are small boolean expressions over an entity's field paths::

    completed == true
    status != "done" and owner.email in ["a@x.io", "b@x.io"]
    task.priority >= 3 || !archived

They are parsed with the standard :mod:`ast` module after a few JavaScript
style aliases (``&&``, ``||``, ``===``, ``!==``, prefix ``!``) are rewritten
outside string literals.  Only a whitelisted subset of node types is
accepted.
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

from ..naming import snake_case

if TYPE_CHECKING:
    from ..spec.models import EntityDef


# ---------------------------------------------------------------------------
# Trigger bindings
# ---------------------------------------------------------------------------

# The single record name each trigger supplies to a guard.
TRIGGER_BINDINGS: Mapping[str, str] = MappingProxyType({
    "before_create": "data",
    "after_create": "record",
    "before_update": "changes",
    "after_update": "record",
    "before_delete": "record",
    "after_delete": "record",
    "before_read": "candidate",
})

BINDING_NAMES: frozenset[str] = frozenset(TRIGGER_BINDINGS.values())

# Columns every generated entity carries in addition to its declared fields.
IMPLICIT_FIELDS: tuple[str, ...] = ("id", "created_at", "updated_at")

_LITERAL_NAMES: Mapping[str, object] = MappingProxyType({
    "true": True,
    "false": False,
    "null": None,
})


class ConditionSyntaxError(ValueError):
    """The condition text is not a well-formed expression in the grammar."""


class PathError(ValueError):
    """A field path could not be resolved.

    ``kind`` is one of ``undefined_field``, ``unbound_name`` or
    ``wrong_binding``.
    """

    def __init__(self, kind: str, path: str, reason: str) -> None:
        self.kind = kind
        self.path = path
        self.reason = reason
        super().__init__(reason)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_STRING_RE = re.compile(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")""")
_ALIASES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"!=="), "!="),
    (re.compile(r"==="), "=="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
)

_ALLOWED_NODES = (
    ast.Expression, ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.Not, ast.USub,
    ast.Compare, ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
    ast.In, ast.NotIn, ast.Is, ast.IsNot, ast.Name, ast.Attribute,
    ast.Constant, ast.List, ast.Tuple, ast.Load,
)


def normalize(condition: str) -> str:
    """Rewrite the JavaScript-style operator aliases outside string literals."""
    parts = _STRING_RE.split(condition)
    for i in range(0, len(parts), 2):
        chunk = parts[i]
        for pattern, replacement in _ALIASES:
            chunk = pattern.sub(replacement, chunk)
        parts[i] = chunk
    return "".join(parts).strip()


def parse_condition(condition: str) -> ast.Expression:
    """Parse *condition* into a validated expression tree.

    Raises:
        ConditionSyntaxError: on malformed input or a disallowed construct.
    """
    text = normalize(condition)
    if not text:
        raise ConditionSyntaxError("Condition is empty")
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as exc:
        raise ConditionSyntaxError(f"Invalid condition {condition!r}: {exc.msg}") from None

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ConditionSyntaxError(
                f"Unsupported construct {type(node).__name__} in condition {condition!r}"
            )
        if isinstance(node, ast.Constant) and not isinstance(
            node.value, (str, int, float, bool, type(None))
        ):
            raise ConditionSyntaxError(f"Unsupported literal {node.value!r}")
        if isinstance(node, ast.Attribute) and not isinstance(
            node.value, (ast.Name, ast.Attribute)
        ):
            raise ConditionSyntaxError(
                f"Attribute access is only allowed on field paths in {condition!r}"
            )
    return tree


def path_segments(node: ast.AST) -> list[str] | None:
    """Return the dotted segments of a Name/Attribute chain, else ``None``."""
    segments: list[str] = []
    while isinstance(node, ast.Attribute):
        segments.append(node.attr)
        node = node.value
    if not isinstance(node, ast.Name):
        return None
    segments.append(node.id)
    segments.reverse()
    return segments


def literal_value(node: ast.AST) -> tuple[bool, object]:
    """Return ``(True, value)`` if *node* is a literal name such as ``true``."""
    if isinstance(node, ast.Name) and node.id.lower() in _LITERAL_NAMES:
        return True, _LITERAL_NAMES[node.id.lower()]
    return False, None


def referenced_paths(tree: ast.Expression) -> list[list[str]]:
    """Collect every field path referenced in *tree*, in source order."""
    found: list[list[str]] = []

    def visit(node: ast.AST) -> None:
        if isinstance(node, (ast.Name, ast.Attribute)):
            is_literal, _ = literal_value(node)
            if not is_literal:
                segments = path_segments(node)
                if segments is not None:
                    found.append(segments)
                return
        for child in ast.iter_child_nodes(node):
            visit(child)

    visit(tree)
    return found


# ---------------------------------------------------------------------------
# Scope & resolution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntityScope:
    """The field-path namespace of one entity."""

    name: str
    aliases: frozenset[str]
    fields: frozenset[str]
    json_fields: frozenset[str] = frozenset()
    relations: Mapping[str, "EntityScope"] = field(default_factory=dict)
    collections: frozenset[str] = frozenset()

    @classmethod
    def build(
        cls,
        entity: "EntityDef",
        entities: Mapping[str, "EntityDef"],
        *,
        depth: int = 1,
    ) -> "EntityScope":
        """Build the scope of *entity*; direct relations are followed *depth* levels.

        *entities* maps snake-cased entity names to definitions.  Relations
        whose target is undefined are left out of the scope.
        """
        fields = {snake_case(f.name) for f in entity.fields}
        fields.update(IMPLICIT_FIELDS)
        fields.update(r.foreign_key for r in entity.relations if r.foreign_key)
        json_fields = {snake_case(f.name) for f in entity.fields if f.type == "json"}
        relations: dict[str, EntityScope] = {}
        if depth > 0:
            for rel in entity.relations:
                target = entities.get(snake_case(rel.target))
                if target is not None:
                    relations[rel.attribute] = cls.build(target, entities, depth=depth - 1)
        return cls(
            name=entity.name,
            aliases=frozenset({snake_case(entity.name), snake_case(entity.name).replace("_", "")}),
            fields=frozenset(fields),
            json_fields=frozenset(json_fields),
            relations=MappingProxyType(relations),
            collections=frozenset(r.attribute for r in entity.relations if r.is_collection),
        )


@dataclass(frozen=True)
class FieldPath:
    """A resolved field path, relative to the bound record."""

    source: str
    segments: tuple[str, ...]
    relation: str | None = None

    @property
    def dotted(self) -> str:
        return ".".join(self.segments)


def _resolve_in_scope(segments: list[str], scope: EntityScope, source: str) -> FieldPath:
    head = snake_case(segments[0])
    rest = [snake_case(s) for s in segments[1:]]

    if head in scope.fields:
        if rest and head not in scope.json_fields:
            raise PathError(
                "undefined_field",
                source,
                f"Field '{head}' of {scope.name} has no attribute '{rest[0]}'",
            )
        # Keys inside json fields are free-form.
        return FieldPath(source, (head, *segments[1:]))

    if head in scope.relations:
        target = scope.relations[head]
        if head in scope.collections:
            raise PathError(
                "undefined_field",
                source,
                f"Relation '{head}' of {scope.name} is a collection; only single-record"
                " relations can be followed in a condition",
            )
        if not rest:
            raise PathError(
                "undefined_field",
                source,
                f"Relation '{head}' of {scope.name} must be followed by a field of {target.name}",
            )
        inner = _resolve_in_scope(segments[1:], target, source)
        return FieldPath(source, (head, *inner.segments), relation=head)

    raise PathError(
        "undefined_field", source, f"'{segments[0]}' is not a field or relation of {scope.name}"
    )


def resolve_path(segments: list[str], scope: EntityScope, binding: str | None) -> FieldPath:
    """Resolve *segments* against *scope* for a trigger that binds *binding*.

    A leading qualifier equal to the entity's own name or to *binding* is
    dropped.  A qualifier naming another trigger's record raises a
    ``wrong_binding`` :class:`PathError`.  When *binding* is ``None`` any
    known record name is accepted as a qualifier (structural check only).
    """
    source = ".".join(segments)
    head = segments[0]
    head_snake = snake_case(head)

    if head_snake in scope.fields or head_snake in scope.relations:
        return _resolve_in_scope(segments, scope, source)

    qualifiers = set(scope.aliases)
    if binding is not None:
        qualifiers.add(binding)
    else:
        qualifiers.update(BINDING_NAMES)

    if head in qualifiers or head_snake in qualifiers:
        if len(segments) < 2:
            raise PathError(
                "undefined_field", source, f"'{head}' must be followed by a field name"
            )
        return _resolve_in_scope(segments[1:], scope, source)

    if head in BINDING_NAMES:
        raise PathError(
            "wrong_binding",
            source,
            f"'{head}' is not bound here; this trigger supplies '{binding}'",
        )

    raise PathError(
        "unbound_name", source, f"Name '{head}' is not a field or relation of {scope.name}"
    )


__all__ = [
    "BINDING_NAMES",
    "ConditionSyntaxError",
    "EntityScope",
    "FieldPath",
    "IMPLICIT_FIELDS",
    "PathError",
    "TRIGGER_BINDINGS",
    "literal_value",
    "normalize",
    "parse_condition",
    "path_segments",
    "referenced_paths",
    "resolve_path",
]
