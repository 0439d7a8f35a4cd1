"""Naming and type resolution shared by every generated artifact.

Every identifier stamped into generated code goes through :class:`NameForms`
so that an entity called ``"task item"`` is ``TaskItem`` in a class name,
``task_item`` in a module path and ``task-item`` in a URL no matter which
artifact mentions it.

Domain types are resolved through two parallel tables (storage token and
validation annotation).  A missing entry raises
:class:`~worldbuilder.errors.TypeResolutionError`; there is deliberately no
generic fallback type.
"""

from __future__ import annotations

import keyword
import re
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from .errors import TypeResolutionError


# ---------------------------------------------------------------------------
# Case transforms
# ---------------------------------------------------------------------------

_BOUNDARY_RE = re.compile(r"([a-z0-9])([A-Z])")
_DELIMITER_RE = re.compile(r"[^A-Za-z0-9]+")


def split_words(value: str) -> list[str]:
    """Split *value* into words.

    A boundary is inserted before an uppercase letter that follows a lowercase
    letter or digit; whitespace, ``_``, ``-`` and any other non-alphanumeric
    characters act as delimiters.
    """
    if not value:
        return []
    spaced = _BOUNDARY_RE.sub(r"\1 \2", value)
    return [word for word in _DELIMITER_RE.split(spaced) if word]


def pascal_case(value: str) -> str:
    """``"task item"`` -> ``"TaskItem"``.

    Only the first letter of each word is raised; the rest keeps its case so
    that re-deriving the form from :func:`camel_case` output is stable.
    """
    return "".join(word[:1].upper() + word[1:] for word in split_words(value))


def camel_case(value: str) -> str:
    """``"task item"`` -> ``"taskItem"``."""
    pascal = pascal_case(value)
    return pascal[:1].lower() + pascal[1:]


def kebab_case(value: str) -> str:
    """``"TaskItem"`` -> ``"task-item"``."""
    return "-".join(word.lower() for word in split_words(value))


def snake_case(value: str) -> str:
    """``"TaskItem"`` -> ``"task_item"``."""
    return "_".join(word.lower() for word in split_words(value))


def pluralize(value: str) -> str:
    """Naive English pluralisation.

    ``y`` becomes ``ies``, a trailing ``s``/``x``/``z`` takes ``es``, anything
    else takes ``s``.  Irregular nouns ("person") come out wrong; that is a
    known limitation, not something to guess around.
    """
    if not value:
        return ""
    if value.endswith("y") and len(value) > 1:
        return value[:-1] + "ies"
    if value.endswith(("s", "x", "z")):
        return value + "es"
    return value + "s"


def is_valid_identifier(value: str) -> bool:
    """Return ``True`` if *value* is usable as a Python module/attribute name."""
    return bool(value) and value.isidentifier() and not keyword.iskeyword(value)


@dataclass(frozen=True)
class NameForms:
    """The canonical case forms of one raw identifier."""

    raw: str
    pascal: str
    camel: str
    kebab: str
    snake: str
    plural: str

    @classmethod
    def of(cls, raw: str) -> "NameForms":
        camel = camel_case(raw)
        return cls(
            raw=raw,
            pascal=pascal_case(raw),
            camel=camel,
            kebab=kebab_case(raw),
            snake=snake_case(raw),
            plural=pluralize(camel),
        )

    @property
    def plural_snake(self) -> str:
        return snake_case(self.plural)

    @property
    def plural_kebab(self) -> str:
        return kebab_case(self.plural)


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------


class DomainType(str, Enum):
    """The fixed set of field types a specification may use."""
    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    UUID = "uuid"
    JSON = "json"
    ENUM = "enum"


DOMAIN_TYPES: frozenset[str] = frozenset(t.value for t in DomainType)

STORAGE_TYPES: Mapping[str, str] = MappingProxyType({
    DomainType.STRING.value: "String",
    DomainType.INTEGER.value: "Integer",
    DomainType.DECIMAL.value: "Numeric",
    DomainType.BOOLEAN.value: "Boolean",
    DomainType.DATE.value: "Date",
    DomainType.DATETIME.value: "DateTime",
    DomainType.UUID.value: "Uuid",
    DomainType.JSON.value: "JSON",
    DomainType.ENUM.value: "Enum",
})

VALIDATION_TYPES: Mapping[str, str] = MappingProxyType({
    DomainType.STRING.value: "str",
    DomainType.INTEGER.value: "int",
    DomainType.DECIMAL.value: "Decimal",
    DomainType.BOOLEAN.value: "bool",
    DomainType.DATE.value: "date",
    DomainType.DATETIME.value: "datetime",
    DomainType.UUID.value: "UUID",
    DomainType.JSON.value: "Any",
    DomainType.ENUM.value: "str",
})

# Annotation token -> (module, symbol) needed by generated code.
_ANNOTATION_IMPORTS: Mapping[str, tuple[str, str]] = MappingProxyType({
    "Decimal": ("decimal", "Decimal"),
    "date": ("datetime", "date"),
    "datetime": ("datetime", "datetime"),
    "UUID": ("uuid", "UUID"),
    "Any": ("typing", "Any"),
    "Literal": ("typing", "Literal"),
})


class TypeResolver:
    """Resolves domain types against the storage and validation tables.

    The default tables cover every :class:`DomainType`.  Custom tables may be
    passed in; any type they lack raises :class:`TypeResolutionError` on
    lookup instead of degrading to a generic type.
    """

    STORAGE = "storage"
    VALIDATION = "validation"

    def __init__(
        self,
        storage_types: Mapping[str, str] | None = None,
        validation_types: Mapping[str, str] | None = None,
    ) -> None:
        self._storage = MappingProxyType(
            dict(STORAGE_TYPES if storage_types is None else storage_types)
        )
        self._validation = MappingProxyType(
            dict(VALIDATION_TYPES if validation_types is None else validation_types)
        )

    def storage_type(self, domain_type: str) -> str:
        try:
            return self._storage[domain_type]
        except KeyError:
            raise TypeResolutionError(domain_type, self.STORAGE) from None

    def validation_type(
        self, domain_type: str, choices: list[str] | None = None
    ) -> str:
        """Return the Python annotation for *domain_type*.

        Enum fields with declared choices narrow to ``Literal[...]``.
        """
        try:
            token = self._validation[domain_type]
        except KeyError:
            raise TypeResolutionError(domain_type, self.VALIDATION) from None
        if domain_type == DomainType.ENUM.value and choices:
            return "Literal[" + ", ".join(repr(c) for c in choices) + "]"
        return token

    def annotation_imports(self, annotation: str) -> list[tuple[str, str]]:
        """Return the ``(module, symbol)`` pairs *annotation* depends on."""
        head = annotation.split("[", 1)[0]
        found = _ANNOTATION_IMPORTS.get(head)
        return [found] if found else []

    def missing_types(self) -> dict[str, list[str]]:
        """Report which domain types each table lacks (empty when complete)."""
        return {
            self.STORAGE: sorted(DOMAIN_TYPES - set(self._storage)),
            self.VALIDATION: sorted(DOMAIN_TYPES - set(self._validation)),
        }
