"""Per-entity rendering state machine.

Each entity goes through ``PENDING -> NAMES_RESOLVED -> RULES_ATTACHED ->
RENDERED``, or ends in ``FAILED`` when type resolution or rule compilation
raises.  A failure is contained to the entity: its error is recorded and the
other pipelines carry on.  Pipelines only read the validated project, the
resolver and the renderer, so they can run in worker threads side by side.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from ..errors import RuleCompilationError, TypeResolutionError, WorldbuilderError
from ..naming import NameForms, TypeResolver, snake_case
from ..rules.compiler import RuleCompiler, RuleFragment
from ..rules.expressions import IMPLICIT_FIELDS
from ..spec.models import EntityDef, FieldDef, RelationRef, RuleKind, Trigger
from .artifacts import (
    IMPORTS_MARKER,
    TYPE_IMPORTS_MARKER,
    ArtifactKind,
    GeneratedArtifact,
    GenerationFailure,
    ImportRef,
    auditor_name,
    controller_name,
    enforcer_name,
    entity_name,
    helper_name,
    runtime_name,
    service_name,
    service_test_name,
)
from .templates import TemplateRenderer

if TYPE_CHECKING:
    from ..spec.validator import ValidatedProject


class PipelineState(str, Enum):
    PENDING = "pending"
    NAMES_RESOLVED = "names_resolved"
    RULES_ATTACHED = "rules_attached"
    RENDERED = "rendered"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Template context models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldModel:
    forms: NameForms
    domain_type: str
    storage: str
    annotation: str
    base_decl: str
    update_decl: str
    description: str = ""
    unique: bool = False


@dataclass(frozen=True)
class RelationModel:
    attribute: str
    kind: str
    target: NameForms
    target_collection: str
    annotation: str
    inverse_key: str
    link_collection: str
    link_target_key: str
    self_reference: bool
    foreign_key: Optional[str] = None
    fk_decl: str = ""

    @property
    def target_logical(self) -> str:
        return entity_name(self.target.kebab)


@dataclass(frozen=True)
class FilterModel:
    name: str
    annotation: str


@dataclass
class EntityModel:
    """Everything the entity-scoped templates need, fully resolved."""

    forms: NameForms
    definition: EntityDef
    description: str
    collection: str
    route_prefix: str
    fields: list[FieldModel]
    relations: list[RelationModel]
    std_imports: list[tuple[str, str]]
    filter_fields: list[FilterModel]
    filter_imports: list[tuple[str, str]]
    fragments: list[RuleFragment] = field(default_factory=list)
    sample: Optional[list[tuple[str, str]]] = None

    @property
    def foreign_keys(self) -> list[RelationModel]:
        return [rel for rel in self.relations if rel.foreign_key]

    @property
    def unique_fields(self) -> tuple[str, ...]:
        return tuple(f.forms.snake for f in self.fields if f.unique)

    @property
    def sample_unique(self) -> bool:
        sampled = {name for name, _ in self.sample or ()}
        return any(name in sampled for name in self.unique_fields)

    @property
    def audited_fields(self) -> tuple[str, ...]:
        return tuple(f.forms.snake for f in self.fields) + tuple(
            rel.foreign_key for rel in self.foreign_keys
        )

    @property
    def api(self):
        return self.definition.api

    @property
    def audit(self):
        return self.definition.audit

    @property
    def audit_events(self) -> list[str]:
        return list(dict.fromkeys(event.value for event in self.audit.events))

    @property
    def audit_state_field(self) -> Optional[str]:
        state = self.audit.state_field
        return snake_case(state) if state else None

    @property
    def service(self) -> bool:
        return self.definition.artifacts.service

    @property
    def controller(self) -> bool:
        return self.definition.artifacts.controller and self.service

    @property
    def audited(self) -> bool:
        return self.definition.artifacts.auditor and self.service

    @property
    def rules_by_trigger(self) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        for trigger in Trigger:
            functions = [
                f"enforce_{frag.names.snake}"
                for frag in self.fragments
                if frag.trigger == trigger.value
            ]
            if functions:
                grouped[trigger.value] = functions
        return grouped

    @property
    def rule_relations(self) -> dict[str, tuple[str, ...]]:
        """Relation attributes each trigger's rule conditions read through."""
        grouped: dict[str, dict[str, None]] = {}
        for trigger in Trigger:
            for frag in self.fragments:
                if frag.trigger != trigger.value:
                    continue
                for path in frag.paths:
                    if path.relation:
                        grouped.setdefault(trigger.value, {})[path.relation] = None
        return {trigger: tuple(attributes) for trigger, attributes in grouped.items()}

    @property
    def rule_relation_models(self) -> list[RelationModel]:
        referenced = {a for attributes in self.rule_relations.values() for a in attributes}
        return [rel for rel in self.relations if rel.attribute in referenced]

    @property
    def scans_for_readable(self) -> bool:
        return "before_read" in self.rules_by_trigger


# ---------------------------------------------------------------------------
# Declaration rendering
# ---------------------------------------------------------------------------

def _number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(value)


def _constraint_kwargs(f: FieldDef) -> list[str]:
    kwargs: list[str] = []
    if f.min_length is not None:
        kwargs.append(f"min_length={f.min_length}")
    if f.max_length is not None:
        kwargs.append(f"max_length={f.max_length}")
    if f.pattern is not None:
        kwargs.append(f"pattern={json.dumps(f.pattern)}")
    if f.minimum is not None:
        kwargs.append(f"ge={_number(f.minimum)}")
    if f.maximum is not None:
        kwargs.append(f"le={_number(f.maximum)}")
    if f.description:
        kwargs.append(f"description={json.dumps(' '.join(f.description.split()))}")
    return kwargs


def _default_literal(f: FieldDef) -> tuple[str, bool]:
    """Return ``(literal, validate_default)`` for a field's declared default."""
    value = f.default
    if f.type == "decimal":
        return f"Decimal({json.dumps(str(value))})", False
    if f.type in ("date", "datetime", "uuid"):
        return json.dumps(str(value)), True
    if isinstance(value, str):
        return json.dumps(value), False
    return repr(value), False


def _field_call(head: str, kwargs: list[str]) -> str:
    return "Field(" + ", ".join([head, *kwargs]) + ")"


def _declarations(f: FieldDef, annotation: str) -> tuple[str, str]:
    kwargs = _constraint_kwargs(f)
    if f.default is not None:
        literal, validate = _default_literal(f)
        extra = ["validate_default=True"] if validate else []
        base = f"{annotation} = " + _field_call(f"default={literal}", kwargs + extra)
    elif f.required:
        base = f"{annotation} = " + _field_call("...", kwargs)
    else:
        base = f"Optional[{annotation}] = " + _field_call("default=None", kwargs)
    update = f"Optional[{annotation}] = " + _field_call("default=None", kwargs)
    return base, update


def _group_imports(pairs: set[tuple[str, str]]) -> list[tuple[str, str]]:
    modules: dict[str, set[str]] = {}
    for module, symbol in pairs:
        modules.setdefault(module, set()).add(symbol)
    return [(module, ", ".join(sorted(modules[module]))) for module in sorted(modules)]


# ---------------------------------------------------------------------------
# Sample payloads for the generated tests
# ---------------------------------------------------------------------------

SAMPLE_UUID = "00000000-0000-4000-8000-000000000001"

_FIXED_SAMPLES = {
    "boolean": "False",
    "date": '"2024-01-01"',
    "datetime": '"2024-01-01T00:00:00Z"',
    "uuid": json.dumps(SAMPLE_UUID),
    "json": "{}",
}


def _sample_number(f: FieldDef) -> Optional[float]:
    if f.minimum is not None:
        value = math.ceil(f.minimum) if f.type == "integer" else f.minimum
    elif f.maximum is not None:
        value = min(1, math.floor(f.maximum) if f.type == "integer" else f.maximum)
    else:
        value = 1
    if f.maximum is not None and value > f.maximum:
        return None
    return value


def _sample_literal(f: FieldDef) -> Optional[str]:
    """A Python literal that satisfies *f*, or None when none is obvious."""
    if f.type in _FIXED_SAMPLES:
        return _FIXED_SAMPLES[f.type]
    if f.type == "enum":
        return json.dumps(f.choices[0] if f.choices else "x")
    if f.type in ("integer", "decimal"):
        value = _sample_number(f)
        if value is None:
            return None
        if f.type == "integer":
            return str(int(value))
        return json.dumps(_number(value))
    if f.type == "string" and f.pattern is None:
        text = "x" * max(f.min_length or 0, 1)
        if f.max_length is not None and len(text) > f.max_length:
            return None
        return json.dumps(text)
    return None


def _sample_payload(entity: EntityDef) -> Optional[list[tuple[str, str]]]:
    """Keyword arguments for a valid ``<Entity>Create``, or None.

    Only required values without a default are filled in.
    """
    sample: list[tuple[str, str]] = []
    for f in entity.fields:
        if not f.required or f.default is not None:
            continue
        literal = _sample_literal(f)
        if literal is None:
            return None
        sample.append((snake_case(f.name), literal))
    sample.extend(
        (rel.foreign_key, json.dumps(SAMPLE_UUID))
        for rel in entity.relations
        if rel.foreign_key and rel.required
    )
    return sample


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

_ORDER = (
    PipelineState.PENDING,
    PipelineState.NAMES_RESOLVED,
    PipelineState.RULES_ATTACHED,
    PipelineState.RENDERED,
)


class EntityPipeline:
    """Resolves, compiles and renders the artifacts of one entity."""

    def __init__(
        self,
        entity: EntityDef,
        project: "ValidatedProject",
        resolver: TypeResolver,
        compiler: RuleCompiler,
        renderer: TemplateRenderer,
    ) -> None:
        self.entity = entity
        self.project = project
        self.resolver = resolver
        self.compiler = compiler
        self.renderer = renderer
        self.forms = NameForms.of(entity.name)
        self.state = PipelineState.PENDING
        self.model: Optional[EntityModel] = None
        self.artifacts: list[GeneratedArtifact] = []
        self.error: Optional[WorldbuilderError] = None

    @property
    def key(self) -> str:
        return self.forms.snake

    @property
    def failure(self) -> Optional[GenerationFailure]:
        if self.state is not PipelineState.FAILED or self.error is None:
            return None
        return GenerationFailure(
            unit=self.entity.name,
            error_kind=self.error.kind,
            message=str(self.error),
            logical_names=self.planned_artifacts(),
        )

    def planned_artifacts(self) -> list[str]:
        """Logical names this entity renders when it succeeds."""
        flags = self.entity.artifacts
        names = [entity_name(self.forms.kebab)]
        if flags.service:
            names.append(service_name(self.forms.kebab))
            names.append(service_test_name(self.forms.kebab))
            if flags.controller:
                names.append(controller_name(self.forms.kebab))
            if flags.auditor:
                names.append(auditor_name(self.forms.kebab))
        names.extend(
            enforcer_name(NameForms.of(rule.name).kebab)
            for rule in self.project.rules_for(self.entity.name)
        )
        return names

    # -- Driver ------------------------------------------------------------

    def run(self) -> "EntityPipeline":
        """Drive the pipeline to ``RENDERED`` or ``FAILED``; never raises generation errors."""
        try:
            self.resolve_names()
            self.attach_rules()
            self.render()
        except (TypeResolutionError, RuleCompilationError) as exc:
            self.error = exc
            self.artifacts = []
            self.state = PipelineState.FAILED
        return self

    def _advance(self, expected: PipelineState) -> None:
        if self.state is not expected:
            raise RuntimeError(
                f"{self.entity.name}: cannot leave state {self.state.value}, expected {expected.value}"
            )
        self.state = _ORDER[_ORDER.index(expected) + 1]

    # -- NAMES_RESOLVED ----------------------------------------------------

    def resolve_names(self) -> EntityModel:
        if self.state is not PipelineState.PENDING:
            raise RuntimeError(f"{self.entity.name}: names already resolved")
        entity = self.entity
        imports: set[tuple[str, str]] = {
            ("datetime", "datetime"),
            ("typing", "Optional"),
            ("uuid", "UUID"),
        }
        fields: list[FieldModel] = []
        for f in entity.fields:
            try:
                storage = self.resolver.storage_type(f.type)
                annotation = self.resolver.validation_type(f.type, f.choices)
            except TypeResolutionError as exc:
                raise exc.with_context(entity.name, f.name) from None
            imports.update(self.resolver.annotation_imports(annotation))
            if f.type == "decimal" and f.default is not None:
                imports.add(("decimal", "Decimal"))
            base, update = _declarations(f, annotation)
            fields.append(
                FieldModel(
                    forms=NameForms.of(f.name),
                    domain_type=f.type,
                    storage=storage,
                    annotation=annotation,
                    base_decl=base,
                    update_decl=update,
                    description=f.description,
                    unique=f.unique,
                )
            )

        relations = [self._relation_model(rel) for rel in entity.relations]
        if any(not rel.self_reference for rel in relations):
            imports.add(("typing", "TYPE_CHECKING"))

        self.model = EntityModel(
            forms=self.forms,
            definition=entity,
            description=entity.description,
            collection=self.forms.plural_snake,
            route_prefix=f"/{self.forms.plural_kebab}",
            fields=fields,
            relations=relations,
            std_imports=_group_imports(imports),
            filter_fields=[],
            filter_imports=[],
            sample=_sample_payload(entity),
        )
        self._resolve_filters(self.model)
        self._advance(PipelineState.PENDING)
        return self.model

    def _relation_model(self, rel: RelationRef) -> RelationModel:
        target_def = self.project.entity(rel.target)
        target = NameForms.of(target_def.name)
        if rel.is_collection:
            annotation = f"list[{target.pascal}] = Field(default_factory=list)"
        else:
            annotation = f"Optional[{target.pascal}] = None"
        fk_decl = ""
        if rel.foreign_key:
            fk_decl = "UUID = Field(...)" if rel.required else "Optional[UUID] = None"
        return RelationModel(
            attribute=rel.attribute,
            kind=rel.kind.value,
            target=target,
            target_collection=target.plural_snake,
            annotation=annotation,
            inverse_key=f"{self.forms.snake}_id",
            link_collection=f"{self.forms.plural_snake}_{rel.attribute}",
            link_target_key=f"{target.snake}_id",
            self_reference=target.snake == self.forms.snake,
            foreign_key=rel.foreign_key,
            fk_decl=fk_decl,
        )

    def _resolve_filters(self, model: EntityModel) -> None:
        by_name = {f.forms.snake: f for f in model.fields}
        foreign_keys = {rel.foreign_key for rel in model.foreign_keys}
        imports: set[tuple[str, str]] = set()
        for raw in model.definition.api.filters:
            name = snake_case(raw)
            if name in by_name:
                annotation = by_name[name].annotation
                imports.update(self.resolver.annotation_imports(annotation))
            elif name in foreign_keys or name in IMPLICIT_FIELDS:
                annotation = "UUID"
            else:
                continue
            model.filter_fields.append(FilterModel(name=name, annotation=f"Optional[{annotation}]"))
        imports -= {("typing", "Optional"), ("uuid", "UUID")}
        model.filter_imports.extend(_group_imports(imports))

    # -- RULES_ATTACHED ----------------------------------------------------

    def attach_rules(self) -> list[RuleFragment]:
        if self.state is not PipelineState.NAMES_RESOLVED or self.model is None:
            raise RuntimeError(f"{self.entity.name}: names must be resolved before rules")
        self.model.fragments = self.compiler.compile_entity(self.entity.name)
        self._advance(PipelineState.NAMES_RESOLVED)
        return self.model.fragments

    # -- RENDERED ----------------------------------------------------------

    def render(self) -> list[GeneratedArtifact]:
        if self.state is not PipelineState.RULES_ATTACHED or self.model is None:
            raise RuntimeError(f"{self.entity.name}: rules must be attached before rendering")
        model = self.model
        artifacts = [self._render_entity(model)]
        if model.service:
            artifacts.append(self._render_service(model))
            artifacts.append(self._render_service_test(model))
            if model.controller:
                artifacts.append(self._render_controller(model))
            if model.audited:
                artifacts.append(self._render_auditor(model))
        artifacts.extend(self._render_enforcer(model, frag) for frag in model.fragments)
        self.artifacts = artifacts
        self._advance(PipelineState.RULES_ATTACHED)
        return artifacts

    def _context(self, model: EntityModel, **extra: Any) -> dict[str, Any]:
        return {
            "entity": model,
            "imports_marker": IMPORTS_MARKER,
            "type_imports_marker": TYPE_IMPORTS_MARKER,
            **extra,
        }

    def _schema_symbols(self, model: EntityModel) -> tuple[str, ...]:
        pascal = model.forms.pascal
        symbols = (pascal, f"{pascal}Create", f"{pascal}Page", f"{pascal}Update")
        if model.relations:
            symbols += (f"{pascal}Detail",)
        return symbols

    def _render_entity(self, model: EntityModel) -> GeneratedArtifact:
        targets: dict[str, set[str]] = {}
        for rel in model.relations:
            if not rel.self_reference:
                targets.setdefault(rel.target_logical, set()).add(rel.target.pascal)
        imports = [
            ImportRef(target=target, symbols=tuple(sorted(symbols)), type_only=True)
            for target, symbols in sorted(targets.items())
        ]
        return GeneratedArtifact(
            kind=ArtifactKind.ENTITY,
            logical_name=entity_name(model.forms.kebab),
            owner=self.entity.name,
            content=self.renderer.render("entity.py.j2", self._context(model)),
            imports=imports,
        )

    def _render_service(self, model: EntityModel) -> GeneratedArtifact:
        kebab = model.forms.kebab
        imports = [
            ImportRef(
                target=entity_name(kebab),
                symbols=self._schema_symbols(model) + ("COLLECTION", "UNIQUE_FIELDS"),
            ),
            ImportRef(target=runtime_name("persistence"), symbols=("PersistenceCapability",)),
            ImportRef(
                target=runtime_name("rules"),
                symbols=("CallerContext", "ConflictError", "PermissionDenied", "RuleViolation"),
            ),
        ]
        if model.audited:
            imports.append(
                ImportRef(target=auditor_name(kebab), symbols=(f"{model.forms.pascal}Auditor",))
            )
        for frag in model.fragments:
            imports.append(
                ImportRef(target=frag.logical_name, symbols=(f"enforce_{frag.names.snake}",))
            )
        return GeneratedArtifact(
            kind=ArtifactKind.SERVICE,
            logical_name=service_name(kebab),
            owner=self.entity.name,
            content=self.renderer.render("service.py.j2", self._context(model)),
            imports=imports,
        )

    def _render_service_test(self, model: EntityModel) -> GeneratedArtifact:
        kebab = model.forms.kebab
        pascal = model.forms.pascal
        schemas = (f"{pascal}Create", f"{pascal}Update") if model.sample is not None else ()
        rules = ("CallerContext", "ConflictError") if model.sample_unique else ("CallerContext",)
        imports = [
            ImportRef(target=service_name(kebab), symbols=("RULES", f"{pascal}Service")),
            ImportRef(target=runtime_name("memory"), symbols=("InMemoryPersistence",)),
            ImportRef(target=runtime_name("rules"), symbols=rules),
        ]
        if schemas:
            imports.insert(0, ImportRef(target=entity_name(kebab), symbols=schemas))
        return GeneratedArtifact(
            kind=ArtifactKind.TEST,
            logical_name=service_test_name(kebab),
            owner=self.entity.name,
            content=self.renderer.render("tests/service_test.py.j2", self._context(model)),
            imports=imports,
        )

    def _render_controller(self, model: EntityModel) -> GeneratedArtifact:
        kebab = model.forms.kebab
        imports = [
            ImportRef(target=entity_name(kebab), symbols=self._schema_symbols(model)),
            ImportRef(target=service_name(kebab), symbols=(f"{model.forms.pascal}Service",)),
            ImportRef(target=runtime_name("persistence"), symbols=("get_persistence",)),
            ImportRef(
                target=runtime_name("rules"), symbols=("CallerContext", "caller_from_request")
            ),
        ]
        return GeneratedArtifact(
            kind=ArtifactKind.CONTROLLER,
            logical_name=controller_name(kebab),
            owner=self.entity.name,
            content=self.renderer.render("controller.py.j2", self._context(model)),
            imports=imports,
        )

    def _render_auditor(self, model: EntityModel) -> GeneratedArtifact:
        imports = [
            ImportRef(target=runtime_name("persistence"), symbols=("PersistenceCapability",)),
            ImportRef(target=runtime_name("rules"), symbols=("CallerContext", "field_value")),
        ]
        return GeneratedArtifact(
            kind=ArtifactKind.AUDITOR,
            logical_name=auditor_name(model.forms.kebab),
            owner=self.entity.name,
            content=self.renderer.render("auditor.py.j2", self._context(model)),
            imports=imports,
        )

    def _render_enforcer(self, model: EntityModel, frag: RuleFragment) -> GeneratedArtifact:
        runtime = {"CallerContext", *frag.helpers}
        imports: list[ImportRef] = []
        if frag.kind == RuleKind.CONSTRAINT.value:
            runtime.add("RuleViolation")
        elif frag.kind == RuleKind.PERMISSION.value:
            runtime.add("PermissionDenied")
        elif frag.callout is not None and frag.callout.integration:
            runtime.add("arguments_for")
            imports.append(
                ImportRef(
                    target=helper_name(NameForms.of(frag.callout.integration).kebab),
                    symbols=(frag.callout.helper_class,),
                )
            )
        imports.insert(0, ImportRef(target=runtime_name("rules"), symbols=tuple(sorted(runtime))))
        return GeneratedArtifact(
            kind=ArtifactKind.ENFORCER,
            logical_name=frag.logical_name,
            owner=self.entity.name,
            content=self.renderer.render("enforcer.py.j2", self._context(model, rule=frag)),
            imports=imports,
        )
