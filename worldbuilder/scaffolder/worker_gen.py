"""Integration helper and background worker generation.

Generates:
- ``helpers/<integration>.helper``  -- one stub helper class per integration
- ``workers/<worker>.worker``       -- one dual-mode worker per worker definition

A worker bound to an entity uses that entity's service; when the entity
failed to render, the worker is reported as failed instead of rendered.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..naming import NameForms, snake_case
from ..spec.models import Integration, WorkerDef
from .artifacts import (
    IMPORTS_MARKER,
    TYPE_IMPORTS_MARKER,
    ArtifactKind,
    GeneratedArtifact,
    GenerationFailure,
    ImportRef,
    helper_name,
    runtime_name,
    service_name,
    worker_name,
)
from .templates import TemplateRenderer


@dataclass(frozen=True)
class ParamModel:
    name: str
    type: str


@dataclass(frozen=True)
class MethodModel:
    name: str
    description: str
    parameters: tuple[ParamModel, ...]
    returns: str


@dataclass(frozen=True)
class IntegrationModel:
    forms: NameForms
    category: str
    description: str
    config: tuple[str, ...]
    methods: tuple[MethodModel, ...]

    @classmethod
    def of(cls, integration: Integration) -> "IntegrationModel":
        methods = tuple(
            MethodModel(
                name=snake_case(method.name),
                description=method.description,
                parameters=tuple(
                    ParamModel(name=snake_case(p.name), type=p.type) for p in method.parameters
                ),
                returns=method.returns,
            )
            for method in integration.methods
        )
        return cls(
            forms=NameForms.of(integration.name),
            category=integration.category,
            description=integration.description,
            config=tuple(integration.config),
            methods=methods,
        )


@dataclass(frozen=True)
class StepModel:
    name: str
    helper_class: Optional[str] = None
    helper_logical: Optional[str] = None
    method: Optional[str] = None
    parameters: tuple[str, ...] = ()

    @property
    def method_name(self) -> str:
        """Worker method a step without an integration runs."""
        return f"step_{snake_case(self.name)}"


@dataclass(frozen=True)
class WorkerModel:
    forms: NameForms
    description: str
    queue: str
    concurrency: int
    rate_limit: int
    retry_attempts: int
    timeout_seconds: float
    modes: list[str]
    steps: tuple[StepModel, ...]
    service_class: Optional[str] = None
    service_logical: Optional[str] = None
    entity_name: Optional[str] = None


class WorkerGenerator:
    """Renders integration helpers and background workers."""

    def __init__(self, renderer: TemplateRenderer) -> None:
        self.renderer = renderer

    # -- Integration helpers -----------------------------------------------

    def render_helper(self, integration: Integration) -> GeneratedArtifact:
        model = IntegrationModel.of(integration)
        content = self.renderer.render(
            "helper.py.j2",
            {
                "integration": model,
                "imports_marker": IMPORTS_MARKER,
                "type_imports_marker": TYPE_IMPORTS_MARKER,
            },
        )
        return GeneratedArtifact(
            kind=ArtifactKind.HELPER,
            logical_name=helper_name(model.forms.kebab),
            owner=integration.name,
            content=content,
            imports=[
                ImportRef(
                    target=runtime_name("integrations"),
                    symbols=("IntegrationHelper", "IntegrationNotImplemented"),
                )
            ],
        )

    # -- Workers -----------------------------------------------------------

    def build_model(
        self,
        worker: WorkerDef,
        integrations: dict[str, Integration],
        with_service: bool,
    ) -> WorkerModel:
        """Resolve a worker definition into its template model.

        ``integrations`` is keyed by snake-case integration name; the
        definition has already been validated, so every step call-out
        resolves.
        """
        forms = NameForms.of(worker.name)
        steps = []
        for step in worker.steps:
            if not step.integration:
                steps.append(StepModel(name=step.name))
                continue
            integration = integrations[snake_case(step.integration)]
            method = next(
                m for m in integration.methods if snake_case(m.name) == snake_case(step.method or "")
            )
            helper = NameForms.of(integration.name)
            steps.append(
                StepModel(
                    name=step.name,
                    helper_class=f"{helper.pascal}Helper",
                    helper_logical=helper_name(helper.kebab),
                    method=snake_case(method.name),
                    parameters=tuple(snake_case(p.name) for p in method.parameters),
                )
            )

        service_class = service_logical = entity = None
        if worker.entity and with_service:
            entity_forms = NameForms.of(worker.entity)
            service_class = f"{entity_forms.pascal}Service"
            service_logical = service_name(entity_forms.kebab)
            entity = entity_forms.pascal

        return WorkerModel(
            forms=forms,
            description=worker.description,
            queue=worker.queue or forms.kebab,
            concurrency=worker.concurrency,
            rate_limit=worker.rate_limit,
            retry_attempts=worker.retry_attempts,
            timeout_seconds=worker.timeout_seconds,
            modes=sorted({mode.value for mode in worker.modes}),
            steps=tuple(steps),
            service_class=service_class,
            service_logical=service_logical,
            entity_name=entity,
        )

    def render_worker(self, model: WorkerModel) -> GeneratedArtifact:
        imports = [ImportRef(target=runtime_name("broker"), symbols=("DualModeWorker",))]
        helpers: dict[str, str] = {}
        for step in model.steps:
            if step.helper_logical and step.helper_class:
                helpers[step.helper_logical] = step.helper_class
        if helpers:
            imports.append(ImportRef(target=runtime_name("rules"), symbols=("arguments_for",)))
            imports.extend(
                ImportRef(target=target, symbols=(cls,)) for target, cls in sorted(helpers.items())
            )
        if model.service_logical and model.service_class:
            imports.append(ImportRef(target=model.service_logical, symbols=(model.service_class,)))

        content = self.renderer.render(
            "worker.py.j2",
            {
                "worker": model,
                "imports_marker": IMPORTS_MARKER,
                "type_imports_marker": TYPE_IMPORTS_MARKER,
            },
        )
        return GeneratedArtifact(
            kind=ArtifactKind.WORKER,
            logical_name=worker_name(model.forms.kebab),
            owner=model.forms.raw,
            content=content,
            imports=imports,
        )

    def entity_failed(self, worker: WorkerDef) -> GenerationFailure:
        """Failure record for a worker whose entity did not render."""
        forms = NameForms.of(worker.name)
        return GenerationFailure(
            unit=worker.name,
            error_kind="entity_failed",
            message=f"Worker '{worker.name}' depends on entity '{worker.entity}', which failed to render",
            logical_names=[worker_name(forms.kebab)],
        )
