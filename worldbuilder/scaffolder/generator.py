"""Main generation orchestrator.

Takes a :class:`~worldbuilder.spec.validator.ValidatedProject` and renders
every artifact of the target backend in memory: per-entity artifacts through
concurrent :class:`EntityPipeline` runs, then integration helpers, workers,
the shared runtime modules, application wiring and project files.  Nothing
is written here; see :mod:`worldbuilder.scaffolder.assembler`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from ..config import GeneratorConfig
from ..naming import NameForms, TypeResolver, snake_case
from ..rules.compiler import RuleCompiler, RuleFragment
from ..spec.validator import ValidatedProject
from .artifacts import (
    APP_MAIN,
    ENTITY_INDEX,
    IMPORTS_MARKER,
    TEST_CONFTEST,
    TYPE_IMPORTS_MARKER,
    ArtifactKind,
    GeneratedArtifact,
    GenerationFailure,
    ImportRef,
    controller_name,
    entity_name,
    runtime_name,
    worker_name,
)
from .entity_pipeline import EntityPipeline, PipelineState
from .templates import TemplateRenderer
from .worker_gen import IntegrationModel, WorkerGenerator, WorkerModel


# ---------------------------------------------------------------------------
# Fixed artifacts
# ---------------------------------------------------------------------------

# Runtime module -> imports it needs from other runtime modules.
SUPPORT_MODULES: dict[str, list[ImportRef]] = {
    "broker": [ImportRef(target=runtime_name("settings"), symbols=("Settings",))],
    "integrations": [],
    "memory": [],
    "persistence": [],
    "rules": [],
    "settings": [],
}

# Logical name -> template of the files placed at the project root.
PROJECT_FILES: dict[str, str] = {
    "project/.env.example": "project/env.example.j2",
    "project/Dockerfile": "project/Dockerfile.j2",
    "project/README.md": "project/README.md.j2",
    "project/docker-compose.yml": "project/docker-compose.yml.j2",
    "project/pyproject.toml": "project/pyproject.toml.j2",
}


@dataclass(frozen=True)
class ProjectModel:
    forms: NameForms
    description: str


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class GenerationResult:
    """Rendered artifacts plus the failures contained during generation."""

    artifacts: list[GeneratedArtifact] = field(default_factory=list)
    failures: list[GenerationFailure] = field(default_factory=list)
    states: dict[str, PipelineState] = field(default_factory=dict)
    fragments: list[RuleFragment] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    @property
    def logical_names(self) -> list[str]:
        return [artifact.logical_name for artifact in self.artifacts]

    def artifact(self, logical_name: str) -> GeneratedArtifact:
        for artifact in self.artifacts:
            if artifact.logical_name == logical_name:
                return artifact
        raise KeyError(logical_name)

    def by_owner(self) -> dict[str, list[GeneratedArtifact]]:
        grouped: dict[str, list[GeneratedArtifact]] = {}
        for artifact in self.artifacts:
            grouped.setdefault(artifact.owner or artifact.kind.value, []).append(artifact)
        return grouped


# ---------------------------------------------------------------------------
# Main generator
# ---------------------------------------------------------------------------

class ProjectGenerator:
    """Renders the complete artifact set of a validated project.

    Entity pipelines run concurrently in worker threads, bounded by
    ``config.max_parallel_entities``.  They share only read-only state: the
    validated project, the type resolver, the rule compiler and the
    template environment.
    """

    def __init__(
        self,
        project: ValidatedProject,
        config: Optional[GeneratorConfig] = None,
        *,
        resolver: Optional[TypeResolver] = None,
        renderer: Optional[TemplateRenderer] = None,
    ) -> None:
        self.project = project
        self.config = config or GeneratorConfig()
        self.resolver = resolver or TypeResolver()
        self.renderer = renderer or TemplateRenderer(self.config.template_dir)
        self.compiler = RuleCompiler(project)
        self.worker_gen = WorkerGenerator(self.renderer)
        self.model = ProjectModel(
            forms=project.name, description=project.spec.description
        )

    # -- Public API --------------------------------------------------------

    async def generate(self) -> GenerationResult:
        """Render every artifact; generation errors are contained, never raised."""
        pipelines = await self._run_entity_pipelines()
        result = GenerationResult(
            states={p.entity.name: p.state for p in pipelines},
        )
        for pipeline in pipelines:
            if pipeline.failure is not None:
                result.failures.append(pipeline.failure)
            else:
                result.artifacts.extend(pipeline.artifacts)
                if pipeline.model is not None:
                    result.fragments.extend(pipeline.model.fragments)

        self._poison(pipelines, result)

        helpers = await asyncio.gather(
            *(
                asyncio.to_thread(self.worker_gen.render_helper, integration)
                for integration in self.project.spec.integrations
            )
        )
        result.artifacts.extend(helpers)
        workers = self._render_workers(pipelines, result)
        result.artifacts.extend(self._render_support())
        result.artifacts.extend(self._render_wiring(pipelines, workers, result))

        result.artifacts.sort(key=lambda a: a.logical_name)
        result.failures.sort(key=lambda f: f.unit)
        return result

    # -- Entities ----------------------------------------------------------

    async def _run_entity_pipelines(self) -> list[EntityPipeline]:
        pipelines = [
            EntityPipeline(entity, self.project, self.resolver, self.compiler, self.renderer)
            for entity in self.project.spec.entities
        ]
        semaphore = asyncio.Semaphore(self.config.max_parallel_entities)

        async def run(pipeline: EntityPipeline) -> EntityPipeline:
            async with semaphore:
                return await asyncio.to_thread(pipeline.run)

        return list(await asyncio.gather(*(run(p) for p in pipelines)))

    def _poison(self, pipelines: list[EntityPipeline], result: GenerationResult) -> None:
        """Fail the entity schemas that embed a failed entity.

        A poisoned entity is marked failed.  Its other artifacts importing the
        poisoned schema are left in place, so the assembler refuses the whole
        tree rather than emitting a dangling import.
        """
        failed = {
            entity_name(p.forms.kebab): p.entity.name
            for p in pipelines
            if p.state is PipelineState.FAILED
        }
        if not failed:
            return
        by_name = {p.entity.name: p for p in pipelines}
        poisoned: dict[str, list[GeneratedArtifact]] = {}
        for artifact in result.artifacts:
            if artifact.kind is ArtifactKind.ENTITY and any(
                artifact.imports_of(target) for target in failed
            ):
                poisoned.setdefault(artifact.owner, []).append(artifact)
        for owner, artifacts in sorted(poisoned.items()):
            targets = sorted(
                {failed[ref.target] for a in artifacts for ref in a.imports if ref.target in failed}
            )
            result.failures.append(
                GenerationFailure(
                    unit=owner,
                    error_kind="relation_target_failed",
                    message=f"Entity '{owner}' relates to failed entity {', '.join(targets)}",
                    logical_names=[a.logical_name for a in artifacts],
                )
            )
            for artifact in artifacts:
                result.artifacts.remove(artifact)
            by_name[owner].state = PipelineState.FAILED
            result.states[owner] = PipelineState.FAILED

    # -- Workers -----------------------------------------------------------

    def _render_workers(
        self, pipelines: list[EntityPipeline], result: GenerationResult
    ) -> list[WorkerModel]:
        states = {p.key: p for p in pipelines}
        rendered: list[WorkerModel] = []
        for worker in self.project.spec.workers:
            pipeline = states.get(snake_case(worker.entity)) if worker.entity else None
            if pipeline is not None and pipeline.state is PipelineState.FAILED:
                result.failures.append(self.worker_gen.entity_failed(worker))
                continue
            with_service = pipeline is not None and pipeline.entity.artifacts.service
            model = self.worker_gen.build_model(
                worker, dict(self.project.integrations), with_service
            )
            result.artifacts.append(self.worker_gen.render_worker(model))
            rendered.append(model)
        return rendered

    # -- Shared modules ----------------------------------------------------

    def _base_context(self) -> dict[str, Any]:
        return {
            "project": self.model,
            "app_package": self.config.app_package,
            "broker_url": self.config.default_broker_url,
            "broker_probe_timeout": self.config.broker_probe_timeout,
            "imports_marker": IMPORTS_MARKER,
            "type_imports_marker": TYPE_IMPORTS_MARKER,
        }

    def _render_support(self) -> list[GeneratedArtifact]:
        context = self._base_context()
        return [
            GeneratedArtifact(
                kind=ArtifactKind.SUPPORT,
                logical_name=runtime_name(module),
                content=self.renderer.render(f"runtime/{module}.py.j2", context),
                imports=imports,
            )
            for module, imports in SUPPORT_MODULES.items()
        ]

    def _render_wiring(
        self,
        pipelines: list[EntityPipeline],
        workers: list[WorkerModel],
        result: GenerationResult,
    ) -> list[GeneratedArtifact]:
        rendered = [
            p.model for p in pipelines
            if p.state is PipelineState.RENDERED and p.model is not None
        ]
        rendered.sort(key=lambda m: m.forms.snake)
        controllers = [m for m in rendered if m.controller]
        integrations = [IntegrationModel.of(i) for i in self.project.spec.integrations]
        context = {
            **self._base_context(),
            "entities": rendered,
            "controllers": controllers,
            "workers": workers,
            "integrations": integrations,
            "rules": sorted(result.fragments, key=lambda f: (f.entity, f.rule)),
        }

        index_imports = [
            ImportRef(
                target=entity_name(m.forms.kebab),
                symbols=(m.forms.pascal,) + ((f"{m.forms.pascal}Detail",) if m.relations else ()),
            )
            for m in rendered
        ]
        main_imports = [
            ImportRef(target=runtime_name("broker"), symbols=("DualModeWorker",)),
            ImportRef(target=runtime_name("memory"), symbols=("InMemoryPersistence",)),
            ImportRef(target=runtime_name("persistence"), symbols=("PersistenceCapability",)),
            ImportRef(
                target=runtime_name("rules"), symbols=("RuleViolation", "rule_violation_handler")
            ),
            ImportRef(target=runtime_name("settings"), symbols=("Settings",)),
        ]
        main_imports.extend(
            ImportRef(target=controller_name(m.forms.kebab), symbols=(f"{m.forms.snake}_router",))
            for m in controllers
        )
        main_imports.extend(
            ImportRef(target=worker_name(w.forms.kebab), symbols=(f"{w.forms.pascal}Worker",))
            for w in workers
        )

        artifacts = [
            GeneratedArtifact(
                kind=ArtifactKind.APP,
                logical_name=ENTITY_INDEX,
                content=self.renderer.render("entities_index.py.j2", context),
                imports=index_imports,
            ),
            GeneratedArtifact(
                kind=ArtifactKind.APP,
                logical_name=APP_MAIN,
                content=self.renderer.render("main.py.j2", context),
                imports=main_imports,
            ),
        ]
        artifacts.extend(
            GeneratedArtifact(
                kind=ArtifactKind.APP,
                logical_name=logical_name,
                content=self.renderer.render(template, context),
            )
            for logical_name, template in PROJECT_FILES.items()
        )
        if any(m.service for m in rendered):
            artifacts.append(
                GeneratedArtifact(
                    kind=ArtifactKind.TEST,
                    logical_name=TEST_CONFTEST,
                    content=self.renderer.render("tests/conftest.py.j2", context),
                    imports=[
                        ImportRef(target=runtime_name("memory"), symbols=("InMemoryPersistence",)),
                        ImportRef(target=runtime_name("rules"), symbols=("CallerContext",)),
                    ],
                )
            )
        return artifacts


async def generate_project(
    project: ValidatedProject, config: Optional[GeneratorConfig] = None
) -> GenerationResult:
    """Convenience wrapper around :meth:`ProjectGenerator.generate`."""
    return await ProjectGenerator(project, config).generate()
