"""Unit tests for helper and worker rendering (worldbuilder.scaffolder.worker_gen).

Tests cover:
- Integration helper stubs
- Worker model resolution (queue, modes, steps, bound service)
- Worker artifact imports
- Overridable stubs for steps without an integration
- Failure records for workers of failed entities
"""

from __future__ import annotations

import ast

import pytest

from worldbuilder.scaffolder.templates import TemplateRenderer
from worldbuilder.scaffolder.worker_gen import IntegrationModel, StepModel, WorkerGenerator
from worldbuilder.spec.models import Integration, WorkerDef
from worldbuilder.spec.validator import ValidatedProject

pytestmark = pytest.mark.unit


@pytest.fixture
def worker_gen() -> WorkerGenerator:
    return WorkerGenerator(TemplateRenderer())


class TestHelpers:
    def test_integration_model(self, sample_project: ValidatedProject):
        model = IntegrationModel.of(sample_project.integration("Mailer"))
        assert model.forms.pascal == "Mailer"
        (method,) = model.methods
        assert method.name == "send_email"
        assert [p.name for p in method.parameters] == ["title", "priority"]
        assert model.config == ("MAILER_API_KEY",)

    def test_render_helper(self, worker_gen: WorkerGenerator, sample_project: ValidatedProject):
        artifact = worker_gen.render_helper(sample_project.integration("Mailer"))
        assert artifact.logical_name == "helpers/mailer.helper"
        assert artifact.owner == "Mailer"
        assert artifact.imports[0].target == "runtime/integrations"
        ast.parse(artifact.content)
        assert "class MailerHelper(IntegrationHelper):" in artifact.content
        assert (
            "async def send_email(self, title: str | None = None, priority: int | None = None) -> bool:"
            in artifact.content
        )
        assert 'raise IntegrationNotImplemented(self.name, "send_email")' in artifact.content

    def test_helper_without_methods(self, worker_gen: WorkerGenerator):
        artifact = worker_gen.render_helper(Integration(name="Sms Gateway", category="sms"))
        assert artifact.logical_name == "helpers/sms-gateway.helper"
        ast.parse(artifact.content)


class TestWorkers:
    def test_build_model(self, worker_gen: WorkerGenerator, sample_project: ValidatedProject):
        worker = sample_project.spec.workers[0]
        model = worker_gen.build_model(worker, dict(sample_project.integrations), True)
        assert model.queue == "digest-sender"
        assert model.modes == ["direct", "queued"]
        assert model.service_class == "TaskService"
        assert model.service_logical == "services/task.service"
        assert model.steps == (
            StepModel(
                name="send",
                helper_class="MailerHelper",
                helper_logical="helpers/mailer.helper",
                method="send_email",
                parameters=("title", "priority"),
            ),
        )

    def test_without_service(self, worker_gen: WorkerGenerator, sample_project: ValidatedProject):
        worker = sample_project.spec.workers[0]
        model = worker_gen.build_model(worker, dict(sample_project.integrations), False)
        assert model.service_class is None
        artifact = worker_gen.render_worker(model)
        assert not artifact.imports_of("services/task.service")
        assert "def service" not in artifact.content

    def test_explicit_queue_and_plain_step(self, worker_gen: WorkerGenerator):
        worker = WorkerDef(
            name="Cleanup", queue="maintenance", modes=["direct"], steps=[{"name": "sweep"}]
        )
        model = worker_gen.build_model(worker, {}, False)
        assert model.queue == "maintenance"
        assert model.modes == ["direct"]
        artifact = worker_gen.render_worker(model)
        assert [ref.target for ref in artifact.imports] == ["runtime/broker"]
        ast.parse(artifact.content)
        assert 'results["sweep"] = await self.step_sweep(payload)' in artifact.content

    async def test_plain_steps_are_overridable(
        self, worker_gen: WorkerGenerator, load_generated
    ):
        worker = WorkerDef(name="Cleanup", steps=[{"name": "sweep"}, {"name": "Archive old"}])
        artifact = worker_gen.render_worker(worker_gen.build_model(worker, {}, False))
        signature = "async def step_archive_old(self, payload: dict[str, Any]) -> Any:"
        assert signature in artifact.content

        class DualModeWorker:
            pass

        namespace = load_generated(artifact.content, {"DualModeWorker": DualModeWorker})
        cleanup = namespace["CleanupWorker"]
        with pytest.raises(NotImplementedError, match="sweep"):
            await cleanup().process({})

        class Implemented(cleanup):
            async def step_sweep(self, payload):
                return payload["n"]

            async def step_archive_old(self, payload):
                return "done"

        assert await Implemented().process({"n": 3}) == {"sweep": 3, "Archive old": "done"}

    def test_render_worker(self, worker_gen: WorkerGenerator, sample_project: ValidatedProject):
        worker = sample_project.spec.workers[0]
        model = worker_gen.build_model(worker, dict(sample_project.integrations), True)
        artifact = worker_gen.render_worker(model)
        assert artifact.logical_name == "workers/digest-sender.worker"
        assert [ref.target for ref in artifact.imports] == [
            "runtime/broker",
            "runtime/rules",
            "helpers/mailer.helper",
            "services/task.service",
        ]
        ast.parse(artifact.content)
        assert "class DigestSenderWorker(DualModeWorker):" in artifact.content
        assert 'modes: frozenset[str] = frozenset(["direct", "queued"])' in artifact.content
        assert 'arguments_for(payload, ("title", "priority"))' in artifact.content

    def test_entity_failed(self, worker_gen: WorkerGenerator, sample_project: ValidatedProject):
        failure = worker_gen.entity_failed(sample_project.spec.workers[0])
        assert failure.unit == "Digest Sender"
        assert failure.error_kind == "entity_failed"
        assert failure.logical_names == ["workers/digest-sender.worker"]
        assert "Task" in failure.message
