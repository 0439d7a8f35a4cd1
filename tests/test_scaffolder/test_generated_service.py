"""Behaviour of a generated entity service, executed against in-memory persistence.

Tests cover:
- Rule conditions that read a related record see it loaded, on full and
  partial payloads
- Listing with read rules: hidden rows count toward neither page nor total
- The relation and scan tables emitted into the service module
"""

from __future__ import annotations

from typing import Any
from uuid import uuid4

import pytest

from worldbuilder.scaffolder.generator import GenerationResult, ProjectGenerator
from worldbuilder.spec.loader import parse_spec
from worldbuilder.spec.validator import ensure_valid

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _public(namespace: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in namespace.items() if not k.startswith("__")}


@pytest.fixture
async def result(sample_spec_data: dict[str, Any]) -> GenerationResult:
    sample_spec_data["rules"] = [
        r for r in sample_spec_data["rules"] if r["name"] != "notify owner"
    ]
    sample_spec_data["rules"].append(
        {
            "name": "archived project",
            "entity": "Task",
            "trigger": "before_update",
            "condition": "project.archived == true",
            "action": {"message": "The project is archived"},
        }
    )
    sample_spec_data["workers"] = []
    sample_spec_data["integrations"] = []
    project = ensure_valid(parse_spec(sample_spec_data))
    generated = await ProjectGenerator(project).generate()
    assert not generated.partial
    return generated


@pytest.fixture
def app(result: GenerationResult, load_generated) -> dict[str, dict[str, Any]]:
    """The Task slice of the generated app, one namespace per module."""

    def load(logical_name: str, **names: Any) -> dict[str, Any]:
        return load_generated(result.artifact(logical_name).content, names)

    rules = load("runtime/rules")
    project = load("entities/project.entity")
    task = load("entities/task.entity", Project=project["Project"])
    auditor = load("auditors/task.auditor", **_public(rules))
    enforcers: dict[str, Any] = {}
    for name in result.logical_names:
        if name.startswith("enforcers/"):
            module = load(name, **_public(rules))
            enforcers.update({k: v for k, v in module.items() if k.startswith("enforce_")})
    service = load(
        "services/task.service",
        **{
            **_public(rules),
            **_public(task),
            **enforcers,
            "TaskAuditor": auditor["TaskAuditor"],
        },
    )
    return {
        "rules": rules,
        "memory": load("runtime/memory"),
        "task": task,
        "service": service,
    }


@pytest.fixture
def persistence(app: dict[str, dict[str, Any]]):
    return app["memory"]["InMemoryPersistence"]()


@pytest.fixture
def service(app: dict[str, dict[str, Any]], persistence):
    return app["service"]["TaskService"](persistence)


@pytest.fixture
def caller(app: dict[str, dict[str, Any]]):
    return app["rules"]["CallerContext"](subject="tester", capabilities=frozenset({"*"}))


async def _project(persistence, *, archived: bool = False):
    row = {"id": uuid4(), "title": "Home", "archived": archived}
    await persistence.create("projects", row)
    return row["id"]


# ---------------------------------------------------------------------------
# Related records in rule conditions
# ---------------------------------------------------------------------------


class TestRelatedRecords:
    def test_relation_table(self, result: GenerationResult):
        content = result.artifact("services/task.service").content
        assert (
            'RULE_RELATIONS: dict[str, tuple[str, ...]] = {\n    "before_update": ("project",),'
        ) in content
        assert "SCAN_BATCH = 500" in content
        assert "RULE_RELATIONS" not in result.artifact("services/project.service").content

    async def test_partial_update_sees_current_project(
        self, app, service, persistence, caller
    ):
        project_id = await _project(persistence)
        TaskCreate, TaskUpdate = app["task"]["TaskCreate"], app["task"]["TaskUpdate"]
        task = await service.create(TaskCreate(title="Paint", project_id=project_id), caller)

        updated = await service.update(task.id, TaskUpdate(priority=2), caller)
        assert updated is not None
        assert updated.priority == 2

        await persistence.update("projects", project_id, {"archived": True})
        with pytest.raises(app["rules"]["RuleViolation"], match="archived"):
            await service.update(task.id, TaskUpdate(priority=1), caller)
        stored = await persistence.find_by_id("tasks", task.id)
        assert stored["priority"] == 2

    async def test_moving_to_archived_project_is_rejected(
        self, app, service, persistence, caller
    ):
        open_id = await _project(persistence)
        archived_id = await _project(persistence, archived=True)
        TaskCreate, TaskUpdate = app["task"]["TaskCreate"], app["task"]["TaskUpdate"]
        task = await service.create(TaskCreate(title="Paint", project_id=open_id), caller)

        with pytest.raises(app["rules"]["RuleViolation"]):
            await service.update(task.id, TaskUpdate(project_id=archived_id), caller)

    async def test_missing_project_does_not_match(self, app, service, caller):
        TaskCreate, TaskUpdate = app["task"]["TaskCreate"], app["task"]["TaskUpdate"]
        task = await service.create(TaskCreate(title="Orphan", project_id=uuid4()), caller)
        updated = await service.update(task.id, TaskUpdate(completed=False), caller)
        assert updated is not None


# ---------------------------------------------------------------------------
# Listing with read rules
# ---------------------------------------------------------------------------


class TestListing:
    @pytest.fixture
    async def tasks(self, app, service, persistence, caller):
        project_id = await _project(persistence)
        TaskCreate, TaskUpdate = app["task"]["TaskCreate"], app["task"]["TaskUpdate"]
        created = [
            await service.create(TaskCreate(title=title, project_id=project_id), caller)
            for title in ("one", "two", "three", "four")
        ]
        await service.update(created[1].id, TaskUpdate(completed=True), caller)
        return created

    async def test_total_excludes_hidden(self, service, caller, tasks):
        page = await service.list(caller)
        assert [item.title for item in page.items] == ["one", "three", "four"]
        assert page.total == 3
        assert await service.get(tasks[1].id, caller) is None

    async def test_paging_over_visible_rows(self, app, service, caller, tasks):
        app["service"]["SCAN_BATCH"] = 2
        page = await service.list(caller, skip=1, limit=1)
        assert [item.title for item in page.items] == ["three"]
        assert page.total == 3

    async def test_filters_apply_before_read_rules(self, service, caller, tasks):
        page = await service.list(caller, filters={"completed": True})
        assert page.items == []
        assert page.total == 0
