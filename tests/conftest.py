"""Shared pytest fixtures for the Worldbuilder test suite.

Provides reusable fixtures for:
- A sample Todo project spec (dict, model and validated project)
- Spec documents written to disk as JSON and YAML
- Temporary output directories
- A generator config pointing at a temporary destination
- The rendered rules runtime, executed without its web-framework imports
"""

from __future__ import annotations

import ast
import copy
import json
import sys
import types
from pathlib import Path
from typing import Any, Iterator

import pytest
import yaml

from worldbuilder.config import GeneratorConfig
from worldbuilder.scaffolder.templates import TemplateRenderer
from worldbuilder.spec.loader import parse_spec
from worldbuilder.spec.models import ProjectSpec
from worldbuilder.spec.validator import ValidatedProject, ensure_valid


# ---------------------------------------------------------------------------
# Sample spec
# ---------------------------------------------------------------------------

SAMPLE_SPEC: dict[str, Any] = {
    "name": "todo service",
    "description": "Tasks grouped into projects.",
    "entities": [
        {
            "name": "Project",
            "description": "A group of tasks.",
            "fields": [
                {"name": "title", "type": "string", "min_length": 1, "max_length": 200},
                {"name": "archived", "type": "boolean", "default": False},
            ],
            "relations": [{"target": "Task", "kind": "has_many"}],
            "api": {"filters": ["archived"]},
        },
        {
            "name": "Task",
            "description": "A unit of work.",
            "fields": [
                {"name": "title", "type": "string", "min_length": 1, "unique": True},
                {"name": "completed", "type": "boolean", "default": False},
                {"name": "priority", "type": "integer", "minimum": 1, "maximum": 5, "default": 3},
                {
                    "name": "status",
                    "type": "enum",
                    "choices": ["todo", "doing", "done"],
                    "default": "todo",
                },
                {"name": "due date", "type": "date", "required": False},
                {"name": "budget", "type": "decimal", "required": False},
                {"name": "notes", "type": "json", "required": False},
            ],
            "relations": [{"target": "Project", "kind": "belongs_to", "required": True}],
            "artifacts": {"auditor": True},
            "api": {"filters": ["completed", "status", "project_id"]},
            "audit": {
                "events": ["created", "updated", "deleted", "state_changed"],
                "state_field": "status",
            },
        },
    ],
    "rules": [
        {
            "name": "hide completed",
            "entity": "Task",
            "trigger": "before_read",
            "condition": "completed == true",
            "action": {"message": "Completed tasks are hidden"},
        },
        {
            "name": "open project only",
            "entity": "Task",
            "trigger": "before_create",
            "condition": "data.priority > 4 && !completed",
        },
        {
            "name": "notify owner",
            "entity": "Task",
            "trigger": "after_create",
            "kind": "side_effect",
            "condition": "priority >= 4",
            "action": {"type": "invoke", "integration": "Mailer", "method": "sendEmail"},
        },
        {
            "name": "delete needs admin",
            "entity": "Task",
            "trigger": "before_delete",
            "kind": "permission",
            "capability": "tasks:delete",
        },
    ],
    "integrations": [
        {
            "name": "Mailer",
            "category": "email",
            "description": "Transactional email.",
            "methods": [
                {
                    "name": "sendEmail",
                    "description": "Send one message.",
                    "parameters": [
                        {"name": "title", "type": "str"},
                        {"name": "priority", "type": "int"},
                    ],
                    "returns": "bool",
                }
            ],
            "config": ["MAILER_API_KEY"],
        }
    ],
    "workers": [
        {
            "name": "Digest Sender",
            "entity": "Task",
            "concurrency": 2,
            "rate_limit": 5,
            "steps": [{"name": "send", "integration": "Mailer", "method": "sendEmail"}],
        }
    ],
}


@pytest.fixture
def sample_spec_data() -> dict[str, Any]:
    """A deep copy of the sample Todo spec, safe to mutate."""
    return copy.deepcopy(SAMPLE_SPEC)


@pytest.fixture
def sample_spec(sample_spec_data: dict[str, Any]) -> ProjectSpec:
    return parse_spec(sample_spec_data)


@pytest.fixture
def sample_project(sample_spec: ProjectSpec) -> ValidatedProject:
    return ensure_valid(sample_spec)


@pytest.fixture
def minimal_spec_data() -> dict[str, Any]:
    """A single entity with one field and no rules."""
    return {
        "name": "notes",
        "entities": [{"name": "Note", "fields": [{"name": "body", "type": "string"}]}],
    }


# ---------------------------------------------------------------------------
# Paths & Directories
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Destination directory for generated trees (not created in advance)."""
    return tmp_path / "generated"


@pytest.fixture
def generator_config(tmp_output_dir: Path) -> GeneratorConfig:
    return GeneratorConfig(output_dir=tmp_output_dir)


@pytest.fixture
def spec_json_file(tmp_path: Path, sample_spec_data: dict[str, Any]) -> Path:
    path = tmp_path / "project.json"
    path.write_text(json.dumps(sample_spec_data, indent=2), encoding="utf-8")
    return path


@pytest.fixture
def spec_yaml_file(tmp_path: Path, sample_spec_data: dict[str, Any]) -> Path:
    path = tmp_path / "project.yaml"
    path.write_text(yaml.safe_dump(sample_spec_data, sort_keys=False), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Generated runtime
# ---------------------------------------------------------------------------

class GeneratedModules:
    """Executes generated module sources as throwaway modules.

    Imports of the web framework and of the generated app package are
    dropped; the caller supplies whatever those would have bound.  Each
    module is registered in ``sys.modules`` until :meth:`close`, since
    dataclasses and pydantic resolve annotations through it.  Passing the
    namespace returned by an earlier call executes into the same module.
    """

    def __init__(self) -> None:
        self.names: list[str] = []

    def __call__(self, source: str, namespace: dict[str, Any] | None = None) -> dict[str, Any]:
        namespace = namespace if namespace is not None else {}
        if namespace.get("__name__") not in self.names:
            name = f"_generated_{id(self)}_{len(self.names)}"
            module = types.ModuleType(name)
            module.__dict__.update({k: v for k, v in namespace.items() if k != "__name__"})
            sys.modules[name] = module
            self.names.append(name)
            namespace = module.__dict__
        tree = ast.parse(source)
        tree.body = [
            node
            for node in tree.body
            if not (
                isinstance(node, ast.ImportFrom)
                and node.module
                and node.module.split(".")[0] in {"fastapi", "app"}
            )
        ]
        exec(compile(tree, "<generated>", "exec"), namespace)
        return namespace

    def close(self) -> None:
        for name in self.names:
            sys.modules.pop(name, None)
        self.names.clear()


@pytest.fixture
def load_generated() -> Iterator[GeneratedModules]:
    """Executes rendered modules for tests that run generated code."""
    modules = GeneratedModules()
    yield modules
    modules.close()


@pytest.fixture
def rules_runtime(load_generated: GeneratedModules) -> dict[str, Any]:
    """Namespace of the rendered ``runtime/rules`` module."""
    return load_generated(TemplateRenderer().render("runtime/rules.py.j2", {}))
