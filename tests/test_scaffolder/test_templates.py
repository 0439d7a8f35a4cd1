"""Unit tests for the Jinja2 template renderer (worldbuilder.scaffolder.templates).

Tests cover:
- Bundled template files
- Custom filters (pyrepr, doc, case transforms)
- StrictUndefined behaviour
- Template directory override
- Broker availability check tolerating a malformed URL
"""

from __future__ import annotations

import ast
import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import pytest
from jinja2 import UndefinedError

from worldbuilder.scaffolder.templates import TemplateRenderer

pytestmark = pytest.mark.unit


@pytest.fixture
def renderer() -> TemplateRenderer:
    return TemplateRenderer()


def _inline(renderer: TemplateRenderer, source: str, context: dict[str, Any]) -> str:
    return renderer.env.from_string(source).render(**context)


class TestDiscovery:
    @pytest.mark.parametrize(
        "name",
        [
            "entity.py.j2",
            "service.py.j2",
            "controller.py.j2",
            "auditor.py.j2",
            "enforcer.py.j2",
            "helper.py.j2",
            "worker.py.j2",
            "entities_index.py.j2",
            "main.py.j2",
            "runtime/memory.py.j2",
            "tests/conftest.py.j2",
            "tests/service_test.py.j2",
            "project/README.md.j2",
            "project/Dockerfile.j2",
            "project/docker-compose.yml.j2",
        ],
    )
    def test_bundled_template(self, renderer: TemplateRenderer, name: str):
        assert (renderer.template_dir / name).is_file()
        assert renderer.env.get_template(name) is not None


class TestFilters:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("todo", '"todo"'),
            ('say "hi"', '"say \\"hi\\""'),
            (("title",), '("title",)'),
            (("a", "b"), '("a", "b")'),
            ((), "()"),
            (["x", 1], '["x", 1]'),
            (None, "None"),
            (True, "True"),
            (2.5, "2.5"),
        ],
    )
    def test_pyrepr(self, renderer: TemplateRenderer, value, expected: str):
        assert _inline(renderer, "{{ value | pyrepr }}", {"value": value}) == expected

    def test_doc_collapses_whitespace_and_escapes(self, renderer: TemplateRenderer):
        out = _inline(renderer, "{{ text | doc }}", {"text": 'a  "b"\n  c\\d'})
        assert out == 'a \\"b\\" c\\\\d'

    def test_case_filters(self, renderer: TemplateRenderer):
        out = _inline(renderer, 
            "{{ n | pascal_case }} {{ n | camel_case }} {{ n | snake_case }} "
            "{{ n | kebab_case }} {{ 'box' | pluralize }}",
            {"n": "task item"},
        )
        assert out == "TaskItem taskItem task_item task-item boxes"


class TestStrictness:
    def test_undefined_variable_raises(self, renderer: TemplateRenderer):
        with pytest.raises(UndefinedError):
            _inline(renderer, "{{ missing }}", {})

    def test_undefined_attribute_raises(self, renderer: TemplateRenderer):
        with pytest.raises(UndefinedError):
            _inline(renderer, "{{ entity.nothing }}", {"entity": {}})

    def test_trim_blocks(self, renderer: TemplateRenderer):
        out = _inline(renderer, "{% for x in xs %}\n{{ x }}\n{% endfor %}\n", {"xs": [1, 2]})
        assert out == "1\n2\n"


class TestOverride:
    def test_custom_directory(self, tmp_path: Path):
        (tmp_path / "hello.txt.j2").write_text("Hello {{ name | pascal_case }}", encoding="utf-8")
        renderer = TemplateRenderer(tmp_path)
        assert renderer.render("hello.txt.j2", {"name": "big world"}) == "Hello BigWorld"


class TestRuntimeModules:
    async def test_malformed_broker_url_means_no_broker(self, renderer: TemplateRenderer):
        module = ast.parse(renderer.render("runtime/broker.py.j2", {"imports_marker": ""}))
        keep = [
            node
            for node in module.body
            if (isinstance(node, ast.ImportFrom) and node.module == "__future__")
            or (isinstance(node, ast.AsyncFunctionDef) and node.name == "probe_broker")
        ]
        assert len(keep) == 2

        class FakeRedisModule:
            @staticmethod
            def from_url(url: str):
                raise ValueError(f"Redis URL must specify a scheme: {url}")

        namespace: dict[str, Any] = {
            "asyncio": asyncio,
            "logger": logging.getLogger("broker"),
            "RedisError": type("RedisError", (Exception,), {}),
            "aioredis": FakeRedisModule,
            "Optional": Optional,
        }
        exec(compile(ast.Module(body=keep, type_ignores=[]), "broker.py", "exec"), namespace)
        assert await namespace["probe_broker"]("localhost:6379", 0.1) is None
