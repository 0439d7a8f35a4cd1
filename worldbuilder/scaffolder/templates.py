"""Jinja2 template rendering for generated artifacts.

Holds the TemplateRenderer, which loads the bundled ``.j2`` files from
``worldbuilder/scaffolder/templates/`` (or an override directory)
and renders them with artifact-specific context data.  Rendering is pure: the
renderer never touches the output tree, that is the assembler's job.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from ..naming import camel_case, kebab_case, pascal_case, pluralize, snake_case


# ---------------------------------------------------------------------------
# Template directory discovery
# ---------------------------------------------------------------------------

_DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"


# ---------------------------------------------------------------------------
# TemplateRenderer
# ---------------------------------------------------------------------------


class TemplateRenderer:
    """Renders Jinja2 templates for generated artifacts.

    Looks up ``.j2`` files under one template directory.  Undefined
    variables raise instead of rendering as empty strings.

    The environment is built once and only read afterwards, so one renderer
    may be shared by entity pipelines running in worker threads.
    """

    def __init__(self, template_dir: str | Path | None = None) -> None:
        if template_dir is None:
            template_dir = _DEFAULT_TEMPLATE_DIR
        self.template_dir = Path(template_dir)
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape([], default_for_string=False),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        # Register custom filters
        self.env.filters["pascal_case"] = pascal_case
        self.env.filters["camel_case"] = camel_case
        self.env.filters["snake_case"] = snake_case
        self.env.filters["kebab_case"] = kebab_case
        self.env.filters["pluralize"] = pluralize
        self.env.filters["pyrepr"] = _pyrepr_filter
        self.env.filters["doc"] = _doc_filter

    # -- Single template rendering -----------------------------------------

    def render(self, template_path: str, context: dict[str, Any]) -> str:
        """Render a single template with the provided context.

        Args:
            template_path: Path relative to the template directory (e.g.
                ``"entity.py.j2"``).
            context: Dictionary of variables available inside the template.

        Returns:
            The rendered template content as a string.
        """
        template = self.env.get_template(template_path)
        return template.render(**context)


# ---------------------------------------------------------------------------
# Jinja2 custom filters
# ---------------------------------------------------------------------------

def _doc_filter(value: str) -> str:
    """Make free text safe for a single docstring or comment line."""
    text = " ".join(str(value).split())
    text = text.replace("\\", "\\\\").replace('"', '\\"')
    return text


def _pyrepr_filter(value: Any) -> str:
    """Render *value* as a Python literal (strings always double-quoted)."""
    if isinstance(value, str):
        # JSON string literals are valid Python string literals.
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (list, tuple)):
        inner = ", ".join(_pyrepr_filter(v) for v in value)
        if isinstance(value, tuple):
            return f"({inner},)" if len(value) == 1 else f"({inner})"
        return f"[{inner}]"
    return repr(value)
