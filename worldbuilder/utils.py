"""Shared utility functions for Worldbuilder.

Provides spec document I/O (JSON and YAML), file-system helpers and the
Rich-based reporting used by the orchestrator.  Library modules never print;
only :mod:`worldbuilder.pipeline` calls the print helpers below.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

import yaml
from rich.console import Console
from rich.rule import Rule
from rich.table import Table

console = Console()

# ---------------------------------------------------------------------------
# Document I/O
# ---------------------------------------------------------------------------

JSON_SUFFIXES = (".json",)
YAML_SUFFIXES = (".yaml", ".yml")


def load_json(path: str | Path) -> Any:
    """Load and parse a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    return json.loads(Path(path).read_text(encoding="utf-8"))


def load_yaml(path: str | Path) -> Any:
    """Load and parse a YAML file with ``yaml.safe_load``."""
    return yaml.safe_load(Path(path).read_text(encoding="utf-8"))


def load_document(path: str | Path) -> dict[str, Any]:
    """Load a JSON or YAML mapping, picking the parser by file suffix.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the suffix is unsupported, the document does not
            parse, or its top level is not a mapping.
    """
    file_path = Path(path)
    suffix = file_path.suffix.lower()
    try:
        if suffix in JSON_SUFFIXES:
            data = load_json(file_path)
        elif suffix in YAML_SUFFIXES:
            data = load_yaml(file_path)
        else:
            raise ValueError(
                f"Unsupported spec format {suffix or '<none>'!r}; use .json, .yaml or .yml"
            )
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValueError(f"Could not parse {file_path.name}: {exc}") from exc

    if not isinstance(data, dict):
        raise ValueError(f"{file_path.name} must contain a mapping at the top level")
    return data


# ---------------------------------------------------------------------------
# File-system helpers
# ---------------------------------------------------------------------------


def ensure_dir(path: str | Path) -> Path:
    """Create a directory (and parents) if it does not exist."""
    dir_path = Path(path)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path.resolve()


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(0.25)  -> "0.2s"
        format_duration(65.2)  -> "1m 5s"
    """
    if seconds < 0:
        return "0.0s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes > 0:
        return f"{minutes}m {int(secs)}s"
    return f"{secs:.1f}s"


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


STAGE_COLORS: dict[str, str] = {
    "validate": "bright_cyan",
    "render": "bright_green",
    "assemble": "bright_yellow",
    "write": "bright_blue",
}


def print_stage_header(stage: str, detail: str = "") -> None:
    """Print a full-width rule announcing a pipeline stage."""
    color = STAGE_COLORS.get(stage, "white")
    title = stage.upper() + (f": {detail}" if detail else "")
    console.print()
    console.print(Rule(f"[bold {color}] {title} [/bold {color}]", style=color))
    console.print()


def print_summary_table(data: dict[str, str], title: str = "Summary") -> None:
    """Print a two-column key/value summary table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, str(value))

    console.print(table)
    console.print()


def print_issue_table(
    rows: Iterable[tuple[str, str, str]], title: str = "Issues"
) -> None:
    """Print ``(kind, context, message)`` rows as a table."""
    table = Table(title=title, show_header=True, header_style="bold red")
    table.add_column("Kind", style="bold", no_wrap=True)
    table.add_column("Where", style="dim")
    table.add_column("Message")
    for kind, where, message in rows:
        table.add_row(kind, where, message)
    console.print(table)
    console.print()


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{message}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message."""
    console.print(f"[bold red]{message}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{message}[/bold yellow]")
