"""Output assembly: logical names to files, with all-or-nothing emission.

The assembler maps every rendered artifact's logical name to a concrete path
inside the target package, checks that every cross-artifact import resolves
to a rendered artifact that defines the imported symbols, and only then
produces the final file set.  :func:`write_tree` puts that set on disk
through a staging directory, so a destination is never left half written.
"""

from __future__ import annotations

import ast
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional

from ..errors import AssemblyError
from ..naming import snake_case
from ..utils import ensure_dir
from .artifacts import (
    APP_MAIN,
    ENTITY_INDEX,
    IMPORTS_MARKER,
    TEST_CONFTEST,
    TYPE_IMPORTS_MARKER,
    GeneratedArtifact,
    GenerationFailure,
)

# Logical directory -> file suffix of the artifacts it holds.
_SUFFIXED_DIRS: dict[str, str] = {
    "auditors": "auditor",
    "controllers": "controller",
    "enforcers": "enforcer",
    "helpers": "helper",
    "services": "service",
    "workers": "worker",
}

_MAX_LINE = 88
_BLANK_RUN_RE = re.compile(r"\n{4,}")


@dataclass(frozen=True)
class AssembledFile:
    """A file of the output tree, relative to the destination root."""

    path: PurePosixPath
    content: str


class OutputAssembler:
    """Turns a rendered artifact set into a consistent file tree."""

    def __init__(self, app_package: str = "app") -> None:
        self.app_package = app_package

    # -- Naming ------------------------------------------------------------

    def path_for(self, logical_name: str) -> PurePosixPath:
        package = PurePosixPath(self.app_package)
        if logical_name == ENTITY_INDEX:
            return package / "entities" / "__init__.py"
        if logical_name == APP_MAIN:
            return package / "main.py"
        if logical_name == TEST_CONFTEST:
            return PurePosixPath("tests", "conftest.py")
        head, _, rest = logical_name.partition("/")
        if head == "project" and rest:
            return PurePosixPath(rest)
        if head == "runtime" and rest:
            return package / "runtime" / f"{snake_case(rest)}.py"
        stem, _, suffix = rest.rpartition(".")
        if head == "entities" and suffix == "entity" and stem:
            return package / "entities" / f"{snake_case(stem)}.py"
        if head == "tests" and suffix == "test" and stem:
            return PurePosixPath("tests", f"test_{snake_case(stem)}_service.py")
        if _SUFFIXED_DIRS.get(head) == suffix and stem:
            return package / head / f"{snake_case(stem)}_{suffix}.py"
        raise AssemblyError([f"Unknown logical name '{logical_name}'"])

    def module_for(self, logical_name: str) -> str:
        """Dotted import path of the module a logical name lands in."""
        path = self.path_for(logical_name)
        if path.suffix != ".py":
            raise AssemblyError([f"'{logical_name}' is not a Python module"])
        parts = path.with_suffix("").parts
        if parts[-1] == "__init__":
            parts = parts[:-1]
        return ".".join(parts)

    # -- Assembly ----------------------------------------------------------

    def assemble(
        self,
        artifacts: Iterable[GeneratedArtifact],
        failures: Iterable[GenerationFailure] = (),
    ) -> list[AssembledFile]:
        """Resolve imports and return the complete file set, sorted by path.

        Raises:
            AssemblyError: listing every problem found, when any import
                targets a failed or unknown artifact, a symbol is missing
                from its target, two artifacts collide, or a module does
                not parse.
        """
        artifacts = list(artifacts)
        failed = {name for failure in failures for name in failure.logical_names}
        problems: list[str] = []

        by_name: dict[str, GeneratedArtifact] = {}
        paths: dict[PurePosixPath, str] = {}
        for artifact in artifacts:
            if artifact.logical_name in by_name:
                problems.append(f"Duplicate artifact '{artifact.logical_name}'")
                continue
            by_name[artifact.logical_name] = artifact
            try:
                path = self.path_for(artifact.logical_name)
            except AssemblyError as exc:
                problems.extend(exc.problems)
                continue
            if path in paths:
                problems.append(
                    f"'{artifact.logical_name}' and '{paths[path]}' both map to {path}"
                )
            paths[path] = artifact.logical_name

        exported: dict[str, Optional[set[str]]] = {}
        for artifact in artifacts:
            for ref in artifact.imports:
                if ref.target not in by_name:
                    state = "failed" if ref.target in failed else "unknown"
                    problems.append(
                        f"'{artifact.logical_name}' imports {state} artifact '{ref.target}'"
                    )
                    continue
                if ref.target not in exported:
                    exported[ref.target] = _top_level_names(by_name[ref.target].content)
                names = exported[ref.target]
                missing = [s for s in ref.symbols if names is not None and s not in names]
                if missing:
                    problems.append(
                        f"'{artifact.logical_name}' imports {', '.join(missing)} "
                        f"which '{ref.target}' does not define"
                    )
        if problems:
            raise AssemblyError(problems)

        files: list[AssembledFile] = []
        for artifact in artifacts:
            path = self.path_for(artifact.logical_name)
            content = self._resolve_imports(artifact)
            if path.suffix == ".py":
                try:
                    ast.parse(content, filename=str(path))
                except SyntaxError as exc:
                    problems.append(f"{path} does not parse: {exc.msg} (line {exc.lineno})")
            files.append(AssembledFile(path=path, content=content))
        if problems:
            raise AssemblyError(problems)

        present = {f.path for f in files}
        packages = {
            parent for p in present if p.suffix == ".py" for parent in p.parents if parent.parts
        }
        for package in sorted(packages):
            init = package / "__init__.py"
            if init not in present:
                files.append(AssembledFile(path=init, content=""))
                present.add(init)
        return sorted(files, key=lambda f: f.path.as_posix())

    def _resolve_imports(self, artifact: GeneratedArtifact) -> str:
        regular: dict[str, set[str]] = {}
        typed: dict[str, set[str]] = {}
        for ref in artifact.imports:
            bucket = typed if ref.type_only else regular
            bucket.setdefault(self.module_for(ref.target), set()).update(ref.symbols)
        for module, symbols in list(typed.items()):
            symbols -= regular.get(module, set())
            if not symbols:
                del typed[module]

        import_lines = [_format_import(m, regular[m]) for m in sorted(regular)]
        type_lines: list[str] = []
        if typed:
            if import_lines:
                type_lines.append("")
            type_lines.append("if TYPE_CHECKING:")
            type_lines.extend(
                _format_import(m, typed[m], indent="    ") for m in sorted(typed)
            )

        lines: list[str] = []
        for line in artifact.content.split("\n"):
            marker = line.strip()
            if marker == IMPORTS_MARKER:
                lines.extend(import_lines)
            elif marker == TYPE_IMPORTS_MARKER:
                lines.extend(type_lines)
            else:
                lines.append(line)
        content = "\n".join(lines)
        if self.path_for(artifact.logical_name).suffix == ".py":
            content = _BLANK_RUN_RE.sub("\n\n\n", content)
        return content


def _format_import(module: str, symbols: set[str], indent: str = "") -> str:
    names = sorted(symbols)
    line = f"{indent}from {module} import {', '.join(names)}"
    if len(line) <= _MAX_LINE:
        return line
    body = "".join(f"{indent}    {name},\n" for name in names)
    return f"{indent}from {module} import (\n{body}{indent})"


def _top_level_names(source: str) -> Optional[set[str]]:
    """Names a module defines at top level, or None when it does not parse."""
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return None
    names: set[str] = set()
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(node.name)
        elif isinstance(node, ast.Assign):
            for target in node.targets:
                if isinstance(target, ast.Name):
                    names.add(target.id)
        elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
            names.add(node.target.id)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            names.update((alias.asname or alias.name).split(".")[0] for alias in node.names)
    return names


# ---------------------------------------------------------------------------
# Staged write
# ---------------------------------------------------------------------------

def write_tree(
    files: Iterable[AssembledFile],
    destination: str | Path,
    *,
    overwrite: bool = False,
) -> Path:
    """Write *files* under *destination* atomically with respect to the tree.

    Files are written into a temporary sibling directory which replaces the
    destination only after every write succeeded.  The staging directory
    (and the previous tree, when overwriting) is removed on every exit path.

    Raises:
        AssemblyError: when the destination exists and *overwrite* is not
            set, or when any write fails.  The destination is unchanged.
    """
    destination = Path(destination).resolve()
    if destination.exists() and not overwrite:
        raise AssemblyError([f"Destination {destination} already exists"])
    ensure_dir(destination.parent)

    staging = Path(tempfile.mkdtemp(prefix=f".{destination.name}-", dir=destination.parent))
    backup: Optional[Path] = None
    try:
        for item in files:
            target = staging.joinpath(*item.path.parts)
            ensure_dir(target.parent)
            target.write_text(item.content, encoding="utf-8")
        if destination.exists():
            backup = staging.with_name(staging.name + ".previous")
            os.replace(destination, backup)
        try:
            os.replace(staging, destination)
        except OSError:
            if backup is not None:
                os.replace(backup, destination)
                backup = None
            raise
    except OSError as exc:
        raise AssemblyError([f"Failed to write {destination}: {exc}"], cause=exc) from exc
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)
        if backup is not None and backup.exists():
            shutil.rmtree(backup, ignore_errors=True)
    return destination
