"""Worldbuilder Pipeline Orchestrator.

Runs one generation pass in four stages:

Stage 1: VALIDATE -- Load the project specification and check it structurally.
Stage 2: RENDER   -- Render every artifact in memory, one pipeline per entity.
Stage 3: ASSEMBLE -- Resolve cross-artifact imports; refuse inconsistent trees.
Stage 4: WRITE    -- Stage the tree next to the destination and swap it in.

Usage::

    python -m worldbuilder.pipeline project.yaml --output ./my-service
    python -m worldbuilder.pipeline project.json --dry-run
"""

from __future__ import annotations

import asyncio
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from rich.panel import Panel

from worldbuilder.config import GeneratorConfig
from worldbuilder.errors import AssemblyError, SpecValidationError, WorldbuilderError
from worldbuilder.scaffolder.assembler import AssembledFile, OutputAssembler, write_tree
from worldbuilder.scaffolder.generator import GenerationResult, ProjectGenerator
from worldbuilder.spec.loader import load_spec, parse_spec
from worldbuilder.spec.models import ProjectSpec
from worldbuilder.spec.validator import ValidatedProject, ensure_valid
from worldbuilder.utils import (
    console,
    format_duration,
    print_error,
    print_issue_table,
    print_stage_header,
    print_success,
    print_summary_table,
    print_warning,
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 2


class Outcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class RunReport:
    """What one pipeline run produced."""

    outcome: Outcome
    files: list[AssembledFile] = field(default_factory=list)
    generation: Optional[GenerationResult] = None
    error: Optional[WorldbuilderError] = None
    destination: Optional[Path] = None
    duration: float = 0.0

    @property
    def exit_code(self) -> int:
        if self.outcome is Outcome.SUCCESS:
            return EXIT_OK
        if self.outcome is Outcome.PARTIAL:
            return EXIT_PARTIAL
        return EXIT_FAILED

    @property
    def written(self) -> bool:
        return self.destination is not None


# ---------------------------------------------------------------------------
# Pipeline Orchestrator
# ---------------------------------------------------------------------------


class Pipeline:
    """Drives a specification through validation, rendering and emission.

    Errors of the library layers surface here as a :class:`RunReport`; the
    pipeline itself only raises for missing input files.

    Attributes:
        config: Generator configuration (destination, package name, ...).
        quiet: Suppress progress output; failures are still reported.
    """

    def __init__(self, config: Optional[GeneratorConfig] = None, *, quiet: bool = False) -> None:
        self.config = config or GeneratorConfig()
        self.quiet = quiet

    def _stage(self, stage: str, detail: str = "") -> None:
        if not self.quiet:
            print_stage_header(stage, detail)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def validate(self, source: str | Path | dict[str, Any] | ProjectSpec) -> ValidatedProject:
        """Load (when given a path) and validate a specification.

        Raises:
            SpecValidationError: with every issue found.
            FileNotFoundError: when *source* is a path that does not exist.
        """
        if isinstance(source, (str, Path)):
            spec = load_spec(source)
        else:
            spec = parse_spec(source)
        return ensure_valid(spec)

    async def render(self, project: ValidatedProject) -> GenerationResult:
        return await ProjectGenerator(project, self.config).generate()

    def assemble(self, result: GenerationResult) -> list[AssembledFile]:
        return OutputAssembler(self.config.app_package).assemble(
            result.artifacts, result.failures
        )

    async def write(self, files: list[AssembledFile]) -> Path:
        return await asyncio.to_thread(
            write_tree, files, self.config.output_dir, overwrite=self.config.overwrite
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        source: str | Path | dict[str, Any] | ProjectSpec,
        *,
        dry_run: bool = False,
    ) -> RunReport:
        """Execute every stage; ``dry_run`` stops before writing."""
        started = time.monotonic()

        self._stage("validate", str(source) if isinstance(source, (str, Path)) else "")
        try:
            project = self.validate(source)
        except SpecValidationError as exc:
            print_issue_table(
                ((i.kind, _where(i.context()), i.message) for i in exc.issues),
                title="Specification issues",
            )
            print_error(f"Specification rejected: {len(exc.issues)} issue(s)")
            return RunReport(Outcome.FAILED, error=exc, duration=time.monotonic() - started)
        if not self.quiet:
            spec = project.spec
            print_summary_table(
                {
                    "Project": project.name.pascal,
                    "Entities": str(len(spec.entities)),
                    "Rules": str(len(spec.rules)),
                    "Integrations": str(len(spec.integrations)),
                    "Workers": str(len(spec.workers)),
                },
                title="Specification",
            )

        self._stage("render", f"{len(project.spec.entities)} entities")
        result = await self.render(project)
        if not self.quiet:
            print_summary_table(
                {
                    owner: ", ".join(a.kind.value for a in artifacts)
                    for owner, artifacts in sorted(result.by_owner().items())
                },
                title="Rendered artifacts",
            )
        if result.failures:
            print_issue_table(
                ((f.error_kind, f.unit, f.message) for f in result.failures),
                title="Generation failures",
            )

        self._stage("assemble")
        try:
            files = self.assemble(result)
        except AssemblyError as exc:
            print_issue_table(
                (("assembly", "", problem) for problem in exc.problems),
                title="Assembly problems",
            )
            print_error("Assembly refused: nothing was written")
            return RunReport(
                Outcome.FAILED, generation=result, error=exc, duration=time.monotonic() - started
            )

        outcome = Outcome.PARTIAL if result.partial else Outcome.SUCCESS
        report = RunReport(outcome, files=files, generation=result)

        if dry_run:
            if not self.quiet:
                for item in files:
                    console.print(f"  [dim]{item.path.as_posix()}[/dim]")
                print_warning(f"Dry run: {len(files)} file(s) not written")
        else:
            self._stage("write", str(self.config.output_dir))
            try:
                report.destination = await self.write(files)
            except AssemblyError as exc:
                print_error(str(exc))
                report.outcome = Outcome.FAILED
                report.error = exc

        report.duration = time.monotonic() - started
        self._print_final_summary(report)
        return report

    def _print_final_summary(self, report: RunReport) -> None:
        if report.outcome is Outcome.FAILED:
            return
        if report.outcome is Outcome.PARTIAL:
            print_warning(
                f"Partial success: {len(report.generation.failures)} unit(s) failed"
                if report.generation
                else "Partial success"
            )
        if self.quiet:
            return
        lines = [
            f"Files     : {len(report.files)}",
            f"Duration  : {format_duration(report.duration)}",
        ]
        if report.destination is not None:
            lines.append(f"Output    : {report.destination}")
        style = "bold green" if report.outcome is Outcome.SUCCESS else "bold yellow"
        console.print(Panel("\n".join(lines), title="[bold]Generation Complete[/bold]", border_style=style))
        if report.outcome is Outcome.SUCCESS:
            print_success("Generation completed successfully!")


def _where(context: dict[str, str]) -> str:
    return ", ".join(f"{key}={value}" for key, value in context.items())


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point for ``worldbuilder`` / ``python -m worldbuilder.pipeline``."""
    import argparse

    parser = argparse.ArgumentParser(
        prog="worldbuilder",
        description="Worldbuilder -- generate a backend service from a declarative spec",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Exit codes:\n"
            "  0  every artifact was generated\n"
            "  1  the spec was rejected or the tree could not be assembled\n"
            "  2  output was produced but some entities or workers failed\n"
        ),
    )
    parser.add_argument("spec", help="Path to the project spec (.json, .yaml or .yml)")
    parser.add_argument(
        "--output", "-o",
        default=None,
        help="Destination directory (default: WB_OUTPUT_DIR or ./output)",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace an existing destination directory",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate, render and assemble without writing anything",
    )
    parser.add_argument(
        "--package",
        default=None,
        help="Import package of the generated application (default: app)",
    )
    parser.add_argument(
        "--max-parallel",
        type=int,
        default=None,
        help="Maximum number of entity pipelines rendering at once",
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Only report failures",
    )
    args = parser.parse_args(argv)

    try:
        config = GeneratorConfig.from_env(
            output_dir=Path(args.output) if args.output else None,
            app_package=args.package,
            overwrite=True if args.overwrite else None,
            max_parallel_entities=args.max_parallel,
        )
    except ValueError as exc:
        print_error(f"Invalid configuration: {exc}")
        return EXIT_FAILED

    spec_path = Path(args.spec)
    if not spec_path.exists():
        print_error(f"Spec file not found: {spec_path}")
        return EXIT_FAILED

    report = asyncio.run(Pipeline(config, quiet=args.quiet).run(spec_path, dry_run=args.dry_run))
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
