"""Worldbuilder scaffolder -- renders and assembles the generated backend.

Every artifact is rendered in memory first, one pipeline per entity, then
the assembler checks the cross-artifact imports and emits the tree only
when the whole set is consistent.

Quick usage::

    from worldbuilder.scaffolder import OutputAssembler, ProjectGenerator, write_tree

    result = await ProjectGenerator(project, config).generate()
    files = OutputAssembler(config.app_package).assemble(result.artifacts, result.failures)
    write_tree(files, "/tmp/output")
"""

from worldbuilder.scaffolder.artifacts import (
    ArtifactKind,
    GeneratedArtifact,
    GenerationFailure,
    ImportRef,
)
from worldbuilder.scaffolder.assembler import AssembledFile, OutputAssembler, write_tree
from worldbuilder.scaffolder.entity_pipeline import EntityPipeline, PipelineState
from worldbuilder.scaffolder.generator import GenerationResult, ProjectGenerator
from worldbuilder.scaffolder.templates import TemplateRenderer

__all__ = [
    "ArtifactKind",
    "AssembledFile",
    "EntityPipeline",
    "GeneratedArtifact",
    "GenerationFailure",
    "GenerationResult",
    "ImportRef",
    "OutputAssembler",
    "PipelineState",
    "ProjectGenerator",
    "TemplateRenderer",
    "write_tree",
]
