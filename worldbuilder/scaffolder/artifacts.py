"""Data carried from the rendering pipeline to the output assembler.

Rendered artifacts never contain concrete first-party import statements.
They declare :class:`ImportRef` entries against *logical* names such as
``entities/task.entity`` and leave marker lines where the statements belong;
the assembler resolves both once every artifact is known.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# Marker lines a template emits where resolved imports are inserted.
IMPORTS_MARKER = "# @@imports@@"
TYPE_IMPORTS_MARKER = "# @@type-imports@@"


class ArtifactKind(str, Enum):
    ENTITY = "entity"
    SERVICE = "service"
    CONTROLLER = "controller"
    AUDITOR = "auditor"
    ENFORCER = "enforcer"
    WORKER = "worker"
    HELPER = "helper"
    APP = "app"
    SUPPORT = "support"
    TEST = "test"


class ImportRef(BaseModel):
    """A dependency of one artifact on symbols exported by another."""

    model_config = ConfigDict(frozen=True)

    target: str = Field(..., description="Logical name of the imported artifact")
    symbols: tuple[str, ...] = Field(..., min_length=1)
    type_only: bool = Field(
        default=False, description="Only needed for annotations (TYPE_CHECKING import)"
    )


class GeneratedArtifact(BaseModel):
    """One rendered output unit."""

    kind: ArtifactKind
    logical_name: str = Field(..., description="e.g. 'services/task.service'")
    owner: str = Field(default="", description="Entity, rule, worker or integration name")
    content: str
    imports: list[ImportRef] = Field(default_factory=list)

    def imports_of(self, target: str) -> bool:
        return any(ref.target == target for ref in self.imports)


class GenerationFailure(BaseModel):
    """A unit of generation that did not produce (all of) its artifacts."""

    unit: str = Field(..., description="Entity or worker name")
    error_kind: str = Field(..., description="e.g. 'type_resolution', 'relation_target_failed'")
    message: str
    logical_names: list[str] = Field(
        default_factory=list, description="Artifacts this failure withheld, when known"
    )


# ---------------------------------------------------------------------------
# Logical names
# ---------------------------------------------------------------------------

def entity_name(kebab: str) -> str:
    return f"entities/{kebab}.entity"


def service_name(kebab: str) -> str:
    return f"services/{kebab}.service"


def controller_name(kebab: str) -> str:
    return f"controllers/{kebab}.controller"


def auditor_name(kebab: str) -> str:
    return f"auditors/{kebab}.auditor"


def enforcer_name(kebab: str) -> str:
    return f"enforcers/{kebab}.enforcer"


def worker_name(kebab: str) -> str:
    return f"workers/{kebab}.worker"


def helper_name(kebab: str) -> str:
    return f"helpers/{kebab}.helper"


def service_test_name(kebab: str) -> str:
    return f"tests/{kebab}.test"


def runtime_name(module: str) -> str:
    return f"runtime/{module}"


ENTITY_INDEX = "entities/index"
APP_MAIN = "app/main"
TEST_CONFTEST = "tests/conftest"
