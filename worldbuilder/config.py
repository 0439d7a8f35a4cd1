"""Worldbuilder configuration.

Centralised, typed configuration for a generation run. Settings use a
Pydantic v2 model so they are validated at construction time and can be
serialised to/from JSON or read from environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from .naming import is_valid_identifier

_TRUTHY = {"1", "true", "yes", "on"}


class GeneratorConfig(BaseModel):
    """Configuration of one generator run.

    Instances are typically created once by ``Pipeline`` or by the CLI entry
    point and then passed through the rest of the system.
    """

    output_dir: Path = Field(default=Path("./output"))
    app_package: str = Field(
        default="app", description="Top-level Python package of the generated application"
    )
    overwrite: bool = Field(default=False, description="Replace an existing output directory")
    max_parallel_entities: int = Field(
        default=8, ge=1, description="Maximum entity pipelines rendering at once"
    )
    default_broker_url: str = Field(default="redis://localhost:6379/0")
    broker_probe_timeout: float = Field(
        default=2.0, gt=0, description="Seconds the generated app waits for the broker ping"
    )
    template_dir: Optional[Path] = Field(
        default=None, description="Directory overriding the bundled templates"
    )

    @field_validator("app_package")
    @classmethod
    def _check_package(cls, value: str) -> str:
        if not is_valid_identifier(value):
            raise ValueError(f"app_package {value!r} is not a valid Python identifier")
        return value

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<output_dir>/worldbuilder.json``.

        Returns:
            The path where the file was written.
        """
        target = path or (self.output_dir / "worldbuilder.json")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "GeneratorConfig":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls, **overrides: Any) -> "GeneratorConfig":
        """Build a ``GeneratorConfig`` from environment variables.

        Recognised variables (all optional):
            WB_OUTPUT_DIR, WB_APP_PACKAGE, WB_OVERWRITE, WB_MAX_PARALLEL,
            WB_BROKER_URL, WB_BROKER_PROBE_TIMEOUT, WB_TEMPLATE_DIR.

        Keyword *overrides* win over the environment.
        """
        kwargs: dict[str, Any] = {}
        if os.environ.get("WB_OUTPUT_DIR"):
            kwargs["output_dir"] = Path(os.environ["WB_OUTPUT_DIR"])
        if os.environ.get("WB_APP_PACKAGE"):
            kwargs["app_package"] = os.environ["WB_APP_PACKAGE"]
        if os.environ.get("WB_OVERWRITE"):
            kwargs["overwrite"] = os.environ["WB_OVERWRITE"].strip().lower() in _TRUTHY
        if os.environ.get("WB_MAX_PARALLEL"):
            kwargs["max_parallel_entities"] = int(os.environ["WB_MAX_PARALLEL"])
        if os.environ.get("WB_BROKER_URL"):
            kwargs["default_broker_url"] = os.environ["WB_BROKER_URL"]
        if os.environ.get("WB_BROKER_PROBE_TIMEOUT"):
            kwargs["broker_probe_timeout"] = float(os.environ["WB_BROKER_PROBE_TIMEOUT"])
        if os.environ.get("WB_TEMPLATE_DIR"):
            kwargs["template_dir"] = Path(os.environ["WB_TEMPLATE_DIR"])
        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)
