# config.py
"""
Pipeline loading.

Two sources produce the same immutable PipelineSpec:

  - Python pipeline files (``stageci_pipeline.py``) defining ``pipeline()``
    or ``PIPELINE``, usually written with ``stageci.dsl``.
  - YAML documents, validated with pydantic before conversion.

The YAML loader also understands the legacy single-chain format
(``build_cmd`` / ``test_cmd`` / ``deploy_cmd``), which becomes
checkout -> build -> test -> deploy.
"""

from __future__ import annotations

import runpy
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from . import dsl
from .errors import ConfigError
from .model import PipelineSpec, StageKind, StageSpec

LEGACY_STAGES = ("build", "test", "deploy")


# ----------------------------------------------------------------------
# Document schema
# ----------------------------------------------------------------------

class StageDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    run: Optional[List[str]] = None
    checkout: bool = False
    needs: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    retries: int = Field(default=0, ge=0)
    backoff: float = Field(default=1.0, ge=0)
    timeout: float = Field(default=0.0, ge=0)
    cwd: Optional[str] = None
    required: bool = True

    @field_validator("run", mode="before")
    @classmethod
    def _argv_only(cls, value: Any) -> Any:
        if isinstance(value, str):
            raise ValueError("run must be an argument list, e.g. [\"make\", \"build\"], not a shell string")
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _command_or_checkout(self) -> "StageDocument":
        if self.checkout and self.run:
            raise ValueError(f"stage '{self.name}': use either run or checkout, not both")
        if not self.checkout and not self.run:
            raise ValueError(f"stage '{self.name}': run must be a non-empty argument list")
        return self


class PipelineDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    repository: str = ""
    branch: str = "main"
    environment: Dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=0.0, ge=0)
    max_concurrency: int = Field(default=4, ge=1)
    max_backoff: float = Field(default=60.0, ge=0)
    grace_period: float = Field(default=5.0, ge=0)
    artifacts: List[str] = Field(default_factory=list)
    stages: List[StageDocument] = Field(default_factory=list)

    # legacy single-chain keys
    build_cmd: Optional[str] = None
    test_cmd: Optional[str] = None
    deploy_cmd: Optional[str] = None

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @property
    def is_legacy(self) -> bool:
        return any(getattr(self, f"{n}_cmd") for n in LEGACY_STAGES)


# ----------------------------------------------------------------------
# Conversion
# ----------------------------------------------------------------------

def _legacy_stages(doc: PipelineDocument) -> List[StageSpec]:
    # Old configs carried shell-like strings; shlex keeps quoted args together.
    stages: List[StageSpec] = []
    previous: Optional[str] = None
    if doc.repository:
        stages.append(StageSpec(name="checkout", kind=StageKind.CHECKOUT))
        previous = "checkout"

    for name in LEGACY_STAGES:
        cmd = getattr(doc, f"{name}_cmd")
        if not cmd or not cmd.strip():
            continue
        try:
            argv = tuple(shlex.split(cmd))
        except ValueError as e:
            raise ConfigError(f"cannot split {name}_cmd: {e}", details={name + "_cmd": cmd}) from e
        stages.append(StageSpec(name=name, command=argv, needs=(previous,) if previous else ()))
        previous = name
    return stages


def _stage_from_document(doc: StageDocument) -> StageSpec:
    return StageSpec(
        name=doc.name,
        command=tuple(doc.run or ()),
        kind=StageKind.CHECKOUT if doc.checkout else StageKind.COMMAND,
        needs=tuple(doc.needs),
        env=dict(doc.env),
        retries=doc.retries,
        backoff=doc.backoff,
        timeout=doc.timeout,
        cwd=doc.cwd,
        required=doc.required,
    )


def spec_from_dict(data: Any) -> PipelineSpec:
    """Validate an already-parsed document and build the PipelineSpec."""
    if not isinstance(data, dict):
        raise ConfigError("pipeline document must be a mapping")
    try:
        doc = PipelineDocument.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigError("invalid pipeline document", details={"errors": errors}) from e

    if doc.stages and doc.is_legacy:
        raise ConfigError("use either stages or build_cmd/test_cmd/deploy_cmd, not both")

    if doc.stages:
        stages = [_stage_from_document(s) for s in doc.stages]
    else:
        stages = _legacy_stages(doc)
    if not stages:
        raise ConfigError(f"pipeline '{doc.name}' defines no stages")

    return PipelineSpec(
        name=doc.name,
        stages=tuple(stages),
        repository=doc.repository,
        branch=doc.branch,
        env=dict(doc.environment),
        timeout=doc.timeout,
        max_concurrency=doc.max_concurrency,
        max_backoff=doc.max_backoff,
        grace_period=doc.grace_period,
        artifacts=tuple(doc.artifacts),
    )


# ----------------------------------------------------------------------
# Loading (local file)
# ----------------------------------------------------------------------

def load_yaml_pipeline(path: Path) -> PipelineSpec:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse {path.name}: {e}") from e
    return spec_from_dict(data)


def load_python_pipeline(path: Path) -> PipelineSpec:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - PIPELINE = PipelineSpec(...)
      - pipeline() -> PipelineSpec
    PIPELINE wins when both exist. A `pipeline` name that is just the
    imported DSL helper is not a pipeline factory.
    """
    module_name = f"stageci_pipeline_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    spec = globals_dict.get("PIPELINE")
    factory = globals_dict.get("pipeline")
    if spec is None and factory is dsl.pipeline:
        raise ConfigError(
            "pipeline is the stageci.dsl helper, not a pipeline factory. "
            "Set PIPELINE = pipeline(...), or import the helper under another name: "
            "`from stageci.dsl import pipeline as define` then `def pipeline(): return define(...)`",
            details={"file": str(path)},
        )
    if spec is None and callable(factory):
        spec = factory()

    if not isinstance(spec, PipelineSpec):
        raise ConfigError(
            "Pipeline file must return/define a PipelineSpec. "
            "Define pipeline() -> PipelineSpec or PIPELINE = ...",
            details={"file": str(path)},
        )
    return spec


def load_pipeline(path: str | Path) -> PipelineSpec:
    """Load a .py or .yaml/.yml pipeline file."""
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigError(f"Pipeline file not found: {p}")

    if p.suffix == ".py":
        return load_python_pipeline(p)
    if p.suffix in (".yaml", ".yml"):
        return load_yaml_pipeline(p)
    raise ConfigError(f"Pipeline must be a .py, .yaml or .yml file, got: {p.name}")
