# src/stageci/dsl.py
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional

from .model import PipelineSpec, StageKind, StageSpec


# ---------------------------------------------------------------------
# Functional helpers (nice DX)
# ---------------------------------------------------------------------

def stage(
    name: str,
    *argv: str,  # allow: stage("build", "make", "-j4")
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    retries: int = 0,
    backoff: float = 1.0,
    timeout: float = 0.0,
    cwd: str | None = None,
    required: bool = True,
) -> StageSpec:
    if not argv:
        raise ValueError(f"stage({name!r}) needs a command, e.g. stage({name!r}, 'make', 'build')")
    return StageSpec(
        name=name,
        command=tuple(str(a) for a in argv),
        needs=tuple(needs or ()),
        env={k: str(v) for k, v in (env or {}).items()},
        retries=retries,
        backoff=backoff,
        timeout=timeout,
        cwd=cwd,
        required=required,
    )


def checkout(
    name: str = "checkout",
    *,
    needs: Optional[List[str]] = None,
    retries: int = 0,
    backoff: float = 1.0,
    timeout: float = 0.0,
) -> StageSpec:
    """
    Built-in stage: clone the pipeline repository into the workspace root.
    git needs an empty target, so other stages should list it in `needs`.
    """
    return StageSpec(
        name=name,
        kind=StageKind.CHECKOUT,
        needs=tuple(needs or ()),
        retries=retries,
        backoff=backoff,
        timeout=timeout,
    )


def pipeline(
    name: str,
    *stages: StageSpec | List[StageSpec],  # Matrix.stages() lists are flattened
    repository: str = "",
    branch: str = "main",
    env: Optional[Dict[str, str]] = None,
    timeout: float = 0.0,
    max_concurrency: int = 4,
    max_backoff: float = 60.0,
    grace_period: float = 5.0,
    artifacts: Optional[List[str]] = None,
) -> PipelineSpec:
    """
    Pipeline definition helper.

    Users can write:
        from stageci.dsl import checkout, stage
        from stageci.dsl import pipeline as define

        def pipeline():
            return define(
                "app",
                checkout(),
                stage("build", "make", needs=["checkout"]),
                repository="https://example.com/app.git",
            )

    Or use PIPELINE directly:
        PIPELINE = define("app", ...)
    """
    flat: List[StageSpec] = []
    for item in stages:
        if isinstance(item, list):
            flat.extend(item)
        else:
            flat.append(item)

    return PipelineSpec(
        name=name,
        stages=tuple(flat),
        repository=repository,
        branch=branch,
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
        max_concurrency=max_concurrency,
        max_backoff=max_backoff,
        grace_period=grace_period,
        artifacts=tuple(artifacts or ()),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StageBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._argv: list[str] = []
        self._checkout = False
        self._env: dict[str, str] = {}
        self._retries = 0
        self._backoff = 1.0
        self._timeout = 0.0
        self._cwd: Optional[str] = None
        self._required = True

    def depends_on(self, *stage_names: str):
        self._needs.extend(stage_names)
        return self

    def run(self, *argv: str):
        self._argv = [str(a) for a in argv]
        return self

    def checkout(self):
        self._checkout = True
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def in_dir(self, cwd: str):
        self._cwd = cwd
        return self

    def retry(self, times: int, *, backoff: float = 1.0):
        self._retries = times
        self._backoff = backoff
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def optional(self, optional: bool = True):
        self._required = not optional
        return self

    def build(self) -> StageSpec:
        if self._checkout and self._argv:
            raise ValueError(f"Stage '{self.name}' is a checkout; it cannot also run a command")
        if not self._checkout and not self._argv:
            raise ValueError(f"Stage '{self.name}' has no command")

        return StageSpec(
            name=self.name,
            command=tuple(self._argv),
            kind=StageKind.CHECKOUT if self._checkout else StageKind.COMMAND,
            needs=tuple(self._needs),
            env=dict(self._env),
            retries=self._retries,
            backoff=self._backoff,
            timeout=self._timeout,
            cwd=self._cwd,
            required=self._required,
        )


def build(name: str) -> StageBuilder:
    """Convenience: build('test').run('pytest', '-q').depends_on('build').build()"""
    return StageBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.11", "3.12"]).stages(
            lambda v: stage(f"test-py{v}", f"python{v}", "-m", "pytest")
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def stages(self, builder: Callable[[Any], StageSpec]) -> List[StageSpec]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)
