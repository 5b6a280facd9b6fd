# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class StageKind(str, Enum):
    COMMAND = "command"
    CHECKOUT = "checkout"   # built-in: clone the pipeline repository into the workspace


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (StageStatus.PENDING, StageStatus.RUNNING)


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Allowed edges of the stage state machine. Terminal states have none.
_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.SKIPPED, StageStatus.CANCELLED},
    StageStatus.RUNNING: {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.CANCELLED},
}


@dataclass(frozen=True)
class StageSpec:
    """
    A single unit of work inside a pipeline.

    `command` is an explicit argv (never a shell string). A checkout stage
    ignores `command` and clones the pipeline repository instead.
    """
    name: str
    command: Tuple[str, ...] = ()
    kind: StageKind = StageKind.COMMAND
    needs: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict, hash=False)
    retries: int = 0
    backoff: float = 1.0
    timeout: float = 0.0                 # 0 -> inherit PipelineSpec.timeout
    cwd: Optional[str] = None            # relative to the workspace
    required: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    @property
    def is_checkout(self) -> bool:
        return self.kind is StageKind.CHECKOUT


@dataclass(frozen=True)
class PipelineSpec:
    """A whole pipeline: repository, global policy and the stage graph."""
    name: str
    stages: Tuple[StageSpec, ...] = ()
    repository: str = ""
    branch: str = "main"
    env: Mapping[str, str] = field(default_factory=dict, hash=False)
    timeout: float = 0.0                 # 0 -> no limit
    max_concurrency: int = 4
    max_backoff: float = 60.0
    grace_period: float = 5.0
    artifacts: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    @property
    def stage_names(self) -> List[str]:
        return [s.name for s in self.stages]

    def stage(self, name: str) -> StageSpec:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def timeout_for(self, stage: StageSpec) -> Optional[float]:
        """Effective timeout in seconds for a stage, or None for no limit."""
        value = stage.timeout or self.timeout
        return value if value > 0 else None


@dataclass
class StageResult:
    """
    Outcome of one stage. Status only moves forward; once terminal the
    result is never touched again.
    """
    name: str
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    output: str = ""
    attempts: int = 0
    error: Optional[str] = None

    def _move(self, status: StageStatus) -> None:
        allowed = _TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise RuntimeError(
                f"stage '{self.name}': illegal transition {self.status.value} -> {status.value}"
            )
        self.status = status

    def start(self) -> None:
        self._move(StageStatus.RUNNING)
        self.started_at = now_utc()

    def finish(self, status: StageStatus, *, error: Optional[str] = None) -> None:
        if not status.terminal:
            raise RuntimeError(f"stage '{self.name}': {status.value} is not a terminal status")
        self._move(status)
        self.finished_at = now_utc()
        if error is not None:
            self.error = error

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration,
            "exit_code": self.exit_code,
            "attempts": self.attempts,
            "error": self.error,
            "output": self.output,
        }


@dataclass
class RunReport:
    """What a caller gets back from one pipeline run."""
    pipeline: str
    run_id: str
    status: RunStatus
    results: List[StageResult]           # completion order
    started_at: datetime
    finished_at: datetime
    artifacts: List[str] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    def result(self, name: str) -> StageResult:
        for r in self.results:
            if r.name == name:
                return r
        raise KeyError(name)

    def statuses(self) -> Dict[str, StageStatus]:
        return {r.name: r.status for r in self.results}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "run_id": self.run_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration": self.duration,
            "artifacts": list(self.artifacts),
            "stages": [r.to_dict() for r in self.results],
        }
