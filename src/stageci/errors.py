# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured pipeline error with enough context for:
      - clean CLI output
      - the run report (stage error field)
      - debugging without full tracebacks
    """
    kind: str
    message: str
    stage: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.stage:
            lines.append(f"stage={self.stage}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigError(CIError):
    """Invalid pipeline definition. Fatal, no stage runs."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(kind="ConfigError", message=message, details=details or {})


class GraphError(CIError):
    """Cycle, unresolved dependency or duplicate stage. Fatal, no stage runs."""

    def __init__(self, reason: str, message: str, stages: Iterable[str] = ()):
        self.reason = reason
        self.stages: List[str] = list(stages)
        super().__init__(
            kind="GraphError",
            message=message,
            details={"reason": reason, "stages": self.stages},
        )


class WorkspaceError(CIError):
    """The run workspace could not be created or removed."""

    def __init__(self, message: str, *, path: Optional[str] = None):
        self.path = path
        super().__init__(
            kind="WorkspaceError",
            message=message,
            details={"path": path} if path else {},
        )


class ExecutionError(CIError):
    """A command exited non-zero (or could not be started)."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int,
        output: str = "",
        stage: Optional[str] = None,
        hint: Optional[str] = None,
    ):
        self.exit_code = exit_code
        self.output = output
        self.hint = hint
        details: Dict[str, Any] = {"exit_code": exit_code}
        if hint:
            details["hint"] = hint
        super().__init__(kind="ExecutionError", message=message, stage=stage, details=details)


class StageTimeoutError(CIError):
    """A command ran past its deadline and was killed."""

    def __init__(self, message: str, *, timeout: float, output: str = "", stage: Optional[str] = None):
        self.timeout = timeout
        self.output = output
        super().__init__(
            kind="TimeoutError",
            message=message,
            stage=stage,
            details={"timeout": timeout},
        )


class CancelledError(CIError):
    """The run was cancelled. Never retried."""

    def __init__(self, message: str = "run cancelled", *, output: str = "", stage: Optional[str] = None):
        self.output = output
        super().__init__(kind="CancelledError", message=message, stage=stage)
