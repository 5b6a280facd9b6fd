# context.py
"""
Run-scoped state shared by every component of one pipeline run.

Nothing here outlives a run: a new RunContext (and CancelToken) is created by
PipelineRun for every execution.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from .model import PipelineSpec, StageResult

if TYPE_CHECKING:
    from .executor import CommandExecutor
    from .model import RunReport
    from .workspace import Workspace


class CancelToken:
    """Top-down cancellation signal for a run."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "run cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to `timeout` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)


class RunListener:
    """
    Observability sink for a run. The core calls these hooks; it never
    formats or timestamps anything itself. Default implementation ignores
    everything.

    Hooks may be called from worker threads.
    """

    def on_run_started(self, spec: PipelineSpec, run_id: str, workspace: Path) -> None:
        pass

    def on_stage_started(self, stage: str, attempt: int) -> None:
        pass

    def on_output(self, stage: str, line: str) -> None:
        pass

    def on_retry(self, stage: str, attempt: int, delay: float, error: Exception) -> None:
        pass

    def on_stage_finished(self, result: StageResult) -> None:
        pass

    def on_run_finished(self, report: "RunReport") -> None:
        pass


@dataclass
class RunContext:
    run_id: str
    spec: PipelineSpec
    workspace: "Workspace"
    executor: "CommandExecutor"
    cancel: CancelToken = field(default_factory=CancelToken)
    listener: RunListener = field(default_factory=RunListener)
    git: str = "git"

    def sink_for(self, stage: str) -> Callable[[str], None]:
        def sink(line: str) -> None:
            self.listener.on_output(stage, line)
        return sink
