"""Shared fixtures for the stageci test suite.

Helpers are handed out through fixtures (not imported) so every test module
stays independent of sys.path layout:

  - ``py``: argv running a python snippet in a child interpreter
  - ``spy_executor``: factory for a recording, scriptable command executor
  - ``listener``: a RunListener that records every event
  - ``make_spec``: PipelineSpec factory with test-friendly defaults
"""

from __future__ import annotations

import sys
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from stageci.context import RunListener
from stageci.errors import CancelledError, ExecutionError, StageTimeoutError
from stageci.executor import CommandResult
from stageci.model import PipelineSpec, StageResult


# ============================================================================
# Child-process helpers
# ============================================================================


def _py(code: str) -> Tuple[str, ...]:
    return (sys.executable, "-c", code)


@pytest.fixture
def py() -> Callable[[str], Tuple[str, ...]]:
    """argv for ``python -c <code>``; portable across platforms."""
    return _py


# ============================================================================
# Spy executor
# ============================================================================


class SpyExecutor:
    """
    Stand-in for run_command. Records every invocation and the peak number
    of simultaneous invocations. Per-stage behaviour is a callable
    ``(argv, cancel) -> CommandResult`` that may raise.
    """

    def __init__(self, behaviors: Optional[Dict[str, Callable]] = None, delay: float = 0.0):
        self.behaviors = behaviors or {}
        self.delay = delay
        self.calls: List[Tuple[str, List[str]]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def __call__(self, argv, *, cwd, env, timeout=None, sink=None, cancel=None, grace_period=5.0, stage=None):
        with self._lock:
            self.calls.append((stage, list(argv)))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            behavior = self.behaviors.get(stage)
            if behavior is not None:
                return behavior(argv, cancel)
            if sink is not None:
                sink(f"ran {stage}")
            return CommandResult(exit_code=0, output=f"ran {stage}\n", duration=self.delay)
        finally:
            with self._lock:
                self.in_flight -= 1

    def count(self, stage: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == stage)

    def invoked(self) -> List[str]:
        with self._lock:
            return [name for name, _ in self.calls]

    # ---- canned behaviours ----

    @staticmethod
    def fail(exit_code: int = 1, output: str = "boom\n") -> Callable:
        def behavior(argv, cancel):
            raise ExecutionError("command failed", exit_code=exit_code, output=output)
        return behavior

    @staticmethod
    def time_out(output: str = "partial\n") -> Callable:
        def behavior(argv, cancel):
            raise StageTimeoutError("timed out", timeout=1.0, output=output)
        return behavior

    @staticmethod
    def fail_times(n: int, exit_code: int = 1) -> Callable:
        state = {"calls": 0}

        def behavior(argv, cancel):
            state["calls"] += 1
            if state["calls"] <= n:
                raise ExecutionError("flaky", exit_code=exit_code, output=f"attempt {state['calls']}\n")
            return CommandResult(exit_code=0, output="ok\n", duration=0.0)
        return behavior

    @staticmethod
    def block_until_cancelled(started: Optional[threading.Event] = None) -> Callable:
        def behavior(argv, cancel):
            if started is not None:
                started.set()
            while not cancel.wait(0.01):
                pass
            raise CancelledError("cancelled while running", output="interrupted\n")
        return behavior


@pytest.fixture
def spy_executor() -> type:
    """The SpyExecutor class; instantiate with per-stage behaviours."""
    return SpyExecutor


# ============================================================================
# Recording listener
# ============================================================================


class RecordingListener(RunListener):
    def __init__(self) -> None:
        self.events: List[Tuple[str, str, float]] = []
        self.output: Dict[str, List[str]] = {}
        self.retries: List[Tuple[str, int, float]] = []
        self.workspace = None
        self.finished: List[StageResult] = []
        self.report = None
        self._lock = threading.Lock()

    def _record(self, kind: str, name: str) -> None:
        with self._lock:
            self.events.append((kind, name, time.monotonic()))

    def on_run_started(self, spec, run_id, workspace):
        self.workspace = workspace

    def on_stage_started(self, stage, attempt):
        self._record("start", stage)

    def on_output(self, stage, line):
        with self._lock:
            self.output.setdefault(stage, []).append(line)

    def on_retry(self, stage, attempt, delay, error):
        with self._lock:
            self.retries.append((stage, attempt, delay))

    def on_stage_finished(self, result):
        self._record("finish", result.name)
        with self._lock:
            self.finished.append(result)

    def on_run_finished(self, report):
        self.report = report

    def first(self, kind: str, name: str) -> float:
        for k, n, t in self.events:
            if k == kind and n == name:
                return t
        raise KeyError((kind, name))

    def started(self) -> List[str]:
        seen: List[str] = []
        for k, n, _ in self.events:
            if k == "start" and n not in seen:
                seen.append(n)
        return seen


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


# ============================================================================
# Spec factory
# ============================================================================


@pytest.fixture
def make_spec() -> Callable[..., PipelineSpec]:
    def factory(*stages, **kwargs) -> PipelineSpec:
        kwargs.setdefault("name", "test-pipeline")
        kwargs.setdefault("grace_period", 1.0)
        return PipelineSpec(stages=tuple(stages), **kwargs)
    return factory
