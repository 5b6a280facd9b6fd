# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from .context import CancelToken
from .errors import CancelledError, ExecutionError, StageTimeoutError

# How often the waiting thread wakes up to check deadline / cancellation.
POLL_INTERVAL = 0.05

TOOL_HINTS = {
    "git": "Install Git or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "make": "Install make (build-essential) or fix PATH.",
    "go": "Install Go or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: str
    duration: float


class CommandExecutor(Protocol):
    def __call__(
        self,
        argv: Sequence[str],
        *,
        cwd: str | Path,
        env: Mapping[str, str],
        timeout: Optional[float] = None,
        sink: Optional[Callable[[str], None]] = None,
        cancel: Optional[CancelToken] = None,
        grace_period: float = 5.0,
        stage: Optional[str] = None,
    ) -> CommandResult: ...


def merge_env(*overlays: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """
    Child environment: current process env, then each overlay in order
    (later wins on key collision).
    """
    env = os.environ.copy()
    for overlay in overlays:
        if overlay:
            env.update({str(k): str(v) for k, v in overlay.items()})
    return env


# ----------------------------------------------------------------------
# Process-group signalling
# ----------------------------------------------------------------------

def _terminate(proc: subprocess.Popen) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
    else:
        proc.terminate()


def _kill(proc: subprocess.Popen) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()


def _stop(proc: subprocess.Popen, grace_period: float) -> None:
    """SIGTERM, wait up to grace_period, then SIGKILL whatever is left of the group."""
    _terminate(proc)
    try:
        proc.wait(timeout=max(grace_period, 0))
    except subprocess.TimeoutExpired:
        pass
    _kill(proc)
    proc.wait()


class _OutputPump:
    """Reads merged stdout/stderr line by line on a background thread."""

    def __init__(self, proc: subprocess.Popen, sink: Optional[Callable[[str], None]]):
        self.lines: List[str] = []
        self._sink = sink
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._read, args=(proc.stdout,), daemon=True)
        self._thread.start()

    def _read(self, stream) -> None:
        try:
            for line in iter(stream.readline, ""):
                with self._lock:
                    self.lines.append(line)
                if self._sink is not None:
                    self._sink(line.rstrip("\r\n"))
        finally:
            stream.close()

    @property
    def done(self) -> bool:
        return not self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> str:
        self._thread.join(timeout)
        return self.output()

    def output(self) -> str:
        with self._lock:
            return "".join(self.lines)


def run_command(
    argv: Sequence[str],
    *,
    cwd: str | Path,
    env: Mapping[str, str],
    timeout: Optional[float] = None,
    sink: Optional[Callable[[str], None]] = None,
    cancel: Optional[CancelToken] = None,
    grace_period: float = 5.0,
    stage: Optional[str] = None,
) -> CommandResult:
    """
    Run one external command and wait for it.

    Returns CommandResult on exit code 0. Raises:
      ExecutionError     non-zero exit, or the executable could not be started
      StageTimeoutError  `timeout` seconds elapsed; the process group is killed
      CancelledError     `cancel` was set; SIGTERM, grace period, SIGKILL
    Partial output is attached to every error.
    """
    argv = [str(a) for a in argv]
    if not argv:
        raise ExecutionError("empty command", exit_code=-1, stage=stage)

    cmd_display = " ".join(argv)
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=dict(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            bufsize=1,
            start_new_session=(os.name == "posix"),
        )
    except FileNotFoundError:
        tool = Path(argv[0]).name
        raise ExecutionError(
            f"command not found: {argv[0]}",
            exit_code=127,
            stage=stage,
            hint=TOOL_HINTS.get(tool, f"Install {tool} or fix PATH."),
        )
    except PermissionError as e:
        raise ExecutionError(f"cannot execute {argv[0]}: {e}", exit_code=126, stage=stage)

    pump = _OutputPump(proc, sink)
    deadline = started + timeout if timeout else None
    exit_code: Optional[int] = None

    # Runs until the child has exited AND its output pipe is drained.
    while True:
        if exit_code is None:
            try:
                exit_code = proc.wait(timeout=POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                pass
            else:
                # background processes left in the group still hold the pipe open
                _kill(proc)
        else:
            pump.join(timeout=POLL_INTERVAL)

        if exit_code is not None and pump.done:
            break

        if cancel is not None and cancel.cancelled:
            _stop(proc, grace_period)
            output = pump.join(timeout=grace_period)
            raise CancelledError(
                f"cancelled while running: {cmd_display}", output=output, stage=stage
            )

        if deadline is not None and time.monotonic() >= deadline:
            _kill(proc)
            proc.wait()
            output = pump.join(timeout=grace_period)
            raise StageTimeoutError(
                f"timed out after {timeout}s: {cmd_display}",
                timeout=timeout,
                output=output,
                stage=stage,
            )

    output = pump.output()
    duration = time.monotonic() - started

    if exit_code != 0:
        raise ExecutionError(
            f"command failed (exit={exit_code}): {cmd_display}",
            exit_code=exit_code,
            output=output,
            stage=stage,
        )

    return CommandResult(exit_code=exit_code, output=output, duration=duration)
