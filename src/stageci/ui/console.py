"""Console output formatting utilities for stageci."""

from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Optional

from ..context import RunListener
from ..model import PipelineSpec, RunReport, StageResult, StageStatus


class Console(RunListener):
    """
    Centralized console output formatting.

    Also the run listener the CLI plugs into the engine: stage output lines
    arrive here from worker threads, so every print goes through one lock.
    """

    def __init__(self, debug: bool = False, show_output: bool = True):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_output: If True, echo stage output lines as they arrive
        """
        self.debug = debug
        self.show_output = show_output
        self._lock = threading.RLock()  # signal handlers print too

    def _print(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    # ------------------------------------------------------------------
    # RunListener
    # ------------------------------------------------------------------

    def on_run_started(self, spec: PipelineSpec, run_id: str, workspace: Path) -> None:
        self.print_run_started(
            pipeline=spec.name,
            run_id=run_id,
            stage_count=len(spec.stages),
            workers=spec.max_concurrency,
        )
        self.print_debug(f"workspace: {workspace}")

    def on_stage_started(self, stage: str, attempt: int) -> None:
        if attempt == 1:
            self._print(f"\nSTAGE STARTED: {stage}")
        else:
            self._print(f"\nSTAGE RETRY: {stage} (attempt {attempt})")

    def on_output(self, stage: str, line: str) -> None:
        if self.show_output:
            self._print(f"[{stage}] {line}")

    def on_retry(self, stage: str, attempt: int, delay: float, error: Exception) -> None:
        reason = getattr(error, "message", str(error))
        self._print(f"[{stage}] attempt {attempt} failed: {reason}; retrying in {delay:.1f}s")

    def on_stage_finished(self, result: StageResult) -> None:
        if result.status is StageStatus.SUCCEEDED:
            self.print_success(result.name)
        elif result.status is StageStatus.FAILED:
            self.print_failure(result.name, result.error or "", exit_code=result.exit_code)
        else:
            self.print_stage_skipped(result.name, result.status.value, result.error or "")

    def on_run_finished(self, report: RunReport) -> None:
        self.print_report(report)

    # ------------------------------------------------------------------
    # Plain printing
    # ------------------------------------------------------------------

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        run_id: str,
        stage_count: int,
        workers: int,
    ) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Run ID: {run_id}",
            f"Stages: {stage_count}",
            f"Workers: {workers}",
        )

    def print_success(self, name: str) -> None:
        """Print success message."""
        self._print(f"STAGE SUCCEEDED: {name}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Stage name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
        """
        lines = [f"STAGE FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._print(*lines)

    def print_stage_skipped(self, name: str, status: str, reason: str) -> None:
        """Print skipped/cancelled stage message."""
        self._print(f"STAGE {status.upper()}: {name} ({reason})")

    def print_plan(self, pipeline: str, levels: list[list[str]]) -> None:
        """Print the topological levels of a pipeline."""
        self.print_header(f"PLAN: {pipeline}")
        for idx, level in enumerate(levels):
            self._print(f"=== Level {idx + 1}: {level} ===")

    def print_report(self, report: RunReport) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for r in report.results:
            attempts = f" [{r.attempts} attempts]" if r.attempts > 1 else ""
            duration = f" ({r.duration:.1f}s)" if r.duration is not None else ""
            lines.append(f"  {r.name}: {r.status.value.upper()}{duration}{attempts}")
        lines.append(f"\nRUN {report.status.value.upper()} in {report.duration:.1f}s")
        if report.artifacts:
            lines.append(f"Artifacts: {len(report.artifacts)}")
        self._print(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
