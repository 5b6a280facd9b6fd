# runner.py
from __future__ import annotations

import uuid
from pathlib import Path
from typing import List, Optional

from .context import CancelToken, RunContext, RunListener
from .dag import DagScheduler, StageRunner, validate_graph
from .errors import ConfigError
from .executor import CommandExecutor, run_command
from .model import PipelineSpec, RunReport, RunStatus, StageResult, StageStatus, now_utc
from .retry import run_stage
from .workspace import acquire, collect_artifacts


# ----------------------------------------------------------------------
# Load-time validation
# ----------------------------------------------------------------------

def validate_pipeline(spec: PipelineSpec) -> List[List[str]]:
    """
    Everything that must hold before a single stage runs.
    Raises ConfigError / GraphError; returns the topological levels.
    """
    if not spec.name:
        raise ConfigError("pipeline has no name")
    if spec.max_concurrency < 1:
        raise ConfigError("max_concurrency must be >= 1", details={"max_concurrency": spec.max_concurrency})
    if spec.timeout < 0 or spec.max_backoff < 0 or spec.grace_period < 0:
        raise ConfigError("timeout, max_backoff and grace_period must be >= 0")

    for stage in spec.stages:
        if not stage.name:
            raise ConfigError("stage without a name")
        if stage.retries < 0:
            raise ConfigError(f"stage '{stage.name}': retries must be >= 0", details={"retries": stage.retries})
        if stage.backoff < 0 or stage.timeout < 0:
            raise ConfigError(f"stage '{stage.name}': backoff and timeout must be >= 0")
        if stage.is_checkout:
            if not spec.repository:
                raise ConfigError(
                    f"stage '{stage.name}' checks out the repository but the pipeline has none",
                    details={"stage": stage.name},
                )
        elif not stage.command:
            raise ConfigError(f"stage '{stage.name}' has no command")
        if stage.cwd and Path(stage.cwd).is_absolute():
            raise ConfigError(f"stage '{stage.name}': cwd must be relative to the workspace")

    return validate_graph(spec.stages)


def overall_status(results: List[StageResult], spec: PipelineSpec) -> RunStatus:
    """
    CANCELLED only if cancellation actually stopped a stage; a token set after
    every stage finished does not change the outcome.
    """
    if any(r.status is StageStatus.CANCELLED for r in results):
        return RunStatus.CANCELLED
    required = {s.name for s in spec.stages if s.required}
    for r in results:
        if r.name in required and r.status is not StageStatus.SUCCEEDED:
            return RunStatus.FAILED
    return RunStatus.SUCCEEDED


# ----------------------------------------------------------------------
# Pipeline run
# ----------------------------------------------------------------------

class PipelineRun:
    """
    One execution of a PipelineSpec:

      validate -> acquire workspace -> schedule stages -> collect artifacts
      -> release workspace (always) -> RunReport

    Retries are a per-stage concern; the run itself is never retried.
    """

    def __init__(
        self,
        spec: PipelineSpec,
        *,
        executor: CommandExecutor = run_command,
        listener: Optional[RunListener] = None,
        cancel: Optional[CancelToken] = None,
        workspace_root: str | Path | None = None,
        artifacts_dir: str | Path | None = None,
        run_id: Optional[str] = None,
        git: str = "git",
        stage_runner: StageRunner = run_stage,
    ):
        self.spec = spec
        self.executor = executor
        self.listener = listener or RunListener()
        self.cancel = cancel or CancelToken()
        self.workspace_root = workspace_root
        self.artifacts_dir = artifacts_dir
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.git = git
        self.stage_runner = stage_runner

    def execute(self) -> RunReport:
        validate_pipeline(self.spec)
        scheduler = DagScheduler(self.spec.stages, self.spec.max_concurrency)

        started_at = now_utc()
        artifacts: List[str] = []

        with acquire(self.run_id, self.workspace_root) as workspace:
            ctx = RunContext(
                run_id=self.run_id,
                spec=self.spec,
                workspace=workspace,
                executor=self.executor,
                cancel=self.cancel,
                listener=self.listener,
                git=self.git,
            )
            self.listener.on_run_started(self.spec, self.run_id, workspace.path)

            results = scheduler.run(self.stage_runner, ctx)

            if self.artifacts_dir is not None and self.spec.artifacts:
                copied = collect_artifacts(workspace.path, self.spec.artifacts, self.artifacts_dir)
                artifacts = [str(p) for p in copied]

        report = RunReport(
            pipeline=self.spec.name,
            run_id=self.run_id,
            status=overall_status(results, self.spec),
            results=results,
            started_at=started_at,
            finished_at=now_utc(),
            artifacts=artifacts,
        )
        self.listener.on_run_finished(report)
        return report


def execute(spec: PipelineSpec, **kwargs) -> RunReport:
    """Convenience wrapper: PipelineRun(spec, **kwargs).execute()."""
    return PipelineRun(spec, **kwargs).execute()
