# retry.py
from __future__ import annotations

from typing import List

from .context import RunContext
from .errors import CancelledError, ConfigError, ExecutionError, StageTimeoutError
from .executor import merge_env
from .git_facts.git import clone_args
from .model import StageResult, StageSpec, StageStatus


def backoff_delay(base: float, attempt: int, cap: float) -> float:
    """
    Delay to wait after failed attempt number `attempt` (1-based):
    base * 2^(attempt-1), capped at `cap`.
    """
    if base <= 0:
        return 0.0
    return min(base * (2 ** (attempt - 1)), cap)


def stage_argv(stage: StageSpec, ctx: RunContext) -> List[str]:
    """
    argv for one attempt. A checkout clones into the workspace root, and git
    refuses a non-empty target: stages that write to the workspace must need
    the checkout.
    """
    if stage.is_checkout:
        if not ctx.spec.repository:
            raise ConfigError(
                f"stage '{stage.name}' checks out the repository but the pipeline has none",
                details={"stage": stage.name},
            )
        return clone_args(ctx.spec.repository, ctx.spec.branch, ctx.workspace.path, git=ctx.git)
    return list(stage.command)


def run_stage(stage: StageSpec, ctx: RunContext, result: StageResult) -> StageStatus:
    """
    Run one stage with its retry policy. `result` must already be RUNNING;
    attempts/exit_code/output/error are recorded on it as we go.

    Returns SUCCEEDED or FAILED. CancelledError propagates (never retried).
    """
    argv = stage_argv(stage, ctx)
    cwd = ctx.workspace.path / stage.cwd if stage.cwd else ctx.workspace.path
    env = merge_env(ctx.spec.env, stage.env)
    timeout = ctx.spec.timeout_for(stage)
    total = stage.retries + 1
    before = {p.name for p in ctx.workspace.path.iterdir()} if stage.is_checkout else set()

    for attempt in range(1, total + 1):
        if ctx.cancel.cancelled:
            raise CancelledError(stage=stage.name)

        if stage.is_checkout and attempt > 1:
            # drop what the failed clone left; files of other stages stay
            ctx.workspace.clear(keep=before)

        result.attempts = attempt
        ctx.listener.on_stage_started(stage.name, attempt)

        try:
            res = ctx.executor(
                argv,
                cwd=cwd,
                env=env,
                timeout=timeout,
                sink=ctx.sink_for(stage.name),
                cancel=ctx.cancel,
                grace_period=ctx.spec.grace_period,
                stage=stage.name,
            )
        except CancelledError as e:
            result.output = e.output
            raise
        except ExecutionError as e:
            result.exit_code = e.exit_code
            result.output = e.output
            result.error = e.message
            error: Exception = e
        except StageTimeoutError as e:
            result.exit_code = None
            result.output = e.output
            result.error = e.message
            error = e
        else:
            result.exit_code = res.exit_code
            result.output = res.output
            result.error = None
            return StageStatus.SUCCEEDED

        if attempt < total:
            delay = backoff_delay(stage.backoff, attempt, ctx.spec.max_backoff)
            ctx.listener.on_retry(stage.name, attempt, delay, error)
            if ctx.cancel.wait(delay):
                raise CancelledError(stage=stage.name, output=result.output)

    return StageStatus.FAILED
