# cli.py
from __future__ import annotations

import dataclasses
import json
import signal
import subprocess
import sys
from pathlib import Path

import click

from stageci.config import load_pipeline
from stageci.context import CancelToken
from stageci.errors import CIError, ConfigError, GraphError, WorkspaceError
from stageci.git_facts.git import get_current_ref, get_remote_url
from stageci.model import PipelineSpec, RunStatus
from stageci.runner import PipelineRun, validate_pipeline
from stageci.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE = "stageci_pipeline.py"
# Searched in the working directory when --pipeline is omitted.
PIPELINE_PATTERNS = (DEFAULT_PIPELINE, "*_pipeline.py", "pipeline.yaml", "pipeline.yml")

EXIT_FAILED = 1
EXIT_CANCELLED = 130


def find_pipeline_files(directory: Path = Path(".")) -> list[Path]:
    """Pipeline files in `directory` matching PIPELINE_PATTERNS, sorted."""
    found = {p for pattern in PIPELINE_PATTERNS for p in directory.glob(pattern) if p.is_file()}
    return sorted(found)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    The explicit --pipeline path (a bare name gets `.py`), or the single
    pipeline file in the working directory. Raises ConfigError otherwise.
    """
    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists() and not path.suffix:
            path = path.with_suffix(".py")
        if not path.exists():
            raise ConfigError(f"Pipeline file not found: {pipeline_arg}")
        return path

    candidates = find_pipeline_files()
    if not candidates:
        raise ConfigError(
            "No pipeline file found in the current directory",
            details={"looked_for": ", ".join(PIPELINE_PATTERNS)},
        )
    if len(candidates) > 1:
        raise ConfigError(
            "Multiple pipeline files found; pick one with --pipeline",
            details={"candidates": ", ".join(str(p) for p in candidates)},
        )
    return candidates[0]


def _resolve_source(spec: PipelineSpec, repo: str | None, branch: str | None) -> PipelineSpec:
    """
    Apply --repo/--branch overrides. When a checkout stage needs a repository
    and none is configured, fall back to the local git remote and ref.
    """
    console = get_console()
    changes = {}
    if repo:
        changes["repository"] = repo
    if branch:
        changes["branch"] = branch

    needs_repo = any(s.is_checkout for s in spec.stages)
    if needs_repo and not (repo or spec.repository):
        try:
            changes["repository"] = get_remote_url("origin")
            console.print_debug(f"Using repository URL from git remote: {changes['repository']}")
            if not branch:
                changes["branch"] = get_current_ref()
                console.print_debug(f"Using git ref: {changes['branch']}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_debug("No git remote available; keeping pipeline repository unset")

    return dataclasses.replace(spec, **changes) if changes else spec


def _load_or_exit(pipeline: str | None, ctx: click.Context) -> PipelineSpec:
    console = get_console()
    try:
        return load_pipeline(discover_pipeline(pipeline))
    except ConfigError as e:
        console.print_error(
            "Failed to load pipeline",
            e.message,
            details=[f"{k}: {v}" for k, v in e.details.items()],
            suggestion=f"Create {DEFAULT_PIPELINE} or pipeline.yaml, or pass --pipeline PATH",
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_FAILED)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """stageci: DAG build/deploy runner with retries and isolated workspaces."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--pipeline",
    default=None,
    help="Pipeline file path (.py/.yaml; defaults to stageci_pipeline.py or pipeline.yaml if present)",
)
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Max stages running at once")
@click.option("--repo", default=None, help="Repository URL for checkout stages (overrides the pipeline)")
@click.option("--branch", default=None, help="Branch/ref for checkout stages (overrides the pipeline)")
@click.option("--workspace-root", default=None, type=click.Path(file_okay=False), help="Where run workspaces are created")
@click.option("--artifacts-dir", default=None, type=click.Path(file_okay=False), help="Copy pipeline artifacts here")
@click.option("--report-json", default=None, type=click.Path(dir_okay=False), help="Write the run report as JSON")
@click.option("--quiet-output", is_flag=True, default=False, help="Do not echo stage output lines")
@click.pass_context
def run(ctx, pipeline, workers, repo, branch, workspace_root, artifacts_dir, report_json, quiet_output):
    """Run a pipeline."""
    console = get_console()
    console.show_output = not quiet_output

    spec = _load_or_exit(pipeline, ctx)
    spec = _resolve_source(spec, repo, branch)
    if workers is not None:
        spec = dataclasses.replace(spec, max_concurrency=workers)

    cancel = CancelToken()

    def _on_signal(signum, frame):
        console.print_info(f"\nReceived signal {signum}, cancelling run...")
        cancel.cancel(f"cancelled by signal {signum}")

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        report = PipelineRun(
            spec,
            listener=console,
            cancel=cancel,
            workspace_root=workspace_root,
            artifacts_dir=artifacts_dir,
        ).execute()
    except (ConfigError, GraphError) as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_FAILED)
    except WorkspaceError as e:
        console.print_error("Workspace error", str(e))
        sys.exit(EXIT_FAILED)
    except CIError as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if report_json:
        Path(report_json).write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
        console.print_debug(f"Report written to {report_json}")

    if report.status is RunStatus.CANCELLED:
        sys.exit(EXIT_CANCELLED)
    if report.status is RunStatus.FAILED:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file path (.py/.yaml)")
@click.pass_context
def plan(ctx, pipeline):
    """Validate a pipeline and print its execution levels."""
    console = get_console()
    spec = _load_or_exit(pipeline, ctx)
    spec = _resolve_source(spec, None, None)
    try:
        levels = validate_pipeline(spec)
    except (ConfigError, GraphError) as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_FAILED)
    console.print_plan(spec.name, levels)


if __name__ == "__main__":
    cli()
