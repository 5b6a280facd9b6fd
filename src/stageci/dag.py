# dag.py
from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Sequence, Tuple

from .context import RunContext
from .errors import CancelledError, GraphError
from .model import StageResult, StageSpec, StageStatus

StageRunner = Callable[[StageSpec, RunContext, StageResult], StageStatus]


def build_dag(stages: Sequence[StageSpec]) -> Tuple[Dict[str, List[str]], Dict[str, int]]:
    """
    Build a DAG from StageSpec objects.

    Requires:
      - stage.name: str (unique)
      - stage.needs: iterable[str] (names of stages that must finish BEFORE this one)

    Returns (adj, indeg): adj maps a stage to its dependents in declaration
    order, indeg counts each stage's distinct dependencies.
    """
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise GraphError("duplicate stage", f"Duplicate stage names found: {dupes}", dupes)

    name_set = set(names)
    adj: Dict[str, List[str]] = {n: [] for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for stage in stages:
        for dep in stage.needs:
            if dep == stage.name:
                raise GraphError("cycle", f"Stage '{stage.name}' depends on itself", [stage.name])
            if dep not in name_set:
                raise GraphError(
                    "missing dependency",
                    f"Stage '{stage.name}' needs missing stage '{dep}'. "
                    f"Known stages: {sorted(name_set)}",
                    [stage.name, dep],
                )
            # edge dep -> stage.name (dep must run before stage)
            if stage.name not in adj[dep]:
                adj[dep].append(stage.name)
                indeg[stage.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, List[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (Kahn's algorithm).
    Stages inside one level have no ordering constraint between them.
    Ties keep declaration order (dict order of `indeg`).
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque([n for n, d in indeg.items() if d == 0])

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in adj.get(node, []):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = [n for n, d in indeg.items() if d > 0]
        raise GraphError("cycle", f"Stage graph has a cycle. Stuck stages: {remaining}", remaining)

    return levels


def validate_graph(stages: Sequence[StageSpec]) -> List[List[str]]:
    """Full load-time check; returns the topological levels."""
    adj, indeg = build_dag(stages)
    return topo_levels(adj, indeg)


class DagScheduler:
    """
    Runs a validated stage graph on a bounded thread pool.

    - A stage is submitted once every dependency has SUCCEEDED.
    - A FAILED or CANCELLED stage turns its transitive, still-pending
      dependents into SKIPPED.
    - On run cancellation nothing new is submitted, in-flight stages are
      stopped through the token, and every stage that never started ends
      CANCELLED.

    Results live in an arena keyed by stage name, mutated under `_lock`.
    """

    def __init__(self, stages: Sequence[StageSpec], max_concurrency: int = 4):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.stages = list(stages)
        self.max_concurrency = max_concurrency
        self.by_name: Dict[str, StageSpec] = {s.name: s for s in self.stages}
        self.adj, self.indeg = build_dag(self.stages)
        topo_levels(self.adj, self.indeg)

        self.results: Dict[str, StageResult] = {s.name: StageResult(s.name) for s in self.stages}
        self.completed: List[StageResult] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------

    def _finish(self, ctx: RunContext, name: str, status: StageStatus, error: str | None = None) -> None:
        with self._lock:
            result = self.results[name]
            result.finish(status, error=error)
            self.completed.append(result)
        ctx.listener.on_stage_finished(result)

    def _skip_dependents(self, ctx: RunContext, name: str) -> None:
        q = deque(self.adj[name])
        while q:
            child = q.popleft()
            if self.results[child].status is not StageStatus.PENDING:
                continue
            self._finish(ctx, child, StageStatus.SKIPPED, error=f"dependency '{name}' did not succeed")
            q.extend(self.adj[child])

    def _execute(self, run_stage: StageRunner, ctx: RunContext, name: str) -> Tuple[StageStatus, str | None]:
        result = self.results[name]
        try:
            status = run_stage(self.by_name[name], ctx, result)
        except CancelledError as e:
            return StageStatus.CANCELLED, e.message
        except Exception as e:
            return StageStatus.FAILED, str(e)
        return status, result.error if status is StageStatus.FAILED else None

    # ------------------------------------------------------------------

    def run(self, run_stage: StageRunner, ctx: RunContext) -> List[StageResult]:
        """
        Drive every stage to a terminal status. Returns results in
        completion order (every declared stage appears exactly once).
        """
        remaining = dict(self.indeg)
        ready = deque(n for n in self.by_name if remaining[n] == 0)
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="stage") as pool:
            while ready or in_flight:
                # schedule what is ready, never more than the limit in flight
                while ready and len(in_flight) < self.max_concurrency and not ctx.cancel.cancelled:
                    name = ready.popleft()
                    if self.results[name].status is not StageStatus.PENDING:
                        continue
                    with self._lock:
                        self.results[name].start()
                    in_flight[pool.submit(self._execute, run_stage, ctx, name)] = name

                if not in_flight:
                    break

                # wait for at least one completion, then loop to schedule newly-ready stages
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    status, error = fut.result()
                    self._finish(ctx, name, status, error)

                    if status is StageStatus.SUCCEEDED:
                        for child in self.adj[name]:
                            remaining[child] -= 1
                            if remaining[child] == 0:
                                ready.append(child)
                    elif not ctx.cancel.cancelled:
                        self._skip_dependents(ctx, name)

        if ctx.cancel.cancelled:
            reason = ctx.cancel.reason or "run cancelled"
            for name in self.by_name:
                if self.results[name].status is StageStatus.PENDING:
                    self._finish(ctx, name, StageStatus.CANCELLED, error=reason)

        return list(self.completed)
