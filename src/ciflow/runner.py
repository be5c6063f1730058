# runner.py
from __future__ import annotations

import runpy
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from . import settings
from .cache import CacheProvider
from .dag import JobGraph
from .errors import CIError, ConfigError
from .executor import CancelToken
from .licenses import run_license_gate
from .model import (
    Event,
    JobRun,
    JobSpec,
    JobState,
    PipelineResult,
    PipelineStatus,
    ResourceLimits,
    WorkflowDefinition,
)
from .steps import StepContext, run_steps
from .ui.console import Console, get_console
from .workspace import ARTIFACTS_DIR, ArtifactStore, LocalCheckout

# job failure reasons
STEP_FAILED = "step_failed"
RESOURCE_EXCEEDED = "resource_exceeded"
LICENSE_VIOLATION = "license_violation"
UPSTREAM_FAILED = "upstream_failed"
CANCELLED = "cancelled"
FAIL_FAST = "fail_fast"
ERROR = "error"

WAIT_INTERVAL = 0.1


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> WorkflowDefinition:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> WorkflowDefinition
      - WORKFLOW = WorkflowDefinition(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"ciflow_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

        definition = None
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            definition = globals_dict["workflow"]()
        elif "WORKFLOW" in globals_dict:
            definition = globals_dict["WORKFLOW"]
    except CIError:
        raise
    except Exception as e:
        raise ConfigError(f"Failed to load workflow {wf_path.name}: {type(e).__name__}: {e}") from e

    if not isinstance(definition, WorkflowDefinition):
        raise ConfigError(
            "Workflow must return/define a WorkflowDefinition. "
            "Define workflow() -> WorkflowDefinition or WORKFLOW = workflow(...)."
        )
    return definition


# ----------------------------------------------------------------------
# Checkout
# ----------------------------------------------------------------------

class CheckoutProvider(Protocol):
    def prepare(self, job: JobSpec, event: Optional[Event], default: Path) -> Path:
        ...


# ----------------------------------------------------------------------
# Job execution
# ----------------------------------------------------------------------

class _JobExecution:
    """Runs one JobRun to a terminal state. Owns the run while it is Running."""

    def __init__(
        self,
        run: JobRun,
        graph: JobGraph,
        *,
        workspace: Path,
        limits: ResourceLimits,
        cache: Optional[CacheProvider],
        event: Optional[Event],
        checkout: CheckoutProvider,
        artifacts: ArtifactStore,
        cancel: CancelToken,
        console: Console,
    ):
        self.run = run
        self.graph = graph
        self.workspace = workspace
        self.limits = limits.merged(run.job.limits)
        self.cache = cache
        self.event = event
        self.checkout = checkout
        self.artifacts = artifacts
        self.cancel = cancel
        self.console = console

    def emit(self, line: str) -> None:
        self.run.log.append(line)
        self.console.print_job_line(line)

    def __call__(self) -> JobRun:
        run, job = self.run, self.run.job
        self.emit(f"[{job.name}] start")
        try:
            workspace = self.checkout.prepare(job, self.event, self.workspace)
            self.emit(f"[{job.name}] workspace: {workspace}")
            if job.gate is not None:
                self._run_gate(workspace)
            else:
                self._run_steps(workspace)
        except Exception as e:
            run.state = JobState.FAILED
            run.reason = ERROR
            self.emit(f"[{job.name}] error: {e}")
        finally:
            run.ended_at = time.monotonic()
            self.emit(f"[{job.name}] end: {run.state.value}")
        return run

    def _run_steps(self, workspace: Path) -> None:
        run, job = self.run, self.run.job
        consumed = [a for s in job.steps for a in s.consumes]
        for name in self.artifacts.fetch(workspace, consumed):
            self.emit(f"[{job.name}] artifact: {name} was not published upstream")
        ctx = StepContext(
            job=job.name,
            workflow=self.graph.workflow,
            workspace=workspace,
            environment=job.environment,
            limits=self.limits,
            cache=self.cache,
            cancel=self.cancel,
            emit=self.emit,
            deadline=time.monotonic() + self.limits.timeout if self.limits.timeout else None,
        )
        result = run_steps(job.steps, ctx)
        run.step_results = result.steps

        if result.ok:
            produced = [a for s in job.steps for a in s.produces]
            for name in self.artifacts.publish(workspace, produced):
                self.emit(f"[{job.name}] artifact: {name} not found in workspace")
            run.state = JobState.SUCCEEDED
            run.exit_code = 0
            return

        run.exit_code = result.error.returncode if result.error else None
        if result.cancelled:
            run.state = JobState.CANCELLED
            run.reason = CANCELLED
        else:
            run.state = JobState.FAILED
            run.reason = RESOURCE_EXCEEDED if result.resource_exceeded else STEP_FAILED
            if result.error is not None and result.error.output:
                for line in result.error.output.splitlines()[-20:]:
                    self.emit(f"[{job.name}] | {line}")

    def _run_gate(self, workspace: Path) -> None:
        run, job = self.run, self.run.job
        outcome = run_license_gate(
            job.gate,
            workspace,
            workflow=self.graph.workflow,
            environment=job.environment,
            cache=self.cache,
        )
        for line in outcome.log:
            self.emit(f"[{job.name}] {line}")

        result = outcome.result
        if result.passed:
            run.state = JobState.SUCCEEDED
            run.exit_code = 0
            return

        run.state = JobState.FAILED
        run.reason = LICENSE_VIOLATION
        run.violations = list(result.violations)
        for v in result.violations:
            self.emit(f"[{job.name}] ✗ {v}")


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

def _skip(runs: Dict[str, JobRun], name: str, reason: str, console: Console) -> None:
    run = runs[name]
    if run.state not in (JobState.PENDING, JobState.READY):
        return
    run.state = JobState.SKIPPED
    run.reason = reason
    run.log.append(f"[{name}] skipped: {reason}")
    console.print_job_skipped(name, reason)


def _skip_downstream(graph: JobGraph, runs: Dict[str, JobRun], name: str, console: Console) -> None:
    stack = list(reversed(graph.dependents(name)))
    while stack:
        nxt = stack.pop()
        if runs[nxt].state is JobState.PENDING:
            _skip(runs, nxt, UPSTREAM_FAILED, console)
            stack.extend(reversed(graph.dependents(nxt)))


def run_pipeline(
    graph: JobGraph,
    *,
    concurrency: int | None = None,
    limits: ResourceLimits | None = None,
    cache: CacheProvider | None = None,
    workspace: str | Path = ".",
    work_dir: str | Path | None = None,
    event: Event | None = None,
    checkout: CheckoutProvider | None = None,
    cancel: CancelToken | None = None,
    fail_fast: bool = False,
    console: Console | None = None,
) -> PipelineResult:
    """
    Drive the graph to completion.

    - A job is Ready once every predecessor Succeeded.
    - Ready jobs are admitted in declaration order, never more than
      `concurrency` Running at once.
    - A failed/skipped/cancelled predecessor skips all its dependents;
      unrelated branches keep going (unless fail_fast).
    - Cancellation skips Pending/Ready jobs and stops Running ones.

    Each job runs in its own workspace under `work_dir` (default
    <workspace>/.ciflow/work); declared artifacts are handed from
    producer to consumer through a store there.
    """
    console = console or get_console()
    concurrency = max(1, concurrency or settings.CONCURRENCY)
    limits = limits or ResourceLimits()
    cancel = cancel or CancelToken(settings.GRACE_PERIOD)
    workspace_p = Path(workspace).resolve()
    work_dir_p = Path(workspace_p, work_dir or settings.WORK_DIR).resolve()
    checkout = checkout or LocalCheckout(work_dir_p)
    artifacts = ArtifactStore(work_dir_p / ARTIFACTS_DIR)
    position = {n: i for i, n in enumerate(graph.order)}

    runs: Dict[str, JobRun] = {n: JobRun(job=graph.jobs[n]) for n in graph.order}
    waiting_on = {n: set(graph.upstream[n]) for n in graph.order}
    ready: List[str] = []

    def make_ready(name: str) -> None:
        runs[name].state = JobState.READY
        ready.append(name)
        ready.sort(key=position.__getitem__)

    for name in graph.roots():
        make_ready(name)

    in_flight: Dict[Future, str] = {}
    stopped: str | None = None

    def stop_admitting(reason: str) -> None:
        nonlocal stopped
        if stopped is not None:
            return
        stopped = reason
        for n in graph.order:
            _skip(runs, n, reason, console)
        ready.clear()

    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="ciflow-job") as pool:
        while ready or in_flight:
            if cancel.is_set():
                stop_admitting(CANCELLED)

            # admit ready jobs up to the budget
            while ready and len(in_flight) < concurrency and stopped is None:
                name = ready.pop(0)
                run = runs[name]
                run.state = JobState.RUNNING
                run.started_at = time.monotonic()
                console.print_job_start(name)
                execution = _JobExecution(
                    run,
                    graph,
                    workspace=workspace_p,
                    limits=limits,
                    cache=cache,
                    event=event,
                    checkout=checkout,
                    artifacts=artifacts,
                    cancel=cancel,
                    console=console,
                )
                in_flight[pool.submit(execution)] = name

            if not in_flight:
                break

            done, _ = wait(list(in_flight), timeout=WAIT_INTERVAL, return_when=FIRST_COMPLETED)

            for fut in sorted(done, key=lambda f: position[in_flight[f]]):
                name = in_flight.pop(fut)
                run = fut.result()
                console.print_job_end(run)

                if run.state is JobState.SUCCEEDED:
                    for nxt in graph.dependents(name):
                        waiting_on[nxt].discard(name)
                        if not waiting_on[nxt] and runs[nxt].state is JobState.PENDING:
                            make_ready(nxt)
                else:
                    _skip_downstream(graph, runs, name, console)
                    if fail_fast and run.state is JobState.FAILED:
                        stop_admitting(FAIL_FAST)

    # acyclic graphs never leave anything pending; guard anyway
    for name in graph.order:
        if not runs[name].state.terminal:
            _skip(runs, name, UPSTREAM_FAILED, console)

    if cancel.is_set():
        status = PipelineStatus.CANCELLED
    elif all(r.state is JobState.SUCCEEDED for r in runs.values() if r.state is not JobState.SKIPPED):
        status = PipelineStatus.SUCCESS
    else:
        status = PipelineStatus.FAILURE

    return PipelineResult(status=status, runs=runs)
