# steps.py
from __future__ import annotations

import json
import os
import tarfile
import time
import zlib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .actions import expand_step
from .cache import CacheProvider, compute_cache_key, pack_paths, unpack_artifact
from .errors import ResourceExceeded, StepFailure
from .executor import CancelToken, ExecResult, execute
from .model import CacheSpec, Environment, ResourceLimits, StepSpec

# step statuses
OK = "ok"
CACHE_HIT = "cache_hit"
FAILED = "failed"
NOT_RUN = "not_run"


@dataclass
class StepResult:
    name: str
    status: str
    exit_code: Optional[int] = None
    output: str = ""
    cache_key: Optional[str] = None
    restored_from: Optional[str] = None


@dataclass
class StepRunResult:
    """
    Outcome of one job's step sequence.

    `failed_index` is the position of the failing declared step.
    """
    steps: List[StepResult] = field(default_factory=list)
    failed_index: Optional[int] = None
    error: Optional[StepFailure] = None

    @property
    def ok(self) -> bool:
        return self.failed_index is None

    @property
    def resource_exceeded(self) -> bool:
        return isinstance(self.error, ResourceExceeded)

    @property
    def cancelled(self) -> bool:
        return self.error is not None and self.error.kind == "cancelled"


@dataclass
class StepContext:
    """Everything a job's steps need; owned by exactly one JobRun."""
    job: str
    workflow: str
    workspace: Path
    environment: Environment
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    cache: Optional[CacheProvider] = None
    cancel: Optional[CancelToken] = None
    emit: Callable[[str], None] = lambda line: None
    deadline: Optional[float] = None  # time.monotonic() value the whole job must finish by


def _step_env(ctx: StepContext) -> dict:
    parallelism = ctx.limits.parallelism or os.cpu_count() or 1
    return ctx.environment.materialize({"CIFLOW_PARALLELISM": str(parallelism), "CI": "true"})


def _remaining_limits(ctx: StepContext, label: str, index: int) -> ResourceLimits:
    """Cap the command's timeout at what is left of the job's budget."""
    if ctx.deadline is None:
        return ctx.limits
    remaining = ctx.deadline - time.monotonic()
    if remaining <= 0:
        raise ResourceExceeded(
            kind="resource_exceeded", message=f"job timeout of {ctx.limits.timeout}s used up",
            job=ctx.job, step=label, index=index,
        )
    return replace(ctx.limits, timeout=remaining)


def _run_command(ctx: StepContext, step: StepSpec, label: str, command: str, index: int) -> ExecResult:
    cwd = (ctx.workspace / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise StepFailure(kind="step_failed", message=f"cwd not found: {cwd}", job=ctx.job, step=label, index=index)

    limits = _remaining_limits(ctx, label, index)
    res = execute(command, _step_env(ctx), cwd, limits, ctx.cancel)

    if res.cancelled:
        raise StepFailure(
            kind="cancelled", message="cancelled", job=ctx.job, step=label,
            returncode=res.exit_code, output=res.output_tail(), index=index,
        )
    if res.resource_exceeded:
        raise ResourceExceeded(
            kind="resource_exceeded", message=f"timeout after {ctx.limits.timeout}s", job=ctx.job, step=label,
            returncode=res.exit_code, output=res.output_tail(), index=index,
        )
    if res.exit_code != 0:
        raise StepFailure(
            kind="step_failed", message=command, job=ctx.job, step=label,
            returncode=res.exit_code, output=res.output_tail(), index=index,
        )
    return res


_UNPACK_ERRORS = (tarfile.TarError, zlib.error, OSError, EOFError, json.JSONDecodeError)


def _unpack(ctx: StepContext, key: str, data: bytes) -> bool:
    """A damaged entry is reported and treated as a miss."""
    try:
        unpack_artifact(data, ctx.workspace)
    except _UNPACK_ERRORS as e:
        ctx.emit(f"[{ctx.job}] cache: WARNING restore of {key} failed ({e}); treating as miss")
        return False
    return True


def _restore(ctx: StepContext, cache: CacheProvider, spec: CacheSpec, step_name: str, key: str) -> Optional[StepResult]:
    """Exact hit short-circuits; a restore-keys hit only seeds the workspace."""
    hit = cache.lookup(key)
    if hit is not None and _unpack(ctx, key, hit.data):
        ctx.emit(f"[{ctx.job}] cache: hit ({key[-12:]})")
        return StepResult(name=step_name, status=CACHE_HIT, cache_key=key, restored_from=key)

    partial = cache.fallback(spec.restore_keys) if spec.restore_keys else None
    if partial is not None and _unpack(ctx, partial.key, partial.data):
        ctx.emit(f"[{ctx.job}] cache: partial restore from {partial.key}")
        return StepResult(name=step_name, status=OK, cache_key=key, restored_from=partial.key)

    ctx.emit(f"[{ctx.job}] cache: miss")
    return None


def _run_one(ctx: StepContext, step: StepSpec, index: int) -> StepResult:
    key = manifest = None
    seeded: Optional[StepResult] = None

    if ctx.cache is not None and step.cache is not None:
        key, manifest = compute_cache_key(
            ctx.workflow, ctx.environment, step.name, step.cache.inputs, root=ctx.workspace,
        )
        if step.cache.restore:
            seeded = _restore(ctx, ctx.cache, step.cache, step.name, key)
            if seeded is not None and seeded.status == CACHE_HIT:
                return seeded

    outputs = []
    last: Optional[ExecResult] = None
    for label, command in expand_step(step):
        ctx.emit(f"[{ctx.job}] ▶ {label}")
        last = _run_command(ctx, step, label, command, index)
        outputs.append(last.output_tail())

    result = StepResult(
        name=step.name,
        status=OK,
        exit_code=last.exit_code if last is not None else 0,
        output="\n".join(o for o in outputs if o),
        cache_key=key,
        restored_from=seeded.restored_from if seeded else None,
    )

    if ctx.cache is not None and step.cache is not None and step.cache.save and key is not None:
        outcome = ctx.cache.store(key, pack_paths(ctx.workspace, step.cache.paths, manifest or {}))
        if outcome.conflict:
            ctx.emit(f"[{ctx.job}] cache: WARNING key {key} overwritten with different content")
        elif not outcome.unchanged:
            ctx.emit(f"[{ctx.job}] cache: saved ({key[-12:]})")

    return result


def run_steps(steps: Sequence[StepSpec], ctx: StepContext) -> StepRunResult:
    """
    Execute steps strictly in order. The first failing step aborts the
    rest; they are reported as not_run. `limits.timeout` bounds the whole
    sequence, not each command.
    """
    if ctx.deadline is None and ctx.limits.timeout:
        # one wall clock budget for the whole job
        ctx.deadline = time.monotonic() + ctx.limits.timeout
    out = StepRunResult()
    for index, step in enumerate(steps):
        if out.failed_index is not None:
            out.steps.append(StepResult(name=step.name, status=NOT_RUN))
            continue
        try:
            if ctx.cancel is not None and ctx.cancel.is_set():
                raise StepFailure(kind="cancelled", message="cancelled", job=ctx.job, step=step.name, index=index)
            result = _run_one(ctx, step, index)
        except StepFailure as e:
            e.index = index
            out.failed_index = index
            out.error = e
            out.steps.append(StepResult(name=step.name, status=FAILED, exit_code=e.returncode, output=e.output))
            ctx.emit(f"[{ctx.job}] ✗ {step.name}: {e}")
            continue
        out.steps.append(result)
        ctx.emit(f"[{ctx.job}] ✓ {step.name} ({result.status})")
    return out
