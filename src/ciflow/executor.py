# executor.py
"""
Subprocess execution under explicit environment and resource limits.

This is the only place that starts processes for job steps. The caller
passes the full environment; nothing is inherited from the host beyond
what `Environment.materialize()` chose to copy.
"""
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

try:
    import resource
except ImportError:  # not available on Windows
    resource = None

from .model import ResourceLimits

POLL_INTERVAL = 0.05
OUTPUT_TAIL = 4000


class CancelToken:
    """Pipeline-wide cancellation flag with a bounded grace period."""

    def __init__(self, grace_period: float = 10.0):
        self.grace_period = grace_period
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str
    duration: float
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    @property
    def resource_exceeded(self) -> bool:
        # a process over its lockable-memory cap sees mlock() fail with
        # ENOMEM; that surfaces as an ordinary non-zero exit
        return self.timed_out

    def output_tail(self, n: int = OUTPUT_TAIL) -> str:
        out = self.stdout[-n:]
        if self.stderr:
            out = f"{out}\n{self.stderr[-n:]}" if out else self.stderr[-n:]
        return out


def _apply_limits(limits: ResourceLimits) -> Optional[Callable[[], None]]:
    if resource is None or limits.max_locked_pages is None:
        return None

    nbytes = int(limits.max_locked_pages) * resource.getpagesize()

    def preexec() -> None:
        _soft, hard = resource.getrlimit(resource.RLIMIT_MEMLOCK)
        cap = nbytes if hard == resource.RLIM_INFINITY else min(nbytes, hard)
        resource.setrlimit(resource.RLIMIT_MEMLOCK, (cap, cap))

    return preexec


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def _stop(proc: subprocess.Popen, grace: float) -> tuple[str, str]:
    _signal_group(proc, signal.SIGTERM)
    try:
        return proc.communicate(timeout=grace)
    except subprocess.TimeoutExpired:
        _signal_group(proc, signal.SIGKILL)
        return proc.communicate()


def execute(
    command: str,
    env: Dict[str, str],
    cwd: str | Path,
    limits: ResourceLimits | None = None,
    cancel: CancelToken | None = None,
) -> ExecResult:
    """
    Run `command` in a shell and wait for it.

    - limits.timeout: wall clock cap; the process group is terminated
    - limits.max_locked_pages: RLIMIT_MEMLOCK in the child (like `ulimit -l`)
    - cancel: when set, SIGTERM then SIGKILL after the grace period
    """
    limits = limits or ResourceLimits()
    cwd_p = Path(cwd)
    if not cwd_p.is_dir():
        raise FileNotFoundError(f"working directory not found: {cwd_p}")

    start = time.monotonic()
    deadline = start + limits.timeout if limits.timeout else None
    grace = cancel.grace_period if cancel is not None else 5.0

    proc = subprocess.Popen(
        command,
        shell=True,
        cwd=str(cwd_p),
        env=dict(env),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        start_new_session=True,  # own process group, so we can stop the whole tree
        preexec_fn=_apply_limits(limits),
    )

    timed_out = False
    cancelled = False
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                cancelled = True
                stdout, stderr = _stop(proc, grace)
                break
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                stdout, stderr = _stop(proc, grace)
                break

    return ExecResult(
        exit_code=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        duration=time.monotonic() - start,
        timed_out=timed_out,
        cancelled=cancelled,
    )
