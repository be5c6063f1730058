"""Console output formatting utilities for ciflow."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, List, Optional

from ..model import JobRun, JobState, PipelineResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where normal output goes (defaults to stdout at print time)
        """
        self.debug = debug
        self.stream = stream
        # jobs report from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        target = sys.stderr if err else (self.stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=target)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, workflow: str, event: str, job_count: int, concurrency: int) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Event: {event}",
            f"Jobs: {job_count}",
            f"Concurrency: {concurrency}",
            "",
        )

    def print_not_triggered(self, workflow: str, event: str) -> None:
        self._out(f"Workflow '{workflow}' is not triggered by {event}; nothing to run.")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"JOB STARTED: {name}")

    def print_job_line(self, line: str) -> None:
        self._out(line)

    def print_job_end(self, run: JobRun) -> None:
        duration = f" in {run.duration:.1f}s" if run.duration is not None else ""
        reason = f" ({run.reason})" if run.reason else ""
        self._out(f"JOB {run.state.value.upper()}: {run.name}{reason}{duration}")
        if run.state is JobState.FAILED and self.debug:
            for line in run.log:
                self._out(f"  | {line}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_graph(self, workflow: str, levels: List[List[str]]) -> None:
        self.print_header(f"Workflow: {workflow}")
        for i, level in enumerate(levels, start=1):
            self._out(f"  Stage {i}: {', '.join(level)}")

    def print_violations(self, violations: Iterable) -> None:
        violations = list(violations)
        if not violations:
            return
        self._out("\nLICENSE VIOLATIONS", err=True)
        for v in violations:
            self._out(f"  {v}", err=True)

    def print_results(self, result: PipelineResult) -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40, "RESULTS", "=" * 40)
        for name, run in result.runs.items():
            reason = f" ({run.reason})" if run.reason and run.state is not JobState.SUCCEEDED else ""
            self._out(f"  {name}: {run.state.value.upper()}{reason}")
        self.print_violations(result.violations)
        self._out(f"\nPIPELINE: {result.status.value.upper()}")
        if result.failed:
            self._out(f"Failed: {', '.join(result.failed)}")
        if result.skipped:
            self._out(f"Skipped: {', '.join(result.skipped)}")
        if result.cancelled:
            self._out(f"Cancelled: {', '.join(result.cancelled)}")

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
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
