# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

# Process exit codes, one per failure category.
EXIT_OK = 0
EXIT_JOB_FAILURE = 1
EXIT_CONFIG_ERROR = 3
EXIT_GRAPH_ERROR = 4
EXIT_LICENSE_VIOLATION = 5
EXIT_CANCELLED = 130


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    exit_code = EXIT_JOB_FAILURE

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigError(CIError):
    """Bad trigger rule, malformed job spec, unknown dependency. Fatal."""
    exit_code = EXIT_CONFIG_ERROR

    def __init__(self, message: str, *, job: str | None = None, **details):
        super().__init__(kind="config_error", message=message, job=job, details=details)


class InvalidEvent(ConfigError):
    """Raised before any trigger rule is consulted."""

    def __init__(self, message: str, **details):
        super().__init__(message, **details)
        self.kind = "invalid_event"


class CyclicDependency(CIError):
    exit_code = EXIT_GRAPH_ERROR

    def __init__(self, nodes: List[str]):
        super().__init__(
            kind="cyclic_dependency",
            message=f"job graph has a cycle through: {', '.join(nodes)}",
            details={"nodes": nodes},
        )
        self.nodes = list(nodes)


@dataclass
class StepFailure(CIError):
    returncode: int | None = None
    output: str = ""
    index: int | None = None

    def __str__(self) -> str:
        base = f"[{self.job}] step '{self.step}' failed"
        if self.returncode is not None:
            base += f" (exit={self.returncode})"
        return f"{base}: {self.message}"


class ResourceExceeded(StepFailure):
    """A StepFailure whose cause is a timeout or a resource cap."""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' exceeded resource limits: {self.message}"


class CacheConflictWarning(UserWarning):
    """Same cache key stored twice with different content (last write wins)."""
