# model.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


class PullRequestAction(str, Enum):
    OPENED = "opened"
    SYNCHRONIZE = "synchronize"
    REOPENED = "reopened"
    EDITED = "edited"
    CLOSED = "closed"


class CheckoutSource(str, Enum):
    """Which revision a job's workspace is prepared from."""
    BASE = "base"
    HEAD = "head"


class JobState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED, JobState.CANCELLED)


class PipelineStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


DEFAULT_PR_ACTIONS = frozenset({PullRequestAction.OPENED, PullRequestAction.SYNCHRONIZE})


@dataclass(frozen=True)
class TriggerRule:
    """Activation rule: event kind + branch globs (+ PR actions)."""
    event: EventKind
    branches: FrozenSet[str]
    actions: FrozenSet[PullRequestAction] = DEFAULT_PR_ACTIONS


@dataclass(frozen=True)
class Environment:
    """
    Explicit execution environment handed to every subprocess.

    Only `passthrough` names are read from the host; nothing else leaks in.
    """
    runs_on: str = "ubuntu-latest"
    variables: Mapping[str, str] = field(default_factory=dict)
    passthrough: Tuple[str, ...] = ("PATH", "HOME", "LANG")

    def materialize(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        env = {k: os.environ[k] for k in self.passthrough if k in os.environ}
        env.update(self.variables)
        if extra:
            env.update(extra)
        return env

    def fingerprint(self) -> dict:
        # host passthrough values are deliberately excluded from cache keys
        return {
            "runs_on": self.runs_on,
            "variables": dict(sorted(self.variables.items())),
            "passthrough": list(self.passthrough),
        }


@dataclass(frozen=True)
class ResourceLimits:
    max_locked_pages: Optional[int] = None  # like `ulimit -l`, in pages
    parallelism: Optional[int] = None       # exported as CIFLOW_PARALLELISM
    timeout: Optional[float] = None         # wall clock seconds

    def merged(self, override: Optional["ResourceLimits"]) -> "ResourceLimits":
        if override is None:
            return self
        return ResourceLimits(
            max_locked_pages=override.max_locked_pages if override.max_locked_pages is not None else self.max_locked_pages,
            parallelism=override.parallelism if override.parallelism is not None else self.parallelism,
            timeout=override.timeout if override.timeout is not None else self.timeout,
        )


@dataclass(frozen=True)
class CacheSpec:
    inputs: Tuple[str, ...] = ()        # hashed into the key
    paths: Tuple[str, ...] = ()         # saved / restored
    restore_keys: Tuple[str, ...] = ()  # prefixes for partial restore
    restore: bool = True
    save: bool = True


@dataclass(frozen=True)
class StepSpec:
    """A single command (or action reference) inside a CI job."""
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    produces: Tuple[str, ...] = ()
    consumes: Tuple[str, ...] = ()
    cache: Optional[CacheSpec] = None


@dataclass(frozen=True)
class LicenseGateSpec:
    manifest: str
    allow: FrozenSet[str]
    resolver: str = "json"


@dataclass(frozen=True)
class JobSpec:
    name: str
    steps: Tuple[StepSpec, ...] = ()
    environment: Environment = field(default_factory=Environment)
    needs: FrozenSet[str] = frozenset()
    limits: Optional[ResourceLimits] = None
    checkout: CheckoutSource = CheckoutSource.BASE
    gate: Optional[LicenseGateSpec] = None


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    triggers: Tuple[TriggerRule, ...]
    jobs: Mapping[str, JobSpec]


@dataclass(frozen=True)
class Event:
    kind: EventKind
    branch: str
    action: Optional[PullRequestAction] = None
    head_repo: Optional[str] = None
    head_sha: Optional[str] = None


@dataclass(frozen=True)
class DependencyRecord:
    name: str
    version: str
    licenses: Tuple[str, ...] = ()
    source: Optional[str] = None

    @property
    def ident(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass
class JobRun:
    """Runtime instance of a JobSpec for one event."""
    job: JobSpec
    state: JobState = JobState.PENDING
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    log: List[str] = field(default_factory=list)
    step_results: list = field(default_factory=list)
    violations: list = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at


@dataclass
class PipelineResult:
    status: PipelineStatus
    runs: Dict[str, JobRun]

    @property
    def failed(self) -> List[str]:
        return [n for n, r in self.runs.items() if r.state is JobState.FAILED]

    @property
    def skipped(self) -> List[str]:
        return [n for n, r in self.runs.items() if r.state is JobState.SKIPPED]

    @property
    def cancelled(self) -> List[str]:
        return [n for n, r in self.runs.items() if r.state is JobState.CANCELLED]

    @property
    def violations(self) -> list:
        out = []
        for r in self.runs.values():
            out.extend(r.violations)
        return out
