# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Set, Tuple

from .actions import expand_step
from .errors import ConfigError, CyclicDependency
from .model import JobSpec, WorkflowDefinition


@dataclass(frozen=True)
class JobGraph:
    """
    Nodes are JobSpecs; an edge A -> B means B waits for A.

    `order` is declaration order and is the tie-break for everything
    that iterates the graph.
    """
    workflow: str
    jobs: Dict[str, JobSpec]
    order: Tuple[str, ...]
    edges: Dict[str, Set[str]]      # upstream -> dependents
    upstream: Dict[str, Set[str]]   # job -> predecessors

    def roots(self) -> List[str]:
        return [n for n in self.order if not self.upstream[n]]

    def dependents(self, name: str) -> List[str]:
        return [n for n in self.order if n in self.edges[name]]

    def levels(self) -> List[List[str]]:
        """
        Convert DAG into topological "levels" (stages).
        Each stage can run in parallel.
        """
        return _kahn_levels(self.order, self.edges, self.upstream)


def _artifact_producers(jobs: List[JobSpec]) -> Dict[str, str]:
    producers: Dict[str, str] = {}
    for job in jobs:
        for step in job.steps:
            for artifact in step.produces:
                owner = producers.get(artifact)
                if owner is not None and owner != job.name:
                    raise ConfigError(
                        f"artifact '{artifact}' is produced by both '{owner}' and '{job.name}'",
                        job=job.name,
                    )
                producers[artifact] = job.name
    return producers


def _kahn_levels(
    order: Tuple[str, ...],
    edges: Dict[str, Set[str]],
    upstream: Dict[str, Set[str]],
) -> List[List[str]]:
    position = {n: i for i, n in enumerate(order)}
    indeg = {n: len(upstream[n]) for n in order}
    q = deque(n for n in order if indeg[n] == 0)

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(edges[node], key=position.__getitem__):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(order):
        remaining = [n for n in order if indeg[n] > 0]
        raise CyclicDependency(remaining)

    return levels


def build_graph(workflow: WorkflowDefinition) -> JobGraph:
    """
    Build a JobGraph from a workflow definition.

    Edges are the union of:
      - explicit `needs` (names of jobs that must run BEFORE this job)
      - implicit edges from steps consuming an artifact another job produces

    Raises ConfigError for unknown references and CyclicDependency
    (naming the stuck jobs) before anything is scheduled.
    """
    jobs = list(workflow.jobs.values())
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(f"Duplicate job names found: {dupes}")
    for key, job in workflow.jobs.items():
        if key != job.name:
            raise ConfigError(f"job registered as '{key}' is named '{job.name}'", job=job.name)
        if not job.steps and job.gate is None:
            raise ConfigError(f"Job '{job.name}' has no steps", job=job.name)
        if job.steps and job.gate is not None:
            raise ConfigError(f"license gate job '{job.name}' cannot have steps", job=job.name)
        for step in job.steps:
            expand_step(step)

    name_set = set(names)
    edges: Dict[str, Set[str]] = {n: set() for n in names}
    upstream: Dict[str, Set[str]] = {n: set() for n in names}

    def add_edge(before: str, after: str) -> None:
        edges[before].add(after)
        upstream[after].add(before)

    for job in jobs:
        for need in sorted(job.needs):
            if need not in name_set:
                raise ConfigError(
                    f"Job '{job.name}' needs missing job '{need}'. Known jobs: {sorted(name_set)}",
                    job=job.name,
                )
            if need == job.name:
                raise CyclicDependency([job.name])
            add_edge(need, job.name)

    producers = _artifact_producers(jobs)
    for job in jobs:
        for step in job.steps:
            for artifact in step.consumes:
                owner = producers.get(artifact)
                if owner is None:
                    raise ConfigError(
                        f"step '{step.name}' consumes unknown artifact '{artifact}'",
                        job=job.name,
                    )
                if owner != job.name:
                    add_edge(owner, job.name)

    order = tuple(names)
    _kahn_levels(order, edges, upstream)

    return JobGraph(
        workflow=workflow.name,
        jobs={j.name: j for j in jobs},
        order=order,
        edges=edges,
        upstream=upstream,
    )
