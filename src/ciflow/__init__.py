from .dag import build_graph, JobGraph
from .runner import run_pipeline, load_workflow
from .model import JobSpec, StepSpec, WorkflowDefinition, PipelineResult, JobState, PipelineStatus
from .dsl import job, sh, uses, cache, action, license_gate, matrix, wf, on_push, on_pull_request, JobBuilder, build

__all__ = [
    "job", "sh", "uses", "cache", "action", "license_gate", "matrix", "wf", "on_push", "on_pull_request",
    "JobBuilder", "build", "build_graph", "JobGraph", "run_pipeline", "load_workflow",
    "JobSpec", "StepSpec", "WorkflowDefinition", "PipelineResult", "JobState", "PipelineStatus",
]
