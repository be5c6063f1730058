import json
import sys
import threading

import pytest

from ciflow.dag import build_graph
from ciflow.dsl import job, license_gate, sh, wf
from ciflow.errors import ConfigError
from ciflow.executor import CancelToken
from ciflow.git_facts import git as git_facts
from ciflow.git_facts.git import GitCheckout
from ciflow.model import CheckoutSource, Event, EventKind, JobState, PipelineStatus, PullRequestAction
from ciflow.runner import (
    CANCELLED,
    ERROR,
    FAIL_FAST,
    LICENSE_VIOLATION,
    RESOURCE_EXCEEDED,
    STEP_FAILED,
    UPSTREAM_FAILED,
    load_workflow,
    run_pipeline,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")

PR_EVENT = Event(
    kind=EventKind.PULL_REQUEST,
    branch="master",
    action=PullRequestAction.OPENED,
    head_repo="fork/repo",
    head_sha="abc123",
)


def _run(*jobs, **kw):
    return run_pipeline(build_graph(wf("CI", *jobs)), **kw)


def _states(result):
    return {name: run.state for name, run in result.runs.items()}


def test_independent_jobs_share_the_concurrency_budget(workspace, console):
    result = _run(
        job("doc", sh("d", "sleep 0.3")),
        job("build", sh("b", "sleep 0.3")),
        job("test", sh("t", "sleep 0.3")),
        concurrency=2,
        workspace=workspace,
        console=console,
    )
    assert result.status is PipelineStatus.SUCCESS
    assert set(_states(result).values()) == {JobState.SUCCEEDED}

    runs = result.runs
    for run in runs.values():
        overlapping = [r for r in runs.values() if r.started_at <= run.started_at < r.ended_at]
        assert len(overlapping) <= 2

    # declaration order decides who waits
    assert runs["test"].started_at >= min(runs["doc"].ended_at, runs["build"].ended_at)
    assert runs["doc"].started_at <= runs["test"].started_at
    assert runs["build"].started_at <= runs["test"].started_at


def test_dependents_start_after_predecessors_succeed(workspace, console):
    result = _run(
        job("build", sh("b", "echo built > artifact.txt", produces=["artifact.txt"])),
        job("test", sh("t", "grep -q built artifact.txt", consumes=["artifact.txt"])),
        workspace=workspace,
        console=console,
    )
    assert result.status is PipelineStatus.SUCCESS
    assert result.runs["test"].started_at >= result.runs["build"].ended_at


def test_failure_skips_downstream_transitively(workspace, console):
    result = _run(
        job("a", sh("a", "exit 1")),
        job("b", sh("b", "true"), needs=["a"]),
        job("c", sh("c", "true"), needs=["b"]),
        job("d", sh("d", "true")),
        workspace=workspace,
        console=console,
    )
    assert result.status is PipelineStatus.FAILURE
    assert _states(result) == {
        "a": JobState.FAILED,
        "b": JobState.SKIPPED,
        "c": JobState.SKIPPED,
        "d": JobState.SUCCEEDED,
    }
    assert result.runs["a"].reason == STEP_FAILED
    assert result.runs["a"].exit_code == 1
    assert result.runs["c"].reason == UPSTREAM_FAILED
    assert result.failed == ["a"]
    assert result.skipped == ["b", "c"]


def test_fail_fast_stops_admitting(workspace, console):
    result = _run(
        job("a", sh("a", "exit 1")),
        job("b", sh("b", "true")),
        concurrency=1,
        fail_fast=True,
        workspace=workspace,
        console=console,
    )
    assert result.runs["b"].state is JobState.SKIPPED
    assert result.runs["b"].reason == FAIL_FAST


def test_without_fail_fast_unrelated_jobs_continue(workspace, console):
    result = _run(
        job("a", sh("a", "exit 1")),
        job("b", sh("b", "true")),
        concurrency=1,
        workspace=workspace,
        console=console,
    )
    assert result.runs["b"].state is JobState.SUCCEEDED


def test_timeout_fails_with_resource_exceeded(workspace, console):
    result = _run(job("slow", sh("s", "sleep 5"), timeout=0.3), workspace=workspace, console=console)
    assert result.runs["slow"].state is JobState.FAILED
    assert result.runs["slow"].reason == RESOURCE_EXCEEDED


def test_cancellation_stops_running_and_skips_pending(workspace, console):
    cancel = CancelToken(grace_period=1)
    threading.Timer(0.3, cancel.cancel).start()
    result = _run(
        job("slow", sh("s", "sleep 10")),
        job("queued", sh("q", "true")),
        job("after", sh("a", "true"), needs=["slow"]),
        concurrency=1,
        cancel=cancel,
        workspace=workspace,
        console=console,
    )
    assert result.status is PipelineStatus.CANCELLED
    assert result.runs["slow"].state is JobState.CANCELLED
    assert result.runs["slow"].reason == CANCELLED
    assert result.runs["queued"].state is JobState.SKIPPED
    assert result.runs["after"].state is JobState.SKIPPED


def _manifest(path, *packages):
    path.write_text(json.dumps([{"name": n, "version": "1.0", "license": l} for n, l in packages]))


def test_license_gate_fails_only_its_own_branch(workspace, console):
    _manifest(workspace / "deps.json", ("serde", "MIT"), ("readline", "GPL-3.0"))
    result = _run(
        job("build", sh("b", "true")),
        license_gate("licenses", "deps.json", ["MIT", "Apache-2.0"]),
        job("release", sh("r", "true"), needs=["licenses"]),
        workspace=workspace,
        console=console,
    )
    assert result.status is PipelineStatus.FAILURE
    assert result.runs["build"].state is JobState.SUCCEEDED
    gate = result.runs["licenses"]
    assert gate.state is JobState.FAILED
    assert gate.reason == LICENSE_VIOLATION
    assert [v.package for v in gate.violations] == ["readline"]
    assert result.runs["release"].state is JobState.SKIPPED
    assert [v.package for v in result.violations] == ["readline"]


class _HeadCheckout:
    def __init__(self, head):
        self.head = head

    def prepare(self, job, event, default):
        return self.head if job.checkout is CheckoutSource.HEAD else default


def test_license_gate_reads_the_pull_request_head(tmp_path, workspace, console):
    head = tmp_path / "head"
    head.mkdir()
    _manifest(workspace / "deps.json", ("serde", "MIT"))
    _manifest(head / "deps.json", ("serde", "MIT"), ("sneaky", "GPL-3.0"))

    result = _run(
        license_gate("licenses", "deps.json", ["MIT"]),
        workspace=workspace,
        event=PR_EVENT,
        checkout=_HeadCheckout(head),
        console=console,
    )
    assert result.runs["licenses"].state is JobState.FAILED
    assert [v.package for v in result.runs["licenses"].violations] == ["sneaky"]


def test_git_checkout_clones_head_for_head_jobs(tmp_path, workspace, console, monkeypatch):
    calls = []

    def fake_checkout(repo, sha, dest):
        calls.append((repo, sha, dest))
        dest.mkdir(parents=True, exist_ok=True)
        _manifest(dest / "deps.json", ("serde", "MIT"))
        return dest

    monkeypatch.setattr(git_facts, "checkout_revision", fake_checkout)
    _manifest(workspace / "deps.json", ("base-only", "GPL-3.0"))

    work_dir = tmp_path / "work"
    result = _run(
        license_gate("licenses", "deps.json", ["MIT"]),
        job("build", sh("b", "test -f deps.json")),
        workspace=workspace,
        event=PR_EVENT,
        checkout=GitCheckout(work_dir),
        console=console,
    )
    assert result.status is PipelineStatus.SUCCESS
    assert calls == [("fork/repo", "abc123", work_dir.resolve() / "licenses" / "fork-repo")]


def test_git_checkout_requires_head_details(tmp_path, workspace):
    checkout = GitCheckout(tmp_path / "work")
    spec = license_gate("licenses", "deps.json", ["MIT"])
    event = Event(kind=EventKind.PULL_REQUEST, branch="master", action=PullRequestAction.OPENED)
    with pytest.raises(ConfigError):
        checkout.prepare(spec, event, workspace)

    # push events fall back to a private copy of the base workspace
    (workspace / "deps.json").write_text("[]")
    push = Event(kind=EventKind.PUSH, branch="master")
    prepared = checkout.prepare(spec, push, workspace)
    assert prepared == (tmp_path / "work").resolve() / "licenses" / "base"
    assert (prepared / "deps.json").read_text() == "[]"


def test_checkout_errors_fail_the_job(workspace, console):
    event = Event(kind=EventKind.PULL_REQUEST, branch="master", action=PullRequestAction.OPENED)
    result = _run(
        license_gate("licenses", "deps.json", ["MIT"]),
        workspace=workspace,
        event=event,
        checkout=GitCheckout(workspace / "work"),
        console=console,
    )
    assert result.runs["licenses"].state is JobState.FAILED
    assert result.runs["licenses"].reason == ERROR


def test_load_workflow_from_file(tmp_path):
    path = tmp_path / "wf.py"
    path.write_text(
        "from ciflow import wf, job, sh\n"
        "def workflow():\n"
        "    return wf('Loaded', job('a', sh('a', 'true')))\n"
    )
    assert load_workflow(path).name == "Loaded"


def test_load_workflow_rejects_non_workflows(tmp_path):
    path = tmp_path / "wf.py"
    path.write_text("WORKFLOW = 42\n")
    with pytest.raises(ConfigError):
        load_workflow(path)
    with pytest.raises(ConfigError):
        load_workflow(tmp_path / "missing.py")


def test_timeout_covers_the_whole_job_not_each_step(workspace, console):
    result = _run(
        job("slow", sh("a", "sleep 0.7"), sh("b", "sleep 0.7"), timeout=1),
        workspace=workspace,
        console=console,
    )
    run = result.runs["slow"]
    assert run.state is JobState.FAILED
    assert run.reason == RESOURCE_EXCEEDED
    assert [s.status for s in run.step_results] == ["ok", "failed"]
    assert run.duration < 1.4


def test_concurrent_jobs_do_not_share_a_workspace(workspace, console):
    result = _run(
        job("a", sh("a", "echo a > f; sleep 0.5; grep -q a f")),
        job("b", sh("b", "sleep 0.1; echo b > f")),
        concurrency=2,
        workspace=workspace,
        console=console,
    )
    assert result.status is PipelineStatus.SUCCESS
    assert not (workspace / "f").exists()


def test_jobs_start_from_a_copy_of_the_base_workspace(workspace, console):
    (workspace / "src").mkdir()
    (workspace / "src" / "main.rs").write_text("fn main() {}")
    result = _run(
        job("check", sh("c", "test -f src/main.rs && echo touched > src/main.rs")),
        workspace=workspace,
        console=console,
    )
    assert result.status is PipelineStatus.SUCCESS
    assert (workspace / "src" / "main.rs").read_text() == "fn main() {}"


def test_missing_artifact_is_logged(workspace, console):
    result = _run(
        job("build", sh("b", "true", produces=["dist"])),
        job("publish", sh("p", "test ! -e dist", consumes=["dist"])),
        workspace=workspace,
        console=console,
    )
    assert result.status is PipelineStatus.SUCCESS
    assert any("dist not found" in line for line in result.runs["build"].log)
    assert any("dist was not published" in line for line in result.runs["publish"].log)


def test_directory_artifacts_reach_consumers(workspace, console):
    result = _run(
        job("build", sh("b", "mkdir -p dist && echo wheel > dist/pkg.whl", produces=["dist"])),
        job("check", sh("c", "grep -q wheel dist/pkg.whl", consumes=["dist"])),
        workspace=workspace,
        console=console,
    )
    assert result.status is PipelineStatus.SUCCESS
    assert result.runs["check"].started_at >= result.runs["build"].ended_at


@pytest.mark.parametrize(
    "source",
    [
        "def workflow(:\n",
        "WORKFLOW = undefined_name\n",
        "def workflow():\n    raise RuntimeError('boom')\n",
    ],
)
def test_broken_workflow_files_are_config_errors(tmp_path, source):
    path = tmp_path / "wf.py"
    path.write_text(source)
    with pytest.raises(ConfigError, match="Failed to load workflow"):
        load_workflow(path)
