import json
import sys
import textwrap

import pytest
from click.testing import CliRunner

from ciflow.cli import cli, exit_code_for
from ciflow.model import JobRun, JobSpec, JobState, PipelineResult, PipelineStatus
from ciflow.runner import LICENSE_VIOLATION, STEP_FAILED

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")


@pytest.fixture
def project(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()

    def write(body, name="workflow.py"):
        path = tmp_path / name
        path.write_text("from ciflow import *\n" + textwrap.dedent(body))
        return path

    return tmp_path, ws, write


def _invoke(tmp_path, ws, *args):
    base = [
        "run",
        *args,
        "--workspace", str(ws),
        "--cache-dir", str(tmp_path / "cache"),
        "--work-dir", str(tmp_path / "work"),
        "--concurrency", "2",
    ]
    return CliRunner().invoke(cli, base)


def _event(tmp_path, **data):
    path = tmp_path / "event.json"
    path.write_text(json.dumps(data))
    return str(path)


PIPELINE = """
def workflow():
    return wf(
        "CI",
        job("build", sh("compile", "echo ok > built.txt", produces=["built.txt"])),
        job("test", sh("check", "test -f built.txt", consumes=["built.txt"])),
        on=[on_pull_request("master"), on_push("master")],
    )
"""


def test_successful_run_exits_zero(project):
    tmp_path, ws, write = project
    event = _event(tmp_path, kind="pull_request", branch="master", action="opened")
    result = _invoke(tmp_path, ws, str(write(PIPELINE)), "--event", event)
    assert result.exit_code == 0, result.output
    assert "PIPELINE: SUCCESS" in result.output
    assert (tmp_path / "work" / "test" / "base" / "built.txt").exists()
    assert not (ws / "built.txt").exists()


def test_untriggered_event_runs_nothing(project):
    tmp_path, ws, write = project
    event = _event(tmp_path, kind="push", branch="feature/x")
    result = _invoke(tmp_path, ws, str(write(PIPELINE)), "--event", event)
    assert result.exit_code == 0
    assert "not triggered" in result.output
    assert not (tmp_path / "work").exists()


def test_invalid_event_exits_three(project):
    tmp_path, ws, write = project
    event = _event(tmp_path, kind="pull_request", branch="master")
    result = _invoke(tmp_path, ws, str(write(PIPELINE)), "--event", event)
    assert result.exit_code == 3
    assert "PIPELINE: FAILURE (not started)" in result.output


def test_cycle_exits_four(project):
    tmp_path, ws, write = project
    path = write(
        """
        def workflow():
            return wf(
                "CI",
                job("a", sh("a", "true"), needs=["b"]),
                job("b", sh("b", "true"), needs=["a"]),
            )
        """
    )
    result = _invoke(tmp_path, ws, str(path))
    assert result.exit_code == 4
    assert "cycle" in result.output


def test_unknown_dependency_exits_three(project):
    tmp_path, ws, write = project
    path = write(
        """
        WORKFLOW = wf("CI", job("a", sh("a", "true"), needs=["ghost"]))
        """
    )
    assert _invoke(tmp_path, ws, str(path)).exit_code == 3


def test_job_failure_exits_one(project):
    tmp_path, ws, write = project
    path = write(
        """
        WORKFLOW = wf(
            "CI",
            job("broken", sh("fail", "exit 2")),
            job("after", sh("x", "true"), needs=["broken"]),
        )
        """
    )
    result = _invoke(tmp_path, ws, str(path))
    assert result.exit_code == 1
    assert "Failed: broken" in result.output
    assert "Skipped: after" in result.output


def test_license_violation_exits_five(project):
    tmp_path, ws, write = project
    (ws / "deps.json").write_text(json.dumps([{"name": "readline", "version": "8.0", "license": "GPL-3.0"}]))
    path = write(
        """
        WORKFLOW = wf("CI", license_gate("licenses", "deps.json", ["MIT", "Apache-2.0"]))
        """
    )
    result = _invoke(tmp_path, ws, str(path))
    assert result.exit_code == 5
    assert "readline@8.0" in result.output


def test_cache_survives_between_runs(project):
    tmp_path, ws, write = project
    (ws / "input.txt").write_text("data")
    path = write(
        """
        WORKFLOW = wf(
            "CI",
            job("gen", sh("gen", "mkdir -p out && cp input.txt out/ && echo x >> runs.txt",
                          cache=cache("input.txt", paths=["out"]))),
        )
        """
    )
    first = _invoke(tmp_path, ws, str(path))
    assert first.exit_code == 0
    assert "cache: miss" in first.output

    second = _invoke(tmp_path, ws, str(path))
    assert second.exit_code == 0
    assert "cache: hit" in second.output
    job_ws = tmp_path / "work" / "gen" / "base"
    assert (job_ws / "out" / "input.txt").read_text() == "data"
    assert not (job_ws / "runs.txt").exists()


def test_graph_command_prints_stages(project):
    _tmp_path, _ws, write = project
    result = CliRunner().invoke(cli, ["graph", str(write(PIPELINE))])
    assert result.exit_code == 0
    assert "Stage 1: build" in result.output
    assert "Stage 2: test" in result.output
    assert "test <- build" in result.output


def test_licenses_command(tmp_path):
    manifest = tmp_path / "deps.json"
    manifest.write_text(json.dumps([{"name": "serde", "version": "1.0", "license": "MIT OR Apache-2.0"}]))
    ok = CliRunner().invoke(cli, ["licenses", str(manifest), "--allow", "MIT"])
    assert ok.exit_code == 0
    assert "LICENSES: PASS" in ok.output

    bad = CliRunner().invoke(cli, ["licenses", str(manifest), "--allow", "GPL-3.0"])
    assert bad.exit_code == 5
    assert "serde@1.0" in bad.output


def _result(*runs):
    return PipelineResult(status=PipelineStatus.FAILURE, runs={r.name: r for r in runs})


def test_exit_code_for_mixed_failures():
    gate = JobRun(job=JobSpec(name="licenses"), state=JobState.FAILED, reason=LICENSE_VIOLATION)
    step = JobRun(job=JobSpec(name="build"), state=JobState.FAILED, reason=STEP_FAILED)
    assert exit_code_for(_result(gate)) == 5
    assert exit_code_for(_result(gate, step)) == 1
    assert exit_code_for(PipelineResult(status=PipelineStatus.CANCELLED, runs={})) == 130


@pytest.mark.parametrize(
    "body",
    [
        "WORKFLOW = wf('CI', job('a', sh('a', 'true'), checkout='fork'))\n",
        "WORKFLOW = wf('CI', job('a', sh('a', 'true'))\n",
        "def workflow():\n    return wf('CI', job('a', sh('a', 'true'), needs=missing_name))\n",
    ],
)
def test_malformed_workflow_files_exit_three(project, body):
    tmp_path, ws, write = project
    path = write(body)
    for args in (["graph", str(path)], ["run", str(path), "--workspace", str(ws), "--cache-dir", str(tmp_path / "c")]):
        result = CliRunner().invoke(cli, args)
        assert result.exit_code == 3, result.output
        assert "Traceback" not in result.output
