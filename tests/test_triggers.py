import json

import pytest

from ciflow.dsl import job, on_pull_request, on_push, sh, wf
from ciflow.errors import ConfigError, InvalidEvent
from ciflow.model import EventKind, PullRequestAction
from ciflow.triggers import load_event, matches, parse_event, trigger, workflow_triggered


def test_push_matches_branch_in_rule():
    event = parse_event({"kind": "push", "branch": "master"})
    assert matches(event, on_push("master"))


def test_push_other_branch_does_not_match():
    event = parse_event({"kind": "push", "branch": "feature/x"})
    assert not matches(event, on_push("master"))


def test_branch_globs():
    rule = on_push("release/*", "master")
    assert matches(parse_event({"kind": "push", "branch": "release/1.2"}), rule)
    assert not matches(parse_event({"kind": "push", "branch": "releases"}), rule)


def test_refs_heads_prefix_is_stripped():
    event = parse_event({"kind": "push", "branch": "refs/heads/master"})
    assert event.branch == "master"
    assert matches(event, on_push("master"))


@pytest.mark.parametrize("action", ["opened", "synchronize"])
def test_pull_request_default_actions_match(action):
    event = parse_event({"kind": "pull_request", "action": action, "branch": "master"})
    assert matches(event, on_pull_request("master"))


def test_pull_request_closed_does_not_match():
    event = parse_event({"kind": "pull_request", "action": "closed", "branch": "master"})
    assert event.action is PullRequestAction.CLOSED
    assert not matches(event, on_pull_request("master"))


def test_pull_request_does_not_match_push_rule():
    event = parse_event({"kind": "pull_request", "action": "opened", "branch": "master"})
    assert not matches(event, on_push("master"))


def test_head_fields_accept_camel_case():
    event = parse_event(
        {"kind": "pull_request", "action": "opened", "branch": "master", "headRepo": "fork/repo", "headSha": "abc"}
    )
    assert event.head_repo == "fork/repo"
    assert event.head_sha == "abc"


@pytest.mark.parametrize(
    "data",
    [
        {"kind": "tag", "branch": "master"},
        {"kind": "push"},
        {"kind": "push", "branch": "   "},
        {"kind": "pull_request", "branch": "master"},
        {"kind": "push", "branch": "master", "action": "opened"},
        {"kind": "pull_request", "action": "merged-ish", "branch": "master"},
    ],
)
def test_malformed_events_are_rejected(data):
    with pytest.raises(InvalidEvent):
        parse_event(data)


def test_non_mapping_event_is_rejected():
    with pytest.raises(InvalidEvent):
        parse_event(["push"])


def test_load_event_from_file(tmp_path):
    p = tmp_path / "event.json"
    p.write_text(json.dumps({"kind": "push", "branch": "main"}))
    assert load_event(p).kind is EventKind.PUSH


def test_load_event_bad_json(tmp_path):
    p = tmp_path / "event.json"
    p.write_text("{not json")
    with pytest.raises(InvalidEvent):
        load_event(p)


def test_bad_rules_are_config_errors():
    with pytest.raises(ConfigError):
        trigger("push", [])
    with pytest.raises(ConfigError):
        trigger("schedule", ["master"])
    with pytest.raises(ConfigError):
        trigger("pull_request", ["master"], actions=["bogus"])
    with pytest.raises(ConfigError):
        trigger("push", ["master"], actions=["opened"])


def test_workflow_triggered_by_any_rule():
    definition = wf(
        "ci",
        job("build", sh("b", "true")),
        on=[on_pull_request("master"), on_push("master")],
    )
    assert workflow_triggered(parse_event({"kind": "push", "branch": "master"}), definition)
    assert not workflow_triggered(parse_event({"kind": "push", "branch": "dev"}), definition)
