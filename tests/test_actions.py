import pytest

from ciflow import actions
from ciflow.actions import composite, expand_step, get_action, register, substitute
from ciflow.dsl import action, sh, uses
from ciflow.errors import ConfigError
from ciflow.model import StepSpec


def test_plain_step_expands_to_itself():
    assert expand_step(sh("build", "make")) == [("build", "make")]


def test_step_needs_exactly_one_of_run_or_uses():
    with pytest.raises(ConfigError):
        expand_step(StepSpec(name="both", run="true", uses="lint"))
    with pytest.raises(ConfigError):
        expand_step(StepSpec(name="neither"))


def test_unknown_action_is_a_config_error():
    with pytest.raises(ConfigError, match="unknown action"):
        get_action("does-not-exist")


def test_substitute_replaces_inputs():
    assert substitute("cargo +${{ inputs.toolchain }} build", {"toolchain": "nightly"}) == "cargo +nightly build"
    with pytest.raises(ConfigError):
        substitute("${{ inputs.missing }}", {})


def test_composite_action_expands_with_defaults_and_inputs():
    action(
        "greet-twice",
        sh("first", "echo hello ${{ inputs.who }}"),
        sh("second", "echo bye ${{ inputs.who }}"),
        who="world",
    )
    assert expand_step(uses("greet", "greet-twice")) == [
        ("greet / first", "echo hello world"),
        ("greet / second", "echo bye world"),
    ]
    assert expand_step(uses("greet", "greet-twice", who="ci"))[0][1] == "echo hello ci"


def test_required_inputs_are_enforced():
    action("needs-target", sh("go", "make ${{ inputs.target }}"), required=["target"])
    with pytest.raises(ConfigError, match="missing required inputs"):
        expand_step(uses("go", "needs-target"))
    assert expand_step(uses("go", "needs-target", target="all")) == [("go", "make all")]


def test_composite_steps_must_be_inline_commands():
    with pytest.raises(ConfigError):
        composite("nested", [uses("inner", "lint", tool="ruff")])


def test_register_refuses_silent_replacement(monkeypatch):
    monkeypatch.setattr(actions, "_REGISTRY", dict(actions._REGISTRY))
    register(composite("once", [sh("a", "true")]))
    with pytest.raises(ConfigError, match="already registered"):
        register(composite("once", [sh("a", "false")]))
    register(composite("once", [sh("a", "false")]), replace=True)
    assert get_action("once").expand({}) == [("a", "false")]


def test_checkout_action_runs_nothing():
    assert expand_step(uses("Checkout", "checkout")) == []


def test_install_tool_is_guarded_by_lookup():
    [(_, cmd)] = expand_step(uses("deadlinks", "install-tool", tool="deadlinks", install="cargo install deadlinks"))
    assert cmd == "command -v deadlinks >/dev/null 2>&1 || cargo install deadlinks"


def test_lint_action_builds_command():
    assert expand_step(uses("lint", "lint", tool="ruff", args="check")) == [("lint", "ruff check .")]


@pytest.mark.parametrize(
    "framework, expected",
    [
        ("pytest", ["python -m pip install -r requirements.txt", "pytest -q"]),
        ("npm", ["npm ci", "npm test -q"]),
    ],
)
def test_test_action_frameworks(framework, expected):
    cmds = [c for _, c in expand_step(uses("t", "test", framework=framework, args="-q"))]
    assert cmds == expected


def test_cargo_tests_follow_parallelism_hint():
    [(_, cmd)] = expand_step(uses("t", "test", framework="cargo"))
    assert cmd == "cargo test -- --test-threads=${CIFLOW_PARALLELISM:-1}"


def test_unknown_framework_is_rejected():
    with pytest.raises(ConfigError):
        expand_step(uses("t", "test", framework="maven"))
