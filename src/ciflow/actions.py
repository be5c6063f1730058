# actions.py
"""
Reusable actions: parametrised step sequences referenced by `uses`.

An action expands into (label, command) pairs. The step runner never
sees `uses` after expansion, it only runs plain commands.
"""
from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Sequence, Tuple

from .errors import ConfigError
from .model import StepSpec

Command = Tuple[str, str]

_PARAM_RE = re.compile(r"\$\{\{\s*inputs\.([A-Za-z_][A-Za-z0-9_-]*)\s*\}\}")


@dataclass(frozen=True)
class Action:
    name: str
    build: Callable[[Mapping[str, str]], List[Command]]
    required: Tuple[str, ...] = ()
    defaults: Mapping[str, str] = field(default_factory=dict)
    description: str = ""

    def params(self, given: Mapping[str, str]) -> Dict[str, str]:
        missing = [p for p in self.required if p not in given]
        if missing:
            raise ConfigError(f"action '{self.name}' is missing required inputs: {missing}")
        merged = dict(self.defaults)
        merged.update({k: str(v) for k, v in given.items()})
        return merged

    def expand(self, given: Mapping[str, str]) -> List[Command]:
        return self.build(self.params(given))


_REGISTRY: Dict[str, Action] = {}


def register(action: Action, *, replace: bool = False) -> Action:
    if action.name in _REGISTRY and not replace:
        raise ConfigError(f"action '{action.name}' is already registered")
    _REGISTRY[action.name] = action
    return action


def action(name: str, *, required: Sequence[str] = (), defaults: Mapping[str, str] | None = None, description: str = ""):
    """Decorator form of register()."""

    def deco(fn: Callable[[Mapping[str, str]], List[Command]]):
        register(Action(name=name, build=fn, required=tuple(required), defaults=dict(defaults or {}), description=description))
        return fn

    return deco


def get_action(name: str) -> Action:
    try:
        return _REGISTRY[name]
    except KeyError:
        raise ConfigError(f"unknown action '{name}'. Known actions: {sorted(_REGISTRY)}") from None


def substitute(text: str, params: Mapping[str, str]) -> str:
    """Replace ${{ inputs.NAME }} placeholders."""

    def repl(m: re.Match) -> str:
        key = m.group(1)
        if key not in params:
            raise ConfigError(f"unknown input '{key}' in {text!r}")
        return params[key]

    return _PARAM_RE.sub(repl, text)


def composite(name: str, steps: Sequence[StepSpec], *, required: Sequence[str] = (), defaults: Mapping[str, str] | None = None) -> Action:
    """
    Build an action out of inline steps (like a local composite action).
    Step commands may use ${{ inputs.NAME }}.
    """
    for s in steps:
        if s.run is None:
            raise ConfigError(f"composite action '{name}' step '{s.name}' must be an inline command")

    def build(params: Mapping[str, str]) -> List[Command]:
        return [(s.name, substitute(s.run or "", params)) for s in steps]

    return Action(name=name, build=build, required=tuple(required), defaults=dict(defaults or {}))


def expand_step(step: StepSpec) -> List[Command]:
    """Turn a declared step into runnable (label, command) pairs."""
    if step.run is not None and step.uses is not None:
        raise ConfigError(f"step '{step.name}' sets both run and uses")
    if step.run is not None:
        return [(step.name, step.run)]
    if step.uses is None:
        raise ConfigError(f"step '{step.name}' needs either run or uses")
    commands = get_action(step.uses).expand(step.with_)
    if len(commands) == 1:
        return [(step.name, commands[0][1])]
    return [(f"{step.name} / {label}", cmd) for label, cmd in commands]


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

@action("checkout", description="Workspace is prepared per job before steps run; nothing to execute.")
def _checkout(params: Mapping[str, str]) -> List[Command]:
    return []


@action("install-tool", required=("tool", "install"), description="Install a tool unless it is already on PATH.")
def _install_tool(params: Mapping[str, str]) -> List[Command]:
    tool = params["tool"]
    return [(f"install {tool}", f"command -v {shlex.quote(tool)} >/dev/null 2>&1 || {params['install']}")]


@action("lint", required=("tool",), defaults={"args": "", "files": "."})
def _lint(params: Mapping[str, str]) -> List[Command]:
    cmd = " ".join(p for p in (params["tool"], params["args"], params["files"]) if p)
    return [(f"lint ({params['tool']})", cmd)]


@action("test", required=("framework",), defaults={"args": "", "install": "true"})
def _test(params: Mapping[str, str]) -> List[Command]:
    framework = params["framework"]
    args = params["args"].strip()
    install = params["install"].lower() in ("1", "true", "yes")

    if framework == "pytest":
        out: List[Command] = []
        if install:
            out.append(("Install (py)", "python -m pip install -r requirements.txt"))
        out.append(("pytest", f"pytest {args}".strip()))
        return out

    if framework == "cargo":
        # --test-threads follows the job's parallelism hint
        cmd = " ".join(p for p in ("cargo test", args, "-- --test-threads=${CIFLOW_PARALLELISM:-1}") if p)
        return [("cargo test", cmd)]

    if framework == "npm":
        out = []
        if install:
            out.append(("Install (js)", "npm ci"))
        out.append(("npm test", f"npm test {args}".strip()))
        return out

    raise ConfigError(f"Unknown framework: {framework!r}")
