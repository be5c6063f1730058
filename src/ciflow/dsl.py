# src/ciflow/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .actions import composite, register
from .errors import ConfigError
from .model import (
    CacheSpec,
    CheckoutSource,
    Environment,
    JobSpec,
    LicenseGateSpec,
    ResourceLimits,
    StepSpec,
    TriggerRule,
    WorkflowDefinition,
)
from .triggers import trigger


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def cache(
    *inputs: str,
    paths: Sequence[str] = (),
    restore_keys: Sequence[str] = (),
    restore: bool = True,
    save: bool = True,
) -> CacheSpec:
    """cache("Cargo.lock", paths=["target"]) -> key inputs + what to save."""
    return CacheSpec(
        inputs=tuple(inputs),
        paths=tuple(paths),
        restore_keys=tuple(restore_keys),
        restore=restore,
        save=save,
    )


def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    produces: Sequence[str] = (),
    consumes: Sequence[str] = (),
    cache: CacheSpec | None = None,
) -> StepSpec:
    """Create a shell step."""
    return StepSpec(
        name=name,
        run=cmd,
        cwd=cwd,
        produces=tuple(produces),
        consumes=tuple(consumes),
        cache=cache,
    )


def uses(
    name: str,
    action: str,
    *,
    cwd: str | None = None,
    produces: Sequence[str] = (),
    consumes: Sequence[str] = (),
    cache: CacheSpec | None = None,
    **with_: Any,
) -> StepSpec:
    """Create a step that runs a registered action: uses("Lint", "lint", tool="ruff")."""
    return StepSpec(
        name=name,
        uses=action,
        with_={k: str(v) for k, v in with_.items()},
        cwd=cwd,
        produces=tuple(produces),
        consumes=tuple(consumes),
        cache=cache,
    )


def action(name: str, *steps: StepSpec, required: Sequence[str] = (), **defaults: Any):
    """Register a composite action made of inline steps."""
    return register(composite(name, steps, required=required, defaults={k: str(v) for k, v in defaults.items()}), replace=True)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def _checkout(value: CheckoutSource | str, job_name: str) -> CheckoutSource:
    try:
        return CheckoutSource(value)
    except ValueError:
        allowed = ", ".join(c.value for c in CheckoutSource)
        raise ConfigError(f"job({job_name!r}): checkout must be one of {allowed}, got {value!r}", job=job_name) from None


def _limits(
    max_locked_pages: Optional[int],
    parallelism: Optional[int],
    timeout: Optional[float],
) -> Optional[ResourceLimits]:
    if max_locked_pages is None and parallelism is None and timeout is None:
        return None
    return ResourceLimits(max_locked_pages=max_locked_pages, parallelism=parallelism, timeout=timeout)


def job(
    name: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    needs: Optional[Iterable[str]] = None,
    runs_on: str = "ubuntu-latest",
    env: Optional[Mapping[str, str]] = None,
    passthrough: Optional[Sequence[str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    checkout: CheckoutSource | str = CheckoutSource.BASE,
    max_locked_pages: Optional[int] = None,
    parallelism: Optional[int] = None,
    timeout: Optional[float] = None,
) -> JobSpec:
    steps_final: List[StepSpec] = list(steps)
    if not steps_final:
        raise ConfigError(f"job({name!r}) must have at least one step", job=name)

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    environment = Environment(
        runs_on=runs_on,
        variables={k: str(v) for k, v in (env or {}).items()},
        **({"passthrough": tuple(passthrough)} if passthrough is not None else {}),
    )

    return JobSpec(
        name=name,
        steps=tuple(steps_final),
        environment=environment,
        needs=frozenset(needs or ()),
        limits=_limits(max_locked_pages, parallelism, timeout),
        checkout=_checkout(checkout, name),
    )


def license_gate(
    name: str,
    manifest: str,
    allow: Iterable[str],
    *,
    resolver: str = "json",
    needs: Optional[Iterable[str]] = None,
    runs_on: str = "ubuntu-latest",
    checkout: CheckoutSource | str = CheckoutSource.HEAD,
) -> JobSpec:
    """
    License compliance job. Checks out the pull request head by default so
    a fork cannot hide a dependency behind the base branch's manifest.
    """
    allow_set = frozenset(allow)
    if not allow_set:
        raise ConfigError(f"license_gate({name!r}) needs a non-empty allow-list", job=name)
    return JobSpec(
        name=name,
        environment=Environment(runs_on=runs_on),
        needs=frozenset(needs or ()),
        checkout=_checkout(checkout, name),
        gate=LicenseGateSpec(manifest=manifest, allow=allow_set, resolver=resolver),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[StepSpec] = []
        self._env: dict[str, str] = {}
        self._runs_on = "ubuntu-latest"
        self._checkout = CheckoutSource.BASE
        self._limits: dict[str, Any] = {"max_locked_pages": None, "parallelism": None, "timeout": None}

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, name: str, action_name: str, **with_):
        self._steps.append(uses(name, action_name, **with_))
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def checkout_head(self, enabled: bool = True):
        self._checkout = CheckoutSource.HEAD if enabled else CheckoutSource.BASE
        return self

    def limit(self, *, max_locked_pages: int | None = None, parallelism: int | None = None, timeout: float | None = None):
        self._limits.update(max_locked_pages=max_locked_pages, parallelism=parallelism, timeout=timeout)
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ConfigError(f"Job '{self.name}' has no steps", job=self.name)
        return job(
            self.name,
            *self._steps,
            needs=self._needs,
            runs_on=self._runs_on,
            env=self._env,
            checkout=self._checkout,
            **self._limits,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    One job per value of a single axis. Each generated job sees its value
    as MATRIX_<KEY> in its environment, which also keeps the cache keys of
    sibling jobs apart.

        matrix("toolchain", ["stable", "1.70"]).jobs(
            lambda v: job(f"test-{v}", sh("test", f"cargo +{v} test"))
        )
    """

    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = [str(v) for v in values]
        if not self.values:
            raise ConfigError(f"matrix({key!r}) has no values")

    @property
    def variable(self) -> str:
        return "MATRIX_" + "".join(c if c.isalnum() else "_" for c in self.key).upper()

    def jobs(self, builder: Callable[[str], JobSpec]) -> List[JobSpec]:
        out = []
        for value in self.values:
            spec = builder(value)
            env = spec.environment
            variables = {**env.variables, self.variable: value}
            out.append(replace(spec, environment=replace(env, variables=variables)))
        return out


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Triggers + workflow
# ---------------------------------------------------------------------

def on_push(*branches: str) -> TriggerRule:
    return trigger("push", branches, actions=())


def on_pull_request(*branches: str, actions: Sequence[str] = ("opened", "synchronize")) -> TriggerRule:
    return trigger("pull_request", branches, actions=actions)


def wf(name: str, *jobs: Union[JobSpec, List[JobSpec]], on: Sequence[TriggerRule] = ()) -> WorkflowDefinition:
    """
    Workflow definition helper.

        from ciflow import wf, job, sh, on_push

        def workflow():
            return wf("Rust", job(...), job(...), on=[on_push("master")])

    Matrix results (lists of jobs) are flattened in place.
    """
    flat: List[JobSpec] = []
    for j in jobs:
        if isinstance(j, list):
            flat.extend(j)
        else:
            flat.append(j)

    by_name: Dict[str, JobSpec] = {}
    for j in flat:
        if j.name in by_name:
            raise ConfigError(f"Duplicate job name: {j.name}", job=j.name)
        by_name[j.name] = j

    return WorkflowDefinition(name=name, triggers=tuple(on), jobs=by_name)
