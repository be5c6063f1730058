# triggers.py
"""Trigger evaluation: does an incoming event activate a workflow?"""
from __future__ import annotations

import json
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError, InvalidEvent
from .model import (
    DEFAULT_PR_ACTIONS,
    Event,
    EventKind,
    PullRequestAction,
    TriggerRule,
    WorkflowDefinition,
)


# -------------------- Schemas --------------------

class EventPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: EventKind
    branch: str = Field(min_length=1)
    action: Optional[PullRequestAction] = None
    head_repo: Optional[str] = Field(default=None, alias="headRepo")
    head_sha: Optional[str] = Field(default=None, alias="headSha")

    @field_validator("branch")
    @classmethod
    def _strip_ref_prefix(cls, v: str) -> str:
        v = v.strip()
        if v.startswith("refs/heads/"):
            v = v[len("refs/heads/"):]
        if not v:
            raise ValueError("branch must not be empty")
        return v

    @model_validator(mode="after")
    def _check_action(self) -> "EventPayload":
        if self.kind is EventKind.PULL_REQUEST and self.action is None:
            raise ValueError("pull_request events require an action")
        if self.kind is EventKind.PUSH and self.action is not None:
            raise ValueError("push events do not carry an action")
        return self

    def to_event(self) -> Event:
        return Event(
            kind=self.kind,
            branch=self.branch,
            action=self.action,
            head_repo=self.head_repo,
            head_sha=self.head_sha,
        )


def parse_event(data: Mapping[str, Any]) -> Event:
    """Validate raw event data. Raises InvalidEvent, never returns a partial event."""
    if not isinstance(data, Mapping):
        raise InvalidEvent(f"event must be a mapping, got {type(data).__name__}")
    try:
        return EventPayload.model_validate(dict(data)).to_event()
    except ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc']) or 'event'}: {err['msg']}" for err in e.errors()]
        raise InvalidEvent("malformed event data", problems=problems) from e


def load_event(path: str | Path) -> Event:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise InvalidEvent(f"event file not found: {p}") from e
    except json.JSONDecodeError as e:
        raise InvalidEvent(f"event file is not valid JSON: {p}", error=str(e)) from e
    return parse_event(data)


# -------------------- Rules --------------------

def trigger(
    event: EventKind | str,
    branches: Iterable[str],
    actions: Optional[Iterable[PullRequestAction | str]] = None,
) -> TriggerRule:
    """Build a validated TriggerRule. Raises ConfigError on bad input."""
    try:
        kind = EventKind(event)
    except ValueError as e:
        raise ConfigError(f"unknown trigger event {event!r}") from e

    branch_set = frozenset(b.strip() for b in branches if b and b.strip())
    if not branch_set:
        raise ConfigError(f"trigger on {kind.value} needs at least one branch pattern")

    if actions is None:
        action_set = DEFAULT_PR_ACTIONS
    else:
        actions = list(actions)
        try:
            action_set = frozenset(PullRequestAction(a) for a in actions)
        except ValueError as e:
            raise ConfigError(f"unknown pull request action in {list(actions)!r}") from e
        if kind is EventKind.PUSH and action_set:
            raise ConfigError("push triggers do not take actions")
        if kind is EventKind.PULL_REQUEST and not action_set:
            raise ConfigError("pull_request trigger needs at least one action")

    return TriggerRule(event=kind, branches=branch_set, actions=action_set)


def _branch_matches(branch: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(branch, p) for p in patterns)


def matches(event: Event, rule: TriggerRule) -> bool:
    """
    Push: kind agrees and branch matches.
    Pull request: action in the rule's actions and base branch matches.
    """
    if event.kind is not rule.event:
        return False
    if event.kind is EventKind.PULL_REQUEST and event.action not in rule.actions:
        return False
    return _branch_matches(event.branch, rule.branches)


def workflow_triggered(event: Event, workflow: WorkflowDefinition) -> bool:
    return any(matches(event, r) for r in workflow.triggers)
