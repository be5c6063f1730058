# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import List, Optional

from ..errors import ConfigError
from ..model import CheckoutSource, Event, EventKind, JobSpec
from ..workspace import LocalCheckout, job_dir_name


def _git(args: List[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError if git exits non-zero.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,   # return output as str instead of bytes
        stderr=subprocess.PIPE,
    )
    return out.strip()


def _repo_dir_name(repo: str) -> str:
    # "owner/name", "https://host/owner/name.git" -> "owner-name"
    tail = repo.rstrip("/").removesuffix(".git").split(":")[-1]
    parts = [p for p in tail.split("/") if p][-2:]
    return re.sub(r"[^A-Za-z0-9_.-]", "-", "-".join(parts)) or "repo"


def repo_url(repo: str, host: str = "https://github.com") -> str:
    """Accept either a full clone URL/path or an "owner/name" slug."""
    if "://" in repo or repo.startswith("git@") or Path(repo).exists():
        return repo
    return f"{host.rstrip('/')}/{repo}.git"


def checkout_revision(repo: str, sha: str, dest: Path) -> Path:
    """
    Clone (or fetch into) dest and check out exactly `sha`.

    Raises:
        RuntimeError: If git operations fail
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        if not (dest / ".git").exists():
            _git(["clone", "--no-checkout", repo_url(repo), str(dest)])
        else:
            _git(["fetch", "origin"], cwd=dest)
        _git(["checkout", "--detach", sha], cwd=dest)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"git {' '.join(e.cmd[1:3])} failed: {(e.stderr or '').strip()}") from e
    except FileNotFoundError:
        raise RuntimeError("git command not found. Please install Git.") from None
    return dest


class GitCheckout:
    """
    Prepares a job's workspace.

    Jobs with checkout=head on a pull request event get the PR head
    (the fork's repository at the head SHA). Every other job gets its own
    copy of the base workspace.
    """

    def __init__(self, work_dir: str | Path):
        self.work_dir = Path(work_dir).expanduser().resolve()
        self._base = LocalCheckout(self.work_dir)

    def prepare(self, job: JobSpec, event: Optional[Event], default: Path) -> Path:
        if job.checkout is not CheckoutSource.HEAD or event is None or event.kind is not EventKind.PULL_REQUEST:
            return self._base.prepare(job, event, default)
        if not event.head_repo or not event.head_sha:
            raise ConfigError(
                f"job '{job.name}' checks out the pull request head but the event has no head_repo/head_sha",
                job=job.name,
            )
        dest = self.work_dir / job_dir_name(job.name) / _repo_dir_name(event.head_repo)
        return checkout_revision(event.head_repo, event.head_sha, dest)
