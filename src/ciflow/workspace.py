# workspace.py
"""
Per-job workspaces and the artifact hand-off between them.

Every job runs in its own copy of the base workspace, so concurrent jobs
never see each other's writes. The only ways data moves between jobs are
the cache and declared artifacts: a succeeded job's `produces` paths are
copied into the run's artifact store, and a job's `consumes` paths are
copied from there into its workspace before its steps run.
"""
from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Callable, List, Optional

from .errors import ConfigError
from .model import Event, JobSpec

STATE_DIR = ".ciflow"
ARTIFACTS_DIR = ".artifacts"


def job_dir_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "-", name).lstrip(".") or "job"


def ensure_clean_dir(path: str | Path) -> Path:
    p = Path(path)
    if p.exists():
        shutil.rmtree(p)
    p.mkdir(parents=True, exist_ok=True)
    return p


def _inside(p: Path, root: Path) -> bool:
    try:
        p.relative_to(root)
    except ValueError:
        return False
    return True


def copy_path(src: Path, dest: Path) -> None:
    """Copy a file or directory tree, merging into whatever dest holds."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    if src.is_dir():
        shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(src, dest)


def _relative_target(root: Path, rel: str) -> Path:
    target = (root / rel).resolve()
    if not _inside(target, root.resolve()):
        raise ConfigError(f"artifact path escapes the workspace: {rel}")
    return target


class LocalCheckout:
    """
    Copies the base workspace into work_dir/<job>/base for each job.

    ciflow's own state directory and the work dir itself are never copied.
    """

    def __init__(self, work_dir: str | Path):
        self.work_dir = Path(work_dir).expanduser().resolve()

    def _ignore(self, source: Path) -> Callable[[str, List[str]], List[str]]:
        def ignore(directory: str, names: List[str]) -> List[str]:
            d = Path(directory).resolve()
            skipped = []
            for n in names:
                p = d / n
                if p == self.work_dir or (d == source and n == STATE_DIR):
                    skipped.append(n)
            return skipped

        return ignore

    def prepare(self, job: JobSpec, event: Optional[Event], default: Path) -> Path:
        source = Path(default).resolve()
        if _inside(source, self.work_dir):
            raise ConfigError(f"work dir {self.work_dir} must not contain the workspace {source}", job=job.name)
        dest = self.work_dir / job_dir_name(job.name) / "base"
        if dest.exists():
            shutil.rmtree(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, dest, symlinks=True, ignore=self._ignore(source))
        return dest


class ArtifactStore:
    """Run-scoped store for artifacts passed between jobs."""

    def __init__(self, root: str | Path):
        self.root = ensure_clean_dir(root).resolve()

    def publish(self, workspace: Path, names: List[str]) -> List[str]:
        """Copy produced paths out of a job workspace. Returns the names not found."""
        missing = []
        for name in names:
            src = _relative_target(workspace, name)
            if not src.exists():
                missing.append(name)
                continue
            dest = _relative_target(self.root, name)
            if dest.is_dir():
                shutil.rmtree(dest)
            elif dest.exists():
                dest.unlink()
            copy_path(src, dest)
        return missing

    def fetch(self, workspace: Path, names: List[str]) -> List[str]:
        """Copy consumed artifacts into a job workspace. Returns the names not stored."""
        missing = []
        for name in names:
            src = _relative_target(self.root, name)
            if not src.exists():
                missing.append(name)
                continue
            copy_path(src, _relative_target(workspace, name))
        return missing
