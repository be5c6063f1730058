# cache.py
from __future__ import annotations

import hashlib
import io
import json
import tarfile
import threading
import time
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote, unquote

from .errors import CacheConflictWarning
from .model import Environment

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Step-level caching:
#   cache_key = "<workflow>/<runs_on>/<step>/" + sha256(
#       workflow name,
#       environment descriptor,
#       ordered (relpath, content sha256) of declared cache inputs,
#   )
#
# The readable prefix lets restore-keys match partially (same workflow,
# same environment, inputs changed) so a dependency bump can still start
# from the previous state.
#
# Cache artifact:
#   a tar.gz containing the step's declared cache paths plus a
#   manifest.json for explainability.
# ---------------------------------------------------------------------

DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".ciflow/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

MANIFEST_NAME = ".ciflow_cache_manifest.json"


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _is_within(p: Path, root: Path) -> bool:
    try:
        p.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand cache input patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "src/"
      - glob:      "crates/**/Cargo.toml"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen and _is_within(p, root):
            seen.add(rp)
            uniq.append(p)
    return uniq


def hash_inputs(
    root: Path,
    inputs: Sequence[str],
    *,
    excludes: Optional[List[str]] = None,
) -> List[Tuple[str, str]]:
    """Ordered (relpath, sha256) pairs for every file under the declared inputs."""
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
    fps: Dict[str, str] = {}

    for p in _resolve_globs(root, inputs):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, root)
            if _matches_any_glob(rel, exclude_globs):
                continue
            fps[rel] = _hash_file_contents(f)

    return sorted(fps.items())


def _key_segment(s: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "-" for c in s) or "-"


def cache_key_prefix(workflow: str, environment: Environment, step: str | None = None) -> str:
    parts = [_key_segment(workflow), _key_segment(environment.runs_on)]
    if step is not None:
        parts.append(_key_segment(step))
    return "/".join(parts) + "/"


def compute_cache_key(
    workflow: str,
    environment: Environment,
    step: str,
    inputs: Sequence[str],
    *,
    root: str | Path = ".",
) -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest) where manifest is stored next to the
    artifact for explainability.
    """
    root_p = Path(root).resolve()
    files = hash_inputs(root_p, inputs)
    payload = {
        "v": 1,  # bump this if you change hashing format
        "workflow": workflow,
        "environment": environment.fingerprint(),
        "step": step,
        "files": files,
    }
    digest = _sha256_str(_json_dumps_stable(payload))
    key = cache_key_prefix(workflow, environment, step) + digest
    manifest = {
        "key": key,
        "payload": payload,
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


# ---------------------------------------------------------------------
# Artifact packing
# ---------------------------------------------------------------------

def pack_paths(root: str | Path, paths: Sequence[str], manifest: Dict) -> bytes:
    """Tar+gzip the given workspace-relative paths, with the manifest inside."""
    root_p = Path(root).resolve()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in paths:
            src = (root_p / entry).resolve()
            if not src.exists() or not _is_within(src, root_p):
                continue
            files = [src] if src.is_file() else list(_iter_files_under(src))
            for f in files:
                rel = _relpath(f, root_p)
                if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
                    continue
                tar.add(str(f), arcname=rel, recursive=False)

        payload = json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False).encode("utf-8")
        info = tarfile.TarInfo(name=MANIFEST_NAME)
        info.size = len(payload)
        info.mtime = int(time.time())
        tar.addfile(info, fileobj=io.BytesIO(payload))
    return buf.getvalue()


def unpack_artifact(data: bytes, root: str | Path) -> Dict:
    """Extract an artifact into root; returns the stored manifest."""
    root_p = Path(root).resolve()
    manifest: Dict = {}
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        members = []
        for m in tar.getmembers():
            if m.name == MANIFEST_NAME:
                f = tar.extractfile(m)
                if f is not None:
                    manifest = json.loads(f.read().decode("utf-8"))
                continue
            members.append(m)
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(root_p), members=members, filter="data")
        else:
            safe = [m for m in members if _is_within(root_p / m.name, root_p)]
            tar.extractall(path=str(root_p), members=safe)
    return manifest


# ---------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------

class CacheBackend(ABC):
    """Key/value store the provider sits on. Keys are plain strings."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        ...

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        ...

    @abstractmethod
    def restore_with_prefix(self, prefix: str) -> Optional[Tuple[str, bytes]]:
        """Newest entry whose key starts with prefix."""


class MemoryCacheBackend(CacheBackend):
    def __init__(self) -> None:
        self._data: Dict[str, Tuple[int, bytes]] = {}
        self._seq = 0
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        entry = self._data.get(key)
        return entry[1] if entry else None

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._seq += 1
            self._data[key] = (self._seq, bytes(data))

    def restore_with_prefix(self, prefix: str) -> Optional[Tuple[str, bytes]]:
        candidates = [(seq, k, v) for k, (seq, v) in list(self._data.items()) if k.startswith(prefix)]
        if not candidates:
            return None
        _seq, key, value = max(candidates)
        return key, value

    def keys(self) -> List[str]:
        return sorted(self._data)


class FileCacheBackend(CacheBackend):
    """
    File-based cache store:
      root/
        <escaped key>.bin
    Writes go to a temp file and are renamed into place, so readers
    only ever see committed entries.
    """

    SUFFIX = ".bin"

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.root / (quote(key, safe="") + self.SUFFIX)

    def _entries(self) -> List[Tuple[str, Path]]:
        out = []
        for p in self.root.glob(f"*{self.SUFFIX}"):
            out.append((unquote(p.name[: -len(self.SUFFIX)]), p))
        return out

    def get(self, key: str) -> Optional[bytes]:
        p = self.path_for(key)
        try:
            return p.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, key: str, data: bytes) -> None:
        final = self.path_for(key)
        tmp = final.with_name(f"{final.name}.{threading.get_ident()}.tmp")
        try:
            tmp.write_bytes(data)
            tmp.replace(final)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def restore_with_prefix(self, prefix: str) -> Optional[Tuple[str, bytes]]:
        matching = [(p.stat().st_mtime_ns, k, p) for k, p in self._entries() if k.startswith(prefix)]
        for _mtime, key, p in sorted(matching, reverse=True):
            data = self.get(key)
            if data is not None:
                return key, data
        return None

    def prune(self, prefix: str, keep: int = 3) -> List[str]:
        """
        Keep only the newest N entries under a prefix.
        Uses file mtime as "newest".
        """
        matching = sorted(
            ((p.stat().st_mtime_ns, k, p) for k, p in self._entries() if k.startswith(prefix)),
            reverse=True,
        )
        removed = []
        for _mtime, key, p in matching[keep:]:
            p.unlink(missing_ok=True)
            removed.append(key)
        return removed


# ---------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CachedArtifact:
    key: str
    data: bytes
    exact: bool


@dataclass(frozen=True)
class StoreOutcome:
    key: str
    conflict: bool = False   # a different payload was already stored under key
    unchanged: bool = False  # identical payload already stored


class CacheProvider:
    """
    Content-addressed cache in front of a backend.

    Writers to the same exact key are serialised; reads never lock.
    """

    def __init__(self, backend: CacheBackend):
        self.backend = backend
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _key_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def lookup(self, key: str) -> Optional[CachedArtifact]:
        data = self.backend.get(key)
        if data is None:
            return None
        return CachedArtifact(key=key, data=data, exact=True)

    def store(self, key: str, data: bytes) -> StoreOutcome:
        with self._key_lock(key):
            existing = self.backend.get(key)
            if existing is not None and existing == data:
                return StoreOutcome(key=key, unchanged=True)
            self.backend.put(key, data)

        if existing is not None:
            warnings.warn(
                f"cache key {key} stored again with different content; last write wins",
                CacheConflictWarning,
                stacklevel=2,
            )
            return StoreOutcome(key=key, conflict=True)
        return StoreOutcome(key=key)

    def fallback(self, prefixes: Iterable[str] | str) -> Optional[CachedArtifact]:
        """
        Restore-keys matching: try prefixes longest first; the first prefix
        with any stored entry wins (newest entry under that prefix).
        """
        if isinstance(prefixes, str):
            prefixes = [prefixes]
        ordered = sorted({p for p in prefixes if p}, key=lambda p: (-len(p), p))
        for prefix in ordered:
            found = self.backend.restore_with_prefix(prefix)
            if found is not None:
                key, data = found
                return CachedArtifact(key=key, data=data, exact=False)
        return None
