# licenses.py
"""
License compliance gate.

Walks a resolved dependency set and fails if any package's declared
license is not covered by the allow-list. Declarations are SPDX
expressions: a package passes if at least one OR-alternative has all of
its AND-terms allowed. Old-style "MIT/Apache-2.0" is read as OR.
"""
from __future__ import annotations

import hashlib
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from importlib import metadata
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .cache import CacheProvider, cache_key_prefix
from .errors import ConfigError
from .model import DependencyRecord, Environment, LicenseGateSpec


# ---------------------------------------------------------------------
# SPDX expressions
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(r"\s*(\(|\)|[^\s()]+)")


class LicenseExpressionError(ValueError):
    pass


def _tokenize(expr: str) -> List[str]:
    expr = expr.replace("/", " OR ")
    tokens = _TOKEN_RE.findall(expr)
    if not tokens:
        raise LicenseExpressionError("empty license expression")
    return tokens


class _Parser:
    """
    Recursive descent over:
        or   := and ("OR" and)*
        and  := atom ("AND" atom)*
        atom := "(" or ")" | ID ["WITH" ID]
    Produces disjunctive normal form: a list of AND-sets.
    """

    def __init__(self, tokens: List[str]):
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Optional[str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> str:
        tok = self.peek()
        if tok is None:
            raise LicenseExpressionError("unexpected end of expression")
        self.pos += 1
        return tok

    def parse(self) -> List[FrozenSet[str]]:
        out = self.parse_or()
        if self.peek() is not None:
            raise LicenseExpressionError(f"unexpected token {self.peek()!r}")
        return out

    def parse_or(self) -> List[FrozenSet[str]]:
        alts = self.parse_and()
        while self.peek() is not None and self.peek().upper() == "OR":
            self.take()
            alts = alts + self.parse_and()
        return alts

    def parse_and(self) -> List[FrozenSet[str]]:
        alts = self.parse_atom()
        while self.peek() is not None and self.peek().upper() == "AND":
            self.take()
            rhs = self.parse_atom()
            alts = [a | b for a in alts for b in rhs]
        return alts

    def parse_atom(self) -> List[FrozenSet[str]]:
        tok = self.take()
        if tok == "(":
            inner = self.parse_or()
            if self.take() != ")":
                raise LicenseExpressionError("missing ')'")
            return inner
        if tok == ")" or tok.upper() in ("AND", "OR", "WITH"):
            raise LicenseExpressionError(f"unexpected token {tok!r}")
        if self.peek() is not None and self.peek().upper() == "WITH":
            # exceptions only widen what the base license permits
            self.take()
            self.take()
        return [frozenset({tok})]


def parse_license_expression(expr: str) -> List[FrozenSet[str]]:
    return _Parser(_tokenize(expr)).parse()


# ---------------------------------------------------------------------
# Compliance check
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Violation:
    package: str
    version: str
    licenses: Tuple[str, ...]
    reason: str

    @property
    def ident(self) -> str:
        return f"{self.package}@{self.version}"

    def __str__(self) -> str:
        declared = ", ".join(self.licenses) if self.licenses else "<none>"
        return f"{self.ident}: {self.reason} (declared: {declared})"


@dataclass(frozen=True)
class ComplianceResult:
    allow: Tuple[str, ...]
    checked: int
    violations: Tuple[Violation, ...] = ()

    @property
    def passed(self) -> bool:
        return not self.violations

    def to_dict(self) -> Dict:
        return {
            "allow": list(self.allow),
            "checked": self.checked,
            "violations": [
                {"package": v.package, "version": v.version, "licenses": list(v.licenses), "reason": v.reason}
                for v in self.violations
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ComplianceResult":
        return cls(
            allow=tuple(data.get("allow", [])),
            checked=int(data.get("checked", 0)),
            violations=tuple(
                Violation(
                    package=v["package"],
                    version=v["version"],
                    licenses=tuple(v.get("licenses", [])),
                    reason=v.get("reason", ""),
                )
                for v in data.get("violations", [])
            ),
        )


def _record_violation(record: DependencyRecord, allow: FrozenSet[str]) -> Optional[str]:
    declared = [l for l in record.licenses if l and l.strip()]
    if not declared:
        return "no license declared"

    unparseable = []
    for expr in declared:
        try:
            alternatives = parse_license_expression(expr)
        except LicenseExpressionError:
            unparseable.append(expr)
            continue
        if any(alt <= allow for alt in alternatives):
            return None

    if unparseable and len(unparseable) == len(declared):
        return "no recognized license"
    return "license not in allow-list"


def check_licenses(records: Iterable[DependencyRecord], allow_list: Iterable[str]) -> ComplianceResult:
    """Pass iff every record has at least one allowed license."""
    allow = frozenset(a.strip() for a in allow_list if a and a.strip())
    if not allow:
        raise ConfigError("license allow-list is empty")

    seen = set()
    violations: List[Violation] = []
    checked = 0
    for record in sorted(records, key=lambda r: (r.name, r.version)):
        if (record.name, record.version) in seen:
            continue
        seen.add((record.name, record.version))
        checked += 1
        reason = _record_violation(record, allow)
        if reason is not None:
            violations.append(Violation(record.name, record.version, tuple(record.licenses), reason))

    return ComplianceResult(allow=tuple(sorted(allow)), checked=checked, violations=tuple(violations))


# ---------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------

class DependencyResolver(ABC):
    @abstractmethod
    def resolve(self, source: Path) -> List[DependencyRecord]:
        """Full transitive dependency set for a manifest/lockfile source."""


def _as_license_list(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    return tuple(str(v) for v in value if v)


class JsonManifestResolver(DependencyResolver):
    """
    Reads a resolved dependency export. Accepts either a list of packages
    or an object with a "packages" list (the `cargo metadata` shape).
    Each package has name, version and license or licenses.
    """

    def resolve(self, source: Path) -> List[DependencyRecord]:
        try:
            data = json.loads(Path(source).read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigError(f"dependency manifest not found: {source}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"dependency manifest is not valid JSON: {source}", error=str(e)) from e

        packages = data.get("packages") if isinstance(data, dict) else data
        if not isinstance(packages, list):
            raise ConfigError(f"dependency manifest has no package list: {source}")

        records = []
        for pkg in packages:
            if not isinstance(pkg, dict) or "name" not in pkg:
                raise ConfigError(f"malformed package entry in {source}: {pkg!r}")
            licenses = _as_license_list(pkg.get("licenses", pkg.get("license")))
            records.append(
                DependencyRecord(
                    name=str(pkg["name"]),
                    version=str(pkg.get("version", "")),
                    licenses=licenses,
                    source=pkg.get("source"),
                )
            )
        return records


_CLASSIFIER_SPDX = {
    "MIT License": "MIT",
    "Apache Software License": "Apache-2.0",
    "BSD License": "BSD-3-Clause",
    "ISC License (ISCL)": "ISC",
    "Mozilla Public License 2.0 (MPL 2.0)": "MPL-2.0",
    "Python Software Foundation License": "PSF-2.0",
    "GNU General Public License v3 (GPLv3)": "GPL-3.0",
    "GNU General Public License v2 (GPLv2)": "GPL-2.0",
    "GNU Lesser General Public License v3 (LGPLv3)": "LGPL-3.0",
    "The Unlicense (Unlicense)": "Unlicense",
}


class InstalledDistributionsResolver(DependencyResolver):
    """Installed Python distributions; `source` is ignored."""

    def resolve(self, source: Path) -> List[DependencyRecord]:
        records = []
        for dist in metadata.distributions():
            meta = dist.metadata
            name = meta.get("Name")
            if not name:
                continue
            licenses: List[str] = []
            expr = meta.get("License-Expression")
            if expr:
                licenses.append(expr)
            for classifier in meta.get_all("Classifier") or []:
                if classifier.startswith("License ::"):
                    label = classifier.split("::")[-1].strip()
                    if label in _CLASSIFIER_SPDX:
                        licenses.append(_CLASSIFIER_SPDX[label])
            if not licenses:
                raw = (meta.get("License") or "").strip()
                if raw and "\n" not in raw and len(raw) < 64:
                    licenses.append(raw)
            records.append(DependencyRecord(name=name, version=dist.version, licenses=tuple(dict.fromkeys(licenses))))
        return records


RESOLVERS: Dict[str, DependencyResolver] = {
    "json": JsonManifestResolver(),
    "installed": InstalledDistributionsResolver(),
}


def get_resolver(name: str) -> DependencyResolver:
    try:
        return RESOLVERS[name]
    except KeyError:
        raise ConfigError(f"unknown dependency resolver '{name}'. Known: {sorted(RESOLVERS)}") from None


# ---------------------------------------------------------------------
# Gate job
# ---------------------------------------------------------------------

@dataclass
class GateOutcome:
    result: ComplianceResult
    cache_key: Optional[str] = None
    cache_hit: bool = False
    log: List[str] = field(default_factory=list)


def gate_cache_key(spec: LicenseGateSpec, manifest: Path, workflow: str, environment: Environment) -> Optional[str]:
    """Keyed by the manifest's content hash and the allow-list."""
    if not manifest.is_file():
        return None
    h = hashlib.sha256()
    h.update(manifest.read_bytes())
    h.update(b"\0")
    h.update(",".join(sorted(spec.allow)).encode("utf-8"))
    h.update(b"\0")
    h.update(spec.resolver.encode("utf-8"))
    return cache_key_prefix(workflow, environment, "license-gate") + h.hexdigest()


def run_license_gate(
    spec: LicenseGateSpec,
    workspace: Path,
    *,
    workflow: str,
    environment: Environment,
    cache: CacheProvider | None = None,
    resolver: DependencyResolver | None = None,
) -> GateOutcome:
    manifest = (Path(workspace) / spec.manifest).resolve()
    key = gate_cache_key(spec, manifest, workflow, environment) if spec.resolver == "json" else None

    if cache is not None and key is not None:
        hit = cache.lookup(key)
        if hit is not None:
            result = ComplianceResult.from_dict(json.loads(hit.data.decode("utf-8")))
            return GateOutcome(result=result, cache_key=key, cache_hit=True, log=[f"license check: cache hit ({key[-12:]})"])

    resolver = resolver or get_resolver(spec.resolver)
    records = resolver.resolve(manifest)
    result = check_licenses(records, spec.allow)
    log = [f"license check: {result.checked} package(s) against {', '.join(result.allow)}"]

    if cache is not None and key is not None:
        cache.store(key, json.dumps(result.to_dict(), sort_keys=True).encode("utf-8"))
        log.append(f"license check: cached ({key[-12:]})")

    return GateOutcome(result=result, cache_key=key, log=log)
