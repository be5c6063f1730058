# ciflow_workflow.py
# Rust crate CI: docs, build, tests under a lockable-memory cap, and a
# third-party license gate that reads the pull request head.
from __future__ import annotations

from ciflow import action, cache, job, license_gate, on_pull_request, on_push, sh, uses, wf

action(
    "cache-setup",
    sh("Restore cargo registry", "mkdir -p ~/.cargo/registry target"),
)


def _cargo_cache():
    return cache("Cargo.lock", "Cargo.toml", paths=["target"], restore_keys=["Rust/ubuntu-latest/"])


def workflow():
    return wf(
        "Rust",
        job(
            "doc",
            uses("Checkout", "checkout"),
            uses("Cache setup", "cache-setup"),
            uses("Install cargo-deadlinks", "install-tool", tool="deadlinks", install="cargo install cargo-deadlinks"),
            sh("Generate documentation", "cargo doc --all", cache=_cargo_cache()),
        ),
        job(
            "build",
            uses("Checkout", "checkout"),
            uses("Cache setup", "cache-setup"),
            sh("Build all targets", "cargo build --all --all-targets", cache=_cargo_cache()),
        ),
        job(
            "test",
            uses("Checkout", "checkout"),
            uses("Cache setup", "cache-setup"),
            uses("Install cargo-sort", "install-tool", tool="cargo-sort", install="cargo install cargo-sort"),
            uses("Test all targets", "test", framework="cargo"),
            max_locked_pages=128,
            timeout=3600,
        ),
        license_gate(
            "licenses",
            manifest="cargo-metadata.json",
            allow=["MIT", "Apache-2.0", "BSD-3-Clause", "Unicode-DFS-2016", "ISC"],
        ),
        on=[on_pull_request("master"), on_push("master")],
    )
