# cli.py
from __future__ import annotations

import signal
from pathlib import Path

import click

from . import settings
from .cache import CacheProvider, FileCacheBackend, cache_key_prefix
from .dag import build_graph
from .errors import (
    EXIT_CANCELLED,
    EXIT_JOB_FAILURE,
    EXIT_LICENSE_VIOLATION,
    EXIT_OK,
    CIError,
)
from .executor import CancelToken
from .git_facts.git import GitCheckout
from .licenses import check_licenses, get_resolver
from .model import PipelineResult, PipelineStatus, ResourceLimits
from .runner import LICENSE_VIOLATION, load_workflow, run_pipeline
from .triggers import load_event, workflow_triggered
from .ui.console import Console, get_console, set_console


def exit_code_for(result: PipelineResult) -> int:
    if result.status is PipelineStatus.SUCCESS:
        return EXIT_OK
    if result.status is PipelineStatus.CANCELLED:
        return EXIT_CANCELLED
    failed = [result.runs[n] for n in result.failed]
    if failed and all(r.reason == LICENSE_VIOLATION for r in failed):
        return EXIT_LICENSE_VIOLATION
    return EXIT_JOB_FAILURE


def _fail(ctx: click.Context, e: CIError, title: str) -> None:
    console = get_console()
    details = [f"{k}: {v}" for k, v in e.details.items()]
    if e.job:
        details.insert(0, f"job: {e.job}")
    console.print_error(title, e.message, details=details or None)
    console.print_info("PIPELINE: FAILURE (not started)")
    ctx.exit(e.exit_code)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """ciflow: DAG-scheduled, cache-aware CI pipelines."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow", type=click.Path(dir_okay=False))
@click.option("--event", "event_file", default=None, type=click.Path(dir_okay=False), help="Event JSON file")
@click.option("--concurrency", default=settings.CONCURRENCY, show_default=True, type=click.IntRange(min=1), envvar="CIFLOW_CONCURRENCY", help="Max jobs running at once")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, envvar="CIFLOW_CACHE_DIR", help="Cache directory")
@click.option("--workspace", default=".", show_default=True, type=click.Path(file_okay=False), help="Base workspace for jobs")
@click.option("--work-dir", default=settings.WORK_DIR, show_default=True, envvar="CIFLOW_WORK_DIR", help="Per-job workspaces and pull request checkouts, relative to --workspace")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Stop admitting new jobs after the first failure")
@click.option("--timeout", default=None, type=float, help="Per-step wall clock limit in seconds")
@click.option("--max-locked-pages", default=None, type=int, help="Lockable memory cap per step, in pages")
@click.option("--grace-period", default=settings.GRACE_PERIOD, show_default=True, type=float, help="Seconds a cancelled job gets before SIGKILL")
@click.option("--cache-keep", default=settings.CACHE_KEEP, show_default=True, type=int, help="Entries kept per cache prefix after the run")
@click.pass_context
def run(ctx, workflow, event_file, concurrency, cache_dir, workspace, work_dir, fail_fast, timeout, max_locked_pages, grace_period, cache_keep):
    """Run a workflow for an event."""
    console = get_console()

    try:
        definition = load_workflow(workflow)
        event = load_event(event_file) if event_file else None
        graph = build_graph(definition)
    except CIError as e:
        _fail(ctx, e, e.kind.replace("_", " ").capitalize())
        return

    if event is not None and not workflow_triggered(event, definition):
        console.print_not_triggered(definition.name, f"{event.kind.value} on {event.branch}")
        ctx.exit(EXIT_OK)

    event_label = f"{event.kind.value} on {event.branch}" if event else "manual"
    console.print_run_started(definition.name, event_label, len(graph.order), concurrency)

    work_dir = Path(workspace, work_dir).resolve()
    backend = FileCacheBackend(cache_dir)
    cancel = CancelToken(grace_period)

    def _on_signal(signum, frame):
        console.print_info(f"\nReceived signal {signum}, cancelling pipeline...")
        cancel.cancel()

    previous = {s: signal.signal(s, _on_signal) for s in (signal.SIGINT, signal.SIGTERM)}
    try:
        result = run_pipeline(
            graph,
            concurrency=concurrency,
            limits=ResourceLimits(max_locked_pages=max_locked_pages, timeout=timeout),
            cache=CacheProvider(backend),
            workspace=workspace,
            work_dir=work_dir,
            event=event,
            checkout=GitCheckout(work_dir),
            cancel=cancel,
            fail_fast=fail_fast,
            console=console,
        )
    except Exception as e:
        console.print_exception(e)
        ctx.exit(EXIT_JOB_FAILURE)
        return
    finally:
        for s, handler in previous.items():
            signal.signal(s, handler)

    for spec in graph.jobs.values():
        names = [s.name for s in spec.steps if s.cache is not None]
        if spec.gate is not None:
            names.append("license-gate")
        for step_name in names:
            prefix = cache_key_prefix(definition.name, spec.environment, step_name)
            for key in backend.prune(prefix, keep=cache_keep):
                console.print_debug(f"cache: pruned {key}")

    console.print_results(result)
    ctx.exit(exit_code_for(result))


@cli.command()
@click.argument("workflow", type=click.Path(dir_okay=False))
@click.pass_context
def graph(ctx, workflow):
    """Print the job graph as parallel stages."""
    console = get_console()
    try:
        definition = load_workflow(workflow)
        g = build_graph(definition)
    except CIError as e:
        _fail(ctx, e, e.kind.replace("_", " ").capitalize())
        return
    console.print_graph(definition.name, g.levels())
    for name in g.order:
        needs = sorted(g.upstream[name])
        if needs:
            console.print_info(f"  {name} <- {', '.join(needs)}")


@cli.command()
@click.argument("manifest", type=click.Path(dir_okay=False))
@click.option("--allow", "allow", multiple=True, required=True, help="Allowed SPDX license identifier (repeatable)")
@click.option("--resolver", default="json", show_default=True, help="Dependency resolver: json or installed")
@click.pass_context
def licenses(ctx, manifest, allow, resolver):
    """Check a dependency manifest against a license allow-list."""
    console = get_console()
    try:
        records = get_resolver(resolver).resolve(Path(manifest))
        result = check_licenses(records, allow)
    except CIError as e:
        _fail(ctx, e, "License check could not run")
        return

    console.print_info(f"Checked {result.checked} package(s) against: {', '.join(result.allow)}")
    if result.passed:
        console.print_info("LICENSES: PASS")
        ctx.exit(EXIT_OK)
    console.print_violations(result.violations)
    console.print_info("LICENSES: FAIL")
    ctx.exit(EXIT_LICENSE_VIOLATION)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
