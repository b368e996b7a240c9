# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import click

from ciflow import settings
from ciflow.errors import ConfigError
from ciflow.executors import shell_executor_factory
from ciflow.git_facts.git import get_current_ref, get_remote_url
from ciflow.loader import Workflow, find_workflow_files, load_workflow
from ciflow.log import configure_logging
from ciflow.matrix import size
from ciflow.model import Event, EventKind
from ciflow.runner import run_pipeline
from ciflow.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument, CIFLOW_WORKFLOW or the current directory.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()
    workflow_arg = workflow_arg or settings.WORKFLOW

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix == "":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  ciflow run --workflow my_workflow.py",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  ciflow_workflow.py",
                "  *_workflow.py",
                "  ciflow.yaml / ciflow.yml",
            ],
            suggestion="Create a workflow file or specify one explicitly:\n  ciflow run --workflow my_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  ciflow run --workflow ciflow_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def _load(workflow: str | None) -> tuple[Path, Workflow]:
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        wf = load_workflow(workflow_path)
        wf.graph()
    except ConfigError as e:
        console.print_error("Invalid workflow", f"{workflow_path}: {e}")
        sys.exit(EXIT_CONFIG)
    return workflow_path, wf


def _event(kind: str, ref: str | None, base_ref: str | None) -> Event:
    console = get_console()
    if not ref:
        try:
            ref = get_current_ref()
            console.print_debug(f"Using git ref: {ref}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not determine git ref",
                "No --ref given and the current git ref could not be read.",
                suggestion="Specify the ref explicitly:\n  ciflow run --ref refs/heads/master",
            )
            sys.exit(EXIT_CONFIG)
    return Event(kind=EventKind(kind), ref=ref, base_ref=base_ref)


def _repo_name() -> str:
    try:
        repo_url = get_remote_url("origin")
        return repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


_event_options = [
    click.option(
        "--event",
        "event_kind",
        type=click.Choice([k.value for k in EventKind]),
        default=EventKind.PUSH.value,
        show_default=True,
        help="Triggering event kind",
    ),
    click.option("--ref", default=None, help="Git ref (defaults to the current branch or tag)"),
    click.option("--base-ref", default=None, help="Pull request target branch"),
]


def event_options(fn):
    for opt in reversed(_event_options):
        fn = opt(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--log-level", default=None, help="Log level for diagnostics (default: CIFLOW_LOG_LEVEL or WARNING)")
@click.pass_context
def cli(ctx, debug, log_level):
    """ciflow: job-graph CI runner with matrix fan-out and fail-fast."""
    console = Console(debug=debug)
    set_console(console)
    configure_logging("DEBUG" if debug else (log_level or settings.LOG_LEVEL))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py or .yaml)")
@event_options
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run report as JSON")
@click.pass_context
def run(ctx, workflow, event_kind, ref, base_ref, workers, as_json):
    """Run a workflow for an event."""
    console = get_console()
    if as_json:
        console.quiet = True

    workflow_path, wf = _load(workflow)
    event = _event(event_kind, ref, base_ref)

    context = wf.rules.activate(event)
    if context is None:
        if as_json:
            click.echo(json.dumps({"activated": False, "jobs": {}}))
        else:
            console.print_not_activated(event.kind.value, event.ref)
        return

    try:
        console.print_run_started(
            repository=_repo_name(),
            workflow=workflow_path.name,
            job_count=len(wf.jobs),
            event=event.kind.value,
            ref=event.ref,
        )
        report = run_pipeline(
            wf.graph(),
            context,
            executor_factory=shell_executor_factory(repo_root="."),
            max_workers=workers,
            console=console,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if as_json:
        click.echo(json.dumps({"activated": True, **report.to_dict()}, indent=2))
    else:
        console.print_results(report)

    if not report.ok:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py or .yaml)")
@event_options
def plan(workflow, event_kind, ref, base_ref):
    """Show what would run for an event, without running it."""
    console = get_console()
    _workflow_path, wf = _load(workflow)
    event = _event(event_kind, ref, base_ref)

    context = wf.rules.activate(event)
    if context is None:
        console.print_not_activated(event.kind.value, event.ref)
        return

    graph = wf.graph()
    sizes = {job.name: size(job) for job in graph.jobs}
    gates = {}
    for job in graph.jobs:
        if job.condition is not None:
            verdict = "runs" if job.condition(context) else "skipped"
            gates[job.name] = f"{job.condition} -> {verdict}"
    console.print_info(f"Event: {event.kind.value} {event.ref} ({context.ref_type.value} {context.ref_name})")
    console.print_plan(graph.topo_levels(), sizes, gates)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py or .yaml)")
def validate(workflow):
    """Load and validate a workflow."""
    console = get_console()
    workflow_path, wf = _load(workflow)
    total = sum(size(job) for job in wf.jobs)
    console.print_info(f"{workflow_path.name}: {len(wf.jobs)} job(s), {total} instance(s). OK")


if __name__ == "__main__":
    cli()
