# cli.py
from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from .dag import resolve
from .errors import PipelineError
from .model import Status
from .report import write_report
from .runner import load_workflow, run_workflow
from .settings import Settings
from .ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("pipewright.yml", "pipewright.yaml", "pipewright_workflow.py")
EXIT_INTERRUPTED = 130


def find_workflow_files(directory: str | Path = ".") -> list[Path]:
    """
    Find candidate workflow files.

    The pipewright defaults are tried first; only when none exists are the
    files under .github/workflows/ considered.
    """
    root = Path(directory)
    found = [root / name for name in DEFAULT_WORKFLOWS if (root / name).exists()]
    if found:
        return found
    gh = root / ".github" / "workflows"
    if gh.is_dir():
        return sorted(p for p in gh.iterdir() if p.suffix in (".yml", ".yaml"))
    return []


def discover_workflow(workflow_arg: str | None, directory: str | Path = ".") -> Path:
    """
    Discover the workflow file from the argument or the defaults.

    Raises:
        SystemExit: If no workflow or several candidate workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  pipewright run my_workflow.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files(directory)

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                *(f"  {name}" for name in DEFAULT_WORKFLOWS),
                "  .github/workflows/*.yml",
            ],
            suggestion="Create pipewright.yml, or specify a workflow explicitly:\n  pipewright run my_workflow.yml",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  pipewright run {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def parse_inputs(pairs: Tuple[str, ...]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--input")
        key, value = pair.split("=", 1)
        values[key.strip()] = value
    return values


def _report_error(e: PipelineError) -> None:
    console = get_console()
    details: List[str] = []
    if e.job:
        details.append(f"job: {e.job}")
    if e.step:
        details.append(f"step: {e.step}")
    details.extend(f"{k}: {v}" for k, v in e.details.items())
    console.print_error(e.kind.replace("_", " ").capitalize(), e.message, details=details or None)
    if console.debug:
        console.print_exception(e)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the results table")
@click.pass_context
def cli(ctx, debug, quiet):
    """pipewright: run declarative pipelines locally, job by job."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow", required=False)
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel workers")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Cancel the run after the first job failure")
@click.option("--input", "inputs", multiple=True, metavar="KEY=VALUE", help="Workflow input (repeatable)")
@click.option("--secrets-file", default=None, type=click.Path(exists=True, dir_okay=False), help="YAML mapping of secrets")
@click.option("--run-dir", default=None, help="Where runs are recorded (default .pipewright/runs)")
@click.option("--report", "report_path", default=None, help="Also write the JSON run report here")
@click.option("--job", "only", multiple=True, help="Only run this job and what it needs (repeatable)")
@click.option("--source", default=".", show_default=True, type=click.Path(exists=True, file_okay=False), help="Source tree checked out into job workspaces")
@click.pass_context
def run(ctx, workflow, workers, fail_fast, inputs, secrets_file, run_dir, report_path, only, source):
    """Run a workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow, source)
    cancel = threading.Event()

    try:
        settings = Settings.from_env().override(
            run_dir=Path(run_dir) if run_dir else None,
            source_dir=Path(source),
        )
        spec = load_workflow(workflow_path)
        console.print_debug(f"Loaded {len(spec.jobs)} job(s) from {workflow_path}")

        report = run_workflow(
            spec,
            settings=settings,
            inputs=parse_inputs(inputs),
            secrets_file=secrets_file,
            only=list(only) or None,
            cancel_event=cancel,
            max_workers=workers,
            fail_fast=fail_fast,
        )
        if report_path:
            write_report(report, report_path)
            console.print_info(f"Report written to {report_path}")

        if report.interrupted:
            sys.exit(EXIT_INTERRUPTED)
        if report.status is not Status.SUCCEEDED:
            sys.exit(1)

    except KeyboardInterrupt:
        cancel.set()
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except PipelineError as e:
        _report_error(e)
        sys.exit(1)
    except click.ClickException:
        raise
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.argument("workflow", required=False)
@click.option("--job", "only", multiple=True, help="Only plan this job and what it needs (repeatable)")
@click.option("--source", default=".", show_default=True, type=click.Path(exists=True, file_okay=False))
def plan(workflow, only, source):
    """Print the stages a workflow would run in."""
    console = get_console()
    workflow_path = discover_workflow(workflow, source)
    try:
        spec = load_workflow(workflow_path)
        graph = resolve(spec, only=list(only) or None)
    except PipelineError as e:
        _report_error(e)
        sys.exit(1)
    console.print_plan(graph.levels())


@cli.command()
@click.argument("workflow", required=False)
@click.option("--source", default=".", show_default=True, type=click.Path(exists=True, file_okay=False))
def validate(workflow, source):
    """Parse a workflow and check its dependency graph."""
    console = get_console()
    workflow_path = discover_workflow(workflow, source)
    try:
        spec = load_workflow(workflow_path)
        graph = resolve(spec)
    except PipelineError as e:
        _report_error(e)
        sys.exit(1)
    console.print_info(f"{workflow_path}: OK ({len(graph.order)} job(s), {len(graph.levels())} stage(s))")


def main(argv: Optional[List[str]] = None) -> None:
    cli(args=argv)


if __name__ == "__main__":
    cli()
