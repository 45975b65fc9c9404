# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from relayci import git_facts
from relayci.actions import get_action
from relayci.artifacts import ArtifactStore
from relayci.dag import build_graph, format_plan
from relayci.errors import (
    EnvironmentProvisionError,
    PipelineDefinitionError,
    RelayError,
    UnknownActionError,
)
from relayci.executor import BestEffortPolicy, ExecutorConfig, JobExecutor
from relayci.loader import load_pipeline
from relayci.model import RunContext
from relayci.scheduler import ExitCode, RunReport, Scheduler
from relayci.settings import Settings
from relayci.store import RunStore, StoreListener
from relayci.triggers import evaluate as evaluate_triggers
from relayci.ui.console import Console, ConsoleReporter, get_console, set_console

DEFAULT_PIPELINE_FILES = (
    ".github/workflows/ci-cd.yml",
    "relayci.yml",
    "relayci.yaml",
    "relayci_workflow.py",
)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Resolve the pipeline file from the argument, or from the default
    locations when no argument is given.
    """
    console = get_console()
    if pipeline_arg:
        return Path(pipeline_arg)
    for candidate in DEFAULT_PIPELINE_FILES:
        if Path(candidate).exists():
            return Path(candidate)
    console.print_error(
        "No pipeline file found",
        "Could not find a pipeline definition.",
        details=["Looked for:", *(f"  {c}" for c in DEFAULT_PIPELINE_FILES)],
        suggestion="Pass one explicitly:\n  relayci run path/to/pipeline.yml",
    )
    sys.exit(int(ExitCode.DEFINITION_ERROR))


def _definition_error(e: RelayError) -> None:
    console = get_console()
    console.print_error(
        "Invalid pipeline",
        e.message,
        details=[f"{k}: {v}" for k, v in e.details.items()] or None,
        suggestion=e.hint,
    )
    sys.exit(int(ExitCode.DEFINITION_ERROR))


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option(
    "--home",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="State directory for artifacts, workspaces and run history (env: RELAYCI_HOME)",
)
@click.pass_context
def cli(ctx, debug, home):
    """relayci: run CI/CD pipelines as a dependency graph of jobs."""
    console = Console(debug=debug)
    set_console(console)
    if debug:
        logging.basicConfig(level=logging.DEBUG, format="[DEBUG] %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    try:
        ctx.obj["settings"] = Settings.from_env().with_overrides(home=home)
    except RelayError as e:
        console.print_error("Invalid configuration", e.message)
        sys.exit(int(ExitCode.DEFINITION_ERROR))


@cli.command()
@click.argument("pipeline_file", required=False)
@click.option("--event", default="push", show_default=True,
              type=click.Choice(["push", "pull_request", "workflow_dispatch"]),
              help="Event the run is triggered by")
@click.option("--branch", default=None, help="Branch name (defaults to the checked-out branch)")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.option("--actor", default=None, help="Who triggered the run (defaults to git user.name)")
@click.option("--concurrency", default=None, type=click.IntRange(min=1), help="Maximum jobs running at once")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True,
              help="Stop starting new jobs after the first failure")
@click.option("--strict", is_flag=True, default=False,
              help="Treat continue-on-error steps as hard failures")
@click.option("--force", is_flag=True, default=False, help="Run even if no trigger matches")
@click.option("--keep-workspaces", is_flag=True, default=False, help="Leave job workspaces on disk")
@click.pass_context
def run(ctx, pipeline_file, event, branch, sha, actor, concurrency, fail_fast, strict, force, keep_workspaces):
    """Run a pipeline."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    path = discover_pipeline(pipeline_file)

    try:
        pipeline = load_pipeline(path)
        graph = build_graph(pipeline.jobs)
    except PipelineDefinitionError as e:
        _definition_error(e)

    facts = git_facts.collect(Path.cwd())
    branch = branch if branch is not None else (facts.branch or "main")
    decision = evaluate_triggers(pipeline, event, branch, facts.changed_files)
    if not decision and not force:
        console.print_info(f"Pipeline '{pipeline.name}' not triggered: {decision.reason}")
        console.print_info("Use --force to run it anyway.")
        sys.exit(int(ExitCode.OK))

    context = RunContext.create(
        pipeline.name,
        event=event,
        branch=branch,
        sha=sha or facts.sha,
        actor=actor or facts.actor,
        repository=facts.repository or Path.cwd().name,
        source_root=facts.root or Path.cwd(),
    )

    reporter = ConsoleReporter(console)
    executor = JobExecutor(
        ArtifactStore(settings.artifact_dir),
        ExecutorConfig(
            work_dir=settings.work_dir,
            best_effort=BestEffortPolicy.HARD if strict else settings.best_effort,
            keep_workspaces=keep_workspaces,
        ),
        on_step=reporter.on_step,
    )
    scheduler = Scheduler(
        graph,
        executor,
        concurrency=concurrency or settings.concurrency,
        fail_fast=fail_fast,
        listeners=[StoreListener(RunStore(settings.db_url)), reporter],
        env=dict(pipeline.env),
    )

    console.print_run_started(
        repository=context.repository,
        pipeline=pipeline.name,
        job_count=len(pipeline.jobs),
        run_id=context.run_id,
        event=event,
        branch=branch,
    )
    console.print_plan(format_plan(graph))

    try:
        finished = scheduler.run(pipeline, context)
    except KeyboardInterrupt:
        scheduler.cancel()
        console.print_info("\nInterrupted by user")
        sys.exit(int(ExitCode.CANCELLED))
    except EnvironmentProvisionError as e:
        console.print_exception(e)
        sys.exit(int(ExitCode.PROVISION_FAILED))
    except Exception as e:
        console.print_exception(e)
        sys.exit(int(ExitCode.ENGINE_ERROR))

    report = RunReport.from_run(finished, graph.order)
    sys.exit(int(report.exit_code))


@cli.command()
@click.argument("run_id")
@click.pass_context
def status(ctx, run_id):
    """Show the per-job state of a recorded run."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    record = RunStore(settings.db_url).get_run(run_id)
    if record is None:
        console.print_error(
            "Run not found",
            f"No run matches '{run_id}'.",
            suggestion="List recent runs with:\n  relayci runs",
        )
        sys.exit(1)
    console.print_status(record)


@cli.command()
@click.argument("pipeline_file", required=False)
@click.pass_context
def validate(ctx, pipeline_file):
    """Check a pipeline definition and print its stage plan."""
    console = get_console()
    path = discover_pipeline(pipeline_file)
    try:
        pipeline = load_pipeline(path)
        graph = build_graph(pipeline.jobs)
    except PipelineDefinitionError as e:
        _definition_error(e)

    console.print_info(f"Pipeline '{pipeline.name}' is valid ({len(pipeline.jobs)} jobs)")
    console.print_plan(format_plan(graph))
    for job in pipeline.jobs:
        for step in job.steps:
            if not step.is_action:
                continue
            try:
                get_action(step.uses)
            except UnknownActionError:
                console.print_info(f"warning: {job.name}/{step.name}: action '{step.uses}' is not available; the step will fail")


@cli.command()
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1))
@click.pass_context
def runs(ctx, limit):
    """List recent runs."""
    settings: Settings = ctx.obj["settings"]
    get_console().print_runs(RunStore(settings.db_url).list_runs(limit=limit))


@cli.command()
@click.option("--retention-days", default=None, type=float,
              help="Delete artifacts of runs older than this (env: RELAYCI_ARTIFACT_RETENTION_DAYS)")
@click.pass_context
def gc(ctx, retention_days):
    """Delete artifacts that are past the retention window."""
    console = get_console()
    settings: Settings = ctx.obj["settings"].with_overrides(artifact_retention_days=retention_days)
    removed = ArtifactStore(settings.artifact_dir).gc(settings.retention_seconds)
    for run_id in removed:
        console.print_debug(f"removed artifacts of run {run_id}")
    console.print_info(f"Removed artifacts of {len(removed)} run(s)")


if __name__ == "__main__":
    cli()
