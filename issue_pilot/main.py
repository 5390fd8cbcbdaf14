"""CLI entry point for issue-pilot."""

import asyncio
import signal
import sys
from pathlib import Path

import click
import structlog

from issue_pilot.config.settings import IssuePilotSettings
from issue_pilot.engine.admission import AdmissionController
from issue_pilot.engine.budget import BudgetManager
from issue_pilot.engine.dependency_resolver import DependencyResolver
from issue_pilot.engine.job_store import JobStore
from issue_pilot.engine.workflow import JobWorkflow
from issue_pilot.enums import JobStatus, OverrideKind
from issue_pilot.exceptions import ConfigurationError, IssuePilotError, WorkflowError
from issue_pilot.models.domain import Job
from issue_pilot.providers.factory import create_collaborators
from issue_pilot.rendering import PilotRenderer
from issue_pilot.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option(
    "--config",
    default="issue-pilot.yaml",
    envvar="ISSUE_PILOT_CONFIG",
    help="Path to configuration file",
)
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--json-logs/--console-logs", default=True, help="Render logs as JSON lines")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str, json_logs: bool) -> None:
    """issue-pilot: drive labelled issues to reviewed pull requests."""
    configure_logging(log_level, json_output=json_logs)

    config_path = Path(config)
    if not config_path.exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = IssuePilotSettings.from_yaml(str(config_path))
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.option("--once", is_flag=True, help="Run a single admission cycle and wait for started jobs")
@click.pass_context
def run(ctx: click.Context, once: bool) -> None:
    """Run the admission loop."""
    settings = ctx.obj["settings"]
    try:
        asyncio.run(_run_once(settings) if once else _daemon_mode(settings))
    except IssuePilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("run_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


@cli.command()
@click.option("--repo", help="Only show jobs of this repository (owner/name)")
@click.pass_context
def status(ctx: click.Context, repo: str | None) -> None:
    """List job records."""
    settings = ctx.obj["settings"]
    asyncio.run(_show_status(settings, repo))


@cli.command()
@click.argument("repo")
@click.argument("number", type=int)
@click.pass_context
def show(ctx: click.Context, repo: str, number: int) -> None:
    """Show one job with its iterations and events."""
    settings = ctx.obj["settings"]
    try:
        asyncio.run(_show_job(settings, repo, number))
    except IssuePilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("repo")
@click.argument("number", type=int)
@click.option("--instructions", help="Extra instructions for the next attempt")
@click.pass_context
def retry(ctx: click.Context, repo: str, number: int, instructions: str | None) -> None:
    """Retry a FAILED job with a fresh budget."""
    _apply_override(ctx.obj["settings"], repo, number, instructions, OverrideKind.RETRY)


@cli.command()
@click.argument("repo")
@click.argument("number", type=int)
@click.option("--feedback", required=True, help="What must change before approval")
@click.pass_context
def reject(ctx: click.Context, repo: str, number: int, feedback: str) -> None:
    """Reject a job awaiting approval and send it back with feedback."""
    _apply_override(ctx.obj["settings"], repo, number, feedback, OverrideKind.REJECTION)


@cli.command()
@click.argument("repo")
@click.argument("number", type=int)
@click.pass_context
def approve(ctx: click.Context, repo: str, number: int) -> None:
    """Approve a job awaiting approval."""
    settings = ctx.obj["settings"]
    try:
        job = asyncio.run(_approve(settings, repo, number))
    except IssuePilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("approve_error", exc_info=True)
        sys.exit(1)
    click.echo(f"Job {job.key} approved")


def _apply_override(
    settings: IssuePilotSettings,
    repo: str,
    number: int,
    feedback: str | None,
    kind: OverrideKind,
) -> None:
    try:
        job = asyncio.run(_override(settings, repo, number, feedback, kind))
    except IssuePilotError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("override_error", kind=kind.value, exc_info=True)
        sys.exit(1)
    click.echo(f"Job {job.key} is {job.status.value}; it restarts on the next admission cycle")


def _create_budget(settings: IssuePilotSettings, store: JobStore) -> BudgetManager:
    collaborators = create_collaborators(settings)
    return BudgetManager(store, collaborators.tracker, settings)


def _create_controller(settings: IssuePilotSettings) -> AdmissionController:
    """Wire collaborators, store and engine components together.

    Args:
        settings: Loaded settings

    Returns:
        Ready AdmissionController
    """
    collaborators = create_collaborators(settings)
    store = JobStore(settings.state_dir)
    renderer = PilotRenderer()
    budget = BudgetManager(store, collaborators.tracker, settings, renderer=renderer)
    resolver = DependencyResolver(collaborators.tracker, store, renderer=renderer)
    workflow = JobWorkflow(settings, collaborators, store, budget, renderer=renderer)
    return AdmissionController(settings, collaborators.tracker, store, resolver, workflow, budget)


async def _load_job(store: JobStore, repo: str, number: int) -> Job:
    job = await store.get(repo, number)
    if job is None:
        raise WorkflowError(f"No job recorded for {repo}#{number}")
    return job


async def _run_once(settings: IssuePilotSettings) -> None:
    controller = _create_controller(settings)
    recovered = await controller.recover_interrupted()
    if recovered:
        click.echo(f"Recovered {recovered} interrupted job(s)")
    await controller.run_cycle()
    click.echo(f"Cycle complete; waiting for {len(controller.running)} job(s)")
    await controller.wait_idle()


async def _daemon_mode(settings: IssuePilotSettings) -> None:
    """Run the admission loop until SIGINT or SIGTERM.

    SIGUSR1 pauses admission and SIGUSR2 resumes it; running jobs are not
    affected by either.
    """
    controller = _create_controller(settings)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop.set)
    loop.add_signal_handler(signal.SIGTERM, stop.set)
    loop.add_signal_handler(signal.SIGUSR1, controller.set_enabled, False)
    loop.add_signal_handler(signal.SIGUSR2, controller.set_enabled, True)

    click.echo(f"Starting admission loop (polling every {settings.engine.poll_interval_seconds}s)")
    await controller.run_forever(stop)
    click.echo("Admission loop stopped")


async def _show_status(settings: IssuePilotSettings, repo: str | None) -> None:
    store = JobStore(settings.state_dir)
    jobs = await store.list_jobs(repo)

    if not jobs:
        click.echo("No jobs found.")
        return

    click.echo(f"Jobs ({len(jobs)}):\n")
    for job in jobs:
        phase = f" [{job.current_phase.value}]" if job.current_phase else ""
        line = f"  {job.key}: {job.status.value}{phase} (iterations {job.current_iteration}"
        line += f", review {job.current_review_iteration})"
        if job.status == JobStatus.BLOCKED:
            line += " blocked by " + ", ".join(f"#{n}" for n in job.blocked_by)
        click.echo(line)


async def _show_job(settings: IssuePilotSettings, repo: str, number: int) -> None:
    store = JobStore(settings.state_dir)
    job = await _load_job(store, repo, number)

    click.echo(f"\nJob {job.key}: {job.title}\n")
    click.echo(f"Status: {job.status.value}")
    click.echo(f"Phase: {job.current_phase.value if job.current_phase else '-'}")
    click.echo(f"Branch: {job.branch_name or '-'}")
    click.echo(f"Iterations: {job.current_iteration} (review {job.current_review_iteration})")
    if job.artifact_url:
        click.echo(f"Pull request: {job.artifact_url}")
    if job.escalation_reason:
        click.echo(f"Escalation: {job.escalation_reason}")
    if job.cooldown_until:
        click.echo(f"Cooldown until: {job.cooldown_until.isoformat()}")

    iterations = await store.iterations(repo, number)
    if iterations:
        click.echo(f"\nIterations ({len(iterations)}):")
        for record in iterations:
            verification = record.verification_result.value if record.verification_result else "-"
            review = "-" if record.review_passed is None else ("passed" if record.review_passed else "failed")
            click.echo(f"  {record.sequence}. ci={verification} review={review} outcome={record.outcome or '-'}")

    events = await store.events(repo, number)
    if events:
        click.echo(f"\nEvents ({len(events)}):")
        for event in events:
            click.echo(f"  {event.created_at.isoformat()} {event.type}: {event.message}")


async def _override(
    settings: IssuePilotSettings,
    repo: str,
    number: int,
    feedback: str | None,
    kind: OverrideKind,
) -> Job:
    settings.repository(repo)
    store = JobStore(settings.state_dir)
    job = await _load_job(store, repo, number)
    budget = _create_budget(settings, store)
    return await budget.record_human_override(job, feedback, kind)


async def _approve(settings: IssuePilotSettings, repo: str, number: int) -> Job:
    store = JobStore(settings.state_dir)
    job = await _load_job(store, repo, number)
    budget = _create_budget(settings, store)
    return await budget.record_approval(job)


if __name__ == "__main__":
    cli()
