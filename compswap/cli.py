"""
CLI interface for compswap.

Provides commands to create and inspect replacement jobs and to drive the
orchestrator, either one tick at a time or on a fixed interval.
"""

import json
import sys
from pathlib import Path

import click

from compswap import __version__


@click.group()
@click.version_option(version=__version__, prog_name="compswap")
@click.pass_context
def main(ctx):
    """
    compswap - Batch component replacement for pipeline definitions.

    Jobs replace one component with another across pipelines, a project,
    or every project, one scheduler tick at a time.
    """
    from compswap.config import load_config
    from compswap.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config()
    except Exception as e:
        # init works without a config; other commands check config_error
        ctx.obj["config_error"] = str(e)
        return
    ctx.obj["config"] = config
    setup_logging(config.log_level, config.log_format, config.log_path)


def _runtime(ctx):
    """Build (once) the runtime for the loaded config, or exit."""
    from compswap.runner import build_runtime

    if "runtime" in ctx.obj:
        return ctx.obj["runtime"]
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'compswap init' to create a configuration file.", err=True)
        raise SystemExit(1)
    ctx.obj["runtime"] = build_runtime(ctx.obj["config"])
    return ctx.obj["runtime"]


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize compswap configuration and database."""
    import yaml

    from compswap.config import CompswapConfig, get_compswap_home
    from compswap.stores.sqlite import SqliteDatabase

    home = get_compswap_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    config = CompswapConfig(
        sqlite_path=str(home / "compswap.db"),
        catalog_root=str(home / "catalog"),
    )
    cfg_path.write_text(yaml.safe_dump(config.to_dict(), sort_keys=False))
    config.catalog_dir.mkdir(parents=True, exist_ok=True)
    SqliteDatabase(config.sqlite_file).initialize()

    click.echo(f"✓ Initialized compswap config at {cfg_path}")
    click.echo(f"  database: {config.sqlite_file}")
    click.echo(f"  catalog:  {config.catalog_dir}")


def _echo_report(report) -> None:
    stats = report.stats
    click.echo(
        f"{report.outcome.value}: job={report.job_id or '-'} pages={report.pages} "
        f"mutated={stats.mutated} failed={stats.failed} skipped={stats.skipped} "
        f"rules_failed={stats.rules_failed}"
    )
    if report.error:
        click.echo(f"  error: {report.error}", err=True)


@main.command("tick")
@click.option("--json", "as_json", is_flag=True, help="Print the tick report as JSON")
@click.pass_context
def tick(ctx, as_json: bool):
    """Run a single orchestrator tick."""
    from compswap.orchestrator import TickOutcome

    report = _runtime(ctx).orchestrator.tick()
    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _echo_report(report)
    if report.outcome in (TickOutcome.ERROR, TickOutcome.ABORTED):
        raise SystemExit(1)


@main.command("run")
@click.option("--interval", type=float, default=None, help="Seconds between ticks (default: tick_interval_s)")
@click.option("--max-ticks", type=int, default=None, help="Stop after this many ticks")
@click.pass_context
def run(ctx, interval, max_ticks):
    """
    Tick on a fixed interval until interrupted.

    Examples:

        compswap run

        compswap run --interval 5 --max-ticks 10
    """
    scheduler = _runtime(ctx).scheduler(interval)
    try:
        scheduler.run(max_ticks=max_ticks, on_report=_echo_report)
    except KeyboardInterrupt:
        scheduler.stop()
        click.echo("Stopped.")
    summary = scheduler.summary
    click.echo(f"✓ {summary.ticks} tick(s), {summary.errors} raised")


@main.group("jobs")
def jobs_group():
    """Create and inspect replacement jobs."""
    pass


@jobs_group.command("list")
@click.option("--status", type=click.Choice(["INIT", "HANDING", "SUCCESS", "FAIL"]), multiple=True,
              help="Filter by status (repeatable)")
@click.option("--limit", type=int, default=50, show_default=True)
@click.pass_context
def list_jobs(ctx, status, limit):
    """List jobs, oldest first."""
    from compswap.schemas import TaskStatus

    statuses = [TaskStatus(s) for s in status] or None
    jobs = _runtime(ctx).job_store.list_jobs(statuses=statuses, limit=limit)
    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        click.echo(
            f"{job.job_id}  {job.status.value:<8} {job.scope.kind.value:<13} "
            f"{job.creator}  {job.created_at.isoformat()}"
        )


@jobs_group.command("show")
@click.argument("job_id")
@click.pass_context
def show_job(ctx, job_id: str):
    """Show a job and its rules."""
    runtime = _runtime(ctx)
    job = runtime.job_store.get_job(job_id)
    if job is None:
        click.echo(f"✗ Unknown job: {job_id}", err=True)
        raise SystemExit(1)

    click.echo(f"Job: {job.job_id}")
    click.echo(f"Status: {job.status.value}")
    click.echo(f"Scope: {json.dumps(job.scope.to_dict())}")
    click.echo(f"Creator: {job.creator}")
    click.echo(f"Created: {job.created_at.isoformat()}")
    click.echo(f"Updated: {job.updated_at.isoformat()} by {job.modifier or '-'}")
    rules = runtime.job_store.list_rules(job_id, limit=10_000)
    click.echo(f"Rules ({len(rules)}):")
    for rule in rules:
        click.echo(f"  [{rule.ordinal}] {rule.rule_id}  {rule.status.value:<8} {rule.describe()}")


@jobs_group.command("create")
@click.argument("request_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--creator", default=None, help="Override the request's creator")
@click.pass_context
def create_job(ctx, request_file: Path, creator):
    """Create a job from a YAML/JSON request file."""
    from compswap.job_request import JobRequestError, load_job_request

    runtime = _runtime(ctx)
    try:
        job, rules = load_job_request(request_file, creator=creator)
    except JobRequestError as e:
        click.echo(f"✗ Invalid job request: {e}", err=True)
        raise SystemExit(1)
    runtime.job_store.create_job(job, rules)
    click.echo(f"✓ Created job {job.job_id} with {len(rules)} rule(s)")


@jobs_group.command("requeue")
@click.argument("job_id")
@click.option("--creator", default=None, help="Identity for the new job (default: config actor)")
@click.pass_context
def requeue_job(ctx, job_id: str, creator):
    """Retry a finished job as a new job."""
    runtime = _runtime(ctx)
    try:
        new_job = runtime.orchestrator.requeue(job_id, creator or runtime.config.actor)
    except (KeyError, ValueError) as e:
        click.echo(f"✗ Cannot requeue {job_id}: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Requeued {job_id} as {new_job.job_id}")


@main.command("history")
@click.argument("job_id")
@click.option("--rule", "rule_id", default=None, help="Only records for this rule")
@click.option("--json", "as_json", is_flag=True, help="Print records as JSON lines")
@click.pass_context
def history(ctx, job_id: str, rule_id, as_json: bool):
    """Show the audit trail of a job."""
    records = _runtime(ctx).job_store.list_migration_records(job_id, rule_id=rule_id)
    if not records:
        click.echo("No records found.")
        return
    for record in records:
        if as_json:
            click.echo(json.dumps(record.to_dict()))
            continue
        versions = f"v{record.source_version}"
        if record.target_version is not None:
            versions += f" -> v{record.target_version}"
        line = (
            f"{record.created_at.isoformat()}  {record.status.value:<7} "
            f"{record.entity_kind.value.lower()} {record.entity_id}  {versions}"
        )
        if record.error:
            line += f"  ({record.error})"
        click.echo(line)


if __name__ == "__main__":
    sys.exit(main())
