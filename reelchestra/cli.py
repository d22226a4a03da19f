"""
CLI interface for reelchestra.

Provides commands to submit treatments, inspect manifests and run workers.

Treatments are YAML (or JSON) files with a "treatment" and a "constraints"
section. They are compiled into a manifest and a job DAG in the configured
ledger; `reelchestra worker <job_type>` then claims and executes jobs of one
type until stopped.
"""

import json
import time
from pathlib import Path
from typing import Optional

import click
import yaml

from reelchestra import __version__
from reelchestra.schemas import JobType


def _get_config(ctx):
    """Config loaded by the group, or exit with the load error."""
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'reelchestra init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _parse_job_type(value: str) -> JobType:
    try:
        return JobType.from_string(value)
    except ValueError:
        raise click.BadParameter(
            f"unknown job type '{value}' (expected one of: {', '.join(t.value for t in JobType)})"
        )


@click.group()
@click.version_option(version=__version__, prog_name="reelchestra")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    help="Config file (default: $REELCHESTRA_HOME/config.yaml)",
)
@click.pass_context
def main(ctx, config_path: Optional[Path]):
    """
    reelchestra - Video production job orchestrator.

    Compile treatments into job DAGs and run the workers that execute them.
    """
    from reelchestra.config import load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config_path)
    except Exception as e:
        # init does not need a config; every other command checks config_error
        ctx.obj["config_error"] = str(e)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize reelchestra configuration."""
    from reelchestra.config import get_reelchestra_home

    home = get_reelchestra_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = {
        "ledger": {"backend": "sqlite", "path": str(home / "ledger.db")},
        "workers": {
            "defaults": {"concurrency": 3, "poll_interval_s": 5, "liveness_timeout_s": 600},
        },
        "retry": {},
        "logging": {
            "level": "INFO",
            "format": "structured",
            "output": str(home / "logs" / "reelchestra-{date}.log"),
            "console": True,
        },
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))
    click.echo(f"Initialized reelchestra config at {cfg_path}")


@main.command("submit")
@click.argument("treatment_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--user", "user_id", required=True, help="Owning user id")
@click.option("--manifest-id", help="Use this manifest id instead of a generated one")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def submit(ctx, treatment_file: Path, user_id: str, manifest_id: Optional[str], as_json: bool):
    """Compile TREATMENT_FILE and queue its jobs."""
    from reelchestra.compiler import BlueprintCompiler
    from reelchestra.errors import PersistenceError, ValidationError
    from reelchestra.intake import submit_treatment

    config = _get_config(ctx)

    try:
        data = yaml.safe_load(treatment_file.read_text())
    except yaml.YAMLError as e:
        click.echo(f"✗ Invalid YAML in {treatment_file}: {e}", err=True)
        raise SystemExit(1)

    compiler = BlueprintCompiler(
        config.create_ledger(),
        retry_policies=config.get_retry_policies(),
    )

    try:
        result = submit_treatment(compiler, data, user_id, manifest_id=manifest_id)
    except ValidationError as e:
        if as_json:
            click.echo(json.dumps(e.to_dict(), indent=2))
        else:
            click.echo(f"✗ {e}", err=True)
            for error in e.errors:
                click.echo(f"  - {error}", err=True)
        raise SystemExit(1)
    except PersistenceError as e:
        click.echo(f"✗ Could not store manifest: {e}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    click.echo(f"✓ Manifest {result['manifest_id']} queued ({result['job_count']} jobs)")
    for warning in result["warnings"]:
        click.echo(f"  ⚠ {warning}")


@main.command("status")
@click.argument("manifest_id")
@click.option("--json", "as_json", is_flag=True, help="Print manifest, summary and jobs as JSON")
@click.pass_context
def status(ctx, manifest_id: str, as_json: bool):
    """Show the status of a manifest and its jobs."""
    from reelchestra.intake import get_manifest_status
    from reelchestra.utils import console, jobs_table, print_warning, styled_status

    config = _get_config(ctx)
    report = get_manifest_status(config.create_ledger(), manifest_id)
    if report is None:
        click.echo(f"✗ Unknown manifest: {manifest_id}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
        return

    manifest = report["manifest"]
    summary = report["summary"]
    console.print(
        f"[bold]{manifest['payload'].get('title', manifest_id)}[/bold] "
        f"({manifest_id}) {styled_status(summary['status'])}"
    )
    counts = ", ".join(f"{name}={count}" for name, count in summary["counts"].items() if count)
    console.print(f"Jobs: {summary['total']} ({counts})")
    for warning in manifest.get("warnings", []):
        print_warning(warning)
    console.print(jobs_table("Jobs", report["jobs"]))


@main.command("list")
@click.option("--user", "user_id", help="Only manifests owned by this user")
@click.pass_context
def list_manifests(ctx, user_id: Optional[str]):
    """List manifests."""
    config = _get_config(ctx)
    manifests = config.create_ledger().list_manifests(user_id=user_id)

    if not manifests:
        click.echo("No manifests found")
        return

    click.echo(f"{len(manifests)} manifest(s):\n")
    for manifest in manifests:
        title = manifest.payload.get("title", "")
        click.echo(f"  {manifest.manifest_id}  {manifest.status.value:<12} {manifest.user_id:<16} {title}")


@main.command("stats")
@click.option("--job-type", help="Only list active jobs of this type")
@click.option("--json", "as_json", is_flag=True, help="Print counts and active jobs as JSON")
@click.pass_context
def stats(ctx, job_type: Optional[str], as_json: bool):
    """Show job counts per type and status, and the jobs currently claimed."""
    from reelchestra.utils import active_jobs_table, console, stats_table

    config = _get_config(ctx)
    parsed_type = _parse_job_type(job_type) if job_type else None
    ledger = config.create_ledger()

    report = {
        "stats": [s.to_dict() for s in ledger.job_stats()],
        "active": [j.to_dict() for j in ledger.active_jobs(job_type=parsed_type)],
    }

    if as_json:
        click.echo(json.dumps(report, indent=2))
        return

    if not report["stats"]:
        click.echo("No jobs found")
        return

    console.print(stats_table(report["stats"]))
    if report["active"]:
        console.print(active_jobs_table(report["active"]))
    else:
        click.echo("No active jobs")


@main.command("worker")
@click.argument("job_type")
@click.option("--concurrency", type=int, help="Jobs in flight (default from config)")
@click.option("--max-cycles", type=int, help="Stop after this many dispatch cycles")
@click.option("--once", is_flag=True, help="Run a single cycle and wait for its jobs")
@click.pass_context
def worker(ctx, job_type: str, concurrency: Optional[int], max_cycles: Optional[int], once: bool):
    """
    Claim and execute jobs of JOB_TYPE.

    Runs against the no-op generation providers unless real providers are
    registered programmatically.
    """
    from reelchestra.processors import ProcessorRegistry
    from reelchestra.providers import ProviderRegistry
    from reelchestra.utils import format_duration, setup_logging
    from reelchestra.worker import WorkerRuntime

    config = _get_config(ctx)
    parsed_type = _parse_job_type(job_type)
    settings = config.get_worker_config(parsed_type)

    setup_logging(
        log_file=config.get_log_file_path(),
        log_level=config.get_log_level(),
        log_format=config.get_log_format(),
        console_output=config.should_log_to_console(),
    )

    registry = ProcessorRegistry.create_default(ProviderRegistry.with_noop())
    runtime = WorkerRuntime(
        config.create_ledger(),
        parsed_type,
        registry.get(parsed_type),
        concurrency=concurrency or settings.concurrency,
        poll_interval_s=settings.poll_interval_s,
        liveness_timeout_s=settings.liveness_timeout_s,
    )

    started = time.monotonic()
    try:
        if once:
            runtime.run_once(wait=True)
            runtime.close()
        else:
            runtime.run_forever(max_cycles=max_cycles)
    except KeyboardInterrupt:
        runtime.stop()
        click.echo("\nWorker interrupted")

    stats = runtime.status()["stats"]
    click.echo(
        f"✓ {runtime.worker_id}: claimed={stats['claimed']} completed={stats['completed']} "
        f"retrying={stats['retrying']} failed={stats['failed']} "
        f"in {format_duration(time.monotonic() - started)}"
    )


@main.command("reclaim")
@click.option("--timeout", "timeout_s", type=float, default=600.0, show_default=True,
              help="Heartbeat age in seconds after which a claim is considered dead")
@click.option("--job-type", help="Only reclaim jobs of this type")
@click.pass_context
def reclaim(ctx, timeout_s: float, job_type: Optional[str]):
    """Return jobs with dead claims to the retry path."""
    config = _get_config(ctx)
    parsed_type = _parse_job_type(job_type) if job_type else None

    reclaimed = config.create_ledger().reclaim_stale_jobs(timeout_s, job_type=parsed_type)
    if not reclaimed:
        click.echo("No stale jobs")
        return

    click.echo(f"Reclaimed {len(reclaimed)} job(s):")
    for job in reclaimed:
        click.echo(f"  {job.key}  -> {job.status.value} (attempt {job.attempts})")


if __name__ == "__main__":
    main()
