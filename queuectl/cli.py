"""CLI interface for QueueCTL."""
import click
import json
import logging
import sys
from pydantic import ValidationError
from typing import Optional

from .config import ConfigError, ConfigStore, HOME_ENV_VAR, QueueConfig
from .executor import tail_log
from .models import Job, JobState, JobSubmission
from .storage import DuplicateJobError, InvalidTransitionError, JobStorage, QueueError
from .worker import start_workers, stop_workers

STATE_CHOICE = click.Choice([state.value for state in JobState])


def _fail(message: str) -> None:
    click.echo(message, err=True)
    sys.exit(1)


def _load_config(ctx: click.Context, **overrides) -> QueueConfig:
    try:
        return QueueConfig.load(ctx.obj["home"], **overrides)
    except ConfigError as e:
        _fail(f"Invalid configuration: {e}")


def _storage(ctx: click.Context) -> JobStorage:
    return JobStorage.from_config(_load_config(ctx))


def _echo_job_line(job: Job) -> None:
    click.echo(f"[{job.state.value}] {job.id} -> \"{job.command}\" (attempts: {job.attempts}/{job.max_retries + 1})")


@click.group()
@click.option("--home", default=None, envvar=HOME_ENV_VAR, help="Data directory (default ~/.queuectl)")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, home: Optional[str], verbose: bool):
    """QueueCTL - Background Job Queue System"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(threadName)s] %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["home"] = home


@main.command()
@click.argument("job_data")
@click.option("--id", "job_id", default=None, help="Job ID (generated when omitted)")
@click.option("--max-retries", default=None, type=click.IntRange(min=0), help="Maximum retry attempts")
@click.option("--timeout", default=None, type=click.FloatRange(min=0, min_open=True), help="Per-job timeout in seconds")
@click.pass_context
def enqueue(ctx: click.Context, job_data: str, job_id: Optional[str], max_retries: Optional[int], timeout: Optional[float]):
    """Enqueue a new job.

    Examples:
    queuectl enqueue "echo hello"
    queuectl enqueue '{"id":"job1","command":"echo hello"}' --max-retries 5
    """
    config = _load_config(ctx)
    storage = JobStorage.from_config(config)

    data = None
    if job_data.lstrip().startswith("{"):
        try:
            data = json.loads(job_data)
        except json.JSONDecodeError:
            data = None
    if not isinstance(data, dict):
        data = {"command": job_data}
    # options win over the JSON fields
    for key, value in (("id", job_id), ("max_retries", max_retries), ("timeout", timeout)):
        if value is not None:
            data[key] = value

    try:
        job = JobSubmission(**data).to_job(config.max_retries)
    except ValidationError as e:
        _fail(f"Invalid job: {e}")
    try:
        storage.add_job(job)
    except DuplicateJobError as e:
        _fail(f"Error: {e}")

    click.echo(f"✓ Job enqueued: {job.id}")
    click.echo(json.dumps(job.to_dict(), indent=2))


@main.group()
def worker():
    """Manage worker processes"""
    pass


@worker.command()
@click.option("--count", default=None, type=click.IntRange(min=1), help="Number of concurrent workers")
@click.option("--base", default=None, type=click.FloatRange(min=0), help="Base delay (seconds) for exponential backoff")
@click.option("--retries", default=None, type=click.IntRange(min=0), help="Fallback max retries, only for stored jobs that have none")
@click.option("--timeout", default=None, type=click.FloatRange(min=0, min_open=True), help="Default job timeout in seconds")
@click.option("--refill/--no-refill", default=None, help="Keep pulling eligible jobs as workers free up")
@click.pass_context
def start(ctx: click.Context, count, base, retries, timeout, refill):
    """Run workers until the dispatched jobs are completed or dead.

    Example:
    queuectl worker start --count 3
    """
    config = _load_config(
        ctx,
        worker_count=count,
        base_delay=base,
        max_retries=retries,
        job_timeout=timeout,
        refill=refill,
    )
    click.echo(f"Starting {config.worker_count} worker(s)...")
    try:
        finished = start_workers(config)
    except QueueError as e:
        _fail(f"Error: {e}")

    if not finished:
        click.echo("No eligible jobs.")
        return
    for job in finished:
        _echo_job_line(job)


@worker.command()
@click.pass_context
def stop(ctx: click.Context):
    """Stop the running worker pool.

    Running commands are terminated; their jobs are recorded as failed
    attempts and picked up again by the next run.
    """
    pid = stop_workers(_load_config(ctx))
    if pid is None:
        click.echo("No running workers.")
        return
    click.echo(f"✓ Sent stop signal to worker pool (pid {pid})")


@main.command()
@click.pass_context
def status(ctx: click.Context):
    """Show summary of all job states."""
    counts = _storage(ctx).count_jobs_by_state()

    click.echo("\n" + "="*50)
    click.echo("Queue Status".center(50))
    click.echo("="*50)
    click.echo("\nJob States:")
    for state in JobState:
        click.echo(f"  {state.value.ljust(12)} : {counts[state.value]}")
    click.echo(f"\nDead Letter Queue: {counts[JobState.DEAD.value]} jobs")
    click.echo("\n" + "="*50 + "\n")


@main.command(name="list")
@click.option("--state", default=None, type=STATE_CHOICE, help="Filter by job state")
@click.option("--limit", default=50, type=int, help="Limit number of results")
@click.pass_context
def list_jobs(ctx: click.Context, state: Optional[str], limit: int):
    """List jobs, optionally filtered by state.

    Example:
    queuectl list --state pending
    """
    storage = _storage(ctx)
    jobs = storage.get_jobs_by_state(state) if state else storage.get_all_jobs()
    jobs = jobs[:limit]

    if not jobs:
        click.echo("No jobs found.")
        return

    click.echo(f"\n{len(jobs)} job(s) found:\n")
    for job in jobs:
        click.echo(f"ID: {job.id}")
        click.echo(f"  State:      {job.state.value}")
        click.echo(f"  Command:    {job.command}")
        click.echo(f"  Attempts:   {job.attempts} (max retries {job.max_retries})")
        click.echo(f"  Created:    {job.created_at}")
        click.echo(f"  Updated:    {job.updated_at}")
        if job.next_retry_at:
            click.echo(f"  Retry at:   {job.next_retry_at}")
        if job.error_message:
            click.echo(f"  Error:      {job.error_message}")
        click.echo()


@main.command()
@click.argument("job_id")
@click.pass_context
def show(ctx: click.Context, job_id: str):
    """Show detailed information about a job."""
    job = _storage(ctx).get_job(job_id)
    if not job:
        _fail(f"Job {job_id} not found")

    click.echo(f"\nJob: {job.id}\n")
    click.echo(json.dumps(job.to_dict(), indent=2))
    click.echo()


@main.command()
@click.argument("job_id")
@click.option("--tail", "lines", default=None, type=click.IntRange(min=1), help="Only the last N lines")
@click.pass_context
def logs(ctx: click.Context, job_id: str, lines: Optional[int]):
    """Print the captured output of a job."""
    content = tail_log(_load_config(ctx).log_dir, job_id, lines)
    if content is None:
        _fail(f"No log for job {job_id}")
    for line in content:
        click.echo(line)


@main.command()
@click.argument("job_id")
@click.confirmation_option(prompt="Are you sure you want to delete this job?")
@click.pass_context
def delete(ctx: click.Context, job_id: str):
    """Delete a job."""
    if not _storage(ctx).delete_job(job_id):
        _fail(f"Job {job_id} not found")
    click.echo(f"✓ Job {job_id} deleted")


@main.group()
def dlq():
    """Manage Dead Letter Queue"""
    pass


@dlq.command(name="list")
@click.option("--limit", default=50, type=int, help="Limit number of results")
@click.pass_context
def dlq_list(ctx: click.Context, limit: int):
    """List jobs in the Dead Letter Queue."""
    jobs = _storage(ctx).get_dlq_jobs()[:limit]

    if not jobs:
        click.echo("Dead Letter Queue is empty.")
        return

    click.echo(f"\n{len(jobs)} job(s) in DLQ:\n")
    for job in jobs:
        click.echo(f"ID: {job.id}")
        click.echo(f"  Command:    {job.command}")
        click.echo(f"  Attempts:   {job.attempts}")
        click.echo(f"  Max Retries: {job.max_retries}")
        click.echo(f"  Updated:    {job.updated_at}")
        if job.error_message:
            click.echo(f"  Error:      {job.error_message}")
        click.echo()


@dlq.command(name="retry")
@click.argument("job_id")
@click.pass_context
def dlq_retry(ctx: click.Context, job_id: str):
    """Move a dead job back to pending with attempts reset.

    Example:
    queuectl dlq retry job1
    """
    try:
        job = _storage(ctx).resurrect(job_id)
    except InvalidTransitionError as e:
        _fail(f"Error: {e}")
    if job is None:
        _fail(f"No job found with ID {job_id}")
    click.echo(f"✓ Job {job_id} moved from DLQ back to pending")


@main.group()
def config():
    """Manage configuration"""
    pass


def _config_store(ctx: click.Context) -> ConfigStore:
    return ConfigStore(QueueConfig.resolve_home(ctx.obj["home"]) / "config.json")


@config.command(name="get")
@click.argument("key", required=False)
@click.pass_context
def config_get(ctx: click.Context, key: Optional[str]):
    """Get configuration value(s).

    Example:
    queuectl config get max-retries
    """
    if key is None:
        ctx.invoke(config_list)
        return
    value = _config_store(ctx).get(key)
    if value is None:
        _fail(f"Configuration key '{key}' not found")
    click.echo(f"{key}: {value}")


@config.command(name="set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str):
    """Set configuration value.

    Example:
    queuectl config set max-retries 5
    queuectl config set base-delay 3
    """
    typed_value = _config_store(ctx).set(key, value)
    click.echo(f"✓ Configuration updated: {key} = {typed_value}")


@config.command(name="list")
@click.pass_context
def config_list(ctx: click.Context):
    """Show stored values and the effective settings."""
    stored = _config_store(ctx).list_all()
    effective = _load_config(ctx)

    click.echo("\nStored Configuration:")
    if not stored:
        click.echo("  (none)")
    for k, v in stored.items():
        click.echo(f"  {k}: {v}")

    click.echo("\nEffective Settings:")
    for k, v in effective.model_dump(exclude={"data_dir"}).items():
        click.echo(f"  {k}: {v}")
    click.echo(f"  data_dir: {effective.data_dir}")
    click.echo()


if __name__ == "__main__":
    main()
