"""
Command-line interface for relsync.

Provides commands to register external connections, queue and run sync
jobs, run the background worker and inspect results.

Usage:
    # Show help
    relsync --help

    # Register a connection and sync it
    relsync connect --user alice --provider google --token ya29...
    relsync sync 1 --user alice --now

    # Process queued jobs in the background
    relsync worker

    # Inspect
    relsync status
    relsync jobs --user alice
"""

import sys
from pathlib import Path
from typing import Any, Optional

import click

from relsync import __version__
from relsync.cli.formatters import (
    show_connections,
    show_jobs,
    show_queue_counts,
    show_sync_result,
)
from relsync.config.generator import save_config_file
from relsync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from relsync.config.settings import Settings, SettingsError
from relsync.jobs.queue import ConnectionStateError, JobQueue, JobQueueError
from relsync.jobs.runner import JobRunner
from relsync.providers import PROVIDERS
from relsync.storage.db import ConnectionStatus, DatabaseError, SyncDatabase
from relsync.sync.orchestrator import DIRECTION_BOTH, DIRECTIONS, SyncOrchestrator
from relsync.sync.record import parse_datetime
from relsync.utils import resolve_config_dir
from relsync.utils.logging import (
    cleanup_old_logs,
    get_logger,
    get_reconcile_log_path,
    setup_logging,
    setup_reconcile_logger,
)


def get_config_dir(config_dir: Optional[str]) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_dir: Path, config_file: Optional[str]) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / DEFAULT_CONFIG_FILE


def get_database(ctx: click.Context) -> SyncDatabase:
    """Open and initialize the database named by the settings."""
    settings: Settings = ctx.obj["settings"]
    db = SyncDatabase(settings.database_path or ":memory:")
    db.initialize()
    return db


def parse_when(value: Optional[str], option: str) -> Any:
    """Parse an ISO 8601 option value, failing as a click usage error."""
    if value is None:
        return None
    try:
        return parse_datetime(value)
    except ValueError as e:
        raise click.BadParameter(
            f"{option}: {value!r} is not an ISO 8601 datetime"
        ) from e


def fail(message: str) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="relsync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="RELSYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.relsync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="RELSYNC_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: Optional[str],
    config_file: Optional[str],
) -> None:
    """
    Relationship data sync.

    Imports contacts and calendar events from external providers into one
    de-duplicated local store, and pushes local calendar changes back.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)
    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config: dict[str, Any] = {}
    loader = ConfigLoader(config_dir=resolved_config_dir)
    try:
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Keep the CLI usable (e.g. for init-config) with a broken file
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    try:
        settings = Settings.from_dict(
            {k: v for k, v in config.items() if v is not None},
            config_dir=resolved_config_dir,
        )
    except SettingsError as e:
        click.echo(
            click.style(f"Warning: Invalid setting: {e}", fg="yellow"), err=True
        )
        settings = Settings.from_dict({}, config_dir=resolved_config_dir)

    effective_verbose = verbose or settings.verbose
    ctx.obj["config"] = config
    ctx.obj["settings"] = settings
    ctx.obj["verbose"] = effective_verbose

    log_dir = Path(settings.log_dir) if settings.log_dir else None
    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)
    if settings.log_retention_count > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=settings.log_retention_count)


def _enable_reconcile_log(ctx: click.Context) -> Path:
    settings: Settings = ctx.obj["settings"]
    log_dir = Path(settings.log_dir) if settings.log_dir else None
    log_path = get_reconcile_log_path(log_dir)
    setup_reconcile_logger(log_file=log_path)
    return log_path


# =============================================================================
# Connection Commands
# =============================================================================


@cli.command("connect")
@click.option("--user", "-u", "user_id", required=True, help="Owning user id.")
@click.option(
    "--provider",
    "-p",
    required=True,
    type=click.Choice(PROVIDERS),
    help="Provider the connection talks to.",
)
@click.option("--token", "-t", help="Bearer access token.")
@click.option("--refresh-token", help="OAuth refresh token, if the provider has one.")
@click.option("--expires-at", help="Access token expiry (ISO 8601).")
@click.option(
    "--account",
    "-a",
    "account_identifier",
    help="Account identifier (email, or the JSON path for the file provider).",
)
@click.pass_context
def connect_command(
    ctx: click.Context,
    user_id: str,
    provider: str,
    token: Optional[str],
    refresh_token: Optional[str],
    expires_at: Optional[str],
    account_identifier: Optional[str],
) -> None:
    """
    Register an external connection.

    Credentials are obtained elsewhere; this command only stores them.

    Examples:

        relsync connect -u alice -p google -t ya29... --refresh-token 1//0g...

        relsync connect -u alice -p file -a ~/contacts.json
    """
    logger = get_logger(__name__)

    if provider == "file" and not account_identifier:
        fail("The file provider needs --account pointing at a JSON file.")
    if provider != "file" and not token:
        fail(f"The {provider} provider needs --token.")

    token_expires_at = parse_when(expires_at, "--expires-at")
    try:
        db = get_database(ctx)
        connection_id = db.create_connection(
            user_id=user_id,
            provider=provider,
            access_token=token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            account_identifier=account_identifier,
        )
    except Exception as e:
        logger.exception(f"Error creating connection: {e}")
        fail(str(e))
        return

    click.echo(click.style(f"Connection {connection_id} created.", fg="green"))
    click.echo(f"Run 'relsync sync {connection_id} --user {user_id}' to sync it.")


@cli.command("connections")
@click.option("--user", "-u", "user_id", help="Only show this user's connections.")
@click.pass_context
def connections_command(ctx: click.Context, user_id: Optional[str]) -> None:
    """List external connections."""
    db = get_database(ctx)
    show_connections(db.list_connections(user_id))


@cli.command("disconnect")
@click.argument("connection_id", type=int)
@click.option("--user", "-u", "user_id", required=True, help="Owning user id.")
@click.pass_context
def disconnect_command(ctx: click.Context, connection_id: int, user_id: str) -> None:
    """
    Mark a connection as disconnected.

    Its imported data is kept; no further syncs can be queued for it.
    """
    db = get_database(ctx)
    connection = db.get_connection(connection_id)
    if connection is None or connection["user_id"] != user_id:
        fail(f"Connection {connection_id} not found for user {user_id}")
        return

    db.set_connection_status(connection_id, ConnectionStatus.DISCONNECTED)
    click.echo(f"Connection {connection_id} disconnected.")


@cli.command("reconnect")
@click.argument("connection_id", type=int)
@click.option("--user", "-u", "user_id", required=True, help="Owning user id.")
@click.option("--token", "-t", help="New bearer access token.")
@click.option("--expires-at", help="New access token expiry (ISO 8601).")
@click.pass_context
def reconnect_command(
    ctx: click.Context,
    connection_id: int,
    user_id: str,
    token: Optional[str],
    expires_at: Optional[str],
) -> None:
    """
    Clear a connection's error state, optionally with a new token.
    """
    db = get_database(ctx)
    connection = db.get_connection(connection_id)
    if connection is None or connection["user_id"] != user_id:
        fail(f"Connection {connection_id} not found for user {user_id}")
        return

    if token:
        db.update_connection_tokens(
            connection_id,
            access_token=token,
            token_expires_at=parse_when(expires_at, "--expires-at"),
        )
    db.set_connection_status(connection_id, ConnectionStatus.CONNECTED)
    click.echo(click.style(f"Connection {connection_id} reconnected.", fg="green"))


# =============================================================================
# Sync Commands
# =============================================================================


@cli.command("sync")
@click.argument("connection_id", type=int)
@click.option("--user", "-u", "user_id", required=True, help="Owning user id.")
@click.option(
    "--direction",
    "-d",
    type=click.Choice(DIRECTIONS),
    default=DIRECTION_BOTH,
    show_default=True,
    help="Import, export, or both.",
)
@click.option("--now", is_flag=True, help="Run the job inline instead of queueing it.")
@click.pass_context
def sync_command(
    ctx: click.Context,
    connection_id: int,
    user_id: str,
    direction: str,
    now: bool,
) -> None:
    """
    Queue a sync run for a connection.

    Examples:

        # Queue for the worker
        relsync sync 1 --user alice

        # Run immediately and show the results
        relsync sync 1 --user alice --now --direction import
    """
    settings: Settings = ctx.obj["settings"]

    try:
        db = get_database(ctx)
        queue = JobQueue.from_settings(db, settings)
        job = queue.enqueue(connection_id, user_id, direction=direction)
    except ConnectionStateError as e:
        fail(f"{e}\nRun 'relsync reconnect {connection_id} --user {user_id}' first.")
        return
    except JobQueueError as e:
        fail(str(e))
        return

    click.echo(f"Queued sync job {job.sync_job_id} ({direction}).")
    if not now:
        click.echo("Run 'relsync worker' to process the queue.")
        return

    log_path = _enable_reconcile_log(ctx)
    claimed = queue.claim_next(queue_id=job.id)
    if claimed is None:
        fail(f"Queue #{job.id} was already claimed by a worker.")
        return

    runner = JobRunner(queue, lambda: SyncOrchestrator(db, settings=settings))
    result = runner.process(claimed)
    if result is None:
        fail("Sync run raised an unexpected error; see the log for details.")
        return

    show_sync_result(result)
    if ctx.obj["verbose"]:
        click.echo(f"\nReconcile log: {log_path}")
    if not result.succeeded:
        sys.exit(1)


@cli.command("worker")
@click.option("--once", is_flag=True, help="Process due jobs, then exit.")
@click.option(
    "--concurrency",
    "-n",
    type=click.IntRange(min=1),
    help="Jobs run in parallel (default: worker_concurrency setting).",
)
@click.pass_context
def worker_command(
    ctx: click.Context, once: bool, concurrency: Optional[int]
) -> None:
    """
    Process queued sync jobs.

    Runs until interrupted with Ctrl+C or SIGTERM; running jobs finish
    before the worker exits.
    """
    logger = get_logger(__name__)
    settings: Settings = ctx.obj["settings"]
    db = get_database(ctx)
    _enable_reconcile_log(ctx)

    def make_orchestrator() -> SyncOrchestrator:
        # One database handle per run keeps threads apart
        run_db = db if db.is_memory else SyncDatabase(db.db_path)
        return SyncOrchestrator(run_db, settings=settings)

    runner = JobRunner(
        JobQueue.from_settings(db, settings),
        make_orchestrator,
        concurrency=concurrency or settings.worker_concurrency,
        poll_interval=settings.poll_interval,
    )

    try:
        if once:
            processed = runner.run_once()
            click.echo(f"Processed {processed} job(s).")
        else:
            click.echo("Worker started. Press Ctrl+C to stop.")
            runner.run()
    except Exception as e:
        logger.exception(f"Worker error: {e}")
        fail(str(e))


@cli.command("jobs")
@click.option("--user", "-u", "user_id", help="Only show this user's jobs.")
@click.option(
    "--limit", "-l", type=click.IntRange(min=1), default=20, show_default=True
)
@click.pass_context
def jobs_command(ctx: click.Context, user_id: Optional[str], limit: int) -> None:
    """Show recent sync job records with their counters."""
    db = get_database(ctx)
    show_jobs(db.list_sync_jobs(user_id=user_id, limit=limit))


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """
    Show connections, the job queue and store totals.
    """
    logger = get_logger(__name__)
    settings: Settings = ctx.obj["settings"]

    try:
        click.echo("=== relsync Status ===\n")
        click.echo(f"Configuration directory: {ctx.obj['config_dir']}")
        click.echo(f"Database: {settings.database_path}")
        click.echo()

        db = get_database(ctx)
        connections = db.list_connections()
        show_connections(connections)
        click.echo()
        show_queue_counts(db.count_queue_jobs())

        users = sorted({c["user_id"] for c in connections})
        if users:
            click.echo("\nStore:")
        for user in users:
            click.echo(
                f"  {user}: {db.count_entities(user)} contacts, "
                f"{db.count_events(user)} events"
            )

        in_error = [
            c for c in connections if c["status"] == ConnectionStatus.ERROR.value
        ]
        if in_error:
            click.echo(
                click.style(
                    f"\n{len(in_error)} connection(s) need attention.", fg="yellow"
                )
            )
    except Exception as e:
        logger.exception(f"Error getting status: {e}")
        fail(str(e))


# =============================================================================
# Event Commands
# =============================================================================


@cli.command("add-event")
@click.option("--user", "-u", "user_id", required=True, help="Owning user id.")
@click.option("--title", required=True)
@click.option("--starts-at", required=True, help="Start (ISO 8601).")
@click.option("--ends-at", help="End (ISO 8601).")
@click.option("--description")
@click.option("--location")
@click.option("--all-day", is_flag=True)
@click.pass_context
def add_event_command(
    ctx: click.Context,
    user_id: str,
    title: str,
    starts_at: str,
    ends_at: Optional[str],
    description: Optional[str],
    location: Optional[str],
    all_day: bool,
) -> None:
    """Create a local-only event; the next export pushes it out."""
    db = get_database(ctx)
    event_id = db.create_event(
        user_id=user_id,
        title=title,
        starts_at=parse_when(starts_at, "--starts-at"),
        ends_at=parse_when(ends_at, "--ends-at"),
        description=description,
        location=location,
        all_day=all_day,
    )
    click.echo(f"Event {event_id} created.")


@cli.command("edit-event")
@click.argument("event_id", type=int)
@click.option("--title")
@click.option("--starts-at", help="New start (ISO 8601).")
@click.option("--ends-at", help="New end (ISO 8601).")
@click.option("--description")
@click.option("--location")
@click.pass_context
def edit_event_command(
    ctx: click.Context,
    event_id: int,
    title: Optional[str],
    starts_at: Optional[str],
    ends_at: Optional[str],
    description: Optional[str],
    location: Optional[str],
) -> None:
    """
    Edit a local event.

    A synced event becomes pending_push and is exported on the next run.
    """
    changes: dict[str, Any] = {}
    if title is not None:
        changes["title"] = title
    if starts_at is not None:
        changes["starts_at"] = parse_when(starts_at, "--starts-at")
    if ends_at is not None:
        changes["ends_at"] = parse_when(ends_at, "--ends-at")
    if description is not None:
        changes["description"] = description
    if location is not None:
        changes["location"] = location
    if not changes:
        fail("Nothing to change.")
        return

    try:
        event = get_database(ctx).update_event(event_id, **changes)
    except DatabaseError as e:
        fail(str(e))
        return

    click.echo(f"Event {event_id} updated ({event['sync_status']}).")


# =============================================================================
# Init-Config Command
# =============================================================================


@cli.command("init-config")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration file if it exists.",
)
@click.pass_context
def init_config_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Every option is documented and commented out.
    """
    logger = get_logger(__name__)
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")
    success, error = save_config_file(config_file, overwrite=force)

    if success:
        click.echo(click.style("Configuration file created successfully!", fg="green"))
        click.echo("\nNext steps:")
        click.echo("1. Edit the file to uncomment and configure desired options")
        click.echo("2. Run 'relsync --help' to see available commands")
    else:
        logger.error(f"Failed to create configuration file: {error}")
        fail(str(error))


__all__ = ["cli", "get_config_dir", "get_config_file", "get_database"]
