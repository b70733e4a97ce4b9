"""CLI output formatting functions.

Renders connections, sync job records, run results and queue state for
the command line.
"""

from typing import TYPE_CHECKING, Any

import click

from relsync.storage.db import JOB_COUNTERS, ConnectionStatus, JobStatus

if TYPE_CHECKING:
    from relsync.sync.orchestrator import SyncResult

STATUS_COLORS = {
    ConnectionStatus.CONNECTED.value: "green",
    ConnectionStatus.DISCONNECTED.value: "bright_black",
    ConnectionStatus.ERROR.value: "red",
    ConnectionStatus.PENDING_REAUTH.value: "yellow",
    JobStatus.PENDING.value: "cyan",
    JobStatus.PROCESSING.value: "yellow",
    JobStatus.COMPLETED.value: "green",
    JobStatus.FAILED.value: "red",
}

# Error log entries shown per job before truncating
MAX_ERRORS_SHOWN = 5


def styled_status(status: str) -> str:
    return click.style(status, fg=STATUS_COLORS.get(status))


def show_connections(connections: list[dict[str, Any]]) -> None:
    if not connections:
        click.echo("No connections configured.")
        return

    for conn in connections:
        account = conn.get("account_identifier") or "-"
        click.echo(
            f"#{conn['id']:<4} {conn['user_id']:<16} {conn['provider']:<16} "
            f"{styled_status(conn['status'])}"
        )
        click.echo(f"      account: {account}")
        click.echo(f"      last sync: {conn.get('last_synced_at') or 'Never'}")
        if conn.get("sync_error"):
            click.echo(click.style(f"      error: {conn['sync_error']}", fg="red"))


def format_counters(source: Any) -> str:
    """One-line summary of job counters from a job row or SyncStats."""
    if isinstance(source, dict):
        values = {key: source.get(key, 0) for key in JOB_COUNTERS}
    else:
        values = {key: getattr(source, key, 0) for key in JOB_COUNTERS}
    return ", ".join(f"{key}={value}" for key, value in values.items())


def show_jobs(jobs: list[dict[str, Any]]) -> None:
    if not jobs:
        click.echo("No sync jobs recorded.")
        return

    for job in jobs:
        click.echo(
            f"Job {job['id']}: {styled_status(job['status'])} "
            f"[{job['source']}, {job['direction']}] "
            f"connection {job['connection_id']}, attempts {job['attempts']}"
        )
        click.echo(f"  {format_counters(job)}")
        if job.get("completed_at"):
            click.echo(f"  finished: {job['completed_at']}")
        errors = job.get("error_log") or []
        for entry in errors[:MAX_ERRORS_SHOWN]:
            click.echo(click.style(f"  ! {entry}", fg="red"))
        if len(errors) > MAX_ERRORS_SHOWN:
            click.echo(f"  ... and {len(errors) - MAX_ERRORS_SHOWN} more")


def show_sync_result(result: "SyncResult") -> None:
    """Summary of a run executed inline by `relsync sync --now`."""
    if result.noop:
        click.echo(f"Job {result.job_id} had already {result.status.value}.")
        return

    stats = result.stats
    click.echo("\n=== Sync Results ===")
    click.echo(f"Job:       {result.job_id}")
    click.echo(f"Status:    {styled_status(result.status.value)}")
    click.echo(f"Fetched:   {stats.total}")
    click.echo(f"Created:   {stats.created}")
    click.echo(f"Merged:    {stats.merged}")
    click.echo(f"Skipped:   {stats.skipped}")
    if stats.exported or stats.export_failed:
        click.echo(f"Exported:  {stats.exported} ({stats.export_failed} failed)")
    if stats.errors:
        click.echo(click.style(f"Errors:    {stats.errors}", fg="red"))
    if result.error:
        click.echo(click.style(f"\nError: {result.error}", fg="red"))


def show_queue_counts(counts: dict[str, int]) -> None:
    click.echo("Job queue:")
    for state, count in counts.items():
        click.echo(f"  {state}: {count}")


__all__ = [
    "format_counters",
    "show_connections",
    "show_jobs",
    "show_queue_counts",
    "show_sync_result",
    "styled_status",
]
