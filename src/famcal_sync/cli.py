"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table
import structlog

from .config import create_example_config, load_settings
from .database import DatabaseManager
from .errors import AlreadyResolvedError, ConflictNotFoundError, InvalidEventError
from .models import ConflictResolution, EventFields, SyncDirection, SyncResult, utcnow
from .scheduler import SyncScheduler
from .sync_engine import SyncOrchestrator

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False, log_format: str = "%(message)s") -> None:
    """Set up structured logging."""
    logging.basicConfig(format=log_format, stream=sys.stderr, level=level)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _require_valid_settings(settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            "[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            "\n\nSet these environment variables or create a configuration file.\n" +
            "Use [bold]famcal-sync config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """famcal-sync - two-way family calendar sync with Google Calendar.

    Changes flow both ways between the family event store and each member's
    Google calendar. Edits made on both sides since the last sync are held
    as conflicts until a family member picks a version.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings

        setup_logging(settings.log_level, settings.debug, settings.log_format)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
def serve(host, port):
    """Run HTTP server with the background scheduler (container friendly)."""
    try:
        import uvicorn
        uvicorn.run("famcal_sync.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument('user_id')
@click.option('--direction', '-d', type=click.Choice([d.value for d in SyncDirection]),
              help='Override the configured sync direction')
@click.option('--event', '-e', 'event_id', help='Sync only this event (internal ID)')
@async_command
async def sync(ctx, user_id, direction, event_id):
    """Synchronize a user's events with Google Calendar."""
    settings = ctx.obj['settings']
    _require_valid_settings(settings)

    orchestrator = SyncOrchestrator.from_settings(settings)
    scheduler = SyncScheduler.from_settings(orchestrator)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True
        ) as progress:
            progress.add_task(f"Syncing {user_id}...", total=None)
            if event_id:
                result = await scheduler.sync_event(user_id, event_id, direction)
            else:
                result = await scheduler.perform_sync(user_id, direction)

        _display_sync_result(result)
        pending = orchestrator.get_pending_conflicts(user_id)
        if pending:
            _display_conflicts_hint(len(pending))
        if result is None or not result.success:
            sys.exit(1)

    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)
    finally:
        await orchestrator.close()


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Poll interval in seconds (overrides config)')
@click.option('--max-ticks', type=int,
              help='Maximum number of scheduler ticks (default: infinite)')
@async_command
async def daemon(ctx, interval, max_ticks):
    """Run the scheduler continuously for every enabled user."""
    settings = ctx.obj['settings']
    _require_valid_settings(settings)

    if interval:
        settings.poll_interval_seconds = interval

    orchestrator = SyncOrchestrator.from_settings(settings)
    scheduler = SyncScheduler.from_settings(orchestrator)
    scheduler.subscribe(
        lambda status: logger.debug("sync_state", user=status.user_id, state=status.state.value)
    )

    console.print(
        f"[green]Starting famcal-sync daemon[/green] - poll every {settings.poll_interval_seconds}s"
    )

    try:
        if max_ticks:
            for tick in range(max_ticks):
                for result in await scheduler.tick():
                    _display_sync_result(result, compact=True)
                if tick + 1 < max_ticks:
                    await asyncio.sleep(settings.poll_interval_seconds)
            console.print(f"[yellow]Reached maximum ticks ({max_ticks}), stopping daemon[/yellow]")
        else:
            await scheduler.run_forever()
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
    finally:
        await orchestrator.close()


@cli.command()
@click.argument('user_id')
@click.pass_context
def status(ctx, user_id):
    """Show a user's sync status and recent runs."""
    settings = ctx.obj['settings']

    try:
        orchestrator = SyncOrchestrator.from_settings(settings)
        scheduler = SyncScheduler.from_settings(orchestrator)
        sync_status = scheduler.status(user_id)
        recent = orchestrator.run_logs.recent(user_id, limit=10)
    except Exception as e:
        console.print(f"[red]Failed to get status: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    def _when(value):
        return value.strftime("%Y-%m-%d %H:%M:%S") if value else "never"

    console.print(f"\n[bold]{settings.app_name}: sync status for {user_id}[/bold]")
    console.print(f"Enabled: {'yes' if sync_status.sync_enabled else 'no'}")
    console.print(f"State: {sync_status.state.value}")
    console.print(f"Last successful sync: {_when(sync_status.last_sync_at)}")
    console.print(f"Last attempt: {_when(sync_status.last_attempt_at)}")
    if sync_status.next_sync_at:
        console.print(f"Next sync due: {_when(sync_status.next_sync_at)}")
    console.print(f"Pending conflicts: {sync_status.pending_conflicts}")

    if recent:
        console.print("\n[bold]Recent Sync Runs[/bold]")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Started", style="dim")
        table.add_column("Kind")
        table.add_column("Status")
        table.add_column("Operations", justify="center")
        table.add_column("Conflicts", justify="center")
        table.add_column("Errors", justify="center")

        for run in recent:
            status_text = "[green]ok[/green]" if run.success else "[red]failed[/red]"
            table.add_row(
                run.started_at.strftime("%m-%d %H:%M"),
                run.kind.value,
                status_text,
                str(run.events_created + run.events_updated + run.events_deleted),
                str(run.conflicts_detected),
                str(len(run.errors)),
            )

        console.print(table)


@cli.command()
@click.argument('user_id')
@click.pass_context
def conflicts(ctx, user_id):
    """Show a user's unresolved conflicts."""
    settings = ctx.obj['settings']

    try:
        orchestrator = SyncOrchestrator.from_settings(settings)
        pending = orchestrator.get_pending_conflicts(user_id)
    except Exception as e:
        console.print(f"[red]Failed to get conflicts: {e}[/red]")
        sys.exit(1)

    if not pending:
        console.print("[green]No unresolved conflicts found[/green]")
        return

    console.print(f"[yellow]Found {len(pending)} unresolved conflicts:[/yellow]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Type")
    table.add_column("Local")
    table.add_column("Google")
    table.add_column("Fields")
    table.add_column("Detected")

    for conflict in pending:
        local = conflict.local_snapshot
        remote = conflict.remote_snapshot
        table.add_row(
            str(conflict.id),
            conflict.conflict_type.value,
            "(deleted)" if local is None or local.is_deleted else local.title,
            "(deleted)" if remote.deleted else remote.title,
            ", ".join(conflict.changed_fields()),
            conflict.detected_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)
    console.print(
        "[dim]Use [bold]famcal-sync resolve USER_ID CONFLICT_ID keep_local|keep_remote|merge[/bold] "
        "to settle each one.[/dim]"
    )


@cli.command()
@click.argument('user_id')
@click.argument('conflict_id')
@click.argument('resolution', type=click.Choice([r.value for r in ConflictResolution]))
@click.option('--merged', '-m', type=click.Path(exists=True, dir_okay=False),
              help='JSON file with the merged event fields (required for merge)')
@async_command
async def resolve(ctx, user_id, conflict_id, resolution, merged):
    """Resolve a pending conflict."""
    settings = ctx.obj['settings']

    merged_fields: Optional[EventFields] = None
    if merged:
        try:
            merged_fields = EventFields.model_validate_json(Path(merged).read_text())
        except ValueError as e:
            console.print(f"[red]Invalid merged event file: {e}[/red]")
            sys.exit(1)

    orchestrator = SyncOrchestrator.from_settings(settings)
    try:
        applied = await SyncScheduler.from_settings(orchestrator).resolve_conflict(
            user_id, conflict_id, resolution, merged=merged_fields
        )
    except (ConflictNotFoundError, AlreadyResolvedError, InvalidEventError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        await orchestrator.close()

    if applied is None:
        console.print("[yellow]A sync for this user is already in progress; try again shortly[/yellow]")
        sys.exit(1)
    if applied:
        console.print(f"[green]✓ Conflict {conflict_id} resolved as {resolution}[/green]")
    else:
        console.print("[red]Failed to apply the resolution; the conflict is still pending[/red]")
        sys.exit(1)


@cli.group()
def preferences():
    """Per-user sync preferences."""
    pass


@preferences.command('show')
@click.argument('user_id')
@click.pass_context
def show_preferences(ctx, user_id):
    """Show a user's sync preferences."""
    orchestrator = SyncOrchestrator.from_settings(ctx.obj['settings'])
    prefs = orchestrator.get_sync_preferences(user_id)
    if prefs is None:
        console.print(f"[yellow]No preferences for {user_id}; sync is not configured[/yellow]")
        return

    table = Table(show_header=False, title=f"Preferences for {user_id}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Enabled", "yes" if prefs.sync_enabled else "no")
    table.add_row("Frequency", f"{prefs.sync_frequency_minutes} minutes")
    table.add_row("Direction", prefs.sync_direction.value)
    table.add_row("Auto-resolve conflicts", "yes" if prefs.auto_resolve_conflicts else "no")
    table.add_row("Updated", prefs.updated_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@preferences.command('set')
@click.argument('user_id')
@click.option('--enable/--disable', 'sync_enabled', default=None, help='Turn sync on or off')
@click.option('--frequency', '-f', 'sync_frequency_minutes', type=int,
              help='Minutes between scheduled syncs (5-240)')
@click.option('--direction', '-d', 'sync_direction',
              type=click.Choice([d.value for d in SyncDirection]), help='Sync direction')
@click.option('--auto-resolve/--manual-resolve', 'auto_resolve_conflicts', default=None,
              help='Settle new conflicts automatically')
@click.pass_context
def set_preferences(ctx, user_id, **changes):
    """Create or update a user's sync preferences."""
    partial = {name: value for name, value in changes.items() if value is not None}
    orchestrator = SyncOrchestrator.from_settings(ctx.obj['settings'])

    if not orchestrator.update_sync_preferences(user_id, partial):
        console.print("[red]Invalid preferences; nothing was changed[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Preferences for {user_id} saved[/green]")


@cli.command()
@click.option('--days', default=30, type=int, help='Summarize runs from the past N days')
@click.pass_context
def stats(ctx, days):
    """Show sync statistics across all users."""
    settings = ctx.obj['settings']

    try:
        orchestrator = SyncOrchestrator.from_settings(settings)
        summary = orchestrator.get_sync_statistics(days)
    except Exception as e:
        console.print(f"[red]Failed to get statistics: {e}[/red]")
        sys.exit(1)

    table = Table(show_header=False, title=f"{settings.app_name}: last {days} days")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Runs", str(summary['total_runs']))
    table.add_row("Successful", str(summary['successful_runs']))
    table.add_row("Failed", str(summary['failed_runs']))
    table.add_row("Created", str(summary['events_created']))
    table.add_row("Updated", str(summary['events_updated']))
    table.add_row("Deleted", str(summary['events_deleted']))
    table.add_row("Conflicts", str(summary['conflicts_detected']))
    average = summary['average_duration_ms']
    table.add_row("Average duration", f"{average} ms" if average is not None else "-")
    console.print(table)


@cli.command()
@click.option('--days', type=int, help='Remove tombstones older than this (overrides config)')
@click.pass_context
def purge(ctx, days):
    """Remove old deleted-event tombstones."""
    settings = ctx.obj['settings']
    days = days or settings.tombstone_retention_days

    orchestrator = SyncOrchestrator.from_settings(settings)
    removed = orchestrator.events.purge_tombstones(utcnow() - timedelta(days=days))
    console.print(f"[green]✓ Removed {removed} tombstones older than {days} days[/green]")


@cli.command()
@click.confirmation_option(prompt='Are you sure you want to reset all sync data?')
@click.pass_context
def reset(ctx):
    """Reset all events, conflicts, run logs and preferences."""
    settings = ctx.obj['settings']

    try:
        DatabaseManager(settings).reset()

        console.print("[green]✓ All sync data has been reset[/green]")
        console.print("[yellow]⚠️  Next sync will import the provider window as new events[/yellow]")

    except Exception as e:
        console.print(f"[red]Failed to reset sync data: {e}[/red]")
        sys.exit(1)


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Place each user's authorized Google token in the credentials directory.")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()

    if missing_fields:
        console.print(Panel(
            "[red]Missing required fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields),
            title="Configuration Validation",
            border_style="red"
        ))
        sys.exit(1)
    else:
        console.print(Panel(
            "[green]✓ All required configuration fields are present[/green]",
            title="Configuration Validation",
            border_style="green"
        ))


def _display_sync_result(result: Optional[SyncResult], compact: bool = False) -> None:
    """Display a sync result."""
    if result is None:
        console.print("[yellow]A sync for this user is already in progress[/yellow]")
        return

    if compact:
        colour = "green" if result.success else "red"
        console.print(
            f"[{colour}]{'✓' if result.success else '✗'} {result.total_operations} operations, "
            f"{result.conflicts_detected} conflicts, {len(result.errors)} errors[/{colour}]"
        )
        return

    table = Table(show_header=True, header_style="bold magenta", title="Sync Results")
    table.add_column("Processed", justify="center")
    table.add_column("Created", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Deleted", justify="center")
    table.add_column("Conflicts", justify="center", style="yellow")
    table.add_row(
        str(result.events_processed),
        str(result.events_created),
        str(result.events_updated),
        str(result.events_deleted),
        str(result.conflicts_detected),
    )
    console.print(table)

    if result.errors:
        console.print(f"[red]❌ {len(result.errors)} errors occurred[/red]")
        for error in result.errors:
            console.print(f"   {error}")

    if result.started_at and result.finished_at:
        duration = result.finished_at - result.started_at
        console.print(f"[dim]Completed in {duration.total_seconds():.1f} seconds[/dim]")


def _display_conflicts_hint(count: int) -> None:
    console.print(Panel(
        f"[yellow]{count} conflicts require attention[/yellow]\n" +
        "Use [bold]famcal-sync conflicts USER_ID[/bold] to review and resolve them.",
        title="Conflicts Pending",
        border_style="yellow"
    ))


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
