"""Command-line interface with Rich formatting."""

import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
import structlog

from .config import create_example_config, load_settings
from .database import DatabaseManager
from .models import CalendarSyncMode, DisableDisposition, SyncReport
from .runtime import build_engine, setup_logging
from .services.base import CalendarSyncError

console = Console()
logger = structlog.get_logger()


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """Kuna CalSync - two-way sync between Vikunja tasks and a CalDAV calendar.

    Tasks with a due date are written into a managed calendar; edits made to
    those events in your calendar app are sent back to the tasks.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        setup_logging(settings.log_level, settings.debug)

    except (ValueError, OSError) as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


def _require_settings(settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            f"[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            f"\n\nPlease set these environment variables or create a configuration file.\n" +
            f"Use [bold]kuna-calsync config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


def _record(db_manager: DatabaseManager, *reports: Optional[SyncReport]) -> None:
    with db_manager.get_session() as session:
        for report in reports:
            if report is not None:
                db_manager.record_sync_report(session, report)


async def _run_passes(ctx, pull: bool, push: bool) -> None:
    settings = ctx.obj['settings']
    _require_settings(settings)
    db_manager = DatabaseManager(settings)

    try:
        async with build_engine(settings, db_manager) as engine:
            if not engine.is_enabled:
                console.print("[yellow]Calendar sync is not enabled. Run [bold]kuna-calsync onboard[/bold] first.[/yellow]")
                sys.exit(1)

            reports = []
            if pull:
                console.print("📥 Pulling tasks into the calendar...")
                reports.append(await engine.pull_sync())
            if push:
                console.print("📤 Pushing calendar edits to tasks...")
                reports.append(await engine.push_sync())

        _record(db_manager, *reports)
        for report in reports:
            if report is not None:
                _display_sync_results(report)

    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except CalendarSyncError as e:
        logger.error("sync_failed", error=str(e))
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.option('--mode', '-m', type=click.Choice(['single', 'per-project']), default='single',
              help='One "Kuna" calendar, or one calendar per project')
@click.option('--project', '-p', 'projects', multiple=True,
              help='Project id to sync (repeatable; none means all projects in single mode)')
@click.option('--skip-initial-sync', is_flag=True, help='Do not run a pull after onboarding')
@async_command
async def onboard(ctx, mode, projects, skip_initial_sync):
    """Enable calendar sync and create the managed calendars."""
    settings = ctx.obj['settings']
    _require_settings(settings)
    db_manager = DatabaseManager(settings)
    sync_mode = CalendarSyncMode.SINGLE if mode == 'single' else CalendarSyncMode.PER_PROJECT

    try:
        async with build_engine(settings, db_manager) as engine:
            engine.onboarding_begin()
            prefs = await engine.onboarding_complete(sync_mode, projects)
            console.print(Panel(
                f"Mode: [bold]{prefs.mode.display_name}[/bold] ({prefs.mode.description})\n"
                f"Projects: {', '.join(prefs.selected_project_ids) or 'all'}",
                title="[green]Calendar sync enabled[/green]",
                border_style="green"
            ))

            if not skip_initial_sync:
                report = await engine.pull_sync()
                _record(db_manager, report)
                if report is not None:
                    _display_sync_results(report)

    except (CalendarSyncError, ValueError) as e:
        console.print(f"[red]Onboarding failed: {e}[/red]")
        sys.exit(1)


@cli.command()
@async_command
async def pull(ctx):
    """Write task changes into the calendar."""
    await _run_passes(ctx, pull=True, push=False)


@cli.command()
@async_command
async def push(ctx):
    """Send calendar edits back to tasks."""
    await _run_passes(ctx, pull=False, push=True)


@cli.command()
@async_command
async def sync(ctx):
    """Pull, then push."""
    await _run_passes(ctx, pull=True, push=True)


@cli.command()
@click.argument('project_ids', nargs=-1)
@async_command
async def projects(ctx, project_ids):
    """List projects, or set the synced projects when ids are given."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    try:
        async with build_engine(settings) as engine:
            if project_ids:
                await engine.set_enabled_projects(project_ids)
                console.print(f"[green]Syncing projects: {', '.join(project_ids)}[/green]")
                return

            available = await engine.task_service.fetch_projects()
            selected = set(engine.prefs.selected_project_ids)

        table = Table(show_header=True, header_style="bold magenta", title="Projects")
        table.add_column("ID", style="cyan")
        table.add_column("Title")
        table.add_column("Synced", justify="center")
        for project in available:
            synced = project.id in selected or (not selected and engine.is_enabled)
            table.add_row(project.id, project.title, "✓" if synced else "")
        console.print(table)

    except (CalendarSyncError, ValueError) as e:
        console.print(f"[red]Failed: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--delete-events', is_flag=True,
              help='Also delete managed events and calendars')
@async_command
async def disable(ctx, delete_events):
    """Turn calendar sync off."""
    settings = ctx.obj['settings']
    disposition = (
        DisableDisposition.DELETE_MANAGED_EVENTS if delete_events
        else DisableDisposition.KEEP_EVERYTHING
    )
    if delete_events and not Confirm.ask("Delete every managed event and calendar?"):
        console.print("[yellow]Cancelled[/yellow]")
        return

    async with build_engine(settings) as engine:
        await engine.disable_sync(disposition)
        errors = list(engine.sync_errors)

    console.print("[green]Calendar sync disabled[/green]")
    if errors:
        console.print(Panel(
            "\n".join(f"• {error}" for error in errors),
            title="[red]Errors[/red]",
            border_style="red"
        ))


@cli.command()
@async_command
async def status(ctx):
    """Show sync status and recent activity."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)

    async with build_engine(settings, db_manager) as engine:
        sync_status = engine.status()

    with db_manager.get_session() as session:
        recent = [
            {
                'started_at': s.started_at,
                'direction': s.direction,
                'status': s.status,
                'operations': (s.created or 0) + (s.updated or 0) + (s.deleted or 0) + (s.patched or 0),
            }
            for s in db_manager.get_recent_sync_sessions(session)
        ]

    _display_sync_status(sync_status, recent)


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Sync interval in seconds (overrides config)')
@click.option('--max-runs', type=int,
              help='Maximum number of sync runs (default: infinite)')
@async_command
async def daemon(ctx, interval, max_runs):
    """Run a full resync on an interval."""
    settings = ctx.obj['settings']
    _require_settings(settings)
    sync_interval = interval or settings.sync_config.poll_interval_seconds
    db_manager = DatabaseManager(settings)

    console.print(f"[green]Starting Kuna CalSync daemon[/green] - interval: {sync_interval} seconds")

    runs = 0
    try:
        async with build_engine(settings, db_manager) as engine:
            while True:
                if max_runs and runs >= max_runs:
                    console.print(f"[yellow]Reached maximum runs ({max_runs}), stopping daemon[/yellow]")
                    break

                console.print(f"\n[blue]--- Sync Run {runs + 1} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ---[/blue]")
                try:
                    reports = await engine.resync_now()
                    _record(db_manager, *reports)
                    for report in reports:
                        if report is not None:
                            _display_sync_results(report, compact=True)
                except CalendarSyncError as e:
                    console.print(f"[red]Sync run failed: {e}[/red]")
                    if settings.debug:
                        console.print_exception()
                runs += 1

                if max_runs and runs >= max_runs:
                    break
                console.print(f"[dim]Next sync in {sync_interval} seconds...[/dim]")
                await asyncio.sleep(sync_interval)

    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        sys.exit(0)


@cli.command()
@click.option('--host', default=None, help='Bind host for HTTP server')
@click.option('--port', default=None, type=int, help='Bind port for HTTP server')
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP server with the background sync loop."""
    import uvicorn

    settings = ctx.obj['settings']
    uvicorn.run(
        "kuna_calsync.server:app",
        host=host or settings.server_host,
        port=port or settings.server_port,
        reload=False,
    )


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
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]Configuration file created at {path}[/green]")
    console.print("Please edit the file with your actual credentials.")


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()

    if missing_fields:
        console.print(Panel(
            f"[red]Missing required fields:[/red]\n" +
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


def _display_sync_results(sync_report: SyncReport, compact: bool = False):
    """Display sync results."""
    if compact:
        total_ops = sync_report.total_operations
        success_rate = sync_report.success_rate * 100
        console.print(
            f"[green]✓ {sync_report.direction.value}: {total_ops} operations, "
            f"{success_rate:.1f}% success[/green]"
        )
        if sync_report.errors:
            console.print(f"[red]❌ {len(sync_report.errors)} errors occurred[/red]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Sync Results")
    table.add_column("Direction", style="cyan")
    table.add_column("Created", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Deleted", justify="center")
    table.add_column("Patched", justify="center")
    table.add_column("Skipped", justify="center", style="dim")

    label = "Tasks → Calendar" if sync_report.direction.value == 'pull' else "Calendar → Tasks"
    table.add_row(
        label,
        str(sync_report.created),
        str(sync_report.updated),
        str(sync_report.deleted),
        str(sync_report.patched),
        str(sync_report.skipped),
    )
    console.print(table)

    if sync_report.completed_at:
        duration = sync_report.completed_at - sync_report.started_at
        console.print(f"[dim]Completed in {duration.total_seconds():.1f} seconds[/dim]")

    if sync_report.errors:
        console.print(Panel(
            "\n".join(f"• {error}" for error in sync_report.errors),
            title="[red]Errors[/red]",
            border_style="red"
        ))


def _display_sync_status(sync_status, recent_sessions):
    """Display sync status."""
    console.print(f"\n[bold]Calendar Sync[/bold]")
    console.print(f"State: {sync_status['state']}")
    console.print(f"Mode: {CalendarSyncMode(sync_status['mode']).display_name}")
    console.print(f"Two-way: {'yes' if sync_status['two_way'] else 'no'}")
    console.print(f"Projects: {', '.join(sync_status['selected_project_ids']) or 'all'}")
    console.print(f"Mapped tasks: {sync_status['mapped_tasks']}")
    console.print(f"Remote cursor: {sync_status['remote_cursor'] or 'never'}")
    console.print(f"Last local scan: {sync_status['last_local_scan_at'] or 'never'}")

    if recent_sessions:
        console.print(f"\n[bold]Recent Sync Sessions[/bold]")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Started", style="dim")
        table.add_column("Direction")
        table.add_column("Status")
        table.add_column("Operations", justify="center")

        for session in recent_sessions:
            status_color = {
                'completed': 'green',
                'failed': 'red',
                'partial': 'yellow'
            }.get(session['status'], 'white')

            table.add_row(
                session['started_at'].strftime("%m-%d %H:%M"),
                session['direction'],
                f"[{status_color}]{session['status']}[/{status_color}]",
                str(session['operations']),
            )

        console.print(table)


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
