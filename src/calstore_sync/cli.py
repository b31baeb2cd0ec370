"""Command-line interface with Rich formatting."""

import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict
from uuid import UUID

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
import structlog

from .config import load_settings, create_example_config
from .database import SyncConfigNotFoundError
from .errors import SyncRunError
from .models import RunStatus, SyncDirection, SyncResult
from .pusher import OutboundPusher
from .store import SchemaNotFoundError
from .sync_engine import SyncEngine

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
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


def _engine(ctx) -> SyncEngine:
    if 'engine' not in ctx.obj:
        ctx.obj['engine'] = SyncEngine.from_settings(ctx.obj['settings'])
    return ctx.obj['engine']


def _require_credentials(settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            f"[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            f"\n\nUse [bold]calstore-sync config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """calstore-sync - Google Calendar to row store synchronization."""
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        setup_logging(settings.log_level, settings.debug)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create the sync and store tables."""
    _engine(ctx)
    console.print("[green]✓ Database initialized[/green]")


@cli.command('create-config')
@click.option('--user', 'user_id', required=True, help='Owner of the target schemas')
@click.option('--email', required=True, help='Google account email')
@click.option('--calendar-id', required=True, help='Google calendar ID')
@click.option('--calendar-name', required=True, help='Google calendar display name')
@click.option('--direction', type=click.Choice([d.value for d in SyncDirection]),
              default=SyncDirection.BIDIRECTIONAL.value, show_default=True)
@click.option('--color', help='Calendar color used for events without their own')
@click.pass_context
def create_sync_config(ctx, user_id, email, calendar_id, calendar_name, direction, color):
    """Enable sync for one Google calendar."""
    db_manager = _engine(ctx).db_manager

    connection = db_manager.get_connection_for_user(user_id)
    if connection is None:
        connection = db_manager.create_connection(user_id, email)

    try:
        sync_config = db_manager.create_sync_config(
            connection.id, calendar_id, calendar_name,
            direction=SyncDirection(direction), display_color=color,
        )
    except Exception as e:
        console.print(f"[red]Failed to create sync config: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓ Created sync config {sync_config.id}[/green] for '{calendar_name}'")


@cli.command()
@click.pass_context
def configs(ctx):
    """List sync configurations."""
    sync_configs = _engine(ctx).db_manager.list_sync_configs()

    if not sync_configs:
        console.print("[yellow]No sync configurations found[/yellow]")
        return

    table = Table(title="Sync Configurations")
    table.add_column("ID", style="cyan")
    table.add_column("Calendar", style="green")
    table.add_column("Direction")
    table.add_column("Schema")
    table.add_column("Mode")
    table.add_column("Last Run")
    table.add_column("Enabled")

    for sync_config in sync_configs:
        table.add_row(
            str(sync_config.id),
            sync_config.provider_calendar_name,
            sync_config.direction.value,
            sync_config.target_schema_ref or "[dim]unbound[/dim]",
            "incremental" if sync_config.cursor_token else "full",
            sync_config.last_run_at.strftime('%Y-%m-%d %H:%M') if sync_config.last_run_at else "never",
            "✓" if sync_config.enabled else "✗",
        )

    console.print(table)


@cli.command()
@click.argument('config_id', type=click.UUID)
@async_command
async def sync(ctx, config_id: UUID):
    """Synchronize one calendar into its target schema."""
    settings = ctx.obj['settings']
    _require_credentials(settings)

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True
        ) as progress:
            progress.add_task("Synchronizing...", total=None)
            result = await _engine(ctx).sync_calendar(config_id)
        _display_sync_result(result)

    except SyncConfigNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except SyncRunError as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if e.retryable:
            console.print("[yellow]This error is temporary; run the sync again.[/yellow]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)


@cli.command('sync-all')
@async_command
async def sync_all(ctx):
    """Synchronize every enabled calendar."""
    settings = ctx.obj['settings']
    _require_credentials(settings)

    results = await _engine(ctx).sync_all()
    _display_batch_results(results)
    if any(r is None or r.status == RunStatus.ERROR for r in results.values()):
        sys.exit(1)


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Sync interval in minutes (overrides config)')
@click.option('--max-runs', type=int,
              help='Maximum number of sync runs (default: infinite)')
@async_command
async def daemon(ctx, interval, max_runs):
    """Run sync-all continuously."""
    settings = ctx.obj['settings']
    _require_credentials(settings)

    if interval:
        settings.sync.sync_interval_minutes = interval
    sync_interval = settings.sync.sync_interval_minutes

    console.print(f"[green]Starting calstore-sync daemon[/green] - interval: {sync_interval} minutes")

    runs = 0
    try:
        while True:
            if max_runs and runs >= max_runs:
                console.print(f"[yellow]Reached maximum runs ({max_runs}), stopping daemon[/yellow]")
                break

            console.print(f"\n[blue]--- Sync Run {runs + 1} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ---[/blue]")

            try:
                results = await _engine(ctx).sync_all()
                _display_batch_results(results)
            except Exception as e:
                console.print(f"[red]Sync run failed: {e}[/red]")
                if settings.debug:
                    console.print_exception()
            runs += 1

            if max_runs and runs >= max_runs:
                break

            console.print(f"[dim]Next sync in {sync_interval} minutes...[/dim]")
            await asyncio.sleep(sync_interval * 60)

    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        sys.exit(0)


@cli.command()
@click.option('--config-id', type=click.UUID, help='Only show runs of this sync config')
@click.option('--limit', '-n', default=10, show_default=True, help='Number of runs to show')
@click.pass_context
def history(ctx, config_id, limit):
    """Show recent sync runs."""
    entries = _engine(ctx).db_manager.get_recent_sync_logs(config_id, limit)

    if not entries:
        console.print("[yellow]No sync history found[/yellow]")
        return

    table = Table(title="Sync History")
    table.add_column("Started", style="cyan")
    table.add_column("Config")
    table.add_column("Type")
    table.add_column("Direction")
    table.add_column("Status")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Updated", justify="right", style="blue")
    table.add_column("Deleted", justify="right", style="red")
    table.add_column("Errors", justify="right", style="red")

    for entry in entries:
        status_style = {"success": "green", "partial": "yellow", "error": "red"}[entry.status.value]
        table.add_row(
            entry.started_at.strftime('%Y-%m-%d %H:%M:%S'),
            str(entry.sync_config_id)[:8],
            entry.sync_type.value,
            entry.direction.value,
            f"[{status_style}]{entry.status.value}[/{status_style}]",
            str(entry.created),
            str(entry.updated),
            str(entry.deleted),
            str(len(entry.errors)),
        )

    console.print(table)


@cli.command()
@click.pass_context
def status(ctx):
    """Show sync status and recent activity."""
    sync_status = _engine(ctx).get_sync_status()

    stats = sync_status['statistics']
    last_run = sync_status['last_run']
    console.print(Panel(
        f"Sync configs: {sync_status['enabled_configs']} enabled of {sync_status['total_configs']}\n"
        f"Event mappings: {sync_status['total_mappings']}\n"
        f"Runs: {stats['total_runs']} "
        f"({stats['successful_runs']} ok, {stats['partial_runs']} partial, {stats['failed_runs']} failed)\n"
        f"Last run: {last_run.started_at.strftime('%Y-%m-%d %H:%M:%S') + ' ' + last_run.status.value if last_run else 'never'}",
        title="Sync Status"
    ))


@cli.command()
@click.argument('schema_id')
@click.argument('row_id')
@click.option('--config-id', type=click.UUID, help='Push to this sync config instead of the default one')
@click.option('--meet', is_flag=True, help='Request a Google Meet link')
@async_command
async def push(ctx, schema_id, row_id, config_id, meet):
    """Push one store row to Google Calendar."""
    settings = ctx.obj['settings']
    _require_credentials(settings)
    engine = _engine(ctx)

    try:
        schema = await engine.store.get_schema(schema_id)
        row = await engine.store.get_row(schema, row_id)
        target = engine.db_manager.get_sync_config(config_id) if config_id else None
    except (SchemaNotFoundError, SyncConfigNotFoundError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    if row is None:
        console.print(f"[red]Row {row_id} not found[/red]")
        sys.exit(1)

    pusher = OutboundPusher(settings, engine.db_manager, engine.store, engine.provider_client)
    result = await pusher.push(row, target_config=target, add_meet=meet)

    if result is None:
        console.print("[yellow]No writable calendar for this row; nothing pushed[/yellow]")
        return
    verb = "Created" if result.created else "Updated"
    console.print(f"[green]✓ {verb} event {result.provider_event_id}[/green]")
    if result.meet_link:
        console.print(f"Google Meet: {result.meet_link}")


@cli.command()
@click.argument('schema_id')
@click.argument('row_id')
@async_command
async def retract(ctx, schema_id, row_id):
    """Delete the Google event linked to a store row."""
    settings = ctx.obj['settings']
    _require_credentials(settings)
    engine = _engine(ctx)

    pusher = OutboundPusher(settings, engine.db_manager, engine.store, engine.provider_client)
    if await pusher.retract(schema_id, row_id):
        console.print("[green]✓ Event removed[/green]")
    else:
        console.print("[yellow]Row is not linked to any event[/yellow]")


@cli.command()
@async_command
async def calendars(ctx):
    """List Google calendars available to the account."""
    settings = ctx.obj['settings']
    _require_credentials(settings)

    try:
        entries = await _engine(ctx).provider_client.list_calendars()
    except Exception as e:
        console.print(f"[red]Failed to list calendars: {e}[/red]")
        sys.exit(1)

    table = Table(title="Google Calendars")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Access")
    table.add_column("Color")
    for entry in entries:
        table.add_row(
            entry['id'],
            entry.get('summary', 'Unnamed Calendar'),
            entry.get('accessRole', ''),
            entry.get('backgroundColor', ''),
        )
    console.print(table)


@cli.group()
def config():
    """Configuration file commands."""
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
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


def _display_sync_result(result: SyncResult) -> None:
    colour = {"success": "green", "partial": "yellow", "error": "red"}[result.status.value]
    lines = [
        f"Type: {result.sync_type.value}",
        f"Created: {result.created}",
        f"Updated: {result.updated}",
        f"Deleted: {result.deleted}",
        f"Skipped: {result.skipped}",
    ]
    if result.errors:
        lines.append(f"[red]Errors: {len(result.errors)}[/red]")
        for error in result.errors[:10]:
            lines.append(f"  • {error.event_id}: {error.message}")
    console.print(Panel("\n".join(lines), title=f"[{colour}]Sync {result.status.value}[/{colour}]"))


def _display_batch_results(results: Dict[UUID, SyncResult]) -> None:
    if not results:
        console.print("[yellow]No enabled calendars to sync[/yellow]")
        return

    table = Table(title="Sync Results")
    table.add_column("Config", style="cyan")
    table.add_column("Status")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Updated", justify="right", style="blue")
    table.add_column("Deleted", justify="right", style="red")
    table.add_column("Errors", justify="right", style="red")

    for config_id, result in results.items():
        if result is None:
            table.add_row(str(config_id)[:8], "[red]error[/red]", "-", "-", "-", "-")
            continue
        table.add_row(
            str(config_id)[:8],
            result.status.value,
            str(result.created),
            str(result.updated),
            str(result.deleted),
            str(len(result.errors)),
        )

    console.print(table)


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
