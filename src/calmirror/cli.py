"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List
from uuid import UUID

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
import structlog

from .config import load_settings, create_example_config
from .cursor_store import DeltaCursorStore
from .database import DatabaseManager
from .locations import LocationResolver
from .models import LocationMatch, SyncReport
from .services import AuthenticationError, GraphCalendarService
from .sync_engine import SyncOrchestrator, SyncRequestError, build_window

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(message)s")
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


def _db(settings) -> DatabaseManager:
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    return db_manager


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """calmirror - enriched local mirror of remote calendars.

    Pulls changes through delta queries, reconciles them into unified
    events, and resolves free-text locations to canonical records.
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

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
def serve(host, port):
    """Run the HTTP route layer."""
    try:
        import uvicorn
        uvicorn.run("calmirror.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--owner', '-o', required=True, help='Mailbox owner (user id or address)')
@click.option('--calendar', '-C', 'calendars', multiple=True, required=True,
              help='Calendar id to sync (repeatable)')
@click.option('--full', is_flag=True, help='Ignore stored cursors and run full syncs')
@click.option('--start', type=click.DateTime(), help='Window start (full syncs only)')
@click.option('--end', type=click.DateTime(), help='Window end (full syncs only)')
@async_command
async def sync(ctx, owner, calendars, full, start, end):
    """Synchronize calendars into the local mirror."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            f"[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            f"\n\nPlease set these environment variables or create a configuration file.\n" +
            f"Use [bold]calmirror config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)

    try:
        window = build_window(start, end)
        async with SyncOrchestrator(settings) as orchestrator:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True
            ) as progress:
                progress.add_task(f"Syncing {len(calendars)} calendar(s)...", total=None)
                report = await orchestrator.sync_calendars(
                    owner, list(calendars), window=window, force_full_sync=full
                )
        logger.info("sync_finished", owner=owner, merged=report.merged_event_count, failed=report.failed_calendars)
        _display_sync_results(report)

    except SyncRequestError as e:
        console.print(f"[red]Invalid sync request: {e}[/red]")
        sys.exit(2)
    except AuthenticationError as e:
        report = getattr(e, 'report', None)
        if report is not None:
            _display_sync_results(report)
        console.print(f"[red]Authentication failed: {e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.option('--owner', '-o', required=True, help='Mailbox owner')
@click.option('--calendar', '-C', required=True, help='Calendar id')
@async_command
async def test(ctx, owner, calendar):
    """Test the remote connection by fetching one page of changes."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            f"[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields),
            title="Configuration Error"
        ))
        sys.exit(1)

    async with GraphCalendarService(settings) as service:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True
        ) as progress:
            progress.add_task("Testing connection...", total=None)
            result = await service.test_connection(owner, calendar)

    if result['success']:
        console.print(Panel(
            f"[green]✓ Connected[/green]\n"
            f"Sample events: {result['sample_events']}\n"
            f"More pages: {'yes' if result['has_more'] else 'no'}",
            title=f"{owner} / {calendar}",
            border_style="green"
        ))
    else:
        console.print(Panel(
            f"[red]✗ {result['error_type']}: {result['error']}[/red]",
            title=f"{owner} / {calendar}",
            border_style="red"
        ))
        sys.exit(1)


@cli.command('reset-cursor')
@click.option('--owner', '-o', required=True, help='Mailbox owner')
@click.option('--calendar', '-C', required=True, help='Calendar id')
@click.pass_context
def reset_cursor(ctx, owner, calendar):
    """Force the next sync of a calendar to be a full sync."""
    settings = ctx.obj['settings']
    DeltaCursorStore(_db(settings)).reset(owner, calendar)
    console.print(f"[green]✓ Cursor reset for {calendar}[/green]")
    console.print("[yellow]Next sync of this calendar will re-read every event[/yellow]")


@cli.command()
@click.option('--owner', '-o', help='Only show cursors for this owner')
@click.pass_context
def cursors(ctx, owner):
    """List stored delta cursors."""
    settings = ctx.obj['settings']
    rows = DeltaCursorStore(_db(settings)).list_cursors(owner)

    if not rows:
        console.print("[yellow]No cursors stored yet[/yellow]")
        return

    table = Table(title="Delta Cursors")
    table.add_column("Owner", style="cyan")
    table.add_column("Calendar", style="cyan")
    table.add_column("Mode")
    table.add_column("Last Synced")
    for cursor in rows:
        table.add_row(
            cursor.owner_id,
            cursor.calendar_id,
            "[yellow]full[/yellow]" if cursor.full_sync_required else "[green]incremental[/green]",
            cursor.last_synced_at.strftime('%Y-%m-%d %H:%M:%S') if cursor.last_synced_at else "never",
        )
    console.print(table)


@cli.command('resolve-location')
@click.argument('text')
@click.option('--create', is_flag=True, help='Create a location when nothing matches')
@click.pass_context
def resolve_location(ctx, text, create):
    """Show how free-text location TEXT resolves."""
    settings = ctx.obj['settings']
    resolver = LocationResolver(_db(settings), settings)
    matches = resolver.resolve(text, create_missing=create)
    if not matches:
        console.print("[yellow]Nothing to resolve[/yellow]")
        return
    _display_matches(resolver, matches)


@cli.command()
@click.option('--owner', '-o', required=True, help='Mailbox owner')
@click.pass_context
def status(ctx, owner):
    """Show mirror statistics for an owner."""
    settings = ctx.obj['settings']
    try:
        db_manager = _db(settings)
        with db_manager.get_session() as session:
            stats = db_manager.get_sync_statistics(session, owner)
    except Exception as e:
        console.print(f"[red]Failed to get status: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    table = Table(title=f"Mirror Status: {owner}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Active Events", str(stats['active_events']))
    table.add_row("Deleted Events", str(stats['deleted_events']))
    table.add_row("Calendars", ", ".join(stats['calendars']) or "-")
    table.add_row("Cursors", str(stats['cursors']))
    table.add_row("Awaiting Full Sync", str(stats['cursors_needing_full_sync']))
    table.add_row("Locations", str(stats['locations']))
    console.print(table)


@cli.group()
def locations():
    """Canonical location administration."""
    pass


@locations.command('list')
@click.option('--all', 'include_merged', is_flag=True, help='Include merged locations')
@click.pass_context
def list_locations(ctx, include_merged):
    """List canonical locations."""
    settings = ctx.obj['settings']
    resolver = LocationResolver(_db(settings), settings)

    table = Table(title="Locations")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Code")
    table.add_column("Status")
    table.add_column("Aliases")
    table.add_column("Uses", justify="right")
    for entity in resolver.list_locations(include_merged=include_merged):
        table.add_row(
            str(entity.id),
            entity.label,
            entity.location_code or "",
            entity.status.value,
            ", ".join(entity.aliases),
            str(entity.usage_count),
        )
    console.print(table)


@locations.command('merge')
@click.argument('source_id', type=click.UUID)
@click.argument('target_id', type=click.UUID)
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def merge_locations(ctx, source_id: UUID, target_id: UUID, yes):
    """Merge location SOURCE_ID into TARGET_ID."""
    settings = ctx.obj['settings']
    resolver = LocationResolver(_db(settings), settings)

    if not yes and not Confirm.ask(f"Merge {source_id} into {target_id}?"):
        console.print("[yellow]Merge cancelled[/yellow]")
        return
    try:
        survivor = resolver.merge_locations(source_id, target_id)
    except ValueError as e:
        logger.warning("location_merge_rejected", source=str(source_id), target=str(target_id), reason=str(e))
        console.print(f"[red]Cannot merge: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Merged into {survivor.label}[/green] ({len(survivor.aliases)} aliases)")


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
        console.print("Please edit the file with your actual credentials.")
    except Exception as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


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


def _display_sync_results(report: SyncReport) -> None:
    """Display sync results in a formatted table."""
    table = Table(title=f"Sync {report.sync_id}")
    table.add_column("Calendar", style="cyan")
    table.add_column("Mode")
    table.add_column("Pages", justify="right")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Updated", justify="right", style="blue")
    table.add_column("Deleted", justify="right", style="red")
    table.add_column("Skipped", justify="right", style="yellow")
    table.add_column("Result")

    for summary in report.calendars:
        mode = summary.mode.value + (" (retried)" if summary.full_sync_retried else "")
        result = "[green]ok[/green]" if summary.success else f"[red]{summary.error_type}[/red]"
        table.add_row(
            summary.calendar_id,
            mode,
            str(summary.pages),
            str(summary.created),
            str(summary.updated),
            str(summary.deleted),
            str(summary.skipped),
            result,
        )
    console.print(table)

    if report.errors:
        console.print(Panel(
            "\n".join(f"• {error}" for error in report.errors),
            title="[red]Errors[/red]",
            border_style="red"
        ))


def _display_matches(resolver: LocationResolver, matches: List[LocationMatch]) -> None:
    table = Table(title="Location Resolution")
    table.add_column("Segment", style="cyan")
    table.add_column("Match")
    table.add_column("Location")
    table.add_column("Confidence", justify="right")
    for match in matches:
        label = ""
        if match.matched:
            entity = resolver.get_location(match.entity_id)
            label = entity.label if entity else str(match.entity_id)
        elif match.virtual_platform:
            label = match.virtual_platform
        table.add_row(match.segment, match.match_type.value, label, f"{match.confidence:.2f}")
    console.print(table)


if __name__ == '__main__':
    cli()
