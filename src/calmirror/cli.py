"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import List, Tuple

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
import structlog

from .config import Settings, load_settings, create_example_config
from .database import DatabaseLock, DatabaseManager, PropertyStore
from .models import SyncReport
from .runner import LOCK_NAME, SyncRunner
from .scheduling import APSchedulerTriggerService
from .services import GoogleCalendarStore
from .sync_engine import SyncEngine

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False, log_format: str = None) -> None:
    """Set up structured logging."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=log_format or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
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


def _build_components(settings: Settings) -> Tuple[DatabaseManager, GoogleCalendarStore, SyncEngine]:
    db = DatabaseManager(settings)
    db.init_db()
    store = GoogleCalendarStore(settings)
    engine = SyncEngine(settings, store, PropertyStore(db, settings.principal))
    return db, store, engine


def _build_runner(settings: Settings, triggers: APSchedulerTriggerService = None) -> SyncRunner:
    db, _, engine = _build_components(settings)
    return SyncRunner(settings, engine, triggers or APSchedulerTriggerService(), db)


def _require_settings(settings: Settings) -> None:
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


def _display_reports(reports: List[SyncReport]) -> None:
    table = Table(show_header=True, header_style="bold blue", title="Synchronization")
    table.add_column("Pair", style="cyan")
    table.add_column("Mode")
    table.add_column("Source", justify="right")
    table.add_column("Unchanged", justify="right")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Deleted", justify="right", style="yellow")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right", style="red")

    for report in reports:
        if report.skipped:
            mode = "no changes"
        elif report.incremental:
            mode = "incremental"
        else:
            mode = "full"
        if report.dry_run:
            mode += " (dry run)"
        table.add_row(
            f"{report.source_calendar} → {report.target_calendar}",
            mode,
            str(report.source_events),
            str(report.unchanged),
            str(report.created),
            str(report.deleted),
            str(report.skipped_events),
            str(report.failed),
        )
    console.print(table)

    errors = [error for report in reports for error in report.errors]
    if errors:
        console.print(Panel(
            "\n".join(f"• {error}" for error in errors),
            title="[red]Errors[/red]",
            border_style="red"
        ))


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """calmirror - one-way calendar mirroring.

    Copies the time slots of a source calendar into a target calendar as
    "Busy" blocks (or whatever your transform makes of them) and keeps them
    up to date.
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
@click.option('--pair', '-p', 'pair_name', help='Only synchronize the pair with this name')
@click.option('--dry-run', '-n', is_flag=True,
              help='Show what would be changed without making changes')
@async_command
async def sync(ctx, pair_name, dry_run):
    """Run one synchronization pass now."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    if dry_run:
        console.print("[yellow]Running in dry-run mode - no changes will be made[/yellow]")

    try:
        runner = _build_runner(settings)
        await runner.engine.store.authenticate()
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True
        ) as progress:
            progress.add_task("Synchronizing calendars...", total=None)
            reports = await runner.run_pass(dry_run=dry_run, pair_name=pair_name)
        _display_reports(reports)
        if len(reports) < len([p for p in runner.pairs if pair_name in (None, p.name, p.label)]):
            console.print("[red]Some pairs failed, see the log for details[/red]")
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
@async_command
async def start(ctx):
    """Start the run loop and keep running until stopped."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    triggers = APSchedulerTriggerService()
    try:
        runner = _build_runner(settings, triggers)
        await runner.engine.store.authenticate()
        triggers.start()
        console.print(
            f"[green]Synchronization started[/green] - interval: {settings.sync_interval_minutes} minutes, "
            f"{len(runner.pairs)} pairs"
        )
        await runner.start()
        await runner.wait_until_idle()
        console.print("[yellow]Synchronization stopped[/yellow]")
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n[yellow]Run loop interrupted by user[/yellow]")
    except Exception as e:
        console.print(f"[red]Run loop failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)
    finally:
        triggers.shutdown()


@cli.command()
@async_command
async def stop(ctx):
    """Stop the run loop; a running pass completes."""
    settings = ctx.obj['settings']
    runner = _build_runner(settings)
    await runner.stop()
    console.print("[green]✓ The synchronization will not run again[/green]")
    console.print("You might want to delete all synchronized events with [bold]calmirror clean[/bold]")


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@async_command
async def clean(ctx, yes):
    """Delete all mirrored events and reset stored state."""
    settings = ctx.obj['settings']

    if not yes and not Confirm.ask("Delete every synchronized event from all target calendars?"):
        console.print("[yellow]Cleanup cancelled[/yellow]")
        return

    try:
        _, store, engine = _build_components(settings)
        await store.authenticate()
        deleted = await engine.clean()
        console.print(f"[green]✓ {deleted} synchronized events deleted[/green]")
    except Exception as e:
        console.print(f"[red]Cleanup failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx):
    """Show run loop state, pairs and watermarks."""
    settings = ctx.obj['settings']

    db, _, engine = _build_components(settings)
    runner = SyncRunner(settings, engine, APSchedulerTriggerService(), db)
    holder = DatabaseLock(db, LOCK_NAME, lease=timedelta(minutes=settings.max_execution_minutes)).holder()

    console.print(Panel(
        f"Run loop: {'[red]stopped[/red]' if runner.is_stopped else '[green]active[/green]'}\n"
        f"Pass in progress: {holder or 'no'}\n"
        f"Interval: {settings.sync_interval_minutes} min, backstop: {settings.max_execution_minutes} min",
        title="Status"
    ))

    pairs_table = Table(show_header=True, header_style="bold blue", title="Configured pairs")
    pairs_table.add_column("Pair", style="cyan")
    pairs_table.add_column("Window")
    pairs_table.add_column("Transform", style="dim")
    pairs_table.add_column("Enabled", justify="center")
    for pair in settings.sync_pairs:
        pairs_table.add_row(
            pair.label,
            f"-{pair.past_days} / +{pair.next_days}",
            pair.transform or "",
            "✓" if pair.enabled else "",
        )
    console.print(pairs_table)

    marks_table = Table(show_header=True, header_style="bold green", title="Watermarks")
    marks_table.add_column("Source → Target", style="cyan")
    marks_table.add_column("Last successful pass")
    for pair, moment in engine.watermarks().items():
        marks_table.add_row(pair, moment.isoformat())
    console.print(marks_table)
    console.print(f"Registered pairs: {len(engine.registered_pairs())}")


@cli.command()
@click.confirmation_option(prompt='Forget all watermarks so the next pass fetches everything?')
@click.pass_context
def reset(ctx):
    """Force a full pass for every pair."""
    settings = ctx.obj['settings']

    try:
        _, _, engine = _build_components(settings)
        removed = engine.reset_watermarks()
        console.print(f"[green]✓ {removed} watermarks removed[/green]")
    except Exception as e:
        console.print(f"[red]Failed to reset watermarks: {e}[/red]")
        sys.exit(1)


@cli.command()
@async_command
async def calendars(ctx):
    """List the calendars available to the account."""
    settings = ctx.obj['settings']

    try:
        store = GoogleCalendarStore(settings)
        await store.authenticate()
        items = await store.list_calendars()
    except Exception as e:
        console.print(f"[red]Failed to list calendars: {e}[/red]")
        sys.exit(1)

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Name", style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Time zone")
    table.add_column("Primary", justify="center")
    table.add_column("Access", justify="center")
    for cal in items:
        table.add_row(cal.name, cal.id, cal.timezone, "✓" if cal.is_primary else "", cal.access_role or "")
    console.print(table)


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
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")
        sys.exit(1)


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
            f"[green]✓ All required configuration fields are present[/green]\n"
            f"{len(settings.enabled_pairs)} of {len(settings.sync_pairs)} pairs enabled",
            title="Configuration Validation",
            border_style="green"
        ))


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
