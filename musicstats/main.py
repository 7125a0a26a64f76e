"""
Main CLI interface for Music-Stats

This module provides the command-line interface for the listening statistics
engine and its Google Drive sync. It is the entry point for users who run the
engine outside an embedding application.

The CLI is built using Click framework and provides:
- Statistics commands (stats, ingest, aggregate, watch)
- Portable export/import of the whole play log (export, import)
- Google Drive sync handling (drive connect, sync, status, disconnect, ...)
- Configuration display (config show, config save)
"""

import functools
import json
import sys
import time
from contextlib import contextmanager
from pathlib import Path

import click

from . import __version__
from .config.settings import get_settings, reload_settings
from .session import StatsSession
from .utils.helpers import (
    create_backup_filename,
    create_export_filename,
    ensure_directory,
    format_minutes,
    truncate_string,
)
from .utils.logger import configure_from_settings, create_operation_logger, get_current_log_file, get_logger

logger = get_logger(__name__)


def print_banner():
    """Print application banner to console"""
    banner = """
╔═══════════════════════════════════════════════════════════════╗
║                          Music-Stats                          ║
║                                                               ║
║     Listening statistics with Google Drive synchronization    ║
║                                                               ║
╚═══════════════════════════════════════════════════════════════╝
    """
    click.echo(click.style(banner, fg='green', bold=True))


def handle_error(func):
    """
    Decorator to handle common CLI errors gracefully

    Args:
        func: The CLI command function to wrap

    Returns:
        Wrapped function with error handling
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            click.echo(click.style("\n\nOperation cancelled by user", fg='yellow'))
            sys.exit(130)
        except Exception as e:
            logger.error(f"Command failed: {e}")
            click.echo(click.style(f"Error: {e}", fg='red'), err=True)
            sys.exit(1)
    return wrapper


@contextmanager
def open_session(background: bool = False):
    """
    Open a StatsSession on the shared settings and always shut it down

    One-shot commands leave `background` off so no timers are started.
    """
    session = StatsSession(get_settings())
    session.start(background=background)
    try:
        yield session
    finally:
        session.shutdown()


def _echo_result(ok: bool, message: str) -> None:
    click.echo(click.style(message, fg='green' if ok else 'red'))


def _read_events(path: Path) -> list:
    """
    Read play events from a JSON array or a JSON lines file

    Raises:
        ValueError: If the file is neither
    """
    text = path.read_text(encoding='utf-8').strip()
    if not text:
        return []

    if text.startswith('['):
        events = json.loads(text)
        if not isinstance(events, list):
            raise ValueError("Expected a JSON array of play events")
        return events

    events = []
    for line_number, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError as e:
            raise ValueError(f"Line {line_number} is not valid JSON: {e.msg}") from e
    return events


@click.group(invoke_without_command=True)
@click.option('--version', is_flag=True, help='Show version information')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.option('--config', type=click.Path(), help='Path to config file')
@click.pass_context
def cli(ctx, version, verbose, config):
    """
    Music-Stats - Listening statistics with Google Drive sync

    Records finished plays, computes dashboard statistics from the full play
    log and keeps the log reconciled with a copy in your Google Drive app
    data folder.
    """
    ctx.ensure_object(dict)

    if version:
        click.echo(f"Music-Stats v{__version__}")
        return

    settings = reload_settings(config) if config else get_settings()
    if verbose:
        settings.logging.level = 'DEBUG'
        ctx.obj['verbose'] = True
    configure_from_settings(settings)

    if config:
        click.echo(f"Loaded config: {config}")

    if ctx.invoked_subcommand is None:
        print_banner()
        click.echo(ctx.get_help())


# Statistics commands

@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print the raw statistics object')
@handle_error
def stats(as_json):
    """Show listening statistics"""
    with open_session() as session:
        snapshot = session.get_stats()

    if as_json:
        click.echo(json.dumps(snapshot.to_dict(), indent=2))
        return

    click.echo(click.style("Listening Statistics\n", bold=True))
    click.echo(f"   Total listening: {format_minutes(snapshot.total_minutes)}")
    click.echo(f"   Qualified plays: {snapshot.total_songs}")
    click.echo(f"   Current streak: {snapshot.current_streak} day(s)")
    click.echo(f"   Skip rate: {snapshot.skip_rate}%")

    if snapshot.anthem:
        click.echo(f"   Anthem: {snapshot.anthem.artist} - {snapshot.anthem.title} ({snapshot.anthem.plays} plays)")
    if snapshot.peak_listening_day:
        peak = snapshot.peak_listening_day
        click.echo(f"   Peak day: {peak.date} ({format_minutes(peak.minutes)})")
    if snapshot.first_song_ever:
        first = snapshot.first_song_ever
        click.echo(f"   First song: {first.artist} - {first.title} on {first.date}")

    if snapshot.top_songs:
        click.echo("\nTop Songs:")
        for i, song in enumerate(snapshot.top_songs, 1):
            title = truncate_string(f"{song.artist} - {song.title}", 50)
            click.echo(f"   {i}. {title} | {song.plays} plays, {song.minutes} min")

    if snapshot.top_artists:
        click.echo("\nTop Artists:")
        for i, artist in enumerate(snapshot.top_artists, 1):
            click.echo(f"   {i}. {artist.name} | {artist.minutes} min, {artist.plays} plays")

    if snapshot.monthly_obsessions:
        click.echo("\nMonthly Obsessions:")
        for obsession in snapshot.monthly_obsessions:
            click.echo(f"   {obsession.year_month}: {obsession.artist} ({obsession.minutes} min)")

    if snapshot.skip_stats:
        click.echo("\nMost Skipped:")
        for skip in snapshot.skip_stats[:5]:
            click.echo(f"   {skip.artist} - {skip.title} | {skip.skips} of {skip.plays}")

    busiest = max(range(24), key=lambda hour: snapshot.listening_clock[hour])
    if snapshot.listening_clock[busiest]:
        click.echo(f"\nBusiest hour: {busiest:02d}:00")


@cli.command()
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@handle_error
def ingest(file):
    """
    Record play events from a file

    FILE holds a JSON array of play events or one event per line.
    """
    events = _read_events(Path(file))
    if not events:
        click.echo("No play events found")
        return

    operation = create_operation_logger(__name__, "Recording plays", unit="plays")
    recorded = 0
    rejected = 0

    with open_session() as session:
        operation.start(f"Recording {len(events)} play events")
        for i, event in enumerate(events, 1):
            try:
                if session.submit_play_event(event):
                    recorded += 1
            except ValueError as e:
                rejected += 1
                logger.warning(f"Event {i} rejected: {e}")
            operation.progress(i, len(events), rejected=rejected)
        session.aggregate_now()
        operation.complete(f"Recorded {recorded} plays")

    click.echo("\nIngest Results:")
    click.echo(f"   Recorded: {recorded}")
    click.echo(f"   Rejected: {rejected}")
    if recorded + rejected < len(events):
        click.echo(click.style("   Stats tracking is disabled; events were not stored", fg='yellow'))


@cli.command()
@click.option('--output', '-o', type=click.Path(), help='Output file or directory')
@handle_error
def export(output):
    """Export the full play log as JSON"""
    with open_session() as session:
        content = session.export_snapshot()

    target = Path(output).expanduser() if output else create_export_filename(Path.cwd())
    if target.is_dir():
        target = create_export_filename(target)
    ensure_directory(target.parent)
    target.write_text(content, encoding='utf-8')

    click.echo(click.style(f"Exported to {target}", fg='green'))


@cli.command(name='import')
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--no-backup', is_flag=True, help='Do not back up the current data first')
@handle_error
def import_(file, no_backup):
    """
    Replace local data with an export file

    The current data is saved next to the database before it is replaced.
    """
    text = Path(file).read_text(encoding='utf-8')

    with open_session() as session:
        if not no_backup and session.store.record_count:
            backup = create_backup_filename(session.store.path)
            backup.write_text(session.export_snapshot(), encoding='utf-8')
            click.echo(f"Backup saved to {backup}")

        bundle = session.import_snapshot(text)

    if not bundle.play_records and not bundle.daily_aggregates:
        click.echo(click.style("Nothing imported (empty or unreadable export)", fg='yellow'))
        return
    click.echo(click.style(f"Imported {len(bundle.play_records)} plays", fg='green'))


@cli.command()
@handle_error
def aggregate():
    """Recompute today's and this month's aggregates"""
    with open_session() as session:
        session.aggregate_now()
    click.echo(click.style("Aggregates updated", fg='green'))


@cli.command()
@handle_error
def watch():
    """
    Run background work until interrupted

    Keeps the store flushing, the hourly aggregation running and, when
    enabled, the periodic Drive sync. Press Ctrl-C to stop.
    """
    click.echo("Watching. Press Ctrl-C to stop.")
    with open_session(background=True):
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            click.echo("\nStopping...")
    click.echo(click.style("Data flushed", fg='green'))


# Google Drive commands

@cli.group()
def drive():
    """
    Google Drive sync

    Command group for connecting a Google account and reconciling the play
    log with the copy kept in the Drive app data folder.
    """
    pass


@drive.command()
@handle_error
def connect():
    """Authorize Google Drive access in the browser"""
    settings = get_settings()
    if not settings.cloud_sync.client_id:
        click.echo(click.style("Set a client id first: music-stats drive set-client --client-id ...", fg='red'), err=True)
        sys.exit(1)

    click.echo("Waiting for Google authorization in your browser...")
    with open_session() as session:
        result = session.connect_drive()

    if result.degraded:
        click.echo(click.style(result.message, fg='yellow'))
        return
    _echo_result(result.ok, result.message)


@drive.command()
@handle_error
def sync():
    """Reconcile local data with Google Drive once"""
    with open_session() as session:
        result = session.sync_now()
    _echo_result(result.ok, result.summary)
    if not result.ok:
        sys.exit(1)


@drive.command()
@handle_error
def status():
    """Show Google Drive connection status"""
    with open_session() as session:
        info = session.drive_status()
        token_state = session.credentials.token_state()

    click.echo("Google Drive Status:\n")
    click.echo(f"   Sync enabled: {info['enabled']}")
    connected = click.style("yes", fg='green') if info['connected'] else click.style("no", fg='red')
    click.echo(f"   Connected: {connected}")
    click.echo(f"   Access token: {token_state.value}")
    click.echo(f"   Last sync: {info['lastSyncTime'] or 'never'}")
    if info['lastError']:
        click.echo(click.style(f"   Last error: {info['lastError']}", fg='red'))


@drive.command()
@click.confirmation_option(prompt='Forget Google Drive tokens and disable sync?')
@handle_error
def disconnect():
    """Forget Google Drive tokens"""
    with open_session() as session:
        result = session.disconnect_drive()
    _echo_result(result.ok, result.message)


@drive.command()
@handle_error
def enable():
    """Enable periodic Drive sync"""
    with open_session() as session:
        session.set_cloud_sync_enabled(True)
    click.echo(click.style("Cloud sync enabled", fg='green'))


@drive.command()
@handle_error
def disable():
    """Disable Drive sync"""
    with open_session() as session:
        session.set_cloud_sync_enabled(False)
    click.echo(click.style("Cloud sync disabled", fg='yellow'))


@drive.command(name='set-client')
@click.option('--client-id', required=True, help='Google OAuth desktop client id')
@click.option('--client-secret', help='Client secret, if your client has one')
@handle_error
def set_client(client_id, client_secret):
    """Store the Google OAuth client used for authorization"""
    with open_session() as session:
        session.set_client_credentials(client_id, client_secret)
    click.echo(click.style("Client credentials saved", fg='green'))


# Configuration commands

@cli.group()
def config():
    """Configuration management"""
    pass


@config.command()
@handle_error
def show():
    """Show current configuration"""
    settings = get_settings()

    click.echo("Current Configuration:\n")

    click.echo("Stats:")
    click.echo(f"   Enabled: {settings.stats.enabled}")
    click.echo(f"   Database: {settings.get_database_path()}")
    click.echo(f"   Flush interval: {settings.stats.flush_interval}s")
    click.echo(f"   Aggregation interval: {settings.stats.aggregation_interval}s")
    if settings.stats.tracking_start_date:
        click.echo(f"   Tracking since: {settings.stats.tracking_start_date}")

    click.echo("\nCloud Sync:")
    click.echo(f"   Enabled: {settings.cloud_sync.enabled}")
    click.echo(f"   Client id: {'set' if settings.cloud_sync.client_id else 'not set'}")
    click.echo(f"   Sync interval: {settings.cloud_sync.sync_interval}s")
    click.echo(f"   Remote file: {settings.cloud_sync.file_name}")

    click.echo("\nLogging:")
    click.echo(f"   Level: {settings.logging.level}")
    log_file = get_current_log_file()
    click.echo(f"   File: {log_file or 'disabled'}")


@config.command()
@click.option('--output', '-o', type=click.Path(), help='Where to write config.yaml')
@handle_error
def save(output):
    """Write the current configuration to YAML (without credentials)"""
    target = get_settings().save_config(output)
    click.echo(click.style(f"Configuration saved to {target}", fg='green'))


def main():
    cli()


if __name__ == '__main__':
    main()
