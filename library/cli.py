"""
Command-line interface for the library server and the client offline cache.

Run with: python -m library
"""

import functools
import logging
import mimetypes
import time
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from player.cache import OfflineCacheManager
from player.reconciler import CacheReconciler
from player.remote import RemoteLibrary
from shared.config import load_client_config, load_server_config
from shared.errors import TunelockerError
from shared.models import SongPatch, SortOrder
from .manager import LibraryManager

console = Console()


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024


def _format_duration(seconds) -> str:
    if seconds is None:
        return "-"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"


def handle_errors(func):
    """Print library errors in red and exit non-zero instead of dumping a traceback."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except TunelockerError as e:
            console.print(f"[red]❌ {e.kind}: {e.message}[/red]")
            raise SystemExit(1)
    return wrapper


def _manager(ctx) -> LibraryManager:
    obj = ctx.ensure_object(dict)
    if 'manager' not in obj:
        config = load_server_config(obj.get('server_config'))
        obj['manager'] = LibraryManager.from_config(config)
    return obj['manager']


def _cache(ctx) -> OfflineCacheManager:
    obj = ctx.ensure_object(dict)
    if 'cache' not in obj:
        config = load_client_config(obj.get('client_config'))
        obj['client_settings'] = config
        source = RemoteLibrary(config.server_url, timeout=config.network_timeout)
        obj['cache'] = OfflineCacheManager(
            config.cache_dir,
            config.cache_max_size_bytes,
            source=source,
            index_path=str(config.cache_index_path),
        )
        ctx.call_on_close(obj['cache'].close)
    return obj['cache']


def _songs_table(songs, title="Library") -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="cyan")
    table.add_column("Artist", style="green")
    table.add_column("Length", justify="right")
    table.add_column("Size", justify="right")
    for song in songs:
        table.add_row(song.id, song.title, song.artist,
                      _format_duration(song.duration), _format_size(song.content_length))
    return table


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', 'server_config', type=click.Path(dir_okay=False),
              help='Server config file (default ~/.config/tunelocker/server.json)')
@click.option('--client-config', type=click.Path(dir_okay=False),
              help='Client config file (default ~/.config/tunelocker/client.json)')
@click.option('-v', '--verbose', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, server_config, client_config, verbose):
    """
    🎵 Tunelocker: your personal audio library.

    Upload, browse and stream songs from your own storage, and keep
    favourites available offline.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=verbose)],
    )
    ctx.ensure_object(dict)
    ctx.obj['server_config'] = server_config
    ctx.obj['client_config'] = client_config


@cli.command()
@click.option('--host', help='Bind address (overrides config)')
@click.option('--port', type=int, help='Port (overrides config)')
@click.option('--debug', is_flag=True, help='Run Flask in debug mode')
@click.pass_context
@handle_errors
def serve(ctx, host, port, debug):
    """Run the HTTP API."""
    from shared.api import start_api

    manager = _manager(ctx)
    config = manager.config
    if host:
        config.host = host
    if port:
        config.port = port
    console.print(Panel.fit(
        f"[bold cyan]🎵 Tunelocker online[/bold cyan]\n\n"
        f"API: http://{config.host}:{config.port}/api\n"
        f"Stream mode: {config.stream_mode}",
        border_style="cyan"
    ))
    start_api(manager, config, debug=debug)


@cli.command()
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--title', help='Song title (single file only)')
@click.option('--artist', help='Artist name')
@click.option('--type', 'content_type', help='Content type, guessed from the extension if omitted')
@click.pass_context
@handle_errors
def upload(ctx, files, title, artist, content_type):
    """Upload one or more audio files."""
    if title and len(files) > 1:
        raise click.UsageError("--title can only be used with a single file")
    manager = _manager(ctx)
    uploaded = []
    failed = 0
    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                  console=console, transient=True) as progress:
        for file_path in files:
            path = Path(file_path)
            task = progress.add_task(f"Uploading {path.name}...", total=None)
            guessed = content_type or mimetypes.guess_type(path.name)[0]
            try:
                with open(path, 'rb') as f:
                    song = manager.ingest(f, guessed, path.stat().st_size,
                                          title=title, artist=artist, original_filename=path.name)
                uploaded.append(song)
            except TunelockerError as e:
                failed += 1
                console.print(f"[red]❌ {path.name}: {e.message}[/red]")
            finally:
                progress.remove_task(task)

    if uploaded:
        console.print(_songs_table(uploaded, title="Uploaded"))
    console.print(f"\n[green]✓[/green] {len(uploaded)} uploaded, {failed} failed")
    if failed:
        raise SystemExit(1)


@cli.command(name='ls')
@click.argument('query', required=False)
@click.option('--sort', type=click.Choice(['created', 'title', 'artist']), default='created')
@click.option('--limit', type=click.IntRange(min=0), help='Maximum number of songs')
@click.pass_context
@handle_errors
def list_songs(ctx, query, sort, limit):
    """List songs, optionally filtered by title or artist."""
    manager = _manager(ctx)
    songs = manager.catalog.list(query=query, sort=SortOrder.parse(sort), limit=limit)
    if not songs:
        console.print("[yellow]No songs found.[/yellow]")
        return
    console.print(_songs_table(songs))


@cli.command()
@click.argument('song_id')
@click.pass_context
@handle_errors
def info(ctx, song_id):
    """Show every field of a song."""
    song = _manager(ctx).get_song(song_id)
    table = Table(show_header=False, box=None)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for name, value in song.to_dict().items():
        table.add_row(name, "-" if value is None else str(value))
    console.print(Panel(table, title=song.title, border_style="cyan"))


@cli.command()
@click.argument('song_id')
@click.option('--title')
@click.option('--artist')
@click.pass_context
@handle_errors
def edit(ctx, song_id, title, artist):
    """Correct a song's title or artist."""
    patch = SongPatch.from_dict({k: v for k, v in (('title', title), ('artist', artist)) if v is not None})
    song = _manager(ctx).update_song(song_id, patch)
    console.print(f"[green]✓[/green] {song.artist} - {song.title}")


@cli.command(name='rm')
@click.argument('song_id')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
@handle_errors
def remove(ctx, song_id, yes):
    """Delete a song and its audio."""
    manager = _manager(ctx)
    song = manager.get_song(song_id)
    if not yes and not click.confirm(f"Delete '{song.title}' by {song.artist}?"):
        return
    manager.delete_song(song_id)
    console.print(f"[green]✓[/green] Deleted {song.title}")


@cli.command()
@click.option('--dry-run', is_flag=True, help='Report orphans without deleting them')
@click.option('--grace', type=click.IntRange(min=0), help='Skip blobs younger than this many seconds')
@click.pass_context
@handle_errors
def reconcile(ctx, dry_run, grace):
    """Clean up blobs without records and records without blobs."""
    report = _manager(ctx).reconcile_orphans(grace_seconds=grace, dry_run=dry_run)
    verb = "Would delete" if dry_run else "Deleted"
    console.print(f"{verb} {len(report.orphan_blobs)} orphan blob(s)")
    for key in report.orphan_blobs:
        console.print(f"  [dim]{key}[/dim]")
    console.print(f"{verb} {len(report.missing_blob_records)} record(s) with missing audio")
    for song_id in report.missing_blob_records:
        console.print(f"  [dim]{song_id}[/dim]")
    if report.skipped_recent:
        console.print(f"[yellow]Skipped {report.skipped_recent} recent blob(s)[/yellow]")


# --- Playlists ---

@cli.group()
def playlist():
    """Manage playlists."""


@playlist.command(name='create')
@click.argument('name')
@click.argument('song_ids', nargs=-1)
@click.pass_context
@handle_errors
def playlist_create(ctx, name, song_ids):
    created = _manager(ctx).playlists.create(name, song_ids)
    console.print(f"[green]✓[/green] Created playlist [cyan]{created.name}[/cyan] ({created.id})")


@playlist.command(name='show')
@click.argument('playlist_id')
@click.pass_context
@handle_errors
def playlist_show(ctx, playlist_id):
    view = _manager(ctx).playlists.get(playlist_id)
    table = Table(title=view.playlist.name, show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("Title", style="cyan")
    table.add_column("Artist", style="green")
    for entry in view.entries:
        if entry.dangling:
            table.add_row(str(entry.position), f"[red]missing ({entry.song_id})[/red]", "")
        else:
            table.add_row(str(entry.position), entry.song.title, entry.song.artist)
    console.print(table)
    if view.dangling:
        console.print(f"[yellow]{len(view.dangling)} song(s) no longer exist. "
                      f"Run 'playlist prune {playlist_id}' to drop them.[/yellow]")


@playlist.command(name='add')
@click.argument('playlist_id')
@click.argument('song_id')
@click.option('--position', type=click.IntRange(min=0))
@click.pass_context
@handle_errors
def playlist_add(ctx, playlist_id, song_id, position):
    updated = _manager(ctx).playlists.add_song(playlist_id, song_id, position)
    console.print(f"[green]✓[/green] {updated.name} now has {len(updated.song_ids)} song(s)")


@playlist.command(name='prune')
@click.argument('playlist_id')
@click.pass_context
@handle_errors
def playlist_prune(ctx, playlist_id):
    removed = _manager(ctx).playlists.prune_dangling(playlist_id)
    console.print(f"[green]✓[/green] Removed {removed} dangling entr{'y' if removed == 1 else 'ies'}")


# --- Offline cache ---

@cli.group()
def cache():
    """Manage songs saved for offline playback."""


@cache.command(name='save')
@click.argument('song_ids', nargs=-1, required=True)
@click.pass_context
@handle_errors
def cache_save(ctx, song_ids):
    manager = _cache(ctx)
    for song_id in song_ids:
        hit = manager.save_for_offline(song_id)
        console.print(f"[green]✓[/green] {hit.metadata.title} ({_format_size(hit.size)})")


@cache.command(name='ls')
@click.pass_context
@handle_errors
def cache_list(ctx):
    manager = _cache(ctx)
    entries = manager.entries()
    if not entries:
        console.print("[yellow]Offline cache is empty.[/yellow]")
        return
    table = Table(title="Offline cache", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Last played")
    table.add_column("State")
    # Most recently used first
    for entry in reversed(entries):
        state = "[yellow]stale[/yellow]" if entry.stale else "[green]cached[/green]"
        table.add_row(entry.song_id, entry.metadata.title, _format_size(entry.size),
                      entry.last_accessed[:19].replace("T", " "), state)
    console.print(table)


@cache.command(name='rm')
@click.argument('song_id')
@click.pass_context
@handle_errors
def cache_remove(ctx, song_id):
    if _cache(ctx).remove(song_id):
        console.print(f"[green]✓[/green] Removed {song_id} from offline cache")
    else:
        console.print(f"[yellow]{song_id} is not cached[/yellow]")


@cache.command(name='usage')
@click.pass_context
@handle_errors
def cache_usage(ctx):
    manager = _cache(ctx)
    used = manager.usage()
    percent = used / manager.max_size_bytes * 100
    console.print(f"{_format_size(used)} of {_format_size(manager.max_size_bytes)} used "
                  f"({percent:.1f}%), {len(manager.entries())} song(s)")


@cache.command(name='sync')
@click.pass_context
@handle_errors
def cache_sync(ctx):
    """Check cached songs against the server and refresh stale ones."""
    summary = _cache(ctx).reconcile()
    console.print(f"Checked {summary.checked}, refreshed {summary.refreshed}, "
                  f"removed {summary.removed}, failed {summary.failed}")


@cache.command(name='watch')
@click.option('--interval', type=click.IntRange(min=1), default=None,
              help='Minutes between passes (defaults to reconcile_interval_minutes)')
@click.pass_context
@handle_errors
def cache_watch(ctx, interval):
    """Keep the offline cache in sync with the server until interrupted."""
    manager = _cache(ctx)
    minutes = interval or ctx.obj['client_settings'].reconcile_interval_minutes
    reconciler = CacheReconciler(manager, minutes * 60)
    reconciler.reconcile_once()
    reconciler.start()
    console.print(f"Watching offline cache every {minutes} min. Press Ctrl+C to stop.")
    try:
        while reconciler.running:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping cache watch[/yellow]")
    finally:
        reconciler.stop()
