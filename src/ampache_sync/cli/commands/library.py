"""Favorites, search and playlist download commands."""

import click
from rich.console import Console
from rich.table import Table

from ...config import get_config
from .init import InitializationError, init_syncer

console = Console()


@click.command("favorites")
def favorites() -> None:
    """Refresh the favorite flags of artists, albums and songs."""
    try:
        syncer = init_syncer(get_config())
    except InitializationError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise click.Abort()

    if syncer.sync_favorites():
        console.print("[green]✓ Favorites refreshed[/green]")
    else:
        console.print("[yellow]⚠️  Favorites not refreshed[/yellow]")


@click.command("search")
@click.argument("text")
def search(text: str) -> None:
    """Search artists, albums and songs on the server."""
    try:
        syncer = init_syncer(get_config())
    except InitializationError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise click.Abort()

    table = Table(title=f"Results for '{text}'")
    table.add_column("Kind", style="cyan")
    table.add_column("Id", justify="right")
    table.add_column("Name")

    for artist in syncer.search_artists(text):
        table.add_row("artist", artist.remote_id, artist.name)
    for album in syncer.search_albums(text):
        table.add_row("album", album.remote_id, album.name)
    for song in syncer.search_songs(text):
        table.add_row("song", song.remote_id, song.title)

    if table.row_count:
        console.print(table)
    else:
        console.print("[dim]Nothing found[/dim]")


@click.command("playlist-download")
@click.argument("playlist_id")
def playlist_download(playlist_id: str) -> None:
    """Download the songs of the playlist with server id PLAYLIST_ID."""
    try:
        syncer = init_syncer(get_config())
    except InitializationError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise click.Abort()

    if syncer.sync_down_playlist(playlist_id):
        console.print(f"[green]✓ Playlist {playlist_id} downloaded[/green]")
    else:
        console.print(f"[yellow]⚠️  Playlist {playlist_id} not downloaded[/yellow]")
