"""Full and background sync commands."""

import logging
import threading
from typing import Callable, List, Optional

import click
from rich.console import Console

from ...config import get_config
from ...core.syncer import CancellationToken
from ...database.progress_tracker import RichProgressReporter
from .init import InitializationError, init_syncer

console = Console()
logger = logging.getLogger(__name__)


def _run_cancellable(operation: Callable[[CancellationToken], bool]) -> bool:
    """Run a sync on a worker thread; Ctrl+C cancels it after the current page."""
    token = CancellationToken()
    outcome: List[bool] = []
    worker = threading.Thread(target=lambda: outcome.append(operation(token)), daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.5)
    except KeyboardInterrupt:
        console.print("\n[yellow]⏹  Cancelling after the current page...[/yellow]")
        token.cancel()
        worker.join()
    return bool(outcome and outcome[0])


def _report(done: bool, what: str) -> None:
    if done:
        console.print(f"\n[bold green]✅ {what} complete![/bold green]")
    else:
        console.print(
            f"\n[yellow]⚠️  {what} did not complete "
            "(server unreachable, cancelled or failed, see log)[/yellow]"
        )


@click.command("sync")
def sync_command() -> None:
    """Full sync: pull the whole library into a new sync wave."""
    try:
        console.print("[bold blue]🔄 Starting full sync...[/bold blue]")
        with RichProgressReporter(console=console) as reporter:
            syncer = init_syncer(get_config(), progress_callback=reporter)
            done = _run_cancellable(syncer.sync_initial)
        _report(done, "Full sync")
    except InitializationError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise click.Abort()


@click.command("resync")
@click.option(
    "--version-migration",
    type=int,
    default=None,
    metavar="N",
    help="Re-pull the whole library, migrating from schema version N",
)
def resync_command(version_migration: Optional[int]) -> None:
    """Background sync: resume the open wave or pull what changed.

    Without options only content added since the last wave is fetched.
    """
    try:
        with RichProgressReporter(console=console) as reporter:
            syncer = init_syncer(get_config(), progress_callback=reporter)
            if version_migration is None:
                console.print("[bold blue]🔄 Syncing changes...[/bold blue]")
                done = _run_cancellable(syncer.resync_in_background)
            else:
                console.print(
                    f"[bold blue]🔄 Migrating from schema {version_migration}...[/bold blue]"
                )
                done = _run_cancellable(
                    lambda token: syncer.resync_version_migration(version_migration, token)
                )
        _report(done, "Resync")
    except InitializationError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise click.Abort()
