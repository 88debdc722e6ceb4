"""Status command: sync waves and library counts."""

import click
from rich.console import Console
from rich.table import Table

from ...config import get_config
from ...database.service import ENTITY_MODELS
from .init import InitializationError, init_storage

console = Console()


@click.command("status")
def status() -> None:
    """Show sync wave history and library statistics."""
    try:
        storage = init_storage(get_config())
    except InitializationError as e:
        console.print(f"[bold red]❌ {e}[/bold red]")
        raise click.Abort()

    with storage.context() as library:
        waves = library.get_sync_waves()

        wave_table = Table(title="Sync Waves")
        wave_table.add_column("Wave", justify="right", style="cyan")
        wave_table.add_column("Kind")
        wave_table.add_column("Phase")
        wave_table.add_column("Cursor", justify="right")
        wave_table.add_column("Last add")
        for wave in waves:
            phase_style = "green" if wave.phase == "done" else "yellow"
            wave_table.add_row(
                str(wave.id),
                wave.wave_kind,
                f"[{phase_style}]{wave.phase}[/{phase_style}]",
                str(wave.resume_cursor),
                wave.date_of_last_add.strftime("%Y-%m-%d %H:%M:%S"),
            )

    if waves:
        console.print(wave_table)
    else:
        console.print("[dim]No sync wave yet, run 'ampache-sync sync'[/dim]")

    stats = storage.get_statistics()
    count_table = Table(title="Library")
    count_table.add_column("Entity", style="cyan")
    count_table.add_column("Available", justify="right", style="green")
    count_table.add_column("Deleted", justify="right", style="red")
    for model in ENTITY_MODELS:
        name = model.__tablename__
        deleted = stats[f"{name}_deleted"]
        count_table.add_row(name, str(stats[name] - deleted), str(deleted))
    console.print(count_table)
    console.print(f"[dim]Database: {stats['database_path']}[/dim]")
