"""Progress tracking for long-running sync operations.

The decoders report every finished entity to a parse notifier; the tracker
counts them per entity kind and forwards throttled updates to a callback.
"""

import logging
import threading
import time
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TaskID, TextColumn

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    """Kinds of entities reported while syncing."""

    GENRE = "genre"
    ARTIST = "artist"
    ALBUM = "album"
    SONG = "song"
    PLAYLIST = "playlist"
    PODCAST = "podcast"
    PODCAST_EPISODE = "podcast_episode"
    MUSIC_FOLDER = "music_folder"
    DIRECTORY = "directory"


@dataclass
class ProgressUpdate:
    """Progress update information."""

    kind: EntityKind
    current: int
    total: int
    message: str = ""
    metadata: Dict[str, Any] = dataclass_field(default_factory=dict)
    elapsed_time: float = 0.0

    @property
    def percentage(self) -> float:
        """Calculate progress percentage."""
        if self.total == 0:
            return 0.0
        return min(100.0, (self.current / self.total) * 100.0)

    @property
    def is_complete(self) -> bool:
        """Check if all expected entities were seen."""
        return self.total > 0 and self.current >= self.total

    def __str__(self) -> str:
        """String representation of progress."""
        parts = [
            f"[{self.kind.value}]",
            f"{self.current}/{self.total}",
            f"({self.percentage:.1f}%)",
        ]
        if self.message:
            parts.append(f"- {self.message}")
        return " ".join(parts)


# Type alias for progress callback function
ProgressCallback = Callable[[ProgressUpdate], None]

# Called by decoders once per finished entity
ParseNotifier = Callable[[EntityKind], None]


class ProgressTracker:
    """Counts parsed entities per kind; safe to share between workers."""

    def __init__(
        self,
        callback: Optional[ProgressCallback] = None,
        update_interval: float = 0.5,
    ):
        """Initialize progress tracker.

        Args:
            callback: Function to call with progress updates
            update_interval: Minimum time between updates (seconds)
        """
        self.callback = callback
        self.update_interval = update_interval
        self._lock = threading.Lock()
        self._start_time = time.time()
        self._last_update_time = 0.0
        self._counts: Dict[EntityKind, int] = {}
        self._totals: Dict[EntityKind, int] = {}

    def notify_sync_started(self, kind: EntityKind, total: int) -> None:
        """Start counting a kind of entity.

        Args:
            kind: Entity kind being synced
            total: Number of entities the server reported
        """
        with self._lock:
            self._counts[kind] = 0
            self._totals[kind] = total
        logger.info("Sync %s started (%s expected)", kind.value, total)
        self._notify(kind, "started", force=True)

    def notify_parsed(self, kind: EntityKind) -> None:
        """Count one parsed entity."""
        with self._lock:
            self._counts[kind] = self._counts.get(kind, 0) + 1
        self._notify(kind)

    def notify_sync_finished(self, kind: EntityKind) -> None:
        """Report the final count for a kind."""
        self._notify(kind, "finished", force=True)

    def count(self, kind: EntityKind) -> int:
        """Entities of ``kind`` parsed so far."""
        with self._lock:
            return self._counts.get(kind, 0)

    def _notify(self, kind: EntityKind, message: str = "", force: bool = False) -> None:
        """Send progress update to callback.

        Args:
            kind: Entity kind the update is about
            message: Progress message
            force: Bypass throttling
        """
        if not self.callback:
            return

        with self._lock:
            current_time = time.time()
            if not force and current_time - self._last_update_time < self.update_interval:
                return
            self._last_update_time = current_time
            update = ProgressUpdate(
                kind=kind,
                current=self._counts.get(kind, 0),
                total=self._totals.get(kind, 0),
                message=message,
                elapsed_time=current_time - self._start_time,
            )

        try:
            self.callback(update)
        except Exception as e:
            logger.error("Error in progress callback: %s", e)

    def get_summary(self) -> Dict[str, Any]:
        """Get summary of progress tracking.

        Returns:
            Dictionary with tracking summary
        """
        with self._lock:
            return {
                "total_time": time.time() - self._start_time,
                "counts": {kind.value: count for kind, count in self._counts.items()},
                "totals": {kind.value: total for kind, total in self._totals.items()},
            }


class ConsoleProgressReporter:
    """Simple console progress reporter."""

    def __init__(self, verbose: bool = True, console: Optional[Console] = None):
        """Initialize console reporter.

        Args:
            verbose: Whether to print every update or only phase changes
            console: Rich console to print to
        """
        self.verbose = verbose
        self.console = console or Console()
        self._last_kind: Optional[EntityKind] = None

    def __call__(self, update: ProgressUpdate) -> None:
        """Handle progress update."""
        if update.kind != self._last_kind:
            self.console.rule(f"[bold]{update.kind.value.upper()}[/bold]")
            self._last_kind = update.kind

        if self.verbose or update.message:
            self.console.print(f"  {update}")


class RichProgressReporter:
    """Progress bars, one per entity kind."""

    def __init__(self, console: Optional[Console] = None) -> None:
        """Initialize rich progress reporter."""
        self.progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
        )
        self._tasks: Dict[EntityKind, TaskID] = {}

    def __enter__(self) -> "RichProgressReporter":
        """Start rendering."""
        self.progress.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        """Stop rendering."""
        self.progress.stop()

    def __call__(self, update: ProgressUpdate) -> None:
        """Handle progress update."""
        if update.kind not in self._tasks:
            self._tasks[update.kind] = self.progress.add_task(
                update.kind.value, total=update.total or None
            )
        task_id = self._tasks[update.kind]
        self.progress.update(
            task_id,
            completed=update.current,
            total=max(update.total, update.current) or None,
        )
