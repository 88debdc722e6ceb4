"""CLI command modules."""

from .init import InitializationError, init_session, init_storage, init_syncer
from .library import favorites, playlist_download, search
from .status import status
from .sync import resync_command, sync_command

__all__ = [
    "InitializationError",
    "init_session",
    "init_storage",
    "init_syncer",
    "favorites",
    "playlist_download",
    "search",
    "status",
    "resync_command",
    "sync_command",
]
