"""Database package for the synchronized library.

Contains the pure storage layer: models, the storage service, the sync wave
state machine and progress tracking.
"""

from .models import (
    Album,
    Artist,
    Directory,
    Genre,
    MusicFolder,
    Playlist,
    PlaylistItem,
    Podcast,
    PodcastEpisode,
    RemoteStatus,
    Song,
    SyncPhase,
    SyncWave,
    WaveKind,
)
from .progress_tracker import (
    ConsoleProgressReporter,
    EntityKind,
    ProgressCallback,
    ProgressTracker,
    ProgressUpdate,
    RichProgressReporter,
)
from .service import LibraryContext, LibraryStorage
from .sync_wave import ChangeSnapshot, SyncWaveState, WavePlan, plan_wave

__all__ = [
    # Models
    "Genre",
    "Artist",
    "Album",
    "Song",
    "Playlist",
    "PlaylistItem",
    "Podcast",
    "PodcastEpisode",
    "MusicFolder",
    "Directory",
    "SyncWave",
    # Storage
    "LibraryStorage",
    "LibraryContext",
    # Sync waves
    "ChangeSnapshot",
    "SyncWaveState",
    "WavePlan",
    "plan_wave",
    # Progress tracking
    "EntityKind",
    "ProgressTracker",
    "ProgressUpdate",
    "ProgressCallback",
    "ConsoleProgressReporter",
    "RichProgressReporter",
    # Status enums
    "RemoteStatus",
    "SyncPhase",
    "WaveKind",
]
