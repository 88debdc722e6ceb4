"""SQLAlchemy database models for the synchronized Ampache library."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the way SQLite stores it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncPhase(str, Enum):
    """Phases of a sync wave, in transition order."""

    ARTISTS = "artists"
    ALBUMS = "albums"
    SONGS = "songs"
    DONE = "done"


class WaveKind(str, Enum):
    """Why a sync wave was started."""

    NORMAL = "normal"
    VERSION_MIGRATION = "version_migration"


class RemoteStatus(str, Enum):
    """Whether an entity still exists on the server."""

    AVAILABLE = "available"
    DELETED = "deleted"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class SyncWave(Base):
    """One end-to-end synchronization attempt with resumable progress."""

    __tablename__ = "sync_waves"

    # Assigned by the storage layer: the first wave gets 0
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)

    phase: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SyncPhase.ARTISTS.value
    )
    resume_cursor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Remote change snapshot captured when the wave was created
    date_of_last_update: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    date_of_last_add: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    date_of_last_clean: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    wave_kind: Mapped[str] = mapped_column(
        String(30), nullable=False, default=WaveKind.NORMAL.value
    )
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        """String representation of sync wave."""
        return (
            f"<SyncWave(id={self.id}, phase='{self.phase}', "
            f"cursor={self.resume_cursor}, kind='{self.wave_kind}')>"
        )


class LibraryEntityMixin:
    """Columns shared by every entity mirrored from the server."""

    remote_id: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, index=True
    )
    remote_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RemoteStatus.AVAILABLE.value, index=True
    )
    sync_wave_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sync_waves.id"), nullable=True
    )


class Genre(LibraryEntityMixin, Base):
    """A genre as reported by the server."""

    __tablename__ = "genres"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    def __repr__(self) -> str:
        """String representation of genre."""
        return f"<Genre(remote_id='{self.remote_id}', name='{self.name}')>"


class Artist(LibraryEntityMixin, Base):
    """An artist of the remote library."""

    __tablename__ = "artists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    rating: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_favorite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    album_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    artwork_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    genre_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("genres.id"), nullable=True
    )
    genre: Mapped[Optional[Genre]] = relationship()

    albums: Mapped[List["Album"]] = relationship(back_populates="artist")
    songs: Mapped[List["Song"]] = relationship(back_populates="artist")

    def __repr__(self) -> str:
        """String representation of artist."""
        return f"<Artist(remote_id='{self.remote_id}', name='{self.name}')>"


class Album(LibraryEntityMixin, Base):
    """An album of the remote library."""

    __tablename__ = "albums"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    rating: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    year: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    song_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_favorite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    artwork_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    artist_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("artists.id"), nullable=True
    )
    artist: Mapped[Optional[Artist]] = relationship(back_populates="albums")
    genre_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("genres.id"), nullable=True
    )
    genre: Mapped[Optional[Genre]] = relationship()

    songs: Mapped[List["Song"]] = relationship(back_populates="album")

    def __repr__(self) -> str:
        """String representation of album."""
        return f"<Album(remote_id='{self.remote_id}', name='{self.name}')>"


class Song(LibraryEntityMixin, Base):
    """A song of the remote library."""

    __tablename__ = "songs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    track: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    disk: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # seconds
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # bytes
    bitrate: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rating: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_favorite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    artwork_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    artist_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("artists.id"), nullable=True
    )
    artist: Mapped[Optional[Artist]] = relationship(back_populates="songs")
    album_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("albums.id"), nullable=True
    )
    album: Mapped[Optional[Album]] = relationship(back_populates="songs")
    genre_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("genres.id"), nullable=True
    )
    genre: Mapped[Optional[Genre]] = relationship()
    directory_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("directories.id"), nullable=True
    )
    directory: Mapped[Optional["Directory"]] = relationship(back_populates="songs")

    def __repr__(self) -> str:
        """String representation of song."""
        return f"<Song(remote_id='{self.remote_id}', title='{self.title}')>"


class Playlist(LibraryEntityMixin, Base):
    """A server playlist; ``remote_id`` is empty until it exists remotely."""

    __tablename__ = "playlists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    remote_id: Mapped[str] = mapped_column(
        String(255), nullable=False, default="", index=True
    )
    name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    remote_song_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    items: Mapped[List["PlaylistItem"]] = relationship(
        back_populates="playlist",
        cascade="all, delete-orphan",
        order_by="PlaylistItem.order",
    )

    @property
    def songs(self) -> List[Song]:
        """Songs in playlist order."""
        items = sorted(self.items, key=lambda item: item.order)
        return [item.song for item in items if item.song is not None]

    def __repr__(self) -> str:
        """String representation of playlist."""
        return f"<Playlist(remote_id='{self.remote_id}', name='{self.name}')>"


class PlaylistItem(Base):
    """Position of a song inside a playlist (0-based, dense)."""

    __tablename__ = "playlist_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    playlist_id: Mapped[int] = mapped_column(
        ForeignKey("playlists.id", ondelete="CASCADE"), nullable=False
    )
    song_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("songs.id"), nullable=True
    )
    order: Mapped[int] = mapped_column("item_order", Integer, nullable=False)

    playlist: Mapped[Playlist] = relationship(back_populates="items")
    song: Mapped[Optional[Song]] = relationship()

    __table_args__ = (Index("idx_playlist_item_order", "playlist_id", "item_order"),)

    def __repr__(self) -> str:
        """String representation of playlist item."""
        return (
            f"<PlaylistItem(playlist_id={self.playlist_id}, "
            f"song_id={self.song_id}, order={self.order})>"
        )


class Podcast(LibraryEntityMixin, Base):
    """A podcast channel."""

    __tablename__ = "podcasts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    artwork_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    episodes: Mapped[List["PodcastEpisode"]] = relationship(
        back_populates="podcast", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        """String representation of podcast."""
        return f"<Podcast(remote_id='{self.remote_id}', title='{self.title}')>"


class PodcastEpisode(LibraryEntityMixin, Base):
    """A single episode of a podcast."""

    __tablename__ = "podcast_episodes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    podcast_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("podcasts.id"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    publish_date: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    # Server-side state such as "completed" or "pending"
    episode_state: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    artwork_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    podcast: Mapped[Optional[Podcast]] = relationship(back_populates="episodes")

    def __repr__(self) -> str:
        """String representation of podcast episode."""
        return f"<PodcastEpisode(remote_id='{self.remote_id}', title='{self.title}')>"


class MusicFolder(LibraryEntityMixin, Base):
    """A server catalog."""

    __tablename__ = "music_folders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    directories: Mapped[List["Directory"]] = relationship(
        back_populates="music_folder"
    )

    def __repr__(self) -> str:
        """String representation of music folder."""
        return f"<MusicFolder(remote_id='{self.remote_id}', name='{self.name}')>"


class Directory(LibraryEntityMixin, Base):
    """Browsable directory: ``artist-<id>`` or ``album-<id>``."""

    __tablename__ = "directories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    artwork_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    music_folder_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("music_folders.id"), nullable=True
    )
    music_folder: Mapped[Optional[MusicFolder]] = relationship(
        back_populates="directories"
    )
    parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("directories.id"), nullable=True
    )
    parent: Mapped[Optional["Directory"]] = relationship(
        back_populates="subdirectories", remote_side="Directory.id"
    )
    subdirectories: Mapped[List["Directory"]] = relationship(back_populates="parent")
    songs: Mapped[List[Song]] = relationship(back_populates="directory")

    def __repr__(self) -> str:
        """String representation of directory."""
        return f"<Directory(remote_id='{self.remote_id}', name='{self.name}')>"
