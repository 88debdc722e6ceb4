"""Library synchronization orchestrator.

``LibrarySyncer`` drives every sync against the server:

- the full initial sync, which pages artists and albums in parallel batches;
- the background resync, which walks the phases of a resumable sync wave;
- targeted syncs of single entities, favorites, searches, music folders and
  playlists, each reconciling deletions within the queried scope only.

Neither ``AmpacheSyncError`` nor a storage error escapes a public operation.
Failures are reported to the event logger and the operation returns its
empty result. When the server is unreachable an operation is skipped without
any report, so a falsy result means "possibly skipped", not "confirmed in
sync".
"""

import logging
import math
import threading
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Type

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..api.client import MAX_ITEM_COUNT_TO_POLL_AT_ONCE, AmpacheApi
from ..api.decoder import (
    AlbumBuilder,
    ArtistBuilder,
    CatalogBuilder,
    DecodeResult,
    DirectoryBuilder,
    DirectorySongsBuilder,
    EntityBuilder,
    GenreBuilder,
    PlaylistBuilder,
    PlaylistSongsBuilder,
    PodcastBuilder,
    PodcastEpisodeBuilder,
    SongBuilder,
    StreamDecoder,
    decode_error,
)
from ..api.errors import (
    AmpacheErrorCode,
    AmpacheSyncError,
    AuthenticationError,
    ResponseError,
)
from ..database.models import (
    Album,
    Artist,
    Base,
    Directory,
    Genre,
    MusicFolder,
    Playlist,
    Podcast,
    Song,
    SyncPhase,
    SyncWave,
    WaveKind,
)
from ..database.progress_tracker import EntityKind, ProgressTracker
from ..database.service import LibraryContext, LibraryStorage
from ..database.sync_wave import SyncWaveState, WavePlan, plan_wave
from ..utils.event_log import EventLogger
from .concurrency import BoundedSlotPool

logger = logging.getLogger(__name__)

UNKNOWN_ARTIST_ID = "0"
UNKNOWN_ARTIST_NAME = "Unknown Artist"

# Delta queries ask for content added strictly after the previous wave
DELTA_OFFSET = timedelta(seconds=1)

RATEABLE_MODELS: Dict[str, Type[Base]] = {"artist": Artist, "album": Album, "song": Song}

PageFetcher = Callable[..., bytes]


class CancellationToken:
    """Cooperative cancellation flag, checked between pages."""

    def __init__(self) -> None:
        """Initialize an uncancelled token."""
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        """Whether cancellation was requested."""
        return self._event.is_set()


class LibrarySyncer:
    """Synchronizes the local library with an Ampache server."""

    def __init__(
        self,
        storage: LibraryStorage,
        api: AmpacheApi,
        event_logger: Optional[EventLogger] = None,
        progress: Optional[ProgressTracker] = None,
        concurrency: int = 5,
        poll_count: int = MAX_ITEM_COUNT_TO_POLL_AT_ONCE,
    ) -> None:
        """Initialize syncer.

        Args:
            storage: Local library storage
            api: Ampache API client
            event_logger: Receives every reported failure
            progress: Counts parsed entities
            concurrency: Parallel batch fetches during the full sync
            poll_count: Page size of paginated requests
        """
        self.storage = storage
        self.api = api
        self.event_logger = event_logger or EventLogger()
        self.progress = progress or ProgressTracker()
        self.concurrency = concurrency
        self.poll_count = poll_count

    # =========================================================================
    # Plumbing
    # =========================================================================

    def _run(
        self,
        context: str,
        operation: Callable[..., Any],
        *args: Any,
        default: Any = None,
    ) -> Any:
        """Run a public operation behind the reachability and error guards.

        Remote and storage failures are reported and turn into ``default``.
        """
        if not self.api.is_reachable():
            logger.info("Server not reachable, skipping %s", context)
            return default
        try:
            return operation(*args)
        except (AmpacheSyncError, SQLAlchemyError) as e:
            self.event_logger.report(e, context)
            return default

    def _decode(
        self,
        library: LibraryContext,
        body: bytes,
        builders: Sequence[EntityBuilder],
        sync_wave: Optional[SyncWave],
        context: str,
        report: bool = True,
    ) -> DecodeResult:
        """Decode a response and report its error envelope, if any."""
        decoder = StreamDecoder(library, builders, sync_wave, self.progress.notify_parsed)
        result = decoder.decode(body)
        if result.error is not None and report:
            self.event_logger.report(result.error, context)
        return result

    def _check_write(self, body: bytes, context: str) -> bool:
        """Report the error envelope of a write response; True if none."""
        error = decode_error(body)
        if error is None:
            return True
        self.event_logger.report(error, context)
        return False

    def _require_session(self) -> None:
        if not self.api.session_manager.ensure_authenticated():
            raise AuthenticationError("No valid session")

    @staticmethod
    def _is_missing(
        library: LibraryContext,
        result: DecodeResult,
        model: Type[Base],
        remote_id: str,
        mark_deleted: Callable[[LibraryContext, Any], None],
    ) -> bool:
        """Handle the error of a single-entity response.

        A "not found" error marks the local entity and its dependents deleted.

        Returns:
            True if the response was an error and the sync must stop
        """
        error = result.error
        if error is None:
            return False
        if not error.is_remote_available:
            entity = library.get_entity(model, remote_id)
            if entity is not None:
                logger.info("%s %s no longer on server", model.__name__, remote_id)
                mark_deleted(library, entity)
                library.commit()
        return True

    @staticmethod
    def _mark_album_deleted(library: LibraryContext, album: Album) -> None:
        library.mark_deleted(album)
        for song in album.songs:
            library.mark_deleted(song)

    @classmethod
    def _mark_artist_deleted(cls, library: LibraryContext, artist: Artist) -> None:
        library.mark_deleted(artist)
        for album in artist.albums:
            cls._mark_album_deleted(library, album)
        for song in artist.songs:
            library.mark_deleted(song)

    @staticmethod
    def _mark_podcast_deleted(library: LibraryContext, podcast: Podcast) -> None:
        library.mark_deleted(podcast)
        for episode in podcast.episodes:
            library.mark_deleted(episode)

    @staticmethod
    def _mark_missing_deleted(
        library: LibraryContext, previous: Set[Any], result: DecodeResult
    ) -> None:
        """Mark entities of a pre-fetch snapshot absent from the response."""
        if result.error is not None:
            return
        for entity in previous - result.parsed_set:
            logger.debug("%r no longer on server", entity)
            library.mark_deleted(entity)

    # =========================================================================
    # Full Synchronization
    # =========================================================================

    def sync_initial(self, cancel_token: Optional[CancellationToken] = None) -> bool:
        """Pull the whole library into a new sync wave.

        Genres are synced first, then artist and album pages in parallel
        batches, then playlists, podcasts and music folders.

        Returns:
            True if the wave completed
        """
        return self._run(
            "full sync", self._sync_initial, cancel_token or CancellationToken(), default=False
        )

    def _sync_initial(self, cancel_token: CancellationToken) -> bool:
        self._require_session()
        session = self.api.session_manager
        counts = session.counts

        with self.storage.context() as library:
            wave = library.create_sync_wave()
            session.change_snapshot().apply_to(wave)
            if library.get_entity(Artist, UNKNOWN_ARTIST_ID) is None:
                library.create_entity(Artist, UNKNOWN_ARTIST_ID, wave, name=UNKNOWN_ARTIST_NAME)

            self.progress.notify_sync_started(EntityKind.GENRE, counts.genres)
            self._decode(library, self.api.request_genres(), [GenreBuilder()], wave, "genres")
            library.commit()
            self.progress.notify_sync_finished(EntityKind.GENRE)
            wave_id = wave.id

        batches: Tuple[Tuple[EntityKind, int, PageFetcher, Type[EntityBuilder]], ...] = (
            (EntityKind.ARTIST, counts.artists, self._fetch_artist_batch, ArtistBuilder),
            (EntityKind.ALBUM, counts.albums, self.api.request_albums, AlbumBuilder),
        )
        for kind, total, fetch, builder_type in batches:
            self._sync_batches(kind, total, fetch, builder_type, wave_id, cancel_token)
            if cancel_token.is_cancelled:
                logger.info("Full sync cancelled during %s", kind.value)
                return False

        with self.storage.context() as library:
            wave = library.get_sync_wave(wave_id)
            self._sync_playlist_list(library, wave)
            if session.supports_podcasts():
                self._sync_podcast_list(library, wave)
            self._sync_catalogs(library, wave)
            SyncWaveState(wave).finish()
            library.commit()

        logger.info("Full sync finished with wave %s", wave_id)
        return True

    def _fetch_artist_batch(self, offset: int, limit: int) -> bytes:
        return self.api.request_artists(offset, limit, clamp_to_count=True)

    def _sync_batches(
        self,
        kind: EntityKind,
        total: int,
        fetch: PageFetcher,
        builder_type: Type[EntityBuilder],
        wave_id: int,
        cancel_token: CancellationToken,
    ) -> None:
        """Fetch pages ``0..max(1, ceil(total / poll_count))`` through the slot pool."""
        self.progress.notify_sync_started(kind, total)
        pool = BoundedSlotPool(self.concurrency)
        page_count = max(1, math.ceil(total / self.poll_count))

        for page in range(page_count + 1):
            if cancel_token.is_cancelled:
                break
            pool.submit(
                self._sync_batch, kind, fetch, builder_type, page * self.poll_count, wave_id
            )
        pool.await_all_complete()

        for error in pool.errors:
            self.event_logger.report(error, f"{kind.value} batch")
        self.progress.notify_sync_finished(kind)

    def _sync_batch(
        self,
        kind: EntityKind,
        fetch: PageFetcher,
        builder_type: Type[EntityBuilder],
        offset: int,
        wave_id: int,
    ) -> int:
        """Fetch, decode and commit one page in its own storage session.

        A page racing another batch on a shared reference (for example the
        same genre) may hit a unique constraint; it is decoded once more
        against the committed state.
        """
        body = fetch(offset, self.poll_count)
        context = f"{kind.value} batch at {offset}"
        for attempt in range(2):
            with self.storage.context() as library:
                wave = library.get_sync_wave(wave_id)
                try:
                    result = self._decode(library, body, [builder_type()], wave, context)
                    library.commit()
                    return result.parsed_count
                except IntegrityError:
                    library.rollback()
                    if attempt > 0:
                        raise
                    logger.warning("Concurrent insert in %s, decoding again", context)
        return 0

    def _sync_playlist_list(self, library: LibraryContext, wave: Optional[SyncWave]) -> None:
        self.progress.notify_sync_started(
            EntityKind.PLAYLIST, self.api.session_manager.counts.playlists
        )
        self._decode(library, self.api.request_playlists(), [PlaylistBuilder()], wave, "playlists")
        self.progress.notify_sync_finished(EntityKind.PLAYLIST)

    def _sync_podcast_list(self, library: LibraryContext, wave: Optional[SyncWave]) -> None:
        self.progress.notify_sync_started(
            EntityKind.PODCAST, self.api.session_manager.counts.podcasts
        )
        previous = set(library.get_all(Podcast))
        result = self._decode(
            library, self.api.request_podcasts(), [PodcastBuilder()], wave, "podcasts"
        )
        if result.error is None:
            for podcast in previous - result.parsed_set:
                self._mark_podcast_deleted(library, podcast)
        self.progress.notify_sync_finished(EntityKind.PODCAST)

    def _sync_catalogs(self, library: LibraryContext, wave: Optional[SyncWave]) -> None:
        self._decode(library, self.api.request_catalogs(), [CatalogBuilder()], wave, "catalogs")

    # =========================================================================
    # Background Synchronization
    # =========================================================================

    def resync_in_background(self, cancel_token: Optional[CancellationToken] = None) -> bool:
        """Resume the unfinished wave, or pull what was added since the last one.

        Returns:
            True if the library is in sync with the server's add date
        """
        return self._run(
            "background sync",
            self._resync,
            cancel_token or CancellationToken(),
            None,
            default=False,
        )

    def resync_version_migration(
        self, schema_version: int, cancel_token: Optional[CancellationToken] = None
    ) -> bool:
        """Re-pull the whole library after a local schema change.

        An unfinished wave of another kind is completed first.

        Args:
            schema_version: Schema version the library migrates from
            cancel_token: Checked between pages

        Returns:
            True if the migration wave completed
        """
        return self._run(
            "version migration",
            self._resync,
            cancel_token or CancellationToken(),
            schema_version,
            default=False,
        )

    def _resync(self, cancel_token: CancellationToken, version_migration: Optional[int]) -> bool:
        self._require_session()
        snapshot = self.api.session_manager.change_snapshot()

        while True:
            with self.storage.context() as library:
                plan = plan_wave(library, snapshot, version_migration)
                if plan is None:
                    return True
                library.commit()
                if not self._drive_wave(library, plan, cancel_token):
                    return False

            if version_migration is None or not plan.resumed:
                return True
            wave = plan.wave
            if (
                wave.wave_kind == WaveKind.VERSION_MIGRATION.value
                and wave.schema_version == version_migration
            ):
                return True
            # The resumed wave was not the requested migration; plan it next

    def _drive_wave(
        self, library: LibraryContext, plan: WavePlan, cancel_token: CancellationToken
    ) -> bool:
        """Page through the remaining phases of a wave.

        The cursor advances only after a page is decoded and committed, so a
        page interrupted by an error or cancellation is fetched again on the
        next resume.

        Returns:
            False if cancelled before the wave completed
        """
        state = plan.state
        add_date = (
            plan.previous_add_date + DELTA_OFFSET
            if plan.previous_add_date is not None
            else None
        )
        # Normal waves leave songs to the album syncs: albums -> done
        skip_songs = state.kind == WaveKind.NORMAL
        counts = self.api.session_manager.counts
        phases: Dict[SyncPhase, Tuple[EntityKind, int, PageFetcher, Type[EntityBuilder]]] = {
            SyncPhase.ARTISTS: (
                EntityKind.ARTIST,
                counts.artists,
                self.api.request_artists,
                ArtistBuilder,
            ),
            SyncPhase.ALBUMS: (
                EntityKind.ALBUM,
                counts.albums,
                self.api.request_albums,
                AlbumBuilder,
            ),
            SyncPhase.SONGS: (
                EntityKind.SONG,
                counts.songs,
                self.api.request_songs,
                SongBuilder,
            ),
        }

        started: Optional[SyncPhase] = None
        while not state.is_done:
            if cancel_token.is_cancelled:
                logger.info(
                    "Sync wave %s cancelled at %s/%s",
                    plan.wave.id,
                    state.phase.value,
                    state.cursor,
                )
                return False

            phase = state.phase
            kind, total, fetch, builder_type = phases[phase]
            if started != phase:
                self.progress.notify_sync_started(kind, total)
                started = phase

            offset = state.cursor
            body = fetch(offset, self.poll_count, add_date)
            result = self._decode(
                library, body, [builder_type()], plan.wave, f"{kind.value} page at {offset}"
            )
            library.commit()

            if state.record_page(result.parsed_count, skip_songs=skip_songs):
                self.progress.notify_sync_finished(kind)
            library.commit()

        logger.info("Sync wave %s done", plan.wave.id)
        return True

    # =========================================================================
    # Targeted Synchronization
    # =========================================================================

    def sync_artist(self, artist_id: str) -> bool:
        """Refresh one artist with its albums and songs."""
        return self._run(f"artist {artist_id}", self._sync_artist, artist_id, default=False)

    def _sync_artist(self, artist_id: str) -> bool:
        with self.storage.context() as library:
            wave = library.latest_sync_wave()
            context = f"artist {artist_id}"
            result = self._decode(
                library, self.api.request_artist(artist_id), [ArtistBuilder()], wave, context
            )
            if self._is_missing(library, result, Artist, artist_id, self._mark_artist_deleted):
                return False
            artist = library.get_entity(Artist, artist_id)
            if artist is None:
                return False

            previous_albums = set(artist.albums)
            result = self._decode(
                library, self.api.request_artist_albums(artist_id), [AlbumBuilder()], wave, context
            )
            if result.error is None:
                for album in previous_albums - result.parsed_set:
                    self._mark_album_deleted(library, album)

            previous_songs = set(artist.songs)
            result = self._decode(
                library, self.api.request_artist_songs(artist_id), [SongBuilder()], wave, context
            )
            self._mark_missing_deleted(library, previous_songs, result)
            library.commit()
            return True

    def sync_album(self, album_id: str) -> bool:
        """Refresh one album with its songs."""
        return self._run(f"album {album_id}", self._sync_album, album_id, default=False)

    def _sync_album(self, album_id: str) -> bool:
        with self.storage.context() as library:
            wave = library.latest_sync_wave()
            context = f"album {album_id}"
            result = self._decode(
                library, self.api.request_album(album_id), [AlbumBuilder()], wave, context
            )
            if self._is_missing(library, result, Album, album_id, self._mark_album_deleted):
                return False
            album = library.get_entity(Album, album_id)
            if album is None:
                return False

            previous_songs = set(album.songs)
            result = self._decode(
                library, self.api.request_album_songs(album_id), [SongBuilder()], wave, context
            )
            self._mark_missing_deleted(library, previous_songs, result)
            library.commit()
            return True

    def sync_song(self, song_id: str) -> bool:
        """Refresh one song."""
        return self._run(f"song {song_id}", self._sync_song, song_id, default=False)

    def _sync_song(self, song_id: str) -> bool:
        with self.storage.context() as library:
            wave = library.latest_sync_wave()
            result = self._decode(
                library, self.api.request_song(song_id), [SongBuilder()], wave, f"song {song_id}"
            )
            if self._is_missing(
                library, result, Song, song_id, lambda lib, song: lib.mark_deleted(song)
            ):
                return False
            library.commit()
            return result.parsed_count > 0

    def sync_genre(self, genre_id: str) -> bool:
        """Refresh one genre and the songs filed under it."""
        return self._run(f"genre {genre_id}", self._sync_genre, genre_id, default=False)

    def _sync_genre(self, genre_id: str) -> bool:
        with self.storage.context() as library:
            wave = library.latest_sync_wave()
            context = f"genre {genre_id}"
            result = self._decode(
                library, self.api.request_genre(genre_id), [GenreBuilder()], wave, context
            )
            if self._is_missing(
                library, result, Genre, genre_id, lambda lib, genre: lib.mark_deleted(genre)
            ):
                return False
            genre = library.get_entity(Genre, genre_id)
            if genre is None:
                return False

            previous_songs: Set[Song] = set()
            if genre.id is not None:
                previous_songs = set(library.filter_by(Song, genre_id=genre.id))
            result = self._decode(
                library, self.api.request_genre_songs(genre_id), [SongBuilder()], wave, context
            )
            self._mark_missing_deleted(library, previous_songs, result)
            library.commit()
            return True

    def sync_podcast(self, podcast_id: str) -> bool:
        """Refresh the episodes of one podcast."""
        return self._run(f"podcast {podcast_id}", self._sync_podcast, podcast_id, default=False)

    def _sync_podcast(self, podcast_id: str) -> bool:
        with self.storage.context() as library:
            wave = library.latest_sync_wave()
            podcast = library.get_or_create_entity(Podcast, podcast_id, wave)
            previous_episodes = set(podcast.episodes)
            result = self._decode(
                library,
                self.api.request_podcast_episodes(podcast_id),
                [PodcastEpisodeBuilder(podcast)],
                wave,
                f"podcast {podcast_id}",
            )
            if self._is_missing(library, result, Podcast, podcast_id, self._mark_podcast_deleted):
                return False
            self._mark_missing_deleted(library, previous_episodes, result)
            library.commit()
            return True

    def sync_favorites(self) -> bool:
        """Refresh the favorite flag of artists, albums and songs.

        Entities no longer listed as favorites keep existing; only their flag
        is cleared.
        """
        return self._run("favorites", self._sync_favorites, default=False)

    def _sync_favorites(self) -> bool:
        favorites: Tuple[Tuple[str, Type[Base], Type[EntityBuilder]], ...] = (
            ("artist", Artist, ArtistBuilder),
            ("album", Album, AlbumBuilder),
            ("song", Song, SongBuilder),
        )
        with self.storage.context() as library:
            wave = library.latest_sync_wave()
            for object_type, model, builder_type in favorites:
                previous = set(library.get_favorites(model))
                result = self._decode(
                    library,
                    self.api.request_favorites(object_type),
                    [builder_type()],
                    wave,
                    f"{object_type} favorites",
                )
                if result.error is not None:
                    continue
                for entity in result.parsed:
                    entity.is_favorite = True
                for entity in previous - result.parsed_set:
                    entity.is_favorite = False
            library.commit()
        return True

    def _sync_listing(
        self, fetch: Callable[[], bytes], builder: EntityBuilder, context: str
    ) -> List[Any]:
        """Decode a one-shot listing into the library and return its entities."""
        with self.storage.context() as library:
            wave = library.latest_sync_wave()
            result = self._decode(library, fetch(), [builder], wave, context)
            library.commit()
            return result.parsed

    def sync_newest_albums(self, offset: int = 0, count: int = 20) -> List[Album]:
        """Fetch the most recently added albums."""
        return self._run(
            "newest albums",
            self._sync_listing,
            lambda: self.api.request_newest_albums(offset, count),
            AlbumBuilder(),
            "newest albums",
            default=[],
        )

    def sync_recent_albums(self, offset: int = 0, count: int = 20) -> List[Album]:
        """Fetch the most recently played albums."""
        return self._run(
            "recent albums",
            self._sync_listing,
            lambda: self.api.request_recent_albums(offset, count),
            AlbumBuilder(),
            "recent albums",
            default=[],
        )

    def search_artists(self, text: str) -> List[Artist]:
        """Artists matching a search text."""
        return self._run(
            "artist search",
            self._sync_listing,
            lambda: self.api.search_artists(text),
            ArtistBuilder(),
            f"artist search <{text}>",
            default=[],
        )

    def search_albums(self, text: str) -> List[Album]:
        """Albums matching a search text."""
        return self._run(
            "album search",
            self._sync_listing,
            lambda: self.api.search_albums(text),
            AlbumBuilder(),
            f"album search <{text}>",
            default=[],
        )

    def search_songs(self, text: str) -> List[Song]:
        """Songs matching a search text."""
        return self._run(
            "song search",
            self._sync_listing,
            lambda: self.api.search_songs(text),
            SongBuilder(),
            f"song search <{text}>",
            default=[],
        )

    # =========================================================================
    # Music Folders
    # =========================================================================

    def sync_music_folders(self) -> bool:
        """Refresh the catalog list."""
        return self._run("music folders", self._sync_music_folders, default=False)

    def _sync_music_folders(self) -> bool:
        with self.storage.context() as library:
            self._sync_catalogs(library, library.latest_sync_wave())
            library.commit()
        return True

    def sync_indexes(self, folder_id: str) -> bool:
        """Refresh the top-level artist directories of a music folder."""
        return self._run(f"indexes {folder_id}", self._sync_indexes, folder_id, default=False)

    def _sync_indexes(self, folder_id: str) -> bool:
        with self.storage.context() as library:
            folder = library.get_entity(MusicFolder, folder_id)
            if folder is None:
                logger.warning("Unknown music folder %s, sync music folders first", folder_id)
                return False
            self._decode(
                library,
                self.api.request_artists_in_catalog(folder_id),
                [DirectoryBuilder("artist", music_folder=folder)],
                library.latest_sync_wave(),
                f"indexes {folder_id}",
            )
            library.commit()
        return True

    def sync_directory(self, directory_id: str) -> bool:
        """Refresh the content of an ``artist-<id>`` or ``album-<id>`` directory."""
        return self._run(
            f"directory {directory_id}", self._sync_directory, directory_id, default=False
        )

    def _sync_directory(self, directory_id: str) -> bool:
        kind, _, remote_id = directory_id.partition("-")
        with self.storage.context() as library:
            directory = library.get_entity(Directory, directory_id)
            if directory is None:
                logger.warning("Unknown directory %s, sync its parent first", directory_id)
                return False
            wave = library.latest_sync_wave()
            context = f"directory {directory_id}"

            if kind == "artist":
                self._decode(
                    library,
                    self.api.request_artist_albums(remote_id),
                    [
                        DirectoryBuilder(
                            "album",
                            music_folder=directory.music_folder,
                            parent=directory,
                        )
                    ],
                    wave,
                    context,
                )
            elif kind == "album":
                previous_songs = set(directory.songs)
                result = self._decode(
                    library,
                    self.api.request_album_songs(remote_id),
                    [DirectorySongsBuilder(directory)],
                    wave,
                    context,
                )
                if result.error is None:
                    for song in previous_songs - result.parsed_set:
                        song.directory = None
            else:
                logger.error("Directory id <%s> has no known kind", directory_id)
                return False

            library.commit()
        return True

    # =========================================================================
    # Playlists
    # =========================================================================

    def sync_down_playlists(self) -> bool:
        """Refresh the playlist list; playlists gone from the server are deleted."""
        return self._run("playlists", self._sync_down_playlists, default=False)

    def _sync_down_playlists(self) -> bool:
        with self.storage.context() as library:
            self._sync_playlist_list(library, library.latest_sync_wave())
            library.commit()
        return True

    def sync_down_playlist(self, remote_id: str) -> bool:
        """Download the songs of one playlist into its local item order."""
        return self._run(
            f"playlist {remote_id}", self._sync_down_playlist, remote_id, default=False
        )

    def _sync_down_playlist(self, remote_id: str) -> bool:
        with self.storage.context() as library:
            wave = library.latest_sync_wave()
            playlist = library.get_entity(Playlist, remote_id)
            known = playlist is not None
            if playlist is None:
                playlist = library.create_entity(Playlist, remote_id, wave)
            if self._validate_playlist_id(library, playlist, create_missing=known):
                # Freshly created remotely: the server has no songs to download
                library.commit()
                return True
            self._decode(
                library,
                self.api.request_playlist_songs(playlist.remote_id),
                [PlaylistSongsBuilder(playlist)],
                wave,
                f"playlist {playlist.remote_id}",
            )
            library.commit()
        return True

    def _validate_playlist_id(
        self, library: LibraryContext, playlist: Playlist, create_missing: bool = True
    ) -> bool:
        """Make sure the playlist exists remotely, creating it when needed.

        Only a not-found answer clears the remote id. Any other error
        envelope aborts the operation before anything is created.

        Args:
            library: Library context owning the playlist
            playlist: Local playlist to validate
            create_missing: Create the playlist remotely when the server does
                not know it; otherwise not-found is raised

        Returns:
            True if the playlist had to be created

        Raises:
            ResponseError: If validation fails, or the playlist is missing and
                must not be created
            AmpacheSyncError: If the playlist could not be created
        """
        wave = library.latest_sync_wave()
        requested_id = playlist.remote_id
        if requested_id:
            result = self._decode(
                library,
                self.api.request_playlist(requested_id),
                [PlaylistBuilder(playlist_to_validate=playlist)],
                wave,
                f"playlist {requested_id}",
                report=False,
            )
            if result.error is not None and result.error.is_remote_available:
                raise result.error
        if playlist.remote_id:
            return False

        if not create_missing:
            raise ResponseError(
                AmpacheErrorCode.NOT_FOUND.value,
                f"Playlist {requested_id} not found on server",
            )
        logger.info("Creating playlist <%s> on server", playlist.name)
        self._decode(
            library,
            self.api.request_playlist_create(playlist.name),
            [PlaylistBuilder(playlist_to_validate=playlist)],
            wave,
            f"create playlist <{playlist.name}>",
        )
        if not playlist.remote_id:
            raise AmpacheSyncError(f"Playlist <{playlist.name}> could not be created on server")
        return True

    def _upload(
        self,
        playlist_id: int,
        context: str,
        change: Callable[[LibraryContext, Playlist], List[bytes]],
    ) -> bool:
        """Apply a local playlist change, then push it with one call per change."""
        with self.storage.context() as library:
            playlist = library.get_playlist(playlist_id)
            if playlist is None:
                logger.warning("Unknown local playlist %s", playlist_id)
                return False
            self._validate_playlist_id(library, playlist)
            bodies = change(library, playlist)
            library.commit()
        return all([self._check_write(body, context) for body in bodies])

    def upload_playlist_add_songs(self, playlist_id: int, song_ids: Sequence[str]) -> bool:
        """Append songs locally and add them remotely, one call per song."""

        def change(library: LibraryContext, playlist: Playlist) -> List[bytes]:
            songs = [library.get_entity(Song, song_id) for song_id in song_ids]
            known = [song for song in songs if song is not None]
            if len(known) != len(songs):
                logger.warning("Skipping %s unknown songs", len(songs) - len(known))
            library.append_playlist_songs(playlist, known)
            return [
                self.api.request_playlist_add_song(playlist.remote_id, song.remote_id)
                for song in known
            ]

        return self._run(
            f"playlist {playlist_id} add",
            self._upload,
            playlist_id,
            f"playlist {playlist_id} add",
            change,
            default=False,
        )

    def upload_playlist_remove_item(self, playlist_id: int, index: int) -> bool:
        """Remove the item at a 0-based index locally and remotely."""

        def change(library: LibraryContext, playlist: Playlist) -> List[bytes]:
            library.remove_playlist_item(playlist, index)
            return [self.api.request_playlist_remove_item(playlist.remote_id, index)]

        return self._run(
            f"playlist {playlist_id} remove",
            self._upload,
            playlist_id,
            f"playlist {playlist_id} remove",
            change,
            default=False,
        )

    def upload_playlist_rename(self, playlist_id: int, name: str) -> bool:
        """Rename a playlist locally and remotely."""

        def change(library: LibraryContext, playlist: Playlist) -> List[bytes]:
            playlist.name = name
            return [self.api.request_playlist_rename(playlist.remote_id, name)]

        return self._run(
            f"playlist {playlist_id} rename",
            self._upload,
            playlist_id,
            f"playlist {playlist_id} rename",
            change,
            default=False,
        )

    def upload_playlist_move_item(self, playlist_id: int, from_index: int, to_index: int) -> bool:
        """Move an item locally and send the full new song order."""

        def change(library: LibraryContext, playlist: Playlist) -> List[bytes]:
            library.move_playlist_item(playlist, from_index, to_index)
            song_ids = [song.remote_id for song in playlist.songs]
            return [self.api.request_playlist_edit_items(playlist.remote_id, song_ids)]

        return self._run(
            f"playlist {playlist_id} reorder",
            self._upload,
            playlist_id,
            f"playlist {playlist_id} reorder",
            change,
            default=False,
        )

    def upload_playlist_delete(self, playlist_id: int) -> bool:
        """Delete a playlist remotely and locally."""
        return self._run(
            f"playlist {playlist_id} delete",
            self._upload_playlist_delete,
            playlist_id,
            default=False,
        )

    def _upload_playlist_delete(self, playlist_id: int) -> bool:
        with self.storage.context() as library:
            playlist = library.get_playlist(playlist_id)
            if playlist is None:
                logger.warning("Unknown local playlist %s", playlist_id)
                return False
            ok = True
            if playlist.remote_id:
                ok = self._check_write(
                    self.api.request_playlist_delete(playlist.remote_id),
                    f"playlist {playlist_id} delete",
                )
            library.delete_entity(playlist)
            library.commit()
        return ok

    # =========================================================================
    # Ratings and Favorites
    # =========================================================================

    def set_rating(self, object_type: str, remote_id: str, rating: int) -> bool:
        """Rate an artist, album or song from 0 to 5.

        Raises:
            ValueError: If the object type or rating is invalid
        """
        if object_type not in RATEABLE_MODELS:
            raise ValueError(f"Cannot rate {object_type}")
        if not 0 <= rating <= 5:
            raise ValueError(f"Rating must be between 0 and 5, got {rating}")
        return self._run(
            f"rate {object_type} {remote_id}",
            self._write_attribute,
            object_type,
            remote_id,
            "rating",
            rating,
            lambda: self.api.request_rate(object_type, remote_id, rating),
            default=False,
        )

    def set_favorite(self, object_type: str, remote_id: str, is_favorite: bool) -> bool:
        """Flag or unflag an artist, album or song.

        Raises:
            ValueError: If the object type is invalid
        """
        if object_type not in RATEABLE_MODELS:
            raise ValueError(f"Cannot flag {object_type}")
        return self._run(
            f"flag {object_type} {remote_id}",
            self._write_attribute,
            object_type,
            remote_id,
            "is_favorite",
            is_favorite,
            lambda: self.api.request_flag(object_type, remote_id, is_favorite),
            default=False,
        )

    def _write_attribute(
        self,
        object_type: str,
        remote_id: str,
        attribute: str,
        value: Any,
        send: Callable[[], bytes],
    ) -> bool:
        if not self._check_write(send(), f"{attribute} of {object_type} {remote_id}"):
            return False
        with self.storage.context() as library:
            entity = library.get_entity(RATEABLE_MODELS[object_type], remote_id)
            if entity is not None:
                setattr(entity, attribute, value)
                library.commit()
        return True
