"""Tests for the library syncer against a scripted server."""

from datetime import datetime
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from ampache_sync.api.errors import TransportError
from ampache_sync.core.syncer import (
    UNKNOWN_ARTIST_ID,
    CancellationToken,
    LibrarySyncer,
)
from ampache_sync.database.models import (
    Album,
    Artist,
    Directory,
    Genre,
    MusicFolder,
    Playlist,
    Podcast,
    PodcastEpisode,
    RemoteStatus,
    Song,
    SyncPhase,
    WaveKind,
)
from ampache_sync.database.service import LibraryContext
from ampache_sync.database.sync_wave import ChangeSnapshot
from ampache_sync.models import LibraryCounts
from ampache_sync.utils.event_log import EventLogger
from conftest import (
    EMPTY,
    FakeAmpacheApi,
    FakeSession,
    album_xml,
    artist_xml,
    document,
    error_document,
    genre_xml,
    make_elements,
    song_xml,
)

DELETED = RemoteStatus.DELETED.value
AVAILABLE = RemoteStatus.AVAILABLE.value


def playlist_xml(playlist_id: str, name: str) -> str:
    return f'<playlist id="{playlist_id}"><name>{name}</name><items>0</items></playlist>'


@pytest.fixture
def event_logger():
    """Event logger collecting reported failures."""
    return EventLogger()


@pytest.fixture
def syncer(storage, fake_api, event_logger):
    """Syncer with small pages so pagination is exercised."""
    return LibrarySyncer(storage, fake_api, event_logger, concurrency=2, poll_count=2)


def latest_wave(storage):
    with storage.context() as library:
        return library.latest_sync_wave()


def status_of(storage, model, remote_id):
    with storage.context() as library:
        entity = library.get_entity(model, remote_id)
        return entity.remote_status if entity is not None else None


class TestGuards:
    """Test reachability and authentication guards."""

    def test_unreachable_server_is_a_silent_noop(self, storage, event_logger):
        """Test nothing is requested or reported when offline."""
        api = FakeAmpacheApi(reachable=False)
        syncer = LibrarySyncer(storage, api, event_logger)

        assert syncer.resync_in_background() is False
        assert syncer.sync_artist("1") is False
        assert syncer.search_songs("one") == []
        assert api.calls == []
        assert event_logger.entries == []

    def test_failed_authentication_is_reported(self, storage, event_logger):
        """Test a missing session is reported and no wave is created."""
        api = FakeAmpacheApi(FakeSession(authenticated=False))
        syncer = LibrarySyncer(storage, api, event_logger)

        assert syncer.sync_initial() is False
        assert [entry.kind for entry in event_logger.entries] == ["auth"]
        assert latest_wave(storage) is None

    def test_invalid_rating_raises(self, syncer):
        """Test argument errors are raised, not reported."""
        with pytest.raises(ValueError):
            syncer.set_rating("song", "1", 6)
        with pytest.raises(ValueError):
            syncer.set_rating("playlist", "1", 3)
        with pytest.raises(ValueError):
            syncer.set_favorite("genre", "1", True)

    @pytest.mark.parametrize(
        "error",
        [
            OperationalError("COMMIT", {}, Exception("database is locked")),
            IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")),
        ],
    )
    def test_storage_failure_is_reported(self, syncer, fake_api, storage, event_logger, error):
        """Test a failing commit is reported instead of raised."""
        fake_api.responses[("request_playlists", None)] = document(playlist_xml("5", "Mix"))

        with patch.object(LibraryContext, "commit", side_effect=error):
            assert syncer.sync_down_playlists() is False

        assert [entry.kind for entry in event_logger.entries] == ["internal"]
        with storage.context() as library:
            assert library.get_all(Playlist) == []


class TestFullSync:
    """Test the parallel initial sync."""

    def test_full_sync(self, storage, event_logger):
        """Test every page is fetched and the wave completes."""
        session = FakeSession(counts=LibraryCounts(artists=3, albums=2, genres=1))
        api = FakeAmpacheApi(session)
        api.pages["artists"] = make_elements(artist_xml, [1, 2, 3])
        api.pages["albums"] = [album_xml("10", "First"), album_xml("11", "Second")]
        api.responses[("request_genres", None)] = document(genre_xml("1", "Rock"))
        api.responses[("request_playlists", None)] = document(playlist_xml("5", "Mix"))
        api.responses[("request_catalogs", None)] = document(
            '<catalog id="1"><name>Music</name></catalog>'
        )
        syncer = LibrarySyncer(storage, api, event_logger, concurrency=2, poll_count=2)

        assert syncer.sync_initial() is True

        assert sorted(args[0] for args in api.calls_to("artists")) == [0, 2, 4]
        assert sorted(args[0] for args in api.calls_to("albums")) == [0, 2]
        assert api.calls_to("songs") == []
        assert api.calls_to("request_podcasts") == []
        assert event_logger.entries == []

        with storage.context() as library:
            assert len(library.get_all(Artist)) == 4
            assert library.get_entity(Artist, UNKNOWN_ARTIST_ID).name == "Unknown Artist"
            assert len(library.get_all(Album)) == 2
            assert len(library.get_all(Genre)) == 1
            assert [p.name for p in library.get_all(Playlist)] == ["Mix"]
            assert len(library.get_all(MusicFolder)) == 1
            wave = library.latest_sync_wave()
            assert wave.phase == SyncPhase.DONE.value
            assert wave.date_of_last_add == datetime(2024, 1, 1)

    def test_zero_count_still_fetches_pages(self, storage):
        """Test a library reporting no entities is still paged twice."""
        api = FakeAmpacheApi(FakeSession(counts=LibraryCounts()))
        api.pages["artists"] = make_elements(artist_xml, [1, 2, 3])
        syncer = LibrarySyncer(storage, api, concurrency=2, poll_count=2)

        assert syncer.sync_initial() is True

        assert sorted(args[0] for args in api.calls_to("artists")) == [0, 2]
        assert sorted(args[0] for args in api.calls_to("albums")) == [0, 2]
        with storage.context() as library:
            assert library.get_entity(Artist, "3") is not None

    def test_podcasts_synced_when_supported(self, storage):
        """Test podcasts are pulled only on servers that support them."""
        api = FakeAmpacheApi(FakeSession(podcasts=True))
        api.responses[("request_podcasts", None)] = document(
            '<podcast id="2"><name>Show</name></podcast>'
        )
        syncer = LibrarySyncer(storage, api, poll_count=2)

        assert syncer.sync_initial() is True
        with storage.context() as library:
            assert library.get_entity(Podcast, "2").title == "Show"

    def test_cancelled_full_sync(self, storage):
        """Test a cancelled full sync leaves the wave unfinished."""
        api = FakeAmpacheApi(FakeSession(counts=LibraryCounts(artists=10)))
        token = CancellationToken()
        token.cancel()
        syncer = LibrarySyncer(storage, api, poll_count=2)

        assert syncer.sync_initial(token) is False
        assert api.calls_to("artists") == []
        assert latest_wave(storage).phase == SyncPhase.ARTISTS.value


class TestBackgroundResync:
    """Test resumable sync waves."""

    def test_initial_wave_skips_songs(self, syncer, fake_api, storage):
        """Test a normal wave pages artists then albums and finishes."""
        fake_api.pages["artists"] = make_elements(artist_xml, [1, 2, 3])
        fake_api.pages["albums"] = [album_xml("10", "First")]

        assert syncer.resync_in_background() is True

        assert [args[0] for args in fake_api.calls_to("artists")] == [0, 2, 3]
        assert [args[0] for args in fake_api.calls_to("albums")] == [0, 1]
        assert fake_api.calls_to("songs") == []
        assert all(args[2] is None for args in fake_api.calls_to("artists"))
        wave = latest_wave(storage)
        assert wave.id == 0
        assert wave.phase == SyncPhase.DONE.value

    def test_pagination_ends_on_empty_page(self, storage):
        """Test paging stops at the first empty page whatever the counts say."""
        api = FakeAmpacheApi(FakeSession(counts=LibraryCounts(artists=1000)))
        api.pages["artists"] = make_elements(artist_xml, [1, 2, 3])
        syncer = LibrarySyncer(storage, api, poll_count=2)

        assert syncer.resync_in_background() is True
        assert [args[0] for args in api.calls_to("artists")] == [0, 2, 3]

    def test_failure_keeps_cursor_and_resume_continues(
        self, syncer, fake_api, storage, event_logger
    ):
        """Test a failed page is fetched again on resume, earlier pages are not."""
        fake_api.pages["artists"] = make_elements(artist_xml, [1])
        fake_api.pages["albums"] = [album_xml(str(i), f"Album {i}") for i in (10, 11, 12)]
        fake_api.failures[("albums", 2)] = TransportError("connection reset")

        assert syncer.resync_in_background() is False
        assert [entry.kind for entry in event_logger.entries] == ["transport"]
        wave = latest_wave(storage)
        assert wave.phase == SyncPhase.ALBUMS.value
        assert wave.resume_cursor == 2

        del fake_api.failures[("albums", 2)]
        fake_api.calls.clear()

        assert syncer.resync_in_background() is True
        assert fake_api.calls_to("artists") == []
        assert [args[0] for args in fake_api.calls_to("albums")] == [2, 3]
        wave = latest_wave(storage)
        assert wave.id == 0
        assert wave.phase == SyncPhase.DONE.value
        with storage.context() as library:
            assert len(library.get_all(Album)) == 3

    def test_malformed_page_is_reported_and_not_counted(
        self, syncer, fake_api, storage, event_logger
    ):
        """Test a page that cannot be decoded leaves the cursor in place."""
        fake_api.pages["artists"] = make_elements(artist_xml, [1, 2])
        fake_api.page_bodies[("artists", 2)] = b"<root><artist id='3'>"

        assert syncer.resync_in_background() is False
        assert len(event_logger.entries) == 1
        wave = latest_wave(storage)
        assert wave.phase == SyncPhase.ARTISTS.value
        assert wave.resume_cursor == 2

    def test_error_page_completes_phase(self, syncer, fake_api, storage, event_logger):
        """Test an error envelope parses no items and moves to the next phase."""
        fake_api.page_bodies[("artists", 0)] = error_document(4742, "Failed access check")

        assert syncer.resync_in_background() is True
        assert [entry.status_code for entry in event_logger.entries] == [4742]
        assert latest_wave(storage).phase == SyncPhase.DONE.value

    def test_unchanged_server_creates_no_wave(self, syncer, fake_api, storage):
        """Test a second resync without remote changes does nothing."""
        assert syncer.resync_in_background() is True
        fake_api.calls.clear()

        assert syncer.resync_in_background() is True
        assert fake_api.calls == []
        assert latest_wave(storage).id == 0

    def test_delta_wave_asks_for_new_content_only(self, syncer, fake_api, storage):
        """Test the next wave filters by the previous add date plus one second."""
        assert syncer.resync_in_background() is True
        fake_api.calls.clear()
        moved = datetime(2024, 2, 1)
        fake_api.session_manager.snapshot = ChangeSnapshot(moved, moved, moved)
        fake_api.pages["artists"] = make_elements(artist_xml, [4])

        assert syncer.resync_in_background() is True

        expected = datetime(2024, 1, 1, 0, 0, 1)
        assert [args[2] for args in fake_api.calls_to("artists")] == [expected, expected]
        assert all(args[2] == expected for args in fake_api.calls_to("albums"))
        wave = latest_wave(storage)
        assert wave.id == 1
        assert wave.date_of_last_add == moved

    def test_version_migration_walks_songs(self, syncer, fake_api, storage):
        """Test a migration wave pulls everything including songs."""
        assert syncer.resync_in_background() is True
        fake_api.calls.clear()
        fake_api.pages["songs"] = [song_xml("100", "One")]

        assert syncer.resync_version_migration(3) is True

        assert [args[0] for args in fake_api.calls_to("songs")] == [0, 1]
        assert all(args[2] is None for args in fake_api.calls_to("songs"))
        wave = latest_wave(storage)
        assert wave.wave_kind == WaveKind.VERSION_MIGRATION.value
        assert wave.schema_version == 3
        assert wave.phase == SyncPhase.DONE.value

    def test_migration_completes_pending_wave_first(self, syncer, fake_api, storage):
        """Test an unfinished normal wave is finished before the migration."""
        fake_api.failures[("albums", 0)] = TransportError("down")
        assert syncer.resync_in_background() is False
        del fake_api.failures[("albums", 0)]

        assert syncer.resync_version_migration(3) is True

        with storage.context() as library:
            waves = library.get_sync_waves()
            assert [wave.wave_kind for wave in waves] == [
                WaveKind.NORMAL.value,
                WaveKind.VERSION_MIGRATION.value,
            ]
            assert all(wave.phase == SyncPhase.DONE.value for wave in waves)

    def test_cancellation_between_pages(self, syncer, fake_api, storage):
        """Test a cancelled wave stops before fetching and resumes later."""
        token = CancellationToken()
        token.cancel()

        assert syncer.resync_in_background(token) is False
        assert fake_api.calls_to("artists") == []
        assert latest_wave(storage).phase == SyncPhase.ARTISTS.value

        assert syncer.resync_in_background() is True
        assert latest_wave(storage).phase == SyncPhase.DONE.value


class TestTargetedSync:
    """Test single-entity syncs and their scoped reconciliation."""

    @pytest.fixture
    def library_with_artist(self, storage):
        """Artist 7 with two albums and three songs, plus an unrelated album."""
        with storage.context() as library:
            artist = library.create_entity(Artist, "7", name="Seven")
            kept = library.create_entity(Album, "70", name="Kept", artist=artist)
            gone = library.create_entity(Album, "71", name="Gone", artist=artist)
            library.create_entity(Song, "700", title="Kept", artist=artist, album=kept)
            library.create_entity(Song, "701", title="On gone album", artist=artist, album=gone)
            library.create_entity(Song, "702", title="Single", artist=artist)
            other = library.create_entity(Artist, "8", name="Eight")
            library.create_entity(Album, "99", name="Unrelated", artist=other)
            library.commit()
        return storage

    def test_artist_sync_reconciles_its_scope(self, syncer, fake_api, library_with_artist):
        """Test entities missing from the artist's lists are marked deleted."""
        storage = library_with_artist
        fake_api.responses[("request_artist", "7")] = document(artist_xml("7", "Seven"))
        fake_api.responses[("request_artist_albums", "7")] = document(
            album_xml("70", "Kept", artist=("7", "Seven"))
        )
        fake_api.responses[("request_artist_songs", "7")] = document(
            song_xml("700", "Kept", ("7", "Seven"), ("70", "Kept"))
        )

        assert syncer.sync_artist("7") is True

        assert status_of(storage, Album, "70") == AVAILABLE
        assert status_of(storage, Album, "71") == DELETED
        assert status_of(storage, Song, "700") == AVAILABLE
        assert status_of(storage, Song, "701") == DELETED
        assert status_of(storage, Song, "702") == DELETED
        assert status_of(storage, Album, "99") == AVAILABLE
        assert status_of(storage, Artist, "8") == AVAILABLE

    def test_missing_artist_marks_dependents(
        self, syncer, fake_api, library_with_artist, event_logger
    ):
        """Test a not-found artist marks itself, its albums and songs deleted."""
        storage = library_with_artist
        fake_api.responses[("request_artist", "7")] = error_document(4704, "Not Found")

        assert syncer.sync_artist("7") is False

        assert status_of(storage, Artist, "7") == DELETED
        assert status_of(storage, Album, "70") == DELETED
        assert status_of(storage, Song, "702") == DELETED
        assert status_of(storage, Album, "99") == AVAILABLE
        assert fake_api.calls_to("request_artist_albums") == []
        assert [entry.status_code for entry in event_logger.entries] == [4704]

    def test_other_errors_keep_entity(self, syncer, fake_api, library_with_artist):
        """Test errors other than not-found delete nothing."""
        storage = library_with_artist
        fake_api.responses[("request_artist", "7")] = error_document(4742, "Denied")

        assert syncer.sync_artist("7") is False
        assert status_of(storage, Artist, "7") == AVAILABLE

    def test_album_sync(self, syncer, fake_api, library_with_artist):
        """Test album songs missing remotely are marked deleted."""
        storage = library_with_artist
        fake_api.responses[("request_album", "71")] = document(
            album_xml("71", "Gone", artist=("7", "Seven"))
        )
        fake_api.responses[("request_album_songs", "71")] = document(
            song_xml("710", "New", ("7", "Seven"), ("71", "Gone"))
        )

        assert syncer.sync_album("71") is True
        assert status_of(storage, Song, "701") == DELETED
        assert status_of(storage, Song, "710") == AVAILABLE
        assert status_of(storage, Song, "700") == AVAILABLE

    def test_song_sync(self, syncer, fake_api, storage):
        """Test a single song is refreshed."""
        fake_api.responses[("request_song", "5")] = document(song_xml("5", "Fresh"))
        assert syncer.sync_song("5") is True
        with storage.context() as library:
            assert library.get_entity(Song, "5").title == "Fresh"

    def test_missing_song(self, syncer, fake_api, storage):
        """Test a not-found song is marked deleted."""
        with storage.context() as library:
            library.create_entity(Song, "5", title="Old")
            library.commit()
        fake_api.responses[("request_song", "5")] = error_document(4704, "Not Found")

        assert syncer.sync_song("5") is False
        assert status_of(storage, Song, "5") == DELETED

    def test_genre_sync(self, syncer, fake_api, storage):
        """Test genre songs are reconciled within the genre."""
        with storage.context() as library:
            genre = library.create_entity(Genre, "3", name="Jazz")
            library.create_entity(Song, "30", title="Gone", genre=genre)
            library.create_entity(Song, "31", title="Other genre")
            library.commit()
        fake_api.responses[("request_genre", "3")] = document(genre_xml("3", "Jazz"))
        fake_api.responses[("request_genre_songs", "3")] = document(song_xml("32", "New"))

        assert syncer.sync_genre("3") is True
        assert status_of(storage, Song, "30") == DELETED
        assert status_of(storage, Song, "31") == AVAILABLE
        assert status_of(storage, Song, "32") == AVAILABLE

    def test_podcast_sync(self, syncer, fake_api, storage):
        """Test episodes missing remotely are marked deleted."""
        with storage.context() as library:
            podcast = library.create_entity(Podcast, "2", title="Show")
            library.create_entity(PodcastEpisode, "9", title="Old", podcast=podcast)
            library.commit()
        fake_api.responses[("request_podcast_episodes", "2")] = document(
            '<podcast_episode id="7"><title>New</title></podcast_episode>'
        )

        assert syncer.sync_podcast("2") is True
        assert status_of(storage, PodcastEpisode, "9") == DELETED
        assert status_of(storage, PodcastEpisode, "7") == AVAILABLE

    def test_favorites_clear_flag_only(self, syncer, fake_api, storage):
        """Test unlisted favorites keep existing with the flag cleared."""
        with storage.context() as library:
            library.create_entity(Song, "1", title="Was favorite", is_favorite=True)
            library.create_entity(Song, "2", title="Still favorite", is_favorite=True)
            library.commit()
        fake_api.responses[("request_favorites", "song")] = document(
            song_xml("2", "Still favorite"), song_xml("3", "New favorite")
        )

        assert syncer.sync_favorites() is True

        assert [args[0] for args in fake_api.calls_to("request_favorites")] == [
            "artist",
            "album",
            "song",
        ]
        with storage.context() as library:
            first = library.get_entity(Song, "1")
            assert first.is_favorite is False
            assert first.remote_status == AVAILABLE
            assert library.get_entity(Song, "2").is_favorite is True
            assert library.get_entity(Song, "3").is_favorite is True

    def test_listings_return_entities(self, syncer, fake_api, storage):
        """Test newest albums and searches return what the server listed."""
        fake_api.responses[("request_newest_albums", 0)] = document(
            album_xml("10", "Newest"), album_xml("11", "Newer")
        )
        fake_api.responses[("search_songs", "one")] = document(
            song_xml("5", "One", album=("10", "Newest"))
        )

        albums = syncer.sync_newest_albums()
        songs = syncer.search_songs("one")

        assert [album.name for album in albums] == ["Newest", "Newer"]
        assert [song.title for song in songs] == ["One"]
        assert syncer.search_artists("none") == []
        with storage.context() as library:
            assert len(library.get_all(Album)) == 2


class TestMusicFolders:
    """Test catalogs and browsable directories."""

    def test_folder_browsing(self, syncer, fake_api, storage):
        """Test folders, artist directories, album directories and songs."""
        fake_api.responses[("request_catalogs", None)] = document(
            '<catalog id="1"><name>Music</name></catalog>'
        )
        fake_api.responses[("request_artists_in_catalog", "1")] = document(
            artist_xml("12", "Metallica")
        )
        fake_api.responses[("request_artist_albums", "12")] = document(
            album_xml("30", "Black", artist=("12", "Metallica"))
        )
        fake_api.responses[("request_album_songs", "30")] = document(
            song_xml("300", "Enter Sandman", ("12", "Metallica"), ("30", "Black"))
        )

        assert syncer.sync_music_folders() is True
        assert syncer.sync_indexes("1") is True
        assert syncer.sync_directory("artist-12") is True
        assert syncer.sync_directory("album-30") is True

        with storage.context() as library:
            artist_dir = library.get_entity(Directory, "artist-12")
            album_dir = library.get_entity(Directory, "album-30")
            assert artist_dir.music_folder.name == "Music"
            assert album_dir.parent is artist_dir
            assert [song.title for song in album_dir.songs] == ["Enter Sandman"]

    def test_unknown_folder(self, syncer, fake_api):
        """Test indexes of an unknown folder are not requested."""
        assert syncer.sync_indexes("9") is False
        assert fake_api.calls_to("request_artists_in_catalog") == []

    def test_album_directory_drops_songs(self, syncer, fake_api, storage):
        """Test songs no longer in an album directory are unfiled, not deleted."""
        with storage.context() as library:
            directory = library.create_entity(Directory, "album-30", name="Black")
            library.create_entity(Song, "301", title="Removed", directory=directory)
            library.commit()
        fake_api.responses[("request_album_songs", "30")] = document(song_xml("300", "Kept"))

        assert syncer.sync_directory("album-30") is True
        with storage.context() as library:
            removed = library.get_entity(Song, "301")
            assert removed.directory is None
            assert removed.remote_status == AVAILABLE


class TestPlaylists:
    """Test playlist download and uploads."""

    @pytest.fixture
    def playlist_id(self, storage, fake_api):
        """Remote playlist 5 holding songs a, b, c, d."""
        with storage.context() as library:
            playlist = library.create_entity(Playlist, "5", name="Mix")
            songs = [library.create_entity(Song, sid, title=sid.upper()) for sid in "abcde"]
            library.append_playlist_songs(playlist, songs[:4])
            library.commit()
            pk = playlist.id
        fake_api.responses[("request_playlist", "5")] = document(playlist_xml("5", "Mix"))
        return pk

    @staticmethod
    def order_of(storage, playlist_id):
        with storage.context() as library:
            return [song.remote_id for song in library.get_playlist(playlist_id).songs]

    def test_download_follows_remote_order(self, syncer, fake_api, storage):
        """Test downloaded songs take their remote positions."""
        fake_api.responses[("request_playlist", "5")] = document(playlist_xml("5", "Mix"))
        fake_api.responses[("request_playlist_songs", "5")] = document(
            song_xml("b", "B", playlist_track=2), song_xml("a", "A", playlist_track=1)
        )

        assert syncer.sync_down_playlist("5") is True
        with storage.context() as library:
            playlist = library.get_entity(Playlist, "5")
            assert [song.remote_id for song in playlist.songs] == ["a", "b"]

    def test_playlist_list_deletes_removed(self, syncer, fake_api, storage):
        """Test playlists gone from the server are deleted locally."""
        with storage.context() as library:
            library.create_entity(Playlist, "6", name="Gone")
            library.commit()
        fake_api.responses[("request_playlists", None)] = document(playlist_xml("5", "Mix"))

        assert syncer.sync_down_playlists() is True
        with storage.context() as library:
            assert [p.remote_id for p in library.get_all(Playlist)] == ["5"]

    def test_add_songs_one_call_each(self, syncer, fake_api, storage, playlist_id):
        """Test every appended song is sent in its own request."""
        assert syncer.upload_playlist_add_songs(playlist_id, ["e", "a"]) is True
        assert fake_api.calls_to("request_playlist_add_song") == [("5", "e"), ("5", "a")]
        assert self.order_of(storage, playlist_id) == ["a", "b", "c", "d", "e", "a"]

    def test_remove_item(self, syncer, fake_api, storage, playlist_id):
        """Test the removed index is sent and the local order closes the gap."""
        assert syncer.upload_playlist_remove_item(playlist_id, 1) is True
        assert fake_api.calls_to("request_playlist_remove_item") == [("5", 1)]
        assert self.order_of(storage, playlist_id) == ["a", "c", "d"]

    def test_move_item_sends_full_order(self, syncer, fake_api, storage, playlist_id):
        """Test a move uploads the complete new order."""
        assert syncer.upload_playlist_move_item(playlist_id, 0, 2) is True
        assert fake_api.calls_to("request_playlist_edit_items") == [
            ("5", ["b", "c", "a", "d"])
        ]
        assert self.order_of(storage, playlist_id) == ["b", "c", "a", "d"]

    def test_rename(self, syncer, fake_api, storage, playlist_id):
        """Test rename changes the name locally and remotely."""
        assert syncer.upload_playlist_rename(playlist_id, "Renamed") is True
        assert fake_api.calls_to("request_playlist_rename") == [("5", "Renamed")]
        with storage.context() as library:
            assert library.get_playlist(playlist_id).name == "Renamed"

    def test_delete(self, syncer, fake_api, storage, playlist_id):
        """Test delete removes the playlist on both sides."""
        assert syncer.upload_playlist_delete(playlist_id) is True
        assert fake_api.calls_to("request_playlist_delete") == [("5",)]
        with storage.context() as library:
            assert library.get_playlist(playlist_id) is None

    def test_rejected_write_is_reported(
        self, syncer, fake_api, storage, playlist_id, event_logger
    ):
        """Test an error answer to an upload is reported."""
        fake_api.responses[("request_playlist_rename", None)] = error_document(4742, "Denied")

        assert syncer.upload_playlist_rename(playlist_id, "Renamed") is False
        assert [entry.kind for entry in event_logger.entries] == ["api"]

    def test_unknown_local_playlist(self, syncer, fake_api):
        """Test uploads for a missing playlist do nothing."""
        assert syncer.upload_playlist_add_songs(999, ["a"]) is False
        assert fake_api.calls_to("request_playlist_add_song") == []

    def test_local_playlist_is_created_remotely(self, syncer, fake_api, storage):
        """Test a playlist without remote id is created before uploading."""
        with storage.context() as library:
            playlist = library.create_entity(Playlist, "", name="New")
            library.create_entity(Song, "a", title="A")
            library.commit()
            pk = playlist.id
        fake_api.responses[("request_playlist_create", "New")] = document(
            playlist_xml("77", "New")
        )

        assert syncer.upload_playlist_add_songs(pk, ["a"]) is True
        assert fake_api.calls_to("request_playlist_add_song") == [("77", "a")]
        with storage.context() as library:
            assert library.get_playlist(pk).remote_id == "77"

    def test_failed_creation_aborts_upload(self, syncer, fake_api, storage, event_logger):
        """Test nothing is uploaded when the playlist cannot be created."""
        with storage.context() as library:
            playlist = library.create_entity(Playlist, "", name="New")
            library.commit()
            pk = playlist.id
        fake_api.responses[("request_playlist_create", "New")] = error_document(4742, "Denied")

        assert syncer.upload_playlist_rename(pk, "Other") is False
        assert fake_api.calls_to("request_playlist_rename") == []
        with storage.context() as library:
            assert library.get_playlist(pk).name == "New"
        assert {entry.kind for entry in event_logger.entries} == {"api", "internal"}

    def test_error_answer_keeps_playlist_items(
        self, syncer, fake_api, storage, playlist_id, event_logger
    ):
        """Test a refused song download leaves the local items in place."""
        fake_api.responses[("request_playlist_songs", "5")] = error_document(
            4742, "Failed access check"
        )

        assert syncer.sync_down_playlist("5") is True
        assert self.order_of(storage, playlist_id) == ["a", "b", "c", "d"]
        assert [entry.status_code for entry in event_logger.entries] == [4742]

    def test_validation_error_creates_nothing(
        self, syncer, fake_api, storage, playlist_id, event_logger
    ):
        """Test an access error while validating aborts before any write."""
        fake_api.responses[("request_playlist", "5")] = error_document(4703, "Access denied")

        assert syncer.upload_playlist_rename(playlist_id, "Mix2") is False
        assert fake_api.calls_to("request_playlist_create") == []
        assert fake_api.calls_to("request_playlist_rename") == []
        with storage.context() as library:
            playlist = library.get_playlist(playlist_id)
            assert playlist.remote_id == "5"
            assert playlist.name == "Mix"
        assert [entry.status_code for entry in event_logger.entries] == [4703]

    def test_playlist_missing_remotely_is_recreated(
        self, syncer, fake_api, storage, playlist_id
    ):
        """Test a not-found answer recreates the playlist before the upload."""
        fake_api.responses[("request_playlist", "5")] = error_document(4704, "Not Found")
        fake_api.responses[("request_playlist_create", "Mix")] = document(
            playlist_xml("99", "Mix")
        )

        assert syncer.upload_playlist_rename(playlist_id, "Mix2") is True
        assert fake_api.calls_to("request_playlist_create") == [("Mix",)]
        assert fake_api.calls_to("request_playlist_rename") == [("99", "Mix2")]
        with storage.context() as library:
            assert library.get_playlist(playlist_id).remote_id == "99"

    def test_download_of_unknown_playlist(self, syncer, fake_api, storage, event_logger):
        """Test downloading an id the server does not know creates nothing."""
        assert syncer.sync_down_playlist("42") is False
        assert fake_api.calls_to("request_playlist_create") == []
        assert fake_api.calls_to("request_playlist_songs") == []
        with storage.context() as library:
            assert library.get_entity(Playlist, "42") is None
        assert [entry.status_code for entry in event_logger.entries] == [4704]

    def test_order_survives_upload_and_download(self, syncer, fake_api, storage, playlist_id):
        """Test local edits equal the order downloaded back from the server."""
        syncer.upload_playlist_add_songs(playlist_id, ["e"])
        syncer.upload_playlist_remove_item(playlist_id, 1)
        syncer.upload_playlist_move_item(playlist_id, 0, 3)
        local_order = self.order_of(storage, playlist_id)

        fake_api.responses[("request_playlist_songs", "5")] = document(
            *[
                song_xml(song_id, song_id.upper(), playlist_track=position)
                for position, song_id in enumerate(local_order, start=1)
            ]
        )
        assert syncer.sync_down_playlist("5") is True

        assert self.order_of(storage, playlist_id) == local_order
        with storage.context() as library:
            orders = [item.order for item in library.get_playlist(playlist_id).items]
            assert sorted(orders) == list(range(len(local_order)))


class TestRatings:
    """Test rating and favorite writes."""

    def test_rating_applied_after_success(self, syncer, fake_api, storage):
        """Test the local rating changes once the server accepted it."""
        with storage.context() as library:
            library.create_entity(Song, "1", title="One")
            library.commit()

        assert syncer.set_rating("song", "1", 4) is True
        assert fake_api.calls_to("request_rate") == [("song", "1", 4)]
        with storage.context() as library:
            assert library.get_entity(Song, "1").rating == 4

    def test_rejected_flag_is_not_applied(self, syncer, fake_api, storage, event_logger):
        """Test a refused flag keeps the local value."""
        with storage.context() as library:
            library.create_entity(Album, "1", name="One")
            library.commit()
        fake_api.responses[("request_flag", None)] = error_document(4742, "Denied")

        assert syncer.set_favorite("album", "1", True) is False
        with storage.context() as library:
            assert library.get_entity(Album, "1").is_favorite is False
        assert len(event_logger.entries) == 1

    def test_empty_write_answer(self, syncer, fake_api):
        """Test an empty success document counts as accepted."""
        fake_api.responses[("request_flag", None)] = EMPTY
        assert syncer.set_favorite("artist", "9", True) is True
