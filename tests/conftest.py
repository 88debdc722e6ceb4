"""Shared fixtures: temporary library storage and a scripted Ampache server."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from ampache_sync.database.service import LibraryStorage
from ampache_sync.database.sync_wave import ChangeSnapshot
from ampache_sync.models import LibraryCounts

EMPTY = b"<?xml version='1.0' encoding='UTF-8'?><root></root>"


def document(*elements: str) -> bytes:
    """Wrap entity elements into an Ampache response."""
    return ("<?xml version='1.0' encoding='UTF-8'?><root>" + "".join(elements) + "</root>").encode(
        "utf-8"
    )


def error_document(code: int, message: str) -> bytes:
    """Ampache error envelope."""
    return document(f'<error errorCode="{code}"><errorMessage>{message}</errorMessage></error>')


def genre_xml(genre_id: str, name: str) -> str:
    return f'<genre id="{genre_id}"><name>{name}</name></genre>'


def artist_xml(artist_id: str, name: str, genre: Optional[Tuple[str, str]] = None) -> str:
    genre_part = f'<genre id="{genre[0]}">{genre[1]}</genre>' if genre else ""
    return (
        f'<artist id="{artist_id}"><name>{name}</name>{genre_part}'
        "<albumcount>1</albumcount><rating>0</rating><flag>0</flag></artist>"
    )


def album_xml(album_id: str, name: str, artist: Tuple[str, str] = ("1", "Artist")) -> str:
    return (
        f'<album id="{album_id}"><name>{name}</name>'
        f'<artist id="{artist[0]}">{artist[1]}</artist>'
        "<year>1999</year><songcount>1</songcount><flag>0</flag></album>"
    )


def song_xml(
    song_id: str,
    title: str,
    artist: Tuple[str, str] = ("1", "Artist"),
    album: Tuple[str, str] = ("1", "Album"),
    playlist_track: Optional[int] = None,
) -> str:
    track_part = f"<playlisttrack>{playlist_track}</playlisttrack>" if playlist_track else ""
    return (
        f'<song id="{song_id}"><title>{title}</title>'
        f'<artist id="{artist[0]}">{artist[1]}</artist>'
        f'<album id="{album[0]}">{album[1]}</album>'
        f"<track>1</track><time>200</time>{track_part}</song>"
    )


class FakeSession:
    """Stands in for ``SessionManager``."""

    def __init__(
        self,
        counts: Optional[LibraryCounts] = None,
        snapshot: Optional[ChangeSnapshot] = None,
        authenticated: bool = True,
        podcasts: bool = False,
    ) -> None:
        self.counts = counts or LibraryCounts()
        self.snapshot = snapshot or ChangeSnapshot(
            datetime(2024, 1, 1), datetime(2024, 1, 1), datetime(2024, 1, 1)
        )
        self.authenticated = authenticated
        self.podcasts = podcasts

    def ensure_authenticated(self) -> bool:
        return self.authenticated

    def change_snapshot(self) -> ChangeSnapshot:
        return self.snapshot

    def supports_podcasts(self) -> bool:
        return self.podcasts


class FakeAmpacheApi:
    """Scripted server answering the ``AmpacheApi`` methods the syncer uses.

    Paged kinds (artists, albums, songs) are served from element lists.
    Every other ``request_*`` or ``search_*`` call answers from
    ``responses[(method, first_arg)]``, falling back to
    ``responses[(method, None)]`` and then to an empty document.
    """

    def __init__(self, session: Optional[FakeSession] = None, reachable: bool = True) -> None:
        self.session_manager = session or FakeSession()
        self.reachable = reachable
        self.pages: Dict[str, List[str]] = {"artists": [], "albums": [], "songs": []}
        self.page_bodies: Dict[Tuple[str, int], bytes] = {}
        self.failures: Dict[Tuple[str, int], Exception] = {}
        self.responses: Dict[Tuple[str, Any], bytes] = {}
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []

    def is_reachable(self) -> bool:
        return self.reachable

    def _page(self, kind: str, offset: int, limit: int, add_date: Optional[datetime]) -> bytes:
        self.calls.append((kind, (offset, limit, add_date)))
        if (kind, offset) in self.failures:
            raise self.failures[(kind, offset)]
        if (kind, offset) in self.page_bodies:
            return self.page_bodies[(kind, offset)]
        return document(*self.pages[kind][offset : offset + limit])

    def request_artists(
        self,
        offset: int,
        limit: int = 500,
        add_date: Optional[datetime] = None,
        clamp_to_count: bool = False,
    ) -> bytes:
        return self._page("artists", offset, limit, add_date)

    def request_albums(
        self, offset: int, limit: int = 500, add_date: Optional[datetime] = None
    ) -> bytes:
        return self._page("albums", offset, limit, add_date)

    def request_songs(
        self, offset: int, limit: int = 500, add_date: Optional[datetime] = None
    ) -> bytes:
        return self._page("songs", offset, limit, add_date)

    def calls_to(self, name: str) -> List[Tuple[Any, ...]]:
        return [args for called, args in self.calls if called == name]

    def __getattr__(self, name: str) -> Any:
        if not (name.startswith("request_") or name.startswith("search_")):
            raise AttributeError(name)

        def respond(*args: Any) -> bytes:
            self.calls.append((name, args))
            key = args[0] if args else None
            if (name, key) in self.responses:
                return self.responses[(name, key)]
            return self.responses.get((name, None), EMPTY)

        return respond


@pytest.fixture
def storage(tmp_path):
    """Create a temporary library database for testing."""
    library_storage = LibraryStorage(tmp_path / "library.db")
    yield library_storage
    library_storage.close()


@pytest.fixture
def fake_api():
    """Scripted Ampache server."""
    return FakeAmpacheApi()


def make_elements(factory, ids: Sequence[int]) -> List[str]:
    """Build elements ``factory(str(id), f"Name {id}")`` for every id."""
    return [factory(str(i), f"Name {i}") for i in ids]
