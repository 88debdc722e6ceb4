"""HTTP access to the Ampache XML server API."""

import logging
import socket
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import requests

from .errors import AuthenticationError, TransportError

if TYPE_CHECKING:
    from .session import SessionManager

logger = logging.getLogger(__name__)

API_PATH = "server/xml.server.php"
CLIENT_API_VERSION = "500000"
MAX_ITEM_COUNT_TO_POLL_AT_ONCE = 500
PODCAST_MIN_API_VERSION = 420000

_SECRET_PARAMS = {"auth": "AUTH", "user": "USER", "ssid": "SSID"}


def api_url(server_url: str) -> str:
    """XML API endpoint of a server."""
    return f"{server_url.rstrip('/')}/{API_PATH}"


def cleanse_url(url: str) -> str:
    """Replace host and credentials in a URL so it can be logged."""
    parsed = urlparse(url)
    query = [
        (name, _SECRET_PARAMS.get(name, value))
        for name, value in parse_qsl(parsed.query, keep_blank_values=True)
    ]
    return urlunparse(parsed._replace(netloc="SERVERURL", query=urlencode(query)))


def format_add_date(value: datetime) -> str:
    """ISO-8601 form of a naive UTC datetime for ``add`` filters."""
    return value.replace(microsecond=0).isoformat() + "+00:00"


class AmpacheTransport:
    """Blocking HTTP GET with retries for transient server errors."""

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        """Initialize transport.

        Args:
            timeout: Request timeout in seconds
            max_retries: Retries on HTTP 5xx
            base_delay: Base delay in seconds (doubles each retry)
            http: Session to use; a new one is created if omitted
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.http = http or requests.Session()

    def get(self, url: str, params: Dict[str, Any]) -> bytes:
        """Fetch a URL and return the full response body.

        Raises:
            TransportError: If the request fails after all retries
        """
        for attempt in range(self.max_retries + 1):
            try:
                response = self.http.get(url, params=params, timeout=self.timeout)
                response.raise_for_status()
                return response.content
            except requests.exceptions.HTTPError as e:
                status = e.response.status_code if e.response is not None else 0
                if 500 <= status < 600 and attempt < self.max_retries:
                    delay = self.base_delay * (2**attempt)
                    logger.warning(
                        "Server error %s, retrying in %.1fs... (attempt %s/%s)",
                        status,
                        delay,
                        attempt + 1,
                        self.max_retries,
                    )
                    time.sleep(delay)
                    continue
                raise TransportError(f"HTTP {status} from server") from e
            except requests.exceptions.RequestException as e:
                raise TransportError(f"Request failed: {e}") from e
        raise TransportError("Request failed after retries")

    def is_reachable(self, server_url: str, timeout: float = 3.0) -> bool:
        """Probe the server with a TCP connect."""
        parsed = urlparse(server_url)
        host = parsed.hostname
        if not host:
            return False
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError as e:
            logger.debug("Server %s not reachable: %s", host, e)
            return False


class AmpacheApi:
    """Builds and issues the query-string actions of the XML API.

    Every method returns the raw response body. Authentication is refreshed
    lazily through the session manager before each request.
    """

    def __init__(
        self,
        session_manager: "SessionManager",
        transport: Optional[AmpacheTransport] = None,
    ) -> None:
        """Initialize API client.

        Args:
            session_manager: Provides the auth token
            transport: HTTP transport; defaults to the session manager's
        """
        self.session_manager = session_manager
        self.transport = transport or session_manager.transport

    # =========================================================================
    # Plumbing
    # =========================================================================

    def is_reachable(self) -> bool:
        """Whether the configured server answers at all."""
        credentials = self.session_manager.credentials
        if credentials is None:
            return False
        return self.transport.is_reachable(credentials.server_url)

    def request(self, action: str, **params: Any) -> bytes:
        """Issue an authenticated action.

        Raises:
            AuthenticationError: If no valid session can be established
            TransportError: If the request fails
        """
        if not self.session_manager.ensure_authenticated():
            raise AuthenticationError(f"Not authenticated, cannot run {action}")
        credentials = self.session_manager.credentials
        token = self.session_manager.token
        if credentials is None or token is None:
            raise AuthenticationError(f"No session token, cannot run {action}")
        query: Dict[str, Any] = {"action": action, "auth": token}
        query.update({key: value for key, value in params.items() if value is not None})
        url = api_url(credentials.server_url)
        logger.debug("Request %s?%s", url, cleanse_url(f"{url}?{urlencode(query)}"))
        return self.transport.get(url, query)

    def _paged(
        self,
        action: str,
        offset: int,
        limit: int,
        add_date: Optional[datetime],
        **params: Any,
    ) -> bytes:
        if add_date is not None:
            params["add"] = format_add_date(add_date)
        return self.request(action, offset=offset, limit=limit, **params)

    # =========================================================================
    # Catalog
    # =========================================================================

    def request_genres(self) -> bytes:
        """All genres."""
        return self.request("genres")

    def request_genre(self, genre_id: str) -> bytes:
        """One genre."""
        return self.request("genre", filter=genre_id)

    def request_genre_songs(self, genre_id: str) -> bytes:
        """Songs of one genre."""
        return self.request("genre_songs", filter=genre_id)

    def request_artists(
        self,
        offset: int,
        limit: int = MAX_ITEM_COUNT_TO_POLL_AT_ONCE,
        add_date: Optional[datetime] = None,
        clamp_to_count: bool = False,
    ) -> bytes:
        """A page of artists.

        Args:
            offset: First artist to return
            limit: Page size
            add_date: Only artists added after this date
            clamp_to_count: Keep the offset below the reported artist count
        """
        artist_count = self.session_manager.counts.artists
        if clamp_to_count and artist_count > 0 and offset >= artist_count:
            offset = artist_count - 1
        return self._paged("artists", offset, limit, add_date)

    def request_albums(
        self,
        offset: int,
        limit: int = MAX_ITEM_COUNT_TO_POLL_AT_ONCE,
        add_date: Optional[datetime] = None,
    ) -> bytes:
        """A page of albums."""
        return self._paged("albums", offset, limit, add_date)

    def request_songs(
        self,
        offset: int,
        limit: int = MAX_ITEM_COUNT_TO_POLL_AT_ONCE,
        add_date: Optional[datetime] = None,
    ) -> bytes:
        """A page of songs."""
        return self._paged("songs", offset, limit, add_date)

    def request_artist(self, artist_id: str) -> bytes:
        """One artist."""
        return self.request("artist", filter=artist_id)

    def request_artist_albums(self, artist_id: str) -> bytes:
        """Albums of one artist."""
        return self.request("artist_albums", filter=artist_id)

    def request_artist_songs(self, artist_id: str) -> bytes:
        """Songs of one artist."""
        return self.request("artist_songs", filter=artist_id)

    def request_album(self, album_id: str) -> bytes:
        """One album."""
        return self.request("album", filter=album_id)

    def request_album_songs(self, album_id: str) -> bytes:
        """Songs of one album."""
        return self.request("album_songs", filter=album_id)

    def request_song(self, song_id: str) -> bytes:
        """One song."""
        return self.request("song", filter=song_id)

    def request_newest_albums(self, offset: int, count: int) -> bytes:
        """Recently added albums."""
        return self.request("stats", type="album", filter="newest", offset=offset, limit=count)

    def request_recent_albums(self, offset: int, count: int) -> bytes:
        """Recently played albums."""
        return self.request("stats", type="album", filter="recent", offset=offset, limit=count)

    def request_favorites(self, object_type: str) -> bytes:
        """Flagged artists, albums or songs."""
        return self.request(
            "advanced_search",
            rule_1="favorite",
            rule_1_operator=0,
            rule_1_input="",
            type=object_type,
        )

    def search_artists(self, text: str) -> bytes:
        """Artists matching a search text."""
        return self.request("artists", filter=text)

    def search_albums(self, text: str) -> bytes:
        """Albums matching a search text."""
        return self.request("albums", filter=text)

    def search_songs(self, text: str) -> bytes:
        """Songs matching a search text."""
        return self.request("search_songs", filter=text)

    # =========================================================================
    # Music folders
    # =========================================================================

    def request_catalogs(self) -> bytes:
        """All catalogs."""
        return self.request("catalogs")

    def request_artists_in_catalog(self, catalog_id: str) -> bytes:
        """Artists of one catalog."""
        try:
            rule_input: Any = int(catalog_id)
        except ValueError:
            rule_input = 0
        return self.request(
            "advanced_search",
            rule_1="catalog",
            rule_1_operator=0,
            rule_1_input=rule_input,
            type="artist",
        )

    # =========================================================================
    # Playlists
    # =========================================================================

    def request_playlists(self) -> bytes:
        """All playlists without their songs."""
        return self.request("playlists")

    def request_playlist(self, playlist_id: str) -> bytes:
        """One playlist without its songs."""
        return self.request("playlist", filter=playlist_id)

    def request_playlist_songs(self, playlist_id: str) -> bytes:
        """Songs of one playlist in playlist order."""
        return self.request("playlist_songs", filter=playlist_id)

    def request_playlist_create(self, name: str) -> bytes:
        """Create a private playlist."""
        return self.request("playlist_create", name=name, type="private")

    def request_playlist_delete(self, playlist_id: str) -> bytes:
        """Delete a playlist."""
        return self.request("playlist_delete", filter=playlist_id)

    def request_playlist_add_song(self, playlist_id: str, song_id: str) -> bytes:
        """Append one song."""
        return self.request("playlist_add_song", filter=playlist_id, song=song_id)

    def request_playlist_remove_item(self, playlist_id: str, index: int) -> bytes:
        """Remove the item at a 0-based index; the server counts from 1."""
        return self.request("playlist_remove_song", filter=playlist_id, track=index + 1)

    def request_playlist_rename(self, playlist_id: str, name: str) -> bytes:
        """Change the playlist name only."""
        return self.request("playlist_edit", filter=playlist_id, name=name)

    def request_playlist_edit_items(self, playlist_id: str, song_ids: Sequence[str]) -> bytes:
        """Set the song at every 1-based track position."""
        tracks: List[str] = [str(position) for position in range(1, len(song_ids) + 1)]
        return self.request(
            "playlist_edit",
            filter=playlist_id,
            items=",".join(song_ids),
            tracks=",".join(tracks),
        )

    # =========================================================================
    # Podcasts
    # =========================================================================

    def request_podcasts(self) -> bytes:
        """All podcasts without episodes."""
        return self.request("podcasts")

    def request_podcast_episodes(self, podcast_id: str) -> bytes:
        """Episodes of one podcast."""
        return self.request("podcast_episodes", filter=podcast_id)

    # =========================================================================
    # Ratings and flags
    # =========================================================================

    def request_rate(self, object_type: str, object_id: str, rating: int) -> bytes:
        """Set a 0-5 rating."""
        return self.request("rate", type=object_type, id=object_id, rating=rating)

    def request_flag(self, object_type: str, object_id: str, is_favorite: bool) -> bytes:
        """Set or clear the favorite flag."""
        return self.request(
            "flag", type=object_type, id=object_id, flag=1 if is_favorite else 0
        )
