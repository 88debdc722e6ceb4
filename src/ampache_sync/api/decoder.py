"""Streaming XML decoding of Ampache responses into library entities.

A response is turned into a stream of element-open / element-close tokens.
Every token is pushed to a list of consumers: the error envelope decoder and
the entity dispatcher. The dispatcher routes tokens to one ``EntityBuilder``
strategy per entity kind, chosen by the element name of the entity's root
tag. All mutable parse state lives in objects created per ``decode`` call.
"""

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Type,
)

from ..database.models import (
    Album,
    Artist,
    Base,
    Directory,
    Genre,
    MusicFolder,
    Playlist,
    PlaylistItem,
    Podcast,
    PodcastEpisode,
    RemoteStatus,
    Song,
    SyncWave,
    utcnow,
)
from ..database.progress_tracker import EntityKind, ParseNotifier
from ..database.service import LibraryContext
from .errors import DecodeError, ResponseError

logger = logging.getLogger(__name__)

FEED_CHUNK_SIZE = 64 * 1024


# =========================================================================
# Scalar coercion
# =========================================================================


def to_int(text: Optional[str]) -> int:
    """Parse an integer; absent or invalid text becomes 0."""
    if not text:
        return 0
    try:
        return int(text.strip())
    except ValueError:
        try:
            return int(float(text.strip()))
        except ValueError:
            return 0


def to_bool_flag(text: Optional[str]) -> bool:
    """Ampache flags are ``1`` for set and ``0`` for unset."""
    return to_int(text) == 1


def to_text(text: Optional[str]) -> str:
    """Stripped text, empty when absent."""
    return text.strip() if text else ""


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_datetime(text: Optional[str]) -> datetime:
    """Parse an ISO-8601 timestamp; absent or invalid text becomes now."""
    if not text or not text.strip():
        return utcnow()
    try:
        return _as_naive_utc(datetime.fromisoformat(text.strip()))
    except ValueError:
        logger.warning("Could not parse date <%s>, using now", text)
        return utcnow()


def to_pubdate(text: Optional[str]) -> datetime:
    """Parse a podcast publish date.

    Ampache sends either ``3/27/21, 3:30 AM`` or ``2011-02-03T14:46:43+00:00``.
    Both are interpreted as UTC.
    """
    value = to_text(text)
    if not value:
        return utcnow()
    if "/" in value:
        try:
            return datetime.strptime(value, "%m/%d/%y, %I:%M %p")
        except ValueError:
            return datetime(1970, 1, 1)
    if len(value) >= 19:
        try:
            return datetime.strptime(value[:19], "%Y-%m-%dT%H:%M:%S")
        except ValueError:
            return datetime(1970, 1, 1)
    logger.error("Pubdate <%s> of podcast episode could not be parsed", value)
    return utcnow()


def to_duration(text: Optional[str]) -> int:
    """Seconds from ``ss``, ``mm:ss`` or ``hh:mm:ss``; invalid text becomes 0."""
    value = to_text(text)
    if ":" not in value:
        return to_int(value)
    seconds = 0
    for part in value.split(":"):
        if not part.isdigit():
            return 0
        seconds = seconds * 60 + int(part)
    return seconds


_BYTE_UNITS = {"B": 1, "KB": 1024, "MB": 1024**2, "GB": 1024**3, "TB": 1024**4}
_BYTE_COUNT_RE = re.compile(r"^\s*([\d.]+)\s*([KMGT]?B)?\s*$", re.IGNORECASE)


def to_byte_count(text: Optional[str]) -> int:
    """Bytes from ``1234`` or ``31.43 MB``; invalid text becomes 0."""
    match = _BYTE_COUNT_RE.match(text or "")
    if not match:
        return 0
    try:
        number = float(match.group(1))
    except ValueError:
        return 0
    unit = (match.group(2) or "B").upper()
    return int(number * _BYTE_UNITS[unit])


Coercer = Callable[[Optional[str]], Any]


# =========================================================================
# Token stream
# =========================================================================


class TokenConsumer(Protocol):
    """Receives element tokens of one response."""

    def start(self, tag: str, attrs: Mapping[str, str]) -> None:
        """Element opened."""

    def end(self, tag: str, text: str) -> None:
        """Element closed with its accumulated text."""


def stream_tokens(body: bytes, consumers: Sequence[TokenConsumer]) -> None:
    """Push the element tokens of ``body`` to every consumer in order.

    Args:
        body: Complete response body
        consumers: Token consumers, each sees every token

    Raises:
        DecodeError: If the body is not well-formed XML
    """
    parser = ET.XMLPullParser(events=("start", "end"))

    def drain() -> None:
        for event, element in parser.read_events():
            if event == "start":
                for consumer in consumers:
                    consumer.start(element.tag, element.attrib)
            else:
                text = (element.text or "").strip()
                for consumer in consumers:
                    consumer.end(element.tag, text)
                # Children are no longer needed once their parent closed
                element.clear()

    try:
        for offset in range(0, len(body), FEED_CHUNK_SIZE):
            parser.feed(body[offset : offset + FEED_CHUNK_SIZE])
            drain()
        parser.close()
        drain()
    except ET.ParseError as e:
        raise DecodeError(f"Malformed XML response: {e}") from e


class ErrorEnvelopeDecoder:
    """Extracts ``<error errorCode="..."><errorMessage>`` from a response."""

    def __init__(self) -> None:
        """Initialize error decoder."""
        self.code: Optional[int] = None
        self.message = ""
        self._in_error = False

    def start(self, tag: str, attrs: Mapping[str, str]) -> None:
        """Element opened."""
        if tag == "error":
            self._in_error = True
            self.code = to_int(attrs.get("errorCode") or attrs.get("code"))

    def end(self, tag: str, text: str) -> None:
        """Element closed."""
        if not self._in_error:
            return
        if tag == "errorMessage":
            self.message = text
        elif tag == "error":
            self._in_error = False
            # Pre-5 servers put the message straight into <error>
            if not self.message:
                self.message = text

    @property
    def error(self) -> Optional[ResponseError]:
        """The fault found in the response, if any."""
        if self.code is None:
            return None
        return ResponseError(self.code, self.message)


def decode_error(body: bytes) -> Optional[ResponseError]:
    """Return the error envelope of a response, or None for regular payloads.

    Raises:
        DecodeError: If the body is not well-formed XML
    """
    error_decoder = ErrorEnvelopeDecoder()
    stream_tokens(body, [error_decoder])
    return error_decoder.error


# =========================================================================
# Entity builders
# =========================================================================


@dataclass
class DecodeResult:
    """Outcome of decoding one response.

    Attributes:
        parsed_count: Entities finalized, the pagination signal
        parsed: Finalized entities in document order
        error: Error envelope, if the response was one
    """

    parsed_count: int = 0
    parsed: List[Any] = dataclass_field(default_factory=list)
    error: Optional[ResponseError] = None

    @property
    def parsed_set(self) -> set:
        """Finalized entities as a set, for reconciliation."""
        return set(self.parsed)


@dataclass
class EntityBuffer:
    """The entity currently being built and its unresolved references."""

    entity: Any
    pending_refs: Dict[str, str] = dataclass_field(default_factory=dict)
    extras: Dict[str, Any] = dataclass_field(default_factory=dict)


@dataclass
class ParseState:
    """Everything one decode call mutates."""

    library: LibraryContext
    sync_wave: Optional[SyncWave]
    notifier: Optional[ParseNotifier]
    result: DecodeResult
    scratch: Dict[str, Any] = dataclass_field(default_factory=dict)


class EntityBuilder:
    """Strategy that builds one entity kind from its element tokens.

    Subclasses declare the root tag, the model, scalar child tags mapped to
    ``(attribute, coercer)`` and reference child tags mapped to
    ``(attribute, model)``.
    """

    root_tag: str = ""
    kind: EntityKind = EntityKind.SONG
    model: Type[Base] = Base
    scalar_fields: Dict[str, Tuple[str, Coercer]] = {}
    reference_fields: Dict[str, Tuple[str, Type[Base]]] = {}

    def begin(self, state: ParseState, attrs: Mapping[str, str]) -> Optional[EntityBuffer]:
        """Resolve the entity named by the root tag's ``id``.

        Returns:
            Buffer for the entity, or None to skip the element
        """
        remote_id = attrs.get("id")
        if not remote_id:
            logger.error("Found %s with no id", self.root_tag)
            return None
        entity = state.library.get_entity(self.model, remote_id)
        if entity is None:
            entity = state.library.create_entity(self.model, remote_id, state.sync_wave)
        else:
            entity.remote_status = RemoteStatus.AVAILABLE.value
        return EntityBuffer(entity)

    def child_start(
        self, state: ParseState, buffer: EntityBuffer, tag: str, attrs: Mapping[str, str]
    ) -> None:
        """Handle an opened child; resolves references by id."""
        if tag not in self.reference_fields:
            return
        ref_id = attrs.get("id")
        if not ref_id:
            return
        attribute, ref_model = self.reference_fields[tag]
        referenced = state.library.get_entity(ref_model, ref_id)
        if referenced is not None:
            setattr(buffer.entity, attribute, referenced)
        else:
            buffer.pending_refs[tag] = ref_id

    def child_end(self, state: ParseState, buffer: EntityBuffer, tag: str, text: str) -> None:
        """Handle a closed child: scalar assignment or deferred reference."""
        if tag in buffer.pending_refs:
            ref_id = buffer.pending_refs.pop(tag)
            attribute, ref_model = self.reference_fields[tag]
            # An earlier element of this response may have created it
            referenced = state.library.get_entity(ref_model, ref_id)
            if referenced is None:
                logger.debug(
                    "%s <%s> with id %s has been created", tag, text, ref_id
                )
                referenced = state.library.create_entity(
                    ref_model, ref_id, state.sync_wave, name=text
                )
            setattr(buffer.entity, attribute, referenced)
        elif tag in self.scalar_fields:
            attribute, coerce = self.scalar_fields[tag]
            setattr(buffer.entity, attribute, coerce(text))

    def complete(self, state: ParseState, buffer: EntityBuffer) -> None:
        """Finalize the entity at the close of its root tag."""
        state.result.parsed_count += 1
        state.result.parsed.append(buffer.entity)
        if state.notifier is not None:
            state.notifier(self.kind)

    def finish(self, state: ParseState) -> None:
        """Called once after the document ended."""
        pass


class GenreBuilder(EntityBuilder):
    """Builds genres."""

    root_tag = "genre"
    kind = EntityKind.GENRE
    model = Genre
    scalar_fields = {"name": ("name", to_text)}


class ArtistBuilder(EntityBuilder):
    """Builds artists."""

    root_tag = "artist"
    kind = EntityKind.ARTIST
    model = Artist
    scalar_fields = {
        "name": ("name", to_text),
        "rating": ("rating", to_int),
        "flag": ("is_favorite", to_bool_flag),
        "albumcount": ("album_count", to_int),
        "time": ("duration", to_int),
        "art": ("artwork_url", to_text),
    }
    reference_fields = {"genre": ("genre", Genre)}


class AlbumBuilder(EntityBuilder):
    """Builds albums."""

    root_tag = "album"
    kind = EntityKind.ALBUM
    model = Album
    scalar_fields = {
        "name": ("name", to_text),
        "rating": ("rating", to_int),
        "year": ("year", to_int),
        "songcount": ("song_count", to_int),
        "art": ("artwork_url", to_text),
        "flag": ("is_favorite", to_bool_flag),
    }
    reference_fields = {"artist": ("artist", Artist), "genre": ("genre", Genre)}


class SongBuilder(EntityBuilder):
    """Builds songs."""

    root_tag = "song"
    kind = EntityKind.SONG
    model = Song
    scalar_fields = {
        "title": ("title", to_text),
        "track": ("track", to_int),
        "url": ("url", to_text),
        "year": ("year", to_int),
        "time": ("duration", to_int),
        "art": ("artwork_url", to_text),
        "size": ("size", to_int),
        "bitrate": ("bitrate", to_int),
        "mime": ("content_type", to_text),
        "disk": ("disk", to_text),
        "rating": ("rating", to_int),
        "flag": ("is_favorite", to_bool_flag),
    }
    reference_fields = {
        "artist": ("artist", Artist),
        "album": ("album", Album),
        "genre": ("genre", Genre),
    }


class PlaylistSongsBuilder(SongBuilder):
    """Builds the songs of one playlist and rewrites its item order.

    Remote positions (``playlisttrack``) are 1-based, local item order is
    0-based. Items are reused by index; items beyond the parsed count are
    removed after the document ends.
    """

    def __init__(self, playlist: Playlist) -> None:
        """Initialize playlist songs builder.

        Args:
            playlist: Local playlist whose items are rewritten
        """
        self.playlist = playlist

    def child_end(self, state: ParseState, buffer: EntityBuffer, tag: str, text: str) -> None:
        """Remember the remote position in addition to the song fields."""
        if tag == "playlisttrack":
            buffer.extras["position"] = to_int(text)
            return
        super().child_end(state, buffer, tag, text)

    def complete(self, state: ParseState, buffer: EntityBuffer) -> None:
        """Record the song with its remote position."""
        position = buffer.extras.get("position") or state.result.parsed_count + 1
        state.scratch.setdefault("positions", []).append((position, buffer.entity))
        super().complete(state, buffer)

    def finish(self, state: ParseState) -> None:
        """Place songs at ``position - 1`` and drop surplus items."""
        if state.result.error is not None:
            return
        ordered = [
            song
            for _, song in sorted(
                state.scratch.get("positions", []), key=lambda entry: entry[0]
            )
        ]
        items = sorted(self.playlist.items, key=lambda item: item.order)
        for index, song in enumerate(ordered):
            if index < len(items):
                items[index].song = song
                items[index].order = index
            else:
                self.playlist.items.append(PlaylistItem(song=song, order=index))
        for surplus in items[len(ordered) :]:
            self.playlist.items.remove(surplus)
        self.playlist.remote_song_count = len(ordered)


class PlaylistBuilder(EntityBuilder):
    """Builds playlists.

    In list mode, local playlists that exist remotely but were not in the
    response are deleted. In validate mode the builder only updates
    ``playlist_to_validate`` and clears its remote id when the server does
    not know it. Other errors leave the id untouched.
    """

    root_tag = "playlist"
    kind = EntityKind.PLAYLIST
    model = Playlist
    scalar_fields = {
        "name": ("name", to_text),
        "items": ("remote_song_count", to_int),
    }

    def __init__(self, playlist_to_validate: Optional[Playlist] = None) -> None:
        """Initialize playlist builder.

        Args:
            playlist_to_validate: Switches the builder into validate mode
        """
        self.playlist_to_validate = playlist_to_validate

    def begin(self, state: ParseState, attrs: Mapping[str, str]) -> Optional[EntityBuffer]:
        """Resolve the playlist, or bind the validated one to the response id."""
        remote_id = attrs.get("id")
        if self.playlist_to_validate is not None:
            if not remote_id:
                logger.error("Playlist could not be parsed, id is not given")
                return None
            self.playlist_to_validate.remote_id = remote_id
            return EntityBuffer(self.playlist_to_validate)
        return super().begin(state, attrs)

    def finish(self, state: ParseState) -> None:
        """Apply list-mode deletion or validate-mode id reset."""
        parsed = state.result.parsed_set
        if self.playlist_to_validate is not None:
            error = state.result.error
            if error is not None and error.is_remote_available:
                return
            if error is not None or self.playlist_to_validate not in parsed:
                logger.warning(
                    "Playlist \"%s\" has been removed on server, local id reset",
                    self.playlist_to_validate.name,
                )
                self.playlist_to_validate.remote_id = ""
            return
        if state.result.error is not None:
            return
        for playlist in state.library.get_remote_playlists():
            if playlist not in parsed:
                logger.info("Playlist <%s> no longer on server", playlist.name)
                state.library.delete_entity(playlist)


class PodcastBuilder(EntityBuilder):
    """Builds podcast channels."""

    root_tag = "podcast"
    kind = EntityKind.PODCAST
    model = Podcast
    scalar_fields = {
        "name": ("title", to_text),
        "title": ("title", to_text),
        "description": ("description", to_text),
        "art": ("artwork_url", to_text),
    }


class PodcastEpisodeBuilder(EntityBuilder):
    """Builds episodes of one podcast."""

    root_tag = "podcast_episode"
    kind = EntityKind.PODCAST_EPISODE
    model = PodcastEpisode
    scalar_fields = {
        "title": ("title", to_text),
        "name": ("title", to_text),
        "description": ("description", to_text),
        "pubdate": ("publish_date", to_pubdate),
        "state": ("episode_state", to_text),
        "filelength": ("duration", to_duration),
        "filesize": ("size", to_byte_count),
        "url": ("url", to_text),
        "art": ("artwork_url", to_text),
    }

    def __init__(self, podcast: Podcast) -> None:
        """Initialize episode builder.

        Args:
            podcast: Channel the episodes belong to
        """
        self.podcast = podcast

    def begin(self, state: ParseState, attrs: Mapping[str, str]) -> Optional[EntityBuffer]:
        """Resolve the episode and attach it to the podcast."""
        buffer = super().begin(state, attrs)
        if buffer is not None:
            buffer.entity.podcast = self.podcast
        return buffer


class CatalogBuilder(EntityBuilder):
    """Builds music folders from catalogs; unlisted folders are deleted."""

    root_tag = "catalog"
    kind = EntityKind.MUSIC_FOLDER
    model = MusicFolder
    scalar_fields = {"name": ("name", to_text)}

    def finish(self, state: ParseState) -> None:
        """Delete folders the server no longer lists."""
        if state.result.error is not None:
            return
        parsed = state.result.parsed_set
        for folder in state.library.get_all(MusicFolder):
            if folder not in parsed:
                logger.info("Music folder <%s> no longer on server", folder.name)
                state.library.delete_entity(folder)


class DirectoryBuilder(EntityBuilder):
    """Builds browsable directories from artist or album elements.

    Directory ids are the element id prefixed with the element name, so an
    artist and an album sharing a numeric id stay distinct. Directories in
    scope that the response no longer lists are deleted.
    """

    kind = EntityKind.DIRECTORY
    model = Directory
    scalar_fields = {
        "name": ("name", to_text),
        "art": ("artwork_url", to_text),
    }

    def __init__(
        self,
        root_tag: str,
        music_folder: Optional[MusicFolder] = None,
        parent: Optional[Directory] = None,
    ) -> None:
        """Initialize directory builder.

        Args:
            root_tag: ``artist`` for indexes, ``album`` for artist directories
            music_folder: Folder owning top-level directories
            parent: Directory owning the built subdirectories
        """
        self.root_tag = root_tag
        self.music_folder = music_folder
        self.parent = parent

    def begin(self, state: ParseState, attrs: Mapping[str, str]) -> Optional[EntityBuffer]:
        """Resolve the directory by its prefixed id."""
        remote_id = attrs.get("id")
        if not remote_id:
            logger.error("Found %s directory with no id", self.root_tag)
            return None
        buffer = super().begin(state, {"id": f"{self.root_tag}-{remote_id}"})
        if buffer is not None:
            directory = buffer.entity
            if self.music_folder is not None:
                directory.music_folder = self.music_folder
            if self.parent is not None:
                directory.parent = self.parent
        return buffer

    def _scope(self) -> List[Directory]:
        if self.parent is not None:
            return list(self.parent.subdirectories)
        if self.music_folder is not None:
            return [
                directory
                for directory in self.music_folder.directories
                if directory.parent is None
            ]
        return []

    def finish(self, state: ParseState) -> None:
        """Delete directories in scope the server no longer lists."""
        if state.result.error is not None:
            return
        parsed = state.result.parsed_set
        for directory in self._scope():
            if directory not in parsed:
                logger.info("Directory <%s> no longer on server", directory.name)
                state.library.delete_entity(directory)


class DirectorySongsBuilder(SongBuilder):
    """Builds the songs listed in one album directory."""

    def __init__(self, directory: Directory) -> None:
        """Initialize directory songs builder.

        Args:
            directory: Directory the songs are filed under
        """
        self.directory = directory

    def begin(self, state: ParseState, attrs: Mapping[str, str]) -> Optional[EntityBuffer]:
        """Resolve the song and file it under the directory."""
        buffer = super().begin(state, attrs)
        if buffer is not None:
            buffer.entity.directory = self.directory
        return buffer


# =========================================================================
# Dispatcher
# =========================================================================


class EntityDispatcher:
    """Routes tokens to the builder whose root tag is currently open."""

    def __init__(self, builders: Sequence[EntityBuilder], state: ParseState) -> None:
        """Initialize dispatcher.

        Args:
            builders: One builder per root tag
            state: Per-call parse state
        """
        self.builders = {builder.root_tag: builder for builder in builders}
        self.state = state
        self._active: Optional[EntityBuilder] = None
        self._buffer: Optional[EntityBuffer] = None
        self._depth = 0
        self._entity_depth = 0

    def start(self, tag: str, attrs: Mapping[str, str]) -> None:
        """Element opened."""
        self._depth += 1
        if self._active is not None:
            # Only direct children carry fields and references
            if self._buffer is not None and self._depth == self._entity_depth + 1:
                self._active.child_start(self.state, self._buffer, tag, attrs)
            return
        builder = self.builders.get(tag)
        if builder is None:
            return
        self._active = builder
        self._entity_depth = self._depth
        self._buffer = builder.begin(self.state, attrs)

    def end(self, tag: str, text: str) -> None:
        """Element closed."""
        depth = self._depth
        self._depth -= 1
        if self._active is None:
            return
        if depth == self._entity_depth:
            if self._buffer is not None:
                self._active.complete(self.state, self._buffer)
            self._active = None
            self._buffer = None
        elif self._buffer is not None and depth == self._entity_depth + 1:
            self._active.child_end(self.state, self._buffer, tag, text)


class StreamDecoder:
    """Decodes responses with a fixed set of entity builders."""

    def __init__(
        self,
        library: LibraryContext,
        builders: Sequence[EntityBuilder],
        sync_wave: Optional[SyncWave] = None,
        notifier: Optional[ParseNotifier] = None,
    ) -> None:
        """Initialize stream decoder.

        Args:
            library: Storage context that receives the entities
            builders: Builder strategies, dispatched by root tag
            sync_wave: Wave linked to newly created entities
            notifier: Called with the entity kind of every finished entity
        """
        self.library = library
        self.builders = list(builders)
        self.sync_wave = sync_wave
        self.notifier = notifier

    def decode(self, body: bytes) -> DecodeResult:
        """Decode one response body.

        Returns:
            Parsed entities and the error envelope, if any

        Raises:
            DecodeError: If the body is not well-formed XML
        """
        state = ParseState(
            library=self.library,
            sync_wave=self.sync_wave,
            notifier=self.notifier,
            result=DecodeResult(),
        )
        error_decoder = ErrorEnvelopeDecoder()
        stream_tokens(body, [error_decoder, EntityDispatcher(self.builders, state)])
        state.result.error = error_decoder.error
        for builder in self.builders:
            builder.finish(state)
        return state.result
