"""Handshake authentication and session state."""

import logging
import time
from datetime import timedelta
from typing import Dict, Mapping, Optional

from ..database.models import utcnow
from ..database.sync_wave import ChangeSnapshot
from ..models import AuthHandshake, Credentials, LibraryCounts
from ..utils.event_log import EventLogger
from .client import (
    CLIENT_API_VERSION,
    PODCAST_MIN_API_VERSION,
    AmpacheTransport,
    api_url,
)
from .decoder import ErrorEnvelopeDecoder, stream_tokens, to_datetime, to_int
from .errors import AmpacheSyncError, AuthenticationError

logger = logging.getLogger(__name__)

_COUNT_TAGS = ("songs", "albums", "artists", "genres", "playlists", "podcasts", "catalogs")


class HandshakeDecoder:
    """Collects the direct children of the handshake root element."""

    def __init__(self) -> None:
        """Initialize handshake decoder."""
        self.fields: Dict[str, str] = {}
        self._depth = 0

    def start(self, tag: str, attrs: Mapping[str, str]) -> None:
        """Element opened."""
        self._depth += 1

    def end(self, tag: str, text: str) -> None:
        """Element closed."""
        if self._depth == 2:
            self.fields[tag] = text
        self._depth -= 1


def parse_handshake(body: bytes) -> AuthHandshake:
    """Decode a handshake response.

    Raises:
        AuthenticationError: If the server rejected the handshake
        DecodeError: If the body is not well-formed XML
    """
    error_decoder = ErrorEnvelopeDecoder()
    handshake_decoder = HandshakeDecoder()
    stream_tokens(body, [error_decoder, handshake_decoder])

    error = error_decoder.error
    if error is not None:
        raise AuthenticationError(f"Handshake rejected ({error.code}): {error.message}")

    fields = handshake_decoder.fields
    token = fields.get("auth", "")
    if not token:
        raise AuthenticationError("Handshake response carries no auth token")

    return AuthHandshake(
        token=token,
        session_expire=to_datetime(fields.get("session_expire")),
        api_version=fields.get("api") or None,
        date_of_last_update=to_datetime(fields.get("update")),
        date_of_last_add=to_datetime(fields.get("add")),
        date_of_last_clean=to_datetime(fields.get("clean")),
        counts=LibraryCounts(**{tag: to_int(fields.get(tag)) for tag in _COUNT_TAGS}),
    )


class SessionManager:
    """Owns the credentials and the current session token.

    ``ensure_authenticated`` is not serialized: two workers seeing an expired
    session at the same time both run a handshake and the last one wins. Both
    tokens are valid on the server, so this only costs one extra request.
    """

    def __init__(
        self,
        credentials: Optional[Credentials] = None,
        transport: Optional[AmpacheTransport] = None,
        safety_margin: float = 10.0,
        event_logger: Optional[EventLogger] = None,
    ) -> None:
        """Initialize session manager.

        Args:
            credentials: Login data; without it no session can be created
            transport: HTTP transport for the handshake
            safety_margin: Seconds before expiry a session counts as expired
            event_logger: Receives handshake failures
        """
        self.credentials = credentials
        self.transport = transport or AmpacheTransport()
        self.safety_margin = safety_margin
        self.event_logger = event_logger
        self._handshake: Optional[AuthHandshake] = None

    @property
    def handshake(self) -> Optional[AuthHandshake]:
        """Result of the last successful handshake."""
        return self._handshake

    @property
    def token(self) -> Optional[str]:
        """Current session token."""
        return self._handshake.token if self._handshake else None

    @property
    def api_url(self) -> Optional[str]:
        """XML API endpoint of the configured server."""
        return api_url(self.credentials.server_url) if self.credentials else None

    @property
    def counts(self) -> LibraryCounts:
        """Entity counts of the last handshake; zeros without a session."""
        return self._handshake.counts if self._handshake else LibraryCounts()

    def change_snapshot(self) -> ChangeSnapshot:
        """Change dates of the last handshake; now without a session."""
        if self._handshake is None:
            return ChangeSnapshot.now()
        return ChangeSnapshot(
            date_of_last_update=self._handshake.date_of_last_update,
            date_of_last_add=self._handshake.date_of_last_add,
            date_of_last_clean=self._handshake.date_of_last_clean,
        )

    def supports_podcasts(self) -> bool:
        """Whether the server API version supports podcasts."""
        if self._handshake is None:
            return False
        return self._handshake.api_version_number >= PODCAST_MIN_API_VERSION

    def is_authenticated(self) -> bool:
        """Whether a token exists and is not about to expire."""
        if self._handshake is None:
            return False
        deadline = self._handshake.session_expire - timedelta(seconds=self.safety_margin)
        return utcnow() < deadline

    def authenticate(self) -> bool:
        """Run a handshake.

        Failures are reported to the event logger and clear the session.

        Returns:
            True if a session token was obtained
        """
        if self.credentials is None:
            logger.warning("No credentials configured, cannot authenticate")
            return False

        timestamp = int(time.time())
        params = {
            "action": "handshake",
            "auth": self.credentials.passphrase(timestamp),
            "timestamp": timestamp,
            "version": CLIENT_API_VERSION,
            "user": self.credentials.username,
        }
        try:
            body = self.transport.get(api_url(self.credentials.server_url), params)
            self._handshake = parse_handshake(body)
        except AmpacheSyncError as e:
            self._handshake = None
            if self.event_logger is not None:
                self.event_logger.report(e, "handshake")
            else:
                logger.error("Handshake failed: %s", e)
            return False

        logger.info(
            "Authenticated as %s (api %s, session until %s)",
            self.credentials.username,
            self._handshake.api_version,
            self._handshake.session_expire,
        )
        return True

    def ensure_authenticated(self) -> bool:
        """Authenticate unless the current session is still valid."""
        if self.is_authenticated():
            return True
        return self.authenticate()

    def invalidate(self) -> None:
        """Forget the current session."""
        self._handshake = None
