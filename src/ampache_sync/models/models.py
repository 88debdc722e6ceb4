"""Value models exchanged with the Ampache server."""

import hashlib
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


def sha256_hex(value: str) -> str:
    """Hex encoded SHA-256 digest of a UTF-8 string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class Credentials(BaseModel):
    """Login data for an Ampache server."""

    model_config = ConfigDict(frozen=True)

    server_url: str
    username: str
    password_hash: str  # sha256 hex digest of the password

    @field_validator("server_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        """Normalize the server URL."""
        value = value.strip()
        if not value:
            raise ValueError("server_url must not be empty")
        return value.rstrip("/")

    @classmethod
    def from_password(cls, server_url: str, username: str, password: str) -> "Credentials":
        """Build credentials from a clear-text password."""
        return cls(
            server_url=server_url,
            username=username,
            password_hash=sha256_hex(password),
        )

    def passphrase(self, timestamp: int) -> str:
        """Handshake passphrase: ``sha256(timestamp + sha256(password))``."""
        return sha256_hex(f"{timestamp}{self.password_hash}")

    def __repr__(self) -> str:
        """String representation without secrets."""
        return f"Credentials(server_url={self.server_url!r}, username={self.username!r})"


class LibraryCounts(BaseModel):
    """Entity counts reported by the handshake."""

    songs: int = 0
    albums: int = 0
    artists: int = 0
    genres: int = 0
    playlists: int = 0
    podcasts: int = 0
    catalogs: int = 0


class AuthHandshake(BaseModel):
    """Result of a successful handshake."""

    token: str
    session_expire: datetime
    api_version: Optional[str] = None
    date_of_last_update: datetime
    date_of_last_add: datetime
    date_of_last_clean: datetime
    counts: LibraryCounts = LibraryCounts()

    @property
    def api_version_number(self) -> int:
        """Numeric server API version, 0 when unknown."""
        try:
            return int(self.api_version or 0)
        except ValueError:
            return 0
