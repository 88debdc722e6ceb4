"""Exceptions raised while talking to an Ampache server."""

from enum import IntEnum
from typing import Optional


class AmpacheErrorCode(IntEnum):
    """Error codes carried by the ``errorCode`` attribute of ``<error>``."""

    ACCESS_CONTROL_NOT_ENABLED = 4700
    RECEIVED_INVALID_HANDSHAKE = 4701
    ACCESS_DENIED = 4703
    NOT_FOUND = 4704
    MISSING = 4705
    DEPRECIATED = 4706
    BAD_REQUEST = 4710
    FAILED_ACCESS_CHECK = 4742

    @classmethod
    def from_code(cls, code: int) -> Optional["AmpacheErrorCode"]:
        """Map a raw code to a known member, or None for unknown codes."""
        try:
            return cls(code)
        except ValueError:
            return None


class AmpacheSyncError(Exception):
    """Base class for all synchronization errors."""

    pass


class TransportError(AmpacheSyncError):
    """The server could not be reached or the HTTP request failed."""

    pass


class DecodeError(AmpacheSyncError):
    """A response body is not well-formed XML."""

    pass


class AuthenticationError(AmpacheSyncError):
    """The handshake did not yield a session token."""

    pass


class ResponseError(AmpacheSyncError):
    """The server answered with an ``<error>`` envelope."""

    def __init__(self, code: int, message: str, url: str = "") -> None:
        """Initialize response error.

        Args:
            code: Numeric error code from the envelope
            message: Error message from the envelope
            url: Cleansed request URL, for reporting
        """
        super().__init__(f"Ampache error {code}: {message}")
        self.code = code
        self.message = message
        self.url = url

    @property
    def error_code(self) -> Optional[AmpacheErrorCode]:
        """Known error code, if any."""
        return AmpacheErrorCode.from_code(self.code)

    @property
    def is_remote_available(self) -> bool:
        """False when the error says the requested entity no longer exists."""
        return self.error_code != AmpacheErrorCode.NOT_FOUND
