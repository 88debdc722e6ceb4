"""Ampache XML API access: transport, errors and response decoding.

Session handling lives in ``api.session`` and decoding in ``api.decoder``;
import them from there.
"""

from .client import AmpacheApi, AmpacheTransport, cleanse_url
from .errors import (
    AmpacheErrorCode,
    AmpacheSyncError,
    AuthenticationError,
    DecodeError,
    ResponseError,
    TransportError,
)

__all__ = [
    "AmpacheApi",
    "AmpacheTransport",
    "cleanse_url",
    "AmpacheErrorCode",
    "AmpacheSyncError",
    "AuthenticationError",
    "DecodeError",
    "ResponseError",
    "TransportError",
]
