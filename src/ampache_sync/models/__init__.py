"""Value models for the Ampache sync application."""

from .models import AuthHandshake, Credentials, LibraryCounts, sha256_hex

__all__ = [
    "AuthHandshake",
    "Credentials",
    "LibraryCounts",
    "sha256_hex",
]
