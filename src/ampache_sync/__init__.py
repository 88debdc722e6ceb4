"""Ampache library sync.

Incremental, resumable synchronization of an Ampache music server's library
into a local SQLite database.
"""

__version__ = "1.0.0"
__author__ = "Anton"
__email__ = ""

from .config import Config, get_config

__all__ = ["Config", "get_config", "__version__"]
