"""Service initialization shared by the CLI commands.

- init_storage() -> LibraryStorage
- init_session() -> SessionManager
- init_syncer() -> LibrarySyncer
"""

import logging
from typing import Optional

from rich.console import Console

from ...api.client import AmpacheApi, AmpacheTransport
from ...api.session import SessionManager
from ...config import Config, get_config
from ...core.syncer import LibrarySyncer
from ...database.progress_tracker import ProgressCallback, ProgressTracker
from ...database.service import LibraryStorage
from ...models import Credentials
from ...utils.event_log import EventLogger, LogEntry

console = Console()
logger = logging.getLogger(__name__)


class InitializationError(Exception):
    """Raised when a service cannot be initialized."""

    pass


def init_storage(config: Optional[Config] = None) -> LibraryStorage:
    """Open the library database, creating its schema when needed.

    Raises:
        InitializationError: If the database cannot be opened
    """
    if config is None:
        config = get_config()

    try:
        storage = LibraryStorage(db_path=config.database_path)
        if not storage.is_initialized():
            logger.info("Initializing database schema...")
            storage.init_db()
        else:
            storage.run_migrations()
        return storage
    except Exception as e:
        logger.exception("Database initialization failed")
        raise InitializationError(f"Database initialization failed: {e}") from e


def _print_entry(entry: LogEntry) -> None:
    console.print(f"  [red]✗ {entry}[/red]")


def init_session(
    config: Optional[Config] = None, event_logger: Optional[EventLogger] = None
) -> SessionManager:
    """Build a session manager from the configured credentials.

    Raises:
        InitializationError: If credentials are missing
    """
    if config is None:
        config = get_config()
    if not config.has_credentials:
        raise InitializationError(
            "Server credentials missing, set AMPACHE_SYNC_SERVER_URL, "
            "AMPACHE_SYNC_USERNAME and AMPACHE_SYNC_PASSWORD"
        )

    credentials = Credentials.from_password(
        str(config.server_url), str(config.username), str(config.password)
    )
    return SessionManager(
        credentials=credentials,
        transport=AmpacheTransport(timeout=config.request_timeout),
        safety_margin=config.session_safety_margin,
        event_logger=event_logger,
    )


def init_syncer(
    config: Optional[Config] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> LibrarySyncer:
    """Wire storage, session, API client and syncer together."""
    if config is None:
        config = get_config()

    event_logger = EventLogger(sink=_print_entry)
    storage = init_storage(config)
    session = init_session(config, event_logger)
    return LibrarySyncer(
        storage=storage,
        api=AmpacheApi(session),
        event_logger=event_logger,
        progress=ProgressTracker(callback=progress_callback),
        concurrency=config.concurrency,
        poll_count=config.poll_count,
    )
