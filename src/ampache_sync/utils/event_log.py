"""Structured error reporting for sync operations."""

import logging
import threading
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..api.errors import AuthenticationError, ResponseError, TransportError

logger = logging.getLogger(__name__)


@dataclass
class LogEntry:
    """One reported problem.

    Attributes:
        kind: ``api``, ``transport``, ``auth`` or ``internal``
        message: Human readable description
        context: What the syncer was doing
        status_code: Ampache error code, 0 when not applicable
        created_at: When the problem was reported
    """

    kind: str
    message: str
    context: str = ""
    status_code: int = 0
    created_at: datetime = dataclass_field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert entry to dictionary for serialization."""
        return {
            "kind": self.kind,
            "message": self.message,
            "context": self.context,
            "status_code": self.status_code,
            "created_at": self.created_at.isoformat(),
        }

    def __str__(self) -> str:
        """String representation of the entry."""
        code = f" ({self.status_code})" if self.status_code else ""
        prefix = f"{self.context}: " if self.context else ""
        return f"[{self.kind}]{code} {prefix}{self.message}"


ErrorSink = Callable[[LogEntry], None]


class EventLogger:
    """Collects reported errors and forwards them to an optional sink."""

    def __init__(self, sink: Optional[ErrorSink] = None, max_entries: int = 500) -> None:
        """Initialize event logger.

        Args:
            sink: Called with every new entry
            max_entries: Oldest entries are dropped beyond this size
        """
        self.sink = sink
        self.max_entries = max_entries
        self._entries: List[LogEntry] = []
        self._lock = threading.Lock()

    @property
    def entries(self) -> List[LogEntry]:
        """Reported entries, oldest first."""
        with self._lock:
            return list(self._entries)

    def report(self, error: Exception, context: str = "") -> LogEntry:
        """Record an error.

        Args:
            error: The exception that occurred
            context: What was being synced

        Returns:
            The recorded entry
        """
        if isinstance(error, ResponseError):
            entry = LogEntry("api", error.message, context, error.code)
        elif isinstance(error, AuthenticationError):
            entry = LogEntry("auth", str(error), context)
        elif isinstance(error, TransportError):
            entry = LogEntry("transport", str(error), context)
        else:
            entry = LogEntry("internal", str(error), context)

        if entry.kind == "transport":
            logger.warning("%s", entry)
        else:
            logger.error("%s", entry)

        with self._lock:
            self._entries.append(entry)
            del self._entries[: -self.max_entries]

        if self.sink is not None:
            try:
                self.sink(entry)
            except Exception as e:
                logger.error("Error in error sink: %s", e)
        return entry

    def clear(self) -> None:
        """Forget all entries."""
        with self._lock:
            self._entries.clear()
