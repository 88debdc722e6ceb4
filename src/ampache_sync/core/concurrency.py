"""Bounded concurrency for paginated batch fetches."""

import logging
import threading
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class BoundedSlotPool:
    """Fixed-capacity slot pool.

    ``acquire_slot`` blocks until fewer than ``capacity`` tasks are running,
    ``release_slot`` frees one, and ``await_all_complete`` blocks until every
    started task has released its slot. All counters live behind one
    condition variable.
    """

    def __init__(self, capacity: int = 5) -> None:
        """Initialize slot pool.

        Args:
            capacity: Maximum number of concurrently running tasks

        Raises:
            ValueError: If capacity is smaller than 1
        """
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._condition = threading.Condition()
        self._running = 0
        self._errors: List[BaseException] = []

    @property
    def running(self) -> int:
        """Tasks started but not yet finished."""
        with self._condition:
            return self._running

    @property
    def errors(self) -> List[BaseException]:
        """Exceptions raised by tasks run through ``submit``."""
        with self._condition:
            return list(self._errors)

    def acquire_slot(self) -> None:
        """Block until a slot is free, then mark one task as started."""
        with self._condition:
            while self._running >= self.capacity:
                self._condition.wait()
            self._running += 1

    def release_slot(self) -> None:
        """Mark a task as finished and free its slot.

        Raises:
            RuntimeError: If no task is running
        """
        with self._condition:
            if self._running == 0:
                raise RuntimeError("release_slot called without a running task")
            self._running -= 1
            self._condition.notify_all()

    def await_all_complete(self) -> None:
        """Block until every started task has finished."""
        with self._condition:
            while self._running > 0:
                self._condition.wait()

    def submit(self, func: Callable[..., Any], *args: Any) -> threading.Thread:
        """Run ``func(*args)`` on a worker thread once a slot is free.

        Blocks the caller until a slot is acquired. The slot is released when
        the function returns or raises; exceptions are collected in
        ``errors``.

        Returns:
            The started worker thread
        """
        self.acquire_slot()

        def worker() -> None:
            try:
                func(*args)
            except Exception as e:
                logger.error("Batch task failed: %s", e)
                with self._condition:
                    self._errors.append(e)
            finally:
                self.release_slot()

        thread = threading.Thread(target=worker, daemon=True)
        try:
            thread.start()
        except Exception:
            self.release_slot()
            raise
        return thread
