"""
Graceful interruption handling.

The ShutdownManager owns the process's SIGINT/SIGTERM handlers. Work that
must not be left half-recorded (an in-flight phase) registers a take-down
action before it starts and unregisters it when it finishes. On a signal
every registered take-down runs, newest first, and the scheduler stops
launching new work.
"""

import itertools
import logging
import signal
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class ShutdownManager:
    """Registry of take-down actions triggered by an operator abort."""

    def __init__(self):
        self._lock = threading.Lock()
        self._takedowns: dict[int, tuple[str, Callable[[], None]]] = {}
        self._ids = itertools.count(1)
        self._event = threading.Event()
        self._original_handlers: dict[int, object] = {}

    @property
    def shutting_down(self) -> bool:
        return self._event.is_set()

    def register(self, description: str, action: Callable[[], None]) -> int:
        """Register a take-down; returns a handle for unregister()."""
        with self._lock:
            handle = next(self._ids)
            self._takedowns[handle] = (description, action)
        return handle

    def unregister(self, handle: int) -> None:
        with self._lock:
            self._takedowns.pop(handle, None)

    def install(self) -> None:
        """Install signal handlers. Only valid from the main thread."""
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._original_handlers[signum] = signal.signal(signum, self._handle_signal)

    def restore(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)
        self._original_handlers.clear()

    def _handle_signal(self, signum, _frame) -> None:
        if self.shutting_down:
            logger.warning("Second interrupt received, exiting immediately")
            raise KeyboardInterrupt
        logger.warning(f"Received {signal.Signals(signum).name}, shutting down")
        self.shutdown()

    def shutdown(self) -> None:
        """Run every registered take-down (newest first) exactly once."""
        self._event.set()
        with self._lock:
            pending = sorted(self._takedowns.items(), reverse=True)
            self._takedowns.clear()

        for _handle, (description, action) in pending:
            logger.info(f"Take-down: {description}")
            try:
                action()
            except Exception as e:
                # Remaining take-downs still have to run
                logger.error(f"Take-down '{description}' failed: {e}")

    def __enter__(self) -> "ShutdownManager":
        self.install()
        return self

    def __exit__(self, *exc) -> None:
        self.restore()
