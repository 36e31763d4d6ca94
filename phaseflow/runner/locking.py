"""
Lock management for phaseflow.

Uses flock so that only one process at a time rewrites the state document.
Threads inside one process are serialized separately by the store itself;
flock locks are per open file description, so they do not exclude threads
that each open the lock file.
"""

import atexit
import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


POLL_INTERVAL = 0.05


@contextmanager
def _acquire_lock(lock_file: Path, timeout: float, lock_name: str):
    """
    Internal helper to acquire a file lock.

    Args:
        lock_file: Path to the lock file
        timeout: Seconds to wait for lock
        lock_name: Human-readable name for error messages
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'a+')
    start = time.monotonic()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.monotonic() - start > timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
            time.sleep(POLL_INTERVAL)

    def cleanup():
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
            fd.close()
        except (OSError, ValueError):
            pass

    atexit.register(cleanup)

    try:
        fd.seek(0)
        fd.truncate()
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        atexit.unregister(cleanup)
        cleanup()


@contextmanager
def state_lock(state_path: Path, timeout: float = 30):
    """
    Acquire the cross-process lock guarding a state document.

    The lock file sits next to the document (state.json -> state.json.lock)
    and is never deleted, so every process locks the same inode.
    """
    lock_file = state_path.with_name(state_path.name + ".lock")
    with _acquire_lock(lock_file, timeout, f"state lock for {state_path.name}"):
        yield
