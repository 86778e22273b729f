import os
import time
import fcntl
from contextlib import contextmanager

from .logging import logger
from .exceptions import LockHeld


class InvocationLock:
    """Node-wide exclusive lock over a file. Only one process at a time attaches or detaches disks."""

    def __init__(self, path):
        self.path = str(path)
        self._file = None

    @property
    def locked(self) -> bool:
        return self._file is not None

    def try_lock(self) -> bool:
        """Take the lock without waiting. False if another holder has it."""
        f = open(self.path, "a+")
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            f.close()
            return False
        f.truncate(0)
        f.write(f"{os.getpid()}\n")
        f.flush()
        self._file = f
        return True

    def release(self):
        if self._file is None:
            return
        try:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        finally:
            self._file.close()
            self._file = None


@contextmanager
def invocation_lock(path, backoff: float):
    """
    Hold the node lock for the duration of the block.
    When it is taken, sleep `backoff` seconds before failing, so the orchestrator retries at a slow pace
    instead of piling up failing invocations.
    """
    lock = InvocationLock(path)
    if not lock.try_lock():
        logger.warning(f"{path} is held by another process, backing off for {backoff}s")
        time.sleep(backoff)
        raise LockHeld(path=str(path))
    try:
        yield lock
    finally:
        lock.release()
