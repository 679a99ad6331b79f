"""Advisory, repository-scoped file locks with bounded wait.

Uses fcntl.flock for cross-process synchronization. flock locks belong to
the open file description, so two threads that each open the lock file
also exclude each other.
"""

from __future__ import annotations

import fcntl
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Final

from .errors import LockTimeoutError

_POLL_INTERVAL: Final[float] = 0.02


@contextmanager
def repo_lock(lock_path: Path, timeout: float) -> Iterator[None]:
    """Hold an exclusive lock on ``lock_path`` for the duration of the block.

    Polls with LOCK_NB until ``timeout`` elapses, then raises the retryable
    LockTimeoutError instead of blocking forever. Released on every exit
    path, including exceptions raised inside the block.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout

    with lock_path.open("a") as lock_fd:
        while True:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(lock_path, timeout) from None
                time.sleep(_POLL_INTERVAL)
        try:
            yield
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
