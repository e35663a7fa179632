"""
Advisory file locking for the registry.

Several shells may run ``remote`` at once against the same registry file.
Each read-modify-write holds an exclusive ``flock`` on a sibling
``.lock`` file; the lock file itself is left in place so it can be
inspected (it records the holder's pid).
"""

from __future__ import annotations

import errno
import fcntl
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from remote.base.exceptions import LockTimeoutError

_POLL_INTERVAL = 0.05


@contextmanager
def exclusive_lock(lock_path: Path, timeout: float = 10.0) -> Iterator[float]:
    """Hold an exclusive advisory lock on *lock_path* for the ``with`` body.

    Args:
        lock_path: Lock file; created (with parents) when missing.
        timeout: Seconds to wait for a competing holder before giving up.

    Yields:
        Seconds spent waiting for the lock.

    Raises:
        LockTimeoutError: If the lock is still held by someone else after
            *timeout* seconds.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    started = time.monotonic()
    deadline = started + timeout
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError as exc:
                if exc.errno not in (errno.EAGAIN, errno.EACCES):
                    raise
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(
                        f"Timed out after {timeout:.1f}s waiting for {lock_path}; "
                        "another remote command is still running"
                    ) from None
                time.sleep(_POLL_INTERVAL)
        try:
            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode())
            yield time.monotonic() - started
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
