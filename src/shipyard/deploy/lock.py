"""Single-writer lock for the deployment.

Only one shipyard process may mutate the env file, the snapshot directory
or the running containers at a time. The lock is an ``flock`` on a file in
the deploy root, so it is released by the kernel if the process dies.
"""

from __future__ import annotations

import fcntl
import os
from pathlib import Path
from types import TracebackType

from shipyard.lib.errors import TransitionInProgressError
from shipyard.lib.logging_config import get_logger

logger = get_logger(__name__)


class TransitionLock:
    """Non-blocking exclusive lock held for the duration of a transition.

    Example:
        >>> with TransitionLock(Path(".shipyard.lock")):
        ...     pass
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            TransitionInProgressError: If another process holds it
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            os.close(fd)
            raise TransitionInProgressError(self.path) from exc

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug(f"Acquired lock {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released lock {self.path}")

    def __enter__(self) -> TransitionLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
