"""Cross-process lock for the shared pf configuration.

pf.conf and the live pf ruleset are host-wide singletons. Every mutating
sequence (backup, write, validate, reload) runs under an exclusive flock
on a well-known path so concurrent limawan runs queue instead of
interleaving edits.
"""

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from limawan.core.exceptions import ConfigIOError, ResourceBusyError
from limawan.core.output import Console, console as default_console


DEFAULT_LOCK_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 0.1


class ConfigLock:
    """Exclusive, bounded-wait lock on a lock file.

    Usage:
        lock = ConfigLock(Path("/var/run/limawan.lock"), timeout=30)
        with lock.hold():
            ...  # mutate pf.conf

    The lock is released on every exit path, including exceptions.
    """

    def __init__(
        self,
        path: Path,
        *,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        console: Optional[Console] = None,
    ) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._console = console or default_console
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        """True while this instance holds the lock."""
        return self._fd is not None

    def acquire(self) -> None:
        """Acquire the lock, polling until the timeout expires.

        Raises:
            ResourceBusyError: If another process holds the lock past the timeout
            ConfigIOError: If the lock file cannot be opened
        """
        if self._fd is not None:
            return

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise ConfigIOError(
                f"Cannot open lock file: {self.path}",
                path=self.path,
                hint="Run as root or point lock.path at a writable location",
                details=[str(e)],
            ) from e

        deadline = time.monotonic() + self.timeout
        waited = False

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise ResourceBusyError(
                        f"pf configuration is locked by another process ({self.path})",
                        lock_path=self.path,
                        timeout=self.timeout,
                        details=[f"Waited {self.timeout:g}s for the lock"],
                    )
                if not waited:
                    self._console.info("Waiting for another limawan run to finish...")
                    waited = True
                time.sleep(self.poll_interval)

        # Record the holder for operators inspecting a stuck lock
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())

        self._fd = fd
        self._console.debug(f"Acquired lock {self.path}")

    def release(self) -> None:
        """Release the lock if held."""
        if self._fd is None:
            return

        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        self._console.debug(f"Released lock {self.path}")

    @contextmanager
    def hold(self) -> Generator["ConfigLock", None, None]:
        """Context manager holding the lock for the duration of the block."""
        self.acquire()
        try:
            yield self
        finally:
            self.release()
