"""Per-profile run locking.

A lock is a file holding the PID of the run that owns it. A lock whose PID is
no longer alive is stale and gets reclaimed. PID reuse after a crash is not
detected.
"""
import os
import pathlib
import time
from contextlib import contextmanager
from typing import Optional

import psutil

from . import errors, log

logger = log.get_logger(__name__)

POLL_INTERVAL = 5.0


def read_lock_pid(lock_file: pathlib.Path) -> Optional[int]:
    """PID recorded in `lock_file`, or None if it is missing or unreadable."""
    try:
        return int(lock_file.read_text().strip())
    except (OSError, ValueError):
        return None


def pid_alive(pid: Optional[int]) -> bool:
    """Whether `pid` names a running process. Zombies count as dead."""
    if pid is None or pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


class ProfileLock:
    """PID file lock for one backup profile."""

    def __init__(
        self,
        lock_file: pathlib.Path,
        timeout: float = 300,
        poll_interval: float = POLL_INTERVAL,
    ):
        """Initialize lock.

        Args:
            lock_file: Path of the lock file
            timeout: Seconds to wait for a live holder before giving up
            poll_interval: Seconds between checks while waiting
        """
        self.lock_file = lock_file
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.acquired = False

    def _try_create(self) -> bool:
        try:
            fd = os.open(
                self.lock_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644
            )
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as handle:
            handle.write(f"{os.getpid()}\n")
        return True

    def acquire(self) -> bool:
        """Acquire the lock, waiting for a live holder up to the timeout.

        Returns:
            True once the lock is held

        Raises:
            LockTimeoutError: If a live process still holds the lock after the timeout
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

        waited = 0.0
        while not self._try_create():
            holder = read_lock_pid(self.lock_file)

            if not pid_alive(holder):
                logger.warning(
                    f"Removing stale lock file (PID {holder} no longer running)"
                )
                self.lock_file.unlink(missing_ok=True)
                continue

            if waited >= self.timeout:
                raise errors.LockTimeoutError(
                    f"Lock timeout after {self.timeout:g}s. Another backup "
                    f"(PID {holder}) holds {self.lock_file}"
                )

            logger.warning(
                f"Waiting for lock (PID {holder})... {waited:g}/{self.timeout:g}s"
            )
            time.sleep(self.poll_interval)
            waited += self.poll_interval

        self.acquired = True
        logger.debug(f"Acquired lock: {self.lock_file}")
        return True

    def release(self):
        """Remove the lock file if this process still owns it."""
        if not self.acquired:
            return
        self.acquired = False

        if read_lock_pid(self.lock_file) == os.getpid():
            self.lock_file.unlink(missing_ok=True)
            logger.debug(f"Released lock: {self.lock_file}")
        else:
            logger.warning(f"Lock file no longer owned by this run: {self.lock_file}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


@contextmanager
def profile_lock(
    lock_file: pathlib.Path,
    timeout: float = 300,
    poll_interval: float = POLL_INTERVAL,
):
    """Hold the lock for the duration of the block.

    Raises:
        LockTimeoutError: If unable to acquire the lock
    """
    lock = ProfileLock(lock_file, timeout=timeout, poll_interval=poll_interval)
    try:
        lock.acquire()
        yield lock
    finally:
        lock.release()


def check_lock_status(lock_file: pathlib.Path) -> Optional[dict]:
    """Describe the current holder of `lock_file`.

    Returns:
        Dict with the holder's pid and whether it is alive, None if unlocked
    """
    if not lock_file.exists():
        return None
    pid = read_lock_pid(lock_file)
    return {"pid": pid, "alive": pid_alive(pid), "lock_file": str(lock_file)}
