"""
Single-instance lock so two update runs never drive package managers at once.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import fcntl
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional, TextIO, Union

import psutil  # type: ignore[import-untyped]

from ..constants import APP_SLUG
from .logger import get_logger, log_security_event

logger = get_logger(__name__)

MAX_LOCK_AGE_SECONDS = 86400  # a lock older than a day is considered abandoned


class InstanceLockError(Exception):
    """Raised when instance lock operations fail."""
    pass


class InstanceAlreadyRunningError(InstanceLockError):
    """Raised when another instance is already running."""

    def __init__(self, message: str, pid: Optional[int] = None) -> None:
        super().__init__(message)
        self.pid = pid


class InstanceLock:
    """
    File-based instance lock using fcntl.

    Locks left behind by crashed processes are detected with psutil and
    removed automatically.
    """

    def __init__(self, name: str = APP_SLUG, lock_dir: Optional[Union[str, Path]] = None):
        """
        Initialize instance lock.

        Args:
            name: Lock name, used in the lock file name
            lock_dir: Directory for lock files (defaults to the user runtime dir or /tmp)
        """
        self.name = name
        self.lock_file_path = self._get_lock_file_path(lock_dir)
        self.lock_file: Optional[TextIO] = None
        self.locked = False
        self.pid = os.getpid()

    def _get_lock_file_path(self, lock_dir: Optional[Union[str, Path]]) -> Path:
        if lock_dir is None:
            runtime_dir = Path("/run/user") / str(os.getuid())
            if runtime_dir.exists() and os.access(runtime_dir, os.W_OK):
                lock_dir = runtime_dir
            else:
                lock_dir = Path("/tmp")
        lock_dir = Path(lock_dir)
        lock_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        return lock_dir / f".{self.name}.lock"

    def acquire(self, check_stale: bool = True) -> None:
        """
        Acquire the lock without blocking.

        Args:
            check_stale: Whether to check for and clean stale locks

        Raises:
            InstanceAlreadyRunningError: If another instance holds the lock
            InstanceLockError: If the lock file cannot be used
        """
        if self.locked:
            return

        try:
            fd = os.open(str(self.lock_file_path), os.O_CREAT | os.O_RDWR, 0o600)
            self.lock_file = os.fdopen(fd, 'r+')
        except OSError as e:
            raise InstanceLockError(f"Failed to open lock file {self.lock_file_path}: {e}") from e

        try:
            fcntl.flock(self.lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            self._close_lock_file()
            if check_stale and self._check_and_clean_stale_lock():
                self.acquire(check_stale=False)
                return
            existing_pid = self._get_existing_pid()
            log_security_event(
                "MULTIPLE_INSTANCE_ATTEMPT",
                {"existing_pid": existing_pid, "current_pid": self.pid},
                severity="warning"
            )
            raise InstanceAlreadyRunningError(
                f"Another instance of {self.name} is already running (PID: {existing_pid or 'unknown'})",
                pid=existing_pid
            )

        lock_data = {'pid': self.pid, 'timestamp': time.time(), 'name': self.name}
        self.lock_file.seek(0)
        self.lock_file.truncate()
        json.dump(lock_data, self.lock_file)
        self.lock_file.flush()
        os.fsync(self.lock_file.fileno())

        self.locked = True
        logger.debug(f"Acquired instance lock {self.lock_file_path} - PID: {self.pid}")

    def release(self) -> None:
        """Release the lock and remove the lock file."""
        if not self.locked:
            return
        if self.lock_file is not None:
            try:
                fcntl.flock(self.lock_file.fileno(), fcntl.LOCK_UN)
            except OSError:
                pass
        self._close_lock_file()
        try:
            self.lock_file_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug(f"Could not remove lock file: {e}")
        self.locked = False
        logger.debug(f"Released instance lock {self.lock_file_path}")

    def _close_lock_file(self) -> None:
        if self.lock_file is not None:
            try:
                self.lock_file.close()
            except OSError:
                pass
            self.lock_file = None

    def _get_lock_data(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.lock_file_path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError):
            return None
        if isinstance(data, dict) and isinstance(data.get('pid'), int):
            return data
        return None

    def _get_existing_pid(self) -> Optional[int]:
        data = self._get_lock_data()
        return data['pid'] if data else None

    def _check_and_clean_stale_lock(self) -> bool:
        """
        Remove the lock file if its holder is gone or the lock is too old.

        Returns:
            True if a stale lock was cleaned
        """
        lock_data = self._get_lock_data()
        if not lock_data:
            return False

        existing_pid = lock_data['pid']
        age = time.time() - lock_data.get('timestamp', 0)
        stale = age > MAX_LOCK_AGE_SECONDS
        if not stale:
            try:
                stale = not psutil.pid_exists(existing_pid)
            except (psutil.Error, OSError) as e:
                logger.debug(f"Error checking process {existing_pid}: {e}")
                return False

        if not stale:
            return False

        logger.warning(f"Found stale lock from PID {existing_pid}, cleaning up")
        try:
            self.lock_file_path.unlink()
        except OSError as e:
            logger.debug(f"Could not remove stale lock: {e}")
            return False
        return True

    def __enter__(self) -> 'InstanceLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
