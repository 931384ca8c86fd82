"""
State Lock - one engine host mutates the state file at a time.

Each CLI invocation loads, mutates and saves the whole state document, so
two overlapping invocations would lose one of the writes. Hosts hold this
lock for the duration of their load-operate-save cycle.

Cross-platform implementation using file locking:
- Unix (macOS/Linux): fcntl.flock()
- Windows: msvcrt.locking()

The lock is released by the OS when the process terminates, even on
crashes.
"""

import os
import sys
import time
import logging
from pathlib import Path
from typing import IO, Optional

import config
from core.errors import EngineError

logger = logging.getLogger(__name__)

LOCK_FILE = config.USER_DATA_DIR / ".orchard_state.lock"


class StateBusy(EngineError):
    """Another process holds the state lock."""

    error_type = "state_busy"


class StateLock:
    """
    Exclusive, OS-level lock on the state file.

    Usage:
        with StateLock():
            engine.load()
            engine.start_session(25)
    """

    def __init__(self, lock_file: Optional[Path] = None, timeout: float = 5.0,
                 poll_interval: float = 0.05):
        """
        Args:
            lock_file: Path to lock file (default: USER_DATA_DIR/.orchard_state.lock).
            timeout: Seconds to wait for another holder before giving up.
            poll_interval: Seconds between attempts while waiting.
        """
        self.lock_file = lock_file or LOCK_FILE
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._handle: Optional[IO] = None

    @property
    def is_acquired(self) -> bool:
        return self._handle is not None

    def _try_lock(self) -> bool:
        """Single non-blocking attempt. Writes our PID on success."""
        handle = open(self.lock_file, 'a+')
        try:
            if sys.platform == 'win32':
                import msvcrt
                handle.seek(0)
                msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (IOError, OSError):
            handle.close()
            return False
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        return True

    def acquire(self) -> None:
        """
        Take the lock, waiting up to ``timeout`` seconds.

        Raises:
            StateBusy: If another process still holds it after the timeout.
        """
        if self._handle is not None:
            return
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        while True:
            if self._try_lock():
                logger.debug(f"State lock acquired (PID: {os.getpid()})")
                return
            if time.monotonic() >= deadline:
                holder = self.holder_pid()
                holder_info = f" by PID {holder}" if holder else ""
                raise StateBusy(
                    f"State is locked{holder_info}; another Orchard command is running",
                    {"lock_file": str(self.lock_file), "pid": holder},
                )
            time.sleep(self.poll_interval)

    def release(self) -> None:
        """Release the lock. Safe to call when not held."""
        if self._handle is None:
            return
        try:
            if sys.platform == 'win32':
                import msvcrt
                self._handle.seek(0)
                msvcrt.locking(self._handle.fileno(), msvcrt.LK_UNLCK, 1)
            # On Unix, closing the file releases flock automatically
        except (IOError, OSError) as e:
            logger.warning(f"Error releasing state lock: {e}")
        finally:
            self._handle.close()
            self._handle = None
        logger.debug("State lock released")

    def holder_pid(self) -> Optional[int]:
        """PID written by the current holder, if readable."""
        try:
            content = self.lock_file.read_text().strip()
        except (IOError, OSError):
            return None
        return int(content) if content.isdigit() else None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
