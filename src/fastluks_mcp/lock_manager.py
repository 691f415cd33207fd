"""
Single-instance locking for provisioning runs.

The mutex is a directory: creating it is atomic, so whoever creates it owns
the lock and records its PID in a file inside. A lock whose recorded PID is
no longer alive is stale and gets reclaimed. Checking, reclaiming and
creating the directory all happen under an flock on a guard file beside it.

Usage:
    with LockManager(config.lock_dir) as lock:
        engine.run()
"""

import atexit
import fcntl
import logging
import os
import shutil
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from .errors import LockFail, SignalReceived

logger = logging.getLogger(__name__)

DEFAULT_LOCK_DIR = Path("/var/run/fast_luks")
PID_FILENAME = "fast-luks-encryption.pid"
GUARD_SUFFIX = ".guard"

# Signals that release the lock before exiting: HUP, INT, QUIT, TERM
HANDLED_SIGNALS = (signal.SIGHUP, signal.SIGINT, signal.SIGQUIT, signal.SIGTERM)


@dataclass
class LockRecord:
    """A held lock: the owning PID and the lock directory."""

    pid: int
    lock_dir: Path

    @property
    def pid_file(self) -> Path:
        return self.lock_dir / PID_FILENAME


def is_process_alive(pid: int) -> bool:
    """Check if a process is still running."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)  # Signal 0 just checks if process exists
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    except OSError:
        return False
    return True


def read_lock_holder(lock_dir: Union[str, Path]) -> Optional[int]:
    """Return the PID recorded in a lock directory, or None if unreadable."""
    pid_file = Path(lock_dir) / PID_FILENAME
    try:
        return int(pid_file.read_text().strip())
    except (OSError, ValueError):
        return None


class LockManager:
    """
    Process-wide mutual exclusion via a lock directory and PID file.

    At most one valid lock exists per host: the directory exists and the
    PID inside it belongs to a live process.
    """

    def __init__(self, lock_dir: Union[str, Path] = DEFAULT_LOCK_DIR, max_reclaims: int = 3):
        """
        Initialize lock manager.

        Args:
            lock_dir: Lock directory path
            max_reclaims: Stale locks to reclaim before giving up
        """
        self.lock_dir = Path(lock_dir)
        self.max_reclaims = max_reclaims
        self.record: Optional[LockRecord] = None
        self._previous_handlers: Dict[int, object] = {}
        self._atexit_registered = False

    @property
    def pid_file(self) -> Path:
        return self.lock_dir / PID_FILENAME

    @property
    def guard_file(self) -> Path:
        """Serializes lock directory changes between processes; never removed."""
        return self.lock_dir.with_name(f"{self.lock_dir.name}{GUARD_SUFFIX}")

    @property
    def held(self) -> bool:
        return self.record is not None

    def acquire(self) -> LockRecord:
        """
        Acquire the lock, reclaiming it from a dead holder if necessary.

        Every inspection and change of the lock directory happens while the
        guard file is flocked, so a stale lock can only be reclaimed by one
        process and only while it still records the dead PID.

        Returns:
            LockRecord for this process

        Raises:
            LockFail: If a live process holds the lock or ownership is ambiguous
        """
        if self.record is not None:
            return self.record

        self.lock_dir.parent.mkdir(parents=True, exist_ok=True)
        reclaims = 0

        while True:
            with self._guard():
                try:
                    self.lock_dir.mkdir()
                except FileExistsError:
                    other_pid = read_lock_holder(self.lock_dir)
                    self._check_holder(other_pid)

                    if reclaims >= self.max_reclaims:
                        raise LockFail(
                            f"Gave up reclaiming {self.lock_dir} after {reclaims} attempts",
                            holder_pid=other_pid,
                        )

                    reclaims += 1
                    logger.debug(f"Removing stale lock of nonexistent PID {other_pid}")
                    shutil.rmtree(self.lock_dir, ignore_errors=True)
                    continue

                self.record = LockRecord(pid=os.getpid(), lock_dir=self.lock_dir)
                # Handlers go in before the PID is written so a failed write still cleans up
                self._install_handlers()
                try:
                    self.pid_file.write_text(f"{self.record.pid}\n")
                except OSError:
                    self.release()
                    raise

            logger.info(f"Acquired lock {self.lock_dir} (PID {self.record.pid})")
            return self.record

    def _check_holder(self, other_pid: Optional[int]) -> None:
        """Raise LockFail unless the recorded holder is provably dead."""
        if other_pid is None:
            # PID file missing or corrupt; ownership is ambiguous
            logger.error(f"Another script instance is active: lock {self.lock_dir}")
            raise LockFail(f"Lock {self.lock_dir} is held by another instance")

        if is_process_alive(other_pid):
            logger.error(f"Lock failed, PID {other_pid} is active")
            logger.error(
                f"If you're sure no other instance is running, "
                f"you can remove {self.lock_dir} and restart"
            )
            raise LockFail(f"Lock failed, PID {other_pid} is active", holder_pid=other_pid)

    @contextmanager
    def _guard(self):
        """Hold an exclusive flock on the guard file beside the lock directory."""
        with open(self.guard_file, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def release(self) -> None:
        """Remove the lock directory if this process holds it. Idempotent."""
        if self.record is None:
            return

        record = self.record
        self.record = None
        self._restore_handlers()

        # A forked child must never remove its parent's lock
        if record.pid != os.getpid():
            return

        try:
            shutil.rmtree(record.lock_dir)
            logger.debug(f"Removed lock {record.lock_dir}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove lock {record.lock_dir}: {e}")

    def _handle_signal(self, signum, frame):
        logger.debug("Killed by signal.")
        raise SignalReceived(signum)

    def _install_handlers(self) -> None:
        if not self._atexit_registered:
            atexit.register(self.release)
            self._atexit_registered = True

        # signal.signal only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return

        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _restore_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers.clear()

    def __enter__(self) -> "LockManager":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
