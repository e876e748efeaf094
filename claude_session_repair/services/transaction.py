"""
Durable apply layer - lock, backup, atomic replace, rollback.

Every mutation of a session log goes through a LogTransaction:

    IDLE -> LOCKED -> BACKED_UP -> COMMITTED | ROLLED_BACK | DISCARDED

- LOCKED: `<log>.lock` created exclusively (O_CREAT|O_EXCL)
- BACKED_UP: `<log>.tx-backup` (pristine copy) and `<log>.tx-temp` (working copy) exist
- COMMITTED: working copy atomically renamed over the log, backup removed
- ROLLED_BACK: log restored from the backup, working copy removed
- DISCARDED: both copies removed, log left as it is now (nothing was changed)

Error Boundary Pattern:
- The context manager rolls back on ANY exception (including KeyboardInterrupt
  and SystemExit), annotates it with exception notes, then re-raises
- SIGTERM is converted to SystemExit while a transaction is open so the same
  path runs; an atexit hook covers interpreter shutdown
- SIGKILL cannot be intercepted: the backup file survives for manual recovery,
  and the lock goes stale once its holder is gone

Claude Code itself may be appending to the log while we repair it. The lock
only excludes other repair runs; callers re-read the log inside the lock.
"""

from __future__ import annotations

import atexit
import enum
import errno
import json
import logging
import os
import shutil
import signal
import socket
import threading
import time
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import FrameType, TracebackType
from typing import Any

import psutil

from claude_session_repair.exceptions import LockTimeout, TransactionError

__all__ = [
    'BACKUP_SUFFIXES',
    'LogTransaction',
    'SessionFileLock',
    'TransactionState',
    'sweep_backups',
]

logger = logging.getLogger(__name__)

LOCK_SUFFIX = '.lock'
TX_BACKUP_SUFFIX = '.tx-backup'
TX_TEMP_SUFFIX = '.tx-temp'

# Artifacts left behind by repair runs (ours and older repair scripts)
BACKUP_SUFFIXES = ('.backup', '.tx-backup', '.fixed', '.cleaned', '.pre-deep-clean')


def _sibling(path: Path, suffix: str) -> Path:
    return path.with_name(path.name + suffix)


# ==============================================================================
# Lock
# ==============================================================================


class SessionFileLock:
    """
    Exclusive advisory lock on one session log.

    The lock file holds {pid, hostname, lock_id, timestamp}. An existing lock
    is broken only when it is stale: not refreshed for `stale_after` seconds
    AND its holder is verifiably dead. A holder on another host cannot be
    checked, so age alone decides there.
    """

    def __init__(
        self,
        path: Path,
        timeout: float = 5.0,
        stale_after: float = 30.0,
        poll_interval: float = 0.1,
    ) -> None:
        self.path = path
        self.lock_path = _sibling(path, LOCK_SUFFIX)
        self.timeout = timeout
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self.lock_id: str | None = None

    @property
    def is_held(self) -> bool:
        return self.lock_id is not None

    def acquire(self) -> None:
        """
        Create the lock file, waiting up to `timeout` seconds.

        Raises:
            LockTimeout: If a live holder keeps the lock past the timeout
        """
        if self.is_held:
            return
        deadline = time.monotonic() + self.timeout
        lock_id = uuid.uuid4().hex
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self._read_holder()
                if self._is_stale(holder):
                    logger.warning('Breaking stale lock %s (holder: %s)', self.lock_path, holder)
                    self.lock_path.unlink(missing_ok=True)
                    continue
                if time.monotonic() >= deadline:
                    pid = holder.get('pid') if holder else None
                    raise LockTimeout(self.path, self.timeout, pid if isinstance(pid, int) else None) from None
                time.sleep(self.poll_interval)
                continue

            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self._payload(lock_id), f)
            self.lock_id = lock_id
            logger.debug('Acquired lock %s (%s)', self.lock_path, lock_id)
            return

    def refresh(self) -> None:
        """Rewrite the lock timestamp so long-running work is not judged stale."""
        if not self.is_held or self.lock_id is None:
            return
        holder = self._read_holder()
        if holder is None or holder.get('lock_id') != self.lock_id:
            logger.warning('Lock %s is no longer ours, not refreshing', self.lock_path)
            return
        self.lock_path.write_text(json.dumps(self._payload(self.lock_id)), encoding='utf-8')

    def release(self) -> None:
        """Remove the lock file if this instance still owns it."""
        if not self.is_held:
            return
        holder = self._read_holder()
        if holder is not None and holder.get('lock_id') == self.lock_id:
            self.lock_path.unlink(missing_ok=True)
            logger.debug('Released lock %s', self.lock_path)
        else:
            logger.warning('Lock %s was taken over, leaving it in place', self.lock_path)
        self.lock_id = None

    def __enter__(self) -> SessionFileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def _payload(self, lock_id: str) -> dict[str, Any]:
        return {
            'pid': os.getpid(),
            'hostname': socket.gethostname(),
            'lock_id': lock_id,
            'timestamp': time.time(),
        }

    def _read_holder(self) -> dict[str, Any] | None:
        """Lock file contents, None if missing or unreadable (being written, truncated)."""
        try:
            data = json.loads(self.lock_path.read_text(encoding='utf-8'))
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def _is_stale(self, holder: dict[str, Any] | None) -> bool:
        now = time.time()
        if holder is None:
            # Unreadable lock: judge by mtime so a crash mid-write cannot wedge the log
            try:
                mtime = self.lock_path.stat().st_mtime
            except FileNotFoundError:
                return True
            return now - mtime > self.stale_after

        timestamp = holder.get('timestamp')
        if not isinstance(timestamp, (int, float)) or now - timestamp <= self.stale_after:
            return False
        if holder.get('hostname') != socket.gethostname():
            return True
        pid = holder.get('pid')
        return not (isinstance(pid, int) and psutil.pid_exists(pid))


# ==============================================================================
# Transaction
# ==============================================================================


class TransactionState(enum.Enum):
    IDLE = 'idle'
    LOCKED = 'locked'
    BACKED_UP = 'backed_up'
    COMMITTED = 'committed'
    ROLLED_BACK = 'rolled_back'
    DISCARDED = 'discarded'


_TERMINAL_STATES = (
    TransactionState.IDLE,
    TransactionState.COMMITTED,
    TransactionState.ROLLED_BACK,
    TransactionState.DISCARDED,
)


class LogTransaction:
    """
    Backup/commit/rollback around in-place edits of one session log.

    Usage:
        with LogTransaction(path) as tx:
            write_log(tx.working_path, entries)
        # committed on clean exit, rolled back on any exception

    The original file is never written to directly: edits go to the working
    copy and land through a single os.replace.
    """

    def __init__(self, path: Path, lock: SessionFileLock | None = None) -> None:
        self.path = path
        self.lock = lock if lock is not None else SessionFileLock(path)
        self.backup_path = _sibling(path, TX_BACKUP_SUFFIX)
        self.working_path = _sibling(path, TX_TEMP_SUFFIX)
        self.state = TransactionState.IDLE
        self._previous_sigterm: Any = None
        self._sigterm_installed = False
        self._atexit_registered = False

    @property
    def is_open(self) -> bool:
        return self.state not in _TERMINAL_STATES

    def begin(self) -> Path:
        """
        Lock the log and take the backup and working copies.

        Returns:
            Path of the working copy to edit

        Raises:
            LockTimeout: Lock not acquired (state stays IDLE, nothing touched)
            TransactionError: Copy failed (rolled back before raising)
        """
        if self.is_open:
            raise TransactionError(f'Transaction on {self.path} is already open ({self.state.value})')

        self.state = TransactionState.IDLE
        self.lock.acquire()
        self.state = TransactionState.LOCKED
        self._install_guards()

        try:
            shutil.copy2(self.path, self.backup_path)
            shutil.copy2(self.path, self.working_path)
        except OSError as e:
            self.rollback()
            raise TransactionError(f'Could not back up {self.path}: {e}') from e

        self.state = TransactionState.BACKED_UP
        logger.info('Transaction opened on %s (backup: %s)', self.path, self.backup_path.name)
        return self.working_path

    def commit(self) -> None:
        """
        Atomically replace the log with the working copy.

        Raises:
            TransactionError: Replace failed (rolled back before raising)
        """
        if self.state is not TransactionState.BACKED_UP:
            raise TransactionError(f'Cannot commit transaction in state {self.state.value}')

        try:
            os.replace(self.working_path, self.path)
        except OSError as e:
            self.rollback()
            raise TransactionError(f'Could not replace {self.path}: {e}') from e

        self.state = TransactionState.COMMITTED
        self.backup_path.unlink(missing_ok=True)
        self._finish()
        logger.info('Committed repair of %s', self.path)

    def rollback(self) -> None:
        """
        Restore the original log and release the lock. Idempotent.

        Raises:
            TransactionError: Restore failed (rollback_failed=True, backup kept)
        """
        if not self.is_open:
            return

        if self.state is TransactionState.BACKED_UP:
            try:
                os.replace(self.backup_path, self.path)
            except OSError as e:
                self._finish()
                self.state = TransactionState.ROLLED_BACK
                raise TransactionError(
                    f'Rollback of {self.path} failed: {e}',
                    rollback_failed=True,
                    backup_path=self.backup_path,
                ) from e
        else:
            # Copy failed part-way: the original was never touched
            self.backup_path.unlink(missing_ok=True)
        self.working_path.unlink(missing_ok=True)
        self.state = TransactionState.ROLLED_BACK
        self._finish()
        logger.info('Rolled back %s', self.path)

    def discard(self) -> None:
        """
        Close without writing to the log: remove both copies and release the lock.

        For runs that decided to change nothing. The log is not restored from
        the backup, so lines appended since begin() stay in place. Idempotent.
        """
        if not self.is_open:
            return
        self.working_path.unlink(missing_ok=True)
        self.backup_path.unlink(missing_ok=True)
        self.state = TransactionState.DISCARDED
        self._finish()
        logger.info('Closed %s without changes', self.path)

    def refresh_lock(self) -> None:
        self.lock.refresh()

    def __enter__(self) -> LogTransaction:
        self.begin()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is None:
            if self.state is TransactionState.BACKED_UP:
                self.commit()
            return

        # All exceptions (including KeyboardInterrupt, SystemExit)
        if not self.is_open:
            return
        logger.error('Repair of %s failed: %s, performing rollback...', self.path, exc)
        try:
            self.rollback()
        except TransactionError as rollback_error:
            logger.error('Rollback failed: %s', rollback_error)
            exc.add_note(f'Rollback failed: {rollback_error}')
            exc.add_note(f'Backup preserved at: {self.backup_path}')
        else:
            exc.add_note('Rollback completed successfully')

    # --------------------------------------------------------------------------
    # Interruption guards
    # --------------------------------------------------------------------------

    def _install_guards(self) -> None:
        atexit.register(self._rollback_at_exit)
        self._atexit_registered = True
        if threading.current_thread() is threading.main_thread():
            self._previous_sigterm = signal.signal(signal.SIGTERM, self._on_sigterm)
            self._sigterm_installed = True

    def _remove_guards(self) -> None:
        if self._atexit_registered:
            atexit.unregister(self._rollback_at_exit)
            self._atexit_registered = False
        if self._sigterm_installed and threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, self._previous_sigterm)
            self._sigterm_installed = False

    def _finish(self) -> None:
        self._remove_guards()
        self.lock.release()

    def _on_sigterm(self, signum: int, frame: FrameType | None) -> None:
        raise SystemExit(128 + signum)

    def _rollback_at_exit(self) -> None:
        if self.is_open:
            logger.warning('Interpreter exiting with open transaction on %s, rolling back', self.path)
            self.rollback()


# ==============================================================================
# Backup retention
# ==============================================================================


def sweep_backups(
    directory: Path,
    max_age: timedelta = timedelta(days=7),
    suffixes: Iterable[str] = BACKUP_SUFFIXES,
    now: datetime | None = None,
) -> list[Path]:
    """
    Delete repair artifacts older than max_age.

    Args:
        directory: Directory to sweep (not recursive)
        max_age: Minimum age by mtime for deletion
        suffixes: Artifact suffixes to match
        now: Reference time (defaults to current UTC time)

    Returns:
        Paths that were deleted
    """
    if not directory.is_dir():
        return []
    cutoff = (now or datetime.now(UTC)) - max_age
    suffixes = tuple(suffixes)
    deleted: list[Path] = []
    for path in sorted(directory.iterdir()):
        if not path.is_file() or not path.name.endswith(suffixes):
            continue
        if _sibling_lock_held(path):
            continue
        mtime = datetime.fromtimestamp(path.stat().st_mtime, UTC)
        if mtime >= cutoff:
            continue
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            if e.errno == errno.EACCES:
                logger.warning('Cannot delete %s: permission denied', path)
                continue
            raise
        logger.info('Deleted old backup %s', path.name)
        deleted.append(path)
    return deleted


def _sibling_lock_held(artifact: Path) -> bool:
    """True for a .tx-backup whose log is currently locked (a live transaction's backup)."""
    if not artifact.name.endswith(TX_BACKUP_SUFFIX):
        return False
    log_name = artifact.name[: -len(TX_BACKUP_SUFFIX)]
    return artifact.with_name(log_name + LOCK_SUFFIX).exists()
