"""Tests for the session lock, the backup/commit/rollback transaction, and backup sweeping."""

from __future__ import annotations

import json
import os
import socket
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from claude_session_repair.exceptions import LockTimeout, TransactionError
from claude_session_repair.services import transaction
from claude_session_repair.services.transaction import (
    LogTransaction,
    SessionFileLock,
    TransactionState,
    sweep_backups,
)

ORIGINAL = b'{"type":"user","message":{"role":"user","content":"hi"}}\n'


@pytest.fixture
def log(tmp_path: Path) -> Path:
    path = tmp_path / 'session.jsonl'
    path.write_bytes(ORIGINAL)
    return path


def _write_lock(log: Path, *, pid: int, hostname: str, age: float) -> Path:
    lock_path = log.with_name(log.name + '.lock')
    lock_path.write_text(
        json.dumps({'pid': pid, 'hostname': hostname, 'lock_id': 'other', 'timestamp': time.time() - age})
    )
    return lock_path


def _leftovers(log: Path) -> list[str]:
    return sorted(p.name for p in log.parent.iterdir() if p != log)


# ==============================================================================
# Lock
# ==============================================================================


def test_lock_file_records_holder(log: Path) -> None:
    lock = SessionFileLock(log)
    lock.acquire()

    holder = json.loads(lock.lock_path.read_text())
    assert holder['pid'] == os.getpid()
    assert holder['hostname'] == socket.gethostname()
    assert holder['lock_id'] == lock.lock_id

    lock.release()
    assert not lock.lock_path.exists()


def test_second_lock_times_out(log: Path) -> None:
    with SessionFileLock(log):
        contender = SessionFileLock(log, timeout=0.2, poll_interval=0.05)
        with pytest.raises(LockTimeout) as exc_info:
            contender.acquire()

    assert exc_info.value.holder_pid == os.getpid()
    assert not contender.is_held


def test_stale_lock_of_dead_holder_is_broken(log: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(transaction.psutil, 'pid_exists', lambda pid: False)
    _write_lock(log, pid=999_999, hostname=socket.gethostname(), age=120)

    lock = SessionFileLock(log, timeout=0.2, stale_after=30)
    lock.acquire()

    assert lock.is_held
    lock.release()


def test_old_lock_of_live_holder_is_respected(log: Path) -> None:
    _write_lock(log, pid=os.getpid(), hostname=socket.gethostname(), age=120)

    with pytest.raises(LockTimeout):
        SessionFileLock(log, timeout=0.2, stale_after=30, poll_interval=0.05).acquire()


def test_recent_lock_of_dead_holder_is_respected(log: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(transaction.psutil, 'pid_exists', lambda pid: False)
    _write_lock(log, pid=999_999, hostname=socket.gethostname(), age=1)

    with pytest.raises(LockTimeout):
        SessionFileLock(log, timeout=0.2, stale_after=30, poll_interval=0.05).acquire()


def test_old_lock_from_other_host_is_broken(log: Path) -> None:
    _write_lock(log, pid=os.getpid(), hostname='some-other-host.invalid', age=120)

    lock = SessionFileLock(log, timeout=0.2, stale_after=30)
    lock.acquire()

    assert lock.is_held
    lock.release()


def test_unreadable_old_lock_is_broken(log: Path) -> None:
    lock_path = log.with_name(log.name + '.lock')
    lock_path.write_text('{"pid": 12')
    old = time.time() - 120
    os.utime(lock_path, (old, old))

    lock = SessionFileLock(log, timeout=0.2, stale_after=30)
    lock.acquire()

    assert lock.is_held
    lock.release()


def test_release_leaves_foreign_lock(log: Path) -> None:
    lock = SessionFileLock(log)
    lock.acquire()
    _write_lock(log, pid=os.getpid(), hostname=socket.gethostname(), age=0)

    lock.release()

    assert lock.lock_path.exists()
    assert not lock.is_held


def test_refresh_updates_timestamp(log: Path) -> None:
    lock = SessionFileLock(log)
    lock.acquire()
    payload = json.loads(lock.lock_path.read_text())
    payload['timestamp'] -= 100
    lock.lock_path.write_text(json.dumps(payload))

    lock.refresh()

    assert json.loads(lock.lock_path.read_text())['timestamp'] > time.time() - 5
    lock.release()


# ==============================================================================
# Transaction
# ==============================================================================


def test_commit_replaces_log_and_cleans_up(log: Path) -> None:
    with LogTransaction(log) as tx:
        assert tx.state is TransactionState.BACKED_UP
        assert tx.working_path.read_bytes() == ORIGINAL
        tx.working_path.write_text('repaired\n')

    assert tx.state is TransactionState.COMMITTED
    assert log.read_text() == 'repaired\n'
    assert _leftovers(log) == []


def test_exception_rolls_back(log: Path) -> None:
    with pytest.raises(RuntimeError) as exc_info:
        with LogTransaction(log) as tx:
            tx.working_path.write_text('half-written')
            raise RuntimeError('boom')

    assert tx.state is TransactionState.ROLLED_BACK
    assert log.read_bytes() == ORIGINAL
    assert _leftovers(log) == []
    assert 'Rollback completed successfully' in exc_info.value.__notes__


def test_keyboard_interrupt_rolls_back(log: Path) -> None:
    with pytest.raises(KeyboardInterrupt):
        with LogTransaction(log) as tx:
            tx.working_path.write_text('half-written')
            raise KeyboardInterrupt

    assert log.read_bytes() == ORIGINAL
    assert _leftovers(log) == []


def test_rollback_is_idempotent(log: Path) -> None:
    tx = LogTransaction(log)
    tx.begin()

    tx.rollback()
    tx.rollback()

    assert tx.state is TransactionState.ROLLED_BACK
    assert log.read_bytes() == ORIGINAL
    assert _leftovers(log) == []


def test_discard_keeps_lines_appended_during_the_transaction(log: Path) -> None:
    tx = LogTransaction(log)
    tx.begin()
    appended = b'{"type":"assistant","message":{"role":"assistant","content":"hello"}}\n'
    with open(log, 'ab') as f:
        f.write(appended)

    tx.discard()
    tx.discard()

    assert tx.state is TransactionState.DISCARDED
    assert log.read_bytes() == ORIGINAL + appended
    assert _leftovers(log) == []
    assert not tx.lock.is_held


def test_rollback_without_begin_is_a_noop(log: Path) -> None:
    tx = LogTransaction(log)

    tx.rollback()

    assert tx.state is TransactionState.IDLE


def test_lock_timeout_leaves_transaction_idle(log: Path) -> None:
    with SessionFileLock(log):
        tx = LogTransaction(log, lock=SessionFileLock(log, timeout=0.1, poll_interval=0.05))
        with pytest.raises(LockTimeout):
            tx.begin()

    assert tx.state is TransactionState.IDLE
    assert _leftovers(log) == []
    assert log.read_bytes() == ORIGINAL


def test_failed_replace_rolls_back(log: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    tx = LogTransaction(log)
    tx.begin()
    tx.working_path.write_text('repaired\n')
    real_replace = os.replace

    def flaky_replace(src: os.PathLike[str], dst: os.PathLike[str]) -> None:
        if Path(src) == tx.working_path:
            raise OSError('disk full')
        real_replace(src, dst)

    monkeypatch.setattr(transaction.os, 'replace', flaky_replace)

    with pytest.raises(TransactionError):
        tx.commit()

    assert tx.state is TransactionState.ROLLED_BACK
    assert log.read_bytes() == ORIGINAL
    assert _leftovers(log) == []


def test_failed_restore_keeps_backup(log: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    tx = LogTransaction(log)
    tx.begin()

    def broken_replace(src: os.PathLike[str], dst: os.PathLike[str]) -> None:
        raise OSError('read-only filesystem')

    monkeypatch.setattr(transaction.os, 'replace', broken_replace)

    with pytest.raises(TransactionError) as exc_info:
        tx.rollback()

    assert exc_info.value.rollback_failed
    assert exc_info.value.backup_path == tx.backup_path
    assert tx.backup_path.read_bytes() == ORIGINAL
    assert not tx.lock.lock_path.exists()


def test_failed_backup_copy_rolls_back(log: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_copy(src: Path, dst: Path) -> None:
        raise OSError('no space left on device')

    monkeypatch.setattr(transaction.shutil, 'copy2', failing_copy)
    tx = LogTransaction(log)

    with pytest.raises(TransactionError):
        tx.begin()

    assert tx.state is TransactionState.ROLLED_BACK
    assert log.read_bytes() == ORIGINAL
    assert _leftovers(log) == []


def test_transaction_can_be_reused_after_commit(log: Path) -> None:
    tx = LogTransaction(log)
    tx.begin()
    tx.commit()

    tx.begin()

    assert tx.state is TransactionState.BACKED_UP
    tx.rollback()


def test_begin_twice_is_rejected(log: Path) -> None:
    tx = LogTransaction(log)
    tx.begin()

    with pytest.raises(TransactionError):
        tx.begin()
    tx.rollback()


# ==============================================================================
# Backup sweeping
# ==============================================================================


def _touch(path: Path, age: timedelta) -> Path:
    path.write_text('backup')
    stamp = (datetime.now(UTC) - age).timestamp()
    os.utime(path, (stamp, stamp))
    return path


def test_sweep_deletes_only_old_backup_artifacts(tmp_path: Path) -> None:
    old = timedelta(days=10)
    deleted_expected = [
        _touch(tmp_path / 's.jsonl.20260101T000000000000Z.backup', old),
        _touch(tmp_path / 's.jsonl.fixed', old),
        _touch(tmp_path / 's.jsonl.cleaned', old),
        _touch(tmp_path / 's.jsonl.pre-deep-clean', old),
        _touch(tmp_path / 'other.jsonl.tx-backup', old),
    ]
    kept = [
        _touch(tmp_path / 'recent.jsonl.backup', timedelta(days=1)),
        _touch(tmp_path / 's.jsonl', old),
        _touch(tmp_path / 'notes.txt', old),
    ]

    deleted = sweep_backups(tmp_path, max_age=timedelta(days=7))

    assert sorted(deleted) == sorted(deleted_expected)
    assert all(p.exists() for p in kept)


def test_sweep_skips_backup_of_live_transaction(tmp_path: Path) -> None:
    backup = _touch(tmp_path / 's.jsonl.tx-backup', timedelta(days=10))
    (tmp_path / 's.jsonl.lock').write_text('{}')

    assert sweep_backups(tmp_path) == []
    assert backup.exists()


def test_sweep_missing_directory(tmp_path: Path) -> None:
    assert sweep_backups(tmp_path / 'missing') == []
