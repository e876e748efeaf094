"""
Session repair service - scan, repair, chain repair and restore of session logs.

Repair runs entirely inside a LogTransaction:

1. Lock the log, take the backup and working copies
2. Re-read the log from the working copy (the snapshot every decision uses)
3. Plan the repair and hand the plan to the caller (on_plan, then confirm)
4. Write the corrected log to the working copy and scan it again
5. Keep a timestamped backup artifact, then atomically replace the log

Any failure, including a failed re-scan, rolls the log back to its original
bytes before the exception reaches the caller. A clean or declined run changes
nothing, so it discards the copies and never writes to the log.
"""

from __future__ import annotations

import glob
import logging
import shutil
from collections import Counter
from collections.abc import Callable, Collection, Sequence
from datetime import UTC, datetime
from pathlib import Path

from claude_session_repair.exceptions import BackupNotFoundError, SessionRepairError, TransactionError
from claude_session_repair.schemas.findings import Findings, IrreparableEntry
from claude_session_repair.schemas.report import (
    ChainFailure,
    ChainRepairResult,
    ChainScanResult,
    RepairMode,
    RepairReport,
    RepairStatus,
)
from claude_session_repair.services.discovery import SessionDiscoveryService
from claude_session_repair.services.planner import RepairPlan, plan_repair
from claude_session_repair.services.reader import read_log, write_log
from claude_session_repair.services.scanner import ensure_recoverable, scan_entries, scan_log
from claude_session_repair.services.transaction import LogTransaction, SessionFileLock

__all__ = [
    'BACKUP_TIMESTAMP_FORMAT',
    'SessionRepairService',
]

logger = logging.getLogger(__name__)

# Lexicographic order of retained backups equals chronological order
BACKUP_TIMESTAMP_FORMAT = '%Y%m%dT%H%M%S%fZ'

ConfirmCallback = Callable[[RepairReport], bool]
PlanCallback = Callable[[RepairReport], None]


class SessionRepairService:
    """
    Service for repairing Claude Code session logs in place.

    The poisoned tool id deny-list is injected per instance; nothing about a
    repair is read from process-wide state.
    """

    def __init__(
        self,
        poisoned_tool_ids: Collection[str] = (),
        lock_timeout: float = 5.0,
        stale_lock_after: float = 30.0,
        lock_poll_interval: float = 0.1,
        keep_backup: bool = True,
    ) -> None:
        """
        Initialize repair service.

        Args:
            poisoned_tool_ids: Tool ids to remove/redact wherever they appear
            lock_timeout: Seconds to wait for the session lock
            stale_lock_after: Seconds after which a dead holder's lock is broken
            lock_poll_interval: Seconds between lock attempts
            keep_backup: Keep a timestamped copy of the pre-repair log after commit
        """
        self.poisoned_tool_ids = frozenset(poisoned_tool_ids)
        self.lock_timeout = lock_timeout
        self.stale_lock_after = stale_lock_after
        self.lock_poll_interval = lock_poll_interval
        self.keep_backup = keep_backup

    def scan(self, path: Path) -> Findings:
        """Scan a log without locking it (advisory only)."""
        return scan_log(path, self.poisoned_tool_ids)

    def repair(
        self,
        path: Path,
        mode: RepairMode = 'auto',
        confirm: ConfirmCallback | None = None,
        on_plan: PlanCallback | None = None,
    ) -> RepairReport:
        """
        Repair one session log in place.

        Args:
            path: Session JSONL file
            mode: 'interactive' asks confirm() before applying, 'auto' applies directly
            confirm: Called with the planned report in interactive mode
            on_plan: Called with the planned report in both modes, before applying

        Returns:
            RepairReport with status clean, repaired or declined

        Raises:
            LockTimeout: Lock not acquired, nothing touched
            IrreparableLog: No parseable line to anchor a repair on
            TransactionError: Apply or verification failed, log rolled back
            ValueError: Interactive mode without a confirm callback
        """
        if mode == 'interactive' and confirm is None:
            raise ValueError('interactive repair requires a confirm callback')

        tx = LogTransaction(path, lock=self._lock(path))
        with tx:
            entries = list(read_log(tx.working_path))
            ensure_recoverable(entries, path)
            findings = scan_entries(entries, self.poisoned_tool_ids, path=path)
            plan = plan_repair(entries, self.poisoned_tool_ids, findings=findings)
            tx.refresh_lock()

            if not plan.changed:
                tx.discard()
                logger.info('%s: no repair needed', path.name)
                return self._report(path, mode, 'clean', plan, len(entries))

            planned = self._report(path, mode, 'planned', plan, len(entries))
            if on_plan is not None:
                on_plan(planned)
            if mode == 'interactive' and confirm is not None and not confirm(planned):
                tx.discard()
                logger.info('%s: repair declined', path.name)
                return self._report(path, mode, 'declined', plan, len(entries))

            write_log(tx.working_path, plan.entries)
            verification = scan_log(tx.working_path, self.poisoned_tool_ids)
            if verification.needs_repair:
                raise TransactionError(
                    f'{path}: repaired log still has {len(verification.violations)} adjacency violations '
                    f'and {len(verification.poison_hits)} poisoned id hits'
                )
            introduced = _new_irreparable(findings.irreparable, verification.irreparable)
            if introduced:
                error = TransactionError(
                    f'{path}: repaired log has {len(introduced)} irreparable entries the original did not'
                )
                for entry in introduced:
                    error.add_note(f'{entry.tool_id}: {entry.reason} at line {entry.line_number} of the repaired log')
                raise error

            backup_path = self._retain_backup(tx) if self.keep_backup else None
            tx.commit()

        logger.info('%s: applied %d repair actions', path.name, len(plan.actions))
        return self._report(path, mode, 'repaired', plan, len(entries), backup_path)

    def repair_chain(
        self,
        directory: Path,
        mode: RepairMode = 'auto',
        confirm: ConfirmCallback | None = None,
        on_plan: PlanCallback | None = None,
    ) -> ChainRepairResult:
        """
        Repair every session log in a project directory, newest first.

        A failure on one log is recorded and the remaining logs are still processed.
        """
        reports: list[RepairReport] = []
        failures: list[ChainFailure] = []
        for session in SessionDiscoveryService().list_sessions(directory):
            try:
                reports.append(self.repair(session.path, mode, confirm=confirm, on_plan=on_plan))
            except (SessionRepairError, OSError) as e:
                logger.warning('%s: repair failed: %s', session.path.name, e)
                failures.append(ChainFailure(path=str(session.path), error=str(e)))
        return ChainRepairResult(directory=str(directory), reports=reports, failures=failures)

    def scan_chain(self, directory: Path) -> ChainScanResult:
        """
        Scan every session log in a project directory, newest first, without locking.

        Shows which sessions of a project carry violations or poisoned ids before
        anything is repaired. Logs that cannot be read are listed as failures.
        """
        findings: list[Findings] = []
        failures: list[ChainFailure] = []
        for session in SessionDiscoveryService().list_sessions(directory):
            try:
                findings.append(self.scan(session.path))
            except (SessionRepairError, OSError) as e:
                logger.warning('%s: scan failed: %s', session.path.name, e)
                failures.append(ChainFailure(path=str(session.path), error=str(e)))
        return ChainScanResult(directory=str(directory), findings=findings, failures=failures)

    def restore(self, path: Path) -> Path:
        """
        Put the newest retained backup of a log back in place.

        Returns:
            The backup that was restored

        Raises:
            BackupNotFoundError: If no retained backup exists
        """
        backups = self.list_backups(path)
        if not backups:
            raise BackupNotFoundError(path)
        backup = backups[-1]

        with LogTransaction(path, lock=self._lock(path)) as tx:
            shutil.copyfile(backup, tx.working_path)
        logger.info('%s: restored from %s', path.name, backup.name)
        return backup

    def list_backups(self, path: Path) -> list[Path]:
        """Retained backups of a log, oldest first."""
        return sorted(path.parent.glob(f'{glob.escape(path.name)}.*.backup'))

    def _lock(self, path: Path) -> SessionFileLock:
        return SessionFileLock(
            path,
            timeout=self.lock_timeout,
            stale_after=self.stale_lock_after,
            poll_interval=self.lock_poll_interval,
        )

    def _retain_backup(self, tx: LogTransaction) -> Path:
        stamp = datetime.now(UTC).strftime(BACKUP_TIMESTAMP_FORMAT)
        backup_path = tx.path.with_name(f'{tx.path.name}.{stamp}.backup')
        shutil.copy2(tx.backup_path, backup_path)
        logger.info('Backup saved to %s', backup_path)
        return backup_path

    def _report(
        self,
        path: Path,
        mode: RepairMode,
        status: RepairStatus,
        plan: RepairPlan,
        entries_before: int,
        backup_path: Path | None = None,
    ) -> RepairReport:
        return RepairReport(
            path=str(path),
            mode=mode,
            status=status,
            findings=plan.findings,
            actions=list(plan.actions),
            entries_before=entries_before,
            entries_after=len(plan.entries) if status != 'declined' else entries_before,
            backup_path=str(backup_path) if backup_path is not None else None,
            irreparable=list(plan.irreparable),
        )


def _new_irreparable(
    before: Sequence[IrreparableEntry],
    after: Sequence[IrreparableEntry],
) -> list[IrreparableEntry]:
    """Irreparable entries of the repaired log beyond those the original already had."""
    remaining = Counter((entry.tool_id, entry.reason) for entry in before)
    introduced: list[IrreparableEntry] = []
    for entry in after:
        key = (entry.tool_id, entry.reason)
        if remaining[key]:
            remaining[key] -= 1
        else:
            introduced.append(entry)
    return introduced
