"""
Shared exceptions for claude-session-repair.

Exception Hierarchy:
    SessionRepairError (base)
    ├── ParseError (one log line failed to decode, recovered by pass-through)
    ├── LockTimeout (exclusive access not acquired, nothing mutated)
    ├── TransactionError (backup/copy/rename failure, raised after rollback)
    ├── IrreparableLog (file has no recoverable lines)
    ├── BackupNotFoundError (restore requested but no retained backup exists)
    └── SessionResolutionError (lookup/resolution failures)
        └── AmbiguousSessionError (prefix matches multiple sessions)
"""

from __future__ import annotations

from pathlib import Path


class SessionRepairError(Exception):
    """Base exception for all claude-session-repair errors."""


class ParseError(SessionRepairError):
    """Raised when a single log line cannot be decoded into a Record."""

    def __init__(self, message: str, line_number: int | None = None) -> None:
        self.line_number = line_number
        self.reason = message
        prefix = f'line {line_number}: ' if line_number is not None else ''
        super().__init__(f'{prefix}{message}')


class LockTimeout(SessionRepairError):
    """Raised when the session lock could not be acquired in time."""

    def __init__(self, path: Path, timeout: float, holder_pid: int | None = None) -> None:
        self.path = path
        self.timeout = timeout
        self.holder_pid = holder_pid
        holder = f' (held by PID {holder_pid})' if holder_pid is not None else ''
        super().__init__(f'Could not acquire lock on {path} within {timeout:g}s{holder}')


class TransactionError(SessionRepairError):
    """Raised when a transaction step fails.

    The transaction has already been rolled back when this is raised, unless
    rollback_failed is True, in which case the backup is left in place for
    manual recovery.
    """

    def __init__(self, message: str, rollback_failed: bool = False, backup_path: Path | None = None) -> None:
        self.rollback_failed = rollback_failed
        self.backup_path = backup_path
        super().__init__(message)


class IrreparableLog(SessionRepairError):
    """Raised when a log has content but not a single parseable line."""

    def __init__(self, path: Path | None, unparsed_lines: int) -> None:
        self.path = path
        self.unparsed_lines = unparsed_lines
        where = f'{path}: ' if path is not None else ''
        super().__init__(f'{where}none of {unparsed_lines} lines could be parsed, refusing to repair')


class SessionResolutionError(SessionRepairError):
    """Base exception for session lookup and resolution failures."""


class AmbiguousSessionError(SessionResolutionError):
    """Raised when a session ID prefix matches multiple sessions."""

    def __init__(self, prefix: str, matches: list[str]) -> None:
        self.prefix = prefix
        self.matches = matches
        matches_str = '\n  '.join(matches[:10])
        if len(matches) > 10:
            matches_str += f'\n  ... and {len(matches) - 10} more'
        super().__init__(
            f"Session ID prefix '{prefix}' is ambiguous. Matches {len(matches)} sessions:\n  {matches_str}\n\n"
            f'Please provide a more specific session ID prefix.'
        )


class BackupNotFoundError(SessionRepairError):
    """Raised when restore finds no retained backup for a session log."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f'No backup found for {path}')
