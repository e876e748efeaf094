"""
Session discovery service - finds session logs across all Claude Code projects.

Walks ~/.claude/projects/ in-process (no shell commands) to list session logs,
resolve session ID prefixes, and decode Claude's filesystem path encoding.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from claude_session_repair.exceptions import AmbiguousSessionError
from claude_session_repair.schemas.base import StrictModel
from claude_session_repair.schemas.types import JsonDatetime

__all__ = [
    'SessionDiscoveryService',
    'SessionFile',
]


class SessionFile(StrictModel):
    """A discovered session log."""

    session_id: str
    path: Path
    project_path: Path
    modified_at: JsonDatetime
    size_bytes: int


class SessionDiscoveryService:
    """
    Service for discovering Claude Code session logs across all projects.

    Only `*.jsonl` files count as sessions, so backup and transaction artifacts
    (`.backup`, `.tx-backup`, `.tx-temp`, `.lock`...) are never listed.
    """

    def __init__(self, projects_dir: Path | None = None) -> None:
        """Initialize discovery service."""
        self.claude_sessions_dir = projects_dir if projects_dir is not None else Path.home() / '.claude' / 'projects'

    def list_sessions(self, directory: Path | None = None) -> list[SessionFile]:
        """
        List session logs, newest first.

        Args:
            directory: One project directory to list (default: every project)

        Returns:
            SessionFile per log, sorted by modification time descending
        """
        if directory is not None:
            candidates = directory.glob('*.jsonl')
        else:
            if not self.claude_sessions_dir.is_dir():
                return []
            candidates = self.claude_sessions_dir.glob('*/*.jsonl')

        sessions = [self._describe(path) for path in candidates if path.is_file()]
        sessions.sort(key=lambda s: s.modified_at, reverse=True)
        return sessions

    def find_session(self, session_id: str) -> SessionFile | None:
        """
        Find a session by full ID or unique prefix.

        Args:
            session_id: Full session ID or a prefix of one

        Returns:
            SessionFile, or None if nothing matches

        Raises:
            AmbiguousSessionError: If the prefix matches more than one session
        """
        sessions = self.list_sessions()
        exact = [s for s in sessions if s.session_id == session_id]
        if exact:
            return exact[0]

        matches = [s for s in sessions if s.session_id.startswith(session_id)]
        if not matches:
            return None
        unique_ids = sorted({s.session_id for s in matches})
        if len(unique_ids) > 1:
            raise AmbiguousSessionError(session_id, unique_ids)
        return matches[0]

    def resolve_log_path(self, target: str) -> Path | None:
        """
        Resolve a CLI target to a session log path.

        An existing file path wins; otherwise the target is looked up as a
        session ID (or prefix).
        """
        path = Path(target).expanduser()
        if path.is_file():
            return path
        session = self.find_session(target)
        return session.path if session is not None else None

    def _describe(self, path: Path) -> SessionFile:
        stat = path.stat()
        return SessionFile(
            session_id=path.stem,
            path=path,
            project_path=self._decode_path(path.parent.name),
            modified_at=datetime.fromtimestamp(stat.st_mtime, UTC),
            size_bytes=stat.st_size,
        )

    def _decode_path(self, encoded: str) -> Path:
        """
        Decode Claude's filesystem path encoding.

        Claude encodes paths by replacing '/' with '-':
        /Users/chris/project -> -Users-chris-project

        The encoding is lossy (hyphens inside directory names decode to '/'),
        so the result is for display only.
        """
        if encoded.startswith('-'):
            return Path('/' + encoded[1:].replace('-', '/'))
        return Path(encoded.replace('-', '/'))
