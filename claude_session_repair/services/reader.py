"""
Session log reader and writer.

Streams a JSONL session log into LogEntry values. A line that fails to parse is
not an error for the caller: it is kept as an opaque entry carrying its
ParseError, so every downstream stage can pass it through byte-for-byte.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from pathlib import Path

import attrs

from claude_session_repair.exceptions import ParseError
from claude_session_repair.schemas.records import Record

__all__ = [
    'LogEntry',
    'read_log',
    'write_log',
]

logger = logging.getLogger(__name__)

# surrogateescape keeps undecodable bytes intact through a read/write cycle
LOG_ENCODING = 'utf-8'
LOG_ERRORS = 'surrogateescape'


@attrs.define(frozen=True)
class LogEntry:
    """One line of a session log: either a Record or the ParseError it produced."""

    line_number: int | None  # 1-based source line, None for synthesized records
    raw: str  # Line text without its terminator
    parsed: Record | ParseError
    newline: str = '\n'  # Terminator as read: '\n', '\r\n', or '' for a final unterminated line

    @classmethod
    def from_record(cls, record: Record, line_number: int | None = None) -> LogEntry:
        return cls(line_number=line_number, raw=record.raw, parsed=record)

    @property
    def record(self) -> Record | None:
        return self.parsed if isinstance(self.parsed, Record) else None

    @property
    def error(self) -> ParseError | None:
        return self.parsed if isinstance(self.parsed, ParseError) else None

    def replace_record(self, record: Record) -> LogEntry:
        """Same source line and terminator, edited content."""
        return attrs.evolve(self, raw=record.raw, parsed=record)


def read_log(path: Path) -> Iterator[LogEntry]:
    """
    Lazily read a session log.

    Lines are split on '\\n' only, and each entry keeps its own terminator, so
    CRLF logs and stray '\\r' characters come back unchanged. Blank lines carry
    no record and are skipped. Malformed lines are yielded with a ParseError
    instead of a Record.

    Args:
        path: Session JSONL file

    Yields:
        LogEntry per non-blank line, in file order
    """
    with open(path, 'rb') as f:
        for line_number, data in enumerate(f, 1):
            line = data.decode(LOG_ENCODING, LOG_ERRORS)
            line, newline = _split_terminator(line)
            if not line.strip():
                logger.debug('%s: skipping blank line %d', path, line_number)
                continue
            try:
                record = Record.parse(line)
            except ParseError as e:
                error = ParseError(e.reason, line_number=line_number)
                logger.warning('%s: %s (kept unmodified)', path.name, error)
                yield LogEntry(line_number=line_number, raw=line, parsed=error, newline=newline)
                continue
            yield LogEntry(line_number=line_number, raw=line, parsed=record, newline=newline)


def _split_terminator(line: str) -> tuple[str, str]:
    if line.endswith('\r\n'):
        return line[:-2], '\r\n'
    if line.endswith('\n'):
        return line[:-1], '\n'
    return line, ''


def write_log(path: Path, entries: Iterable[LogEntry]) -> int:
    """
    Write entries as JSONL, one per line, with a trailing newline.

    Each entry is written with the terminator it was read with; an
    unterminated final line gets '\\n'.

    Args:
        path: Output file path (overwritten)
        entries: Entries to write

    Returns:
        Number of lines written
    """
    count = 0
    with open(path, 'wb') as f:
        for entry in entries:
            f.write((entry.raw + (entry.newline or '\n')).encode(LOG_ENCODING, LOG_ERRORS))
            count += 1
    return count
