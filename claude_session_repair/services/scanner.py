"""
Invariant scanner - detects tool_use/tool_result adjacency violations.

The Claude API rejects a conversation in which a tool_use block is not
answered by a tool_result in the very next message. Claude Code can write such
logs (interrupted tools, API errors recorded between the two halves of a pair,
crashed sessions), and `claude --resume` then fails on them.

The scan is a single linear pass:
- tool_use blocks enter the Pending-Invocation Table keyed by id
- tool_result blocks resolve their pending entry (or are reported irreparable)
- at the end, unresolved entries are MISSING; resolved entries are NONE when the
  result sits at invocation_position + 1 and NON_ADJACENT otherwise

A second, text-level pass reports every entry that mentions a poisoned id.
Scans take no lock: their result is advisory unless taken inside a transaction.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Collection, Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any, assert_never

import attrs

from claude_session_repair.exceptions import IrreparableLog
from claude_session_repair.schemas.findings import (
    Findings,
    GapKind,
    IrreparableEntry,
    IrreparableReason,
    PoisonHit,
    PoisonLocation,
    ToolPairing,
)
from claude_session_repair.schemas.records import OpaqueBlock, Record, TextBlock, ToolResultBlock, ToolUseBlock
from claude_session_repair.services.reader import LogEntry, read_log

__all__ = [
    'ensure_recoverable',
    'iter_strings',
    'mentions',
    'poison_pattern',
    'scan_entries',
    'scan_log',
]

logger = logging.getLogger(__name__)


def poison_pattern(tool_id: str) -> re.Pattern[str]:
    """Whole-word matcher for a tool id."""
    return re.compile(rf'\b{re.escape(tool_id)}\b')


@attrs.define
class _PendingInvocation:
    """Row of the Pending-Invocation Table."""

    position: int
    line_number: int | None
    result_position: int | None = None
    result_line: int | None = None


@attrs.define
class _OrphanResult:
    tool_id: str
    position: int
    line_number: int | None
    same_record: bool = False


def scan_entries(
    entries: Sequence[LogEntry],
    poisoned_tool_ids: Collection[str] = (),
    path: Path | None = None,
) -> Findings:
    """
    Scan an ordered entry sequence for adjacency violations and poisoned ids.

    Args:
        entries: Log entries in file order (the immutable snapshot)
        poisoned_tool_ids: Deny-list of tool ids to locate textually
        path: Source file, only echoed into the findings

    Returns:
        Findings for the whole sequence
    """
    table: dict[str, _PendingInvocation] = {}
    orphans: list[_OrphanResult] = []
    irreparable: list[IrreparableEntry] = []
    unparsed_lines: list[int] = []

    for position, entry in enumerate(entries):
        record = entry.record
        if record is None:
            if entry.line_number is not None:
                unparsed_lines.append(entry.line_number)
            continue

        for block in record.blocks:
            match block:
                case ToolUseBlock(id=tool_id):
                    if tool_id in table:
                        irreparable.append(_irreparable(tool_id, position, entry, 'duplicate_invocation'))
                        continue
                    table[tool_id] = _PendingInvocation(position=position, line_number=entry.line_number)
                case ToolResultBlock(tool_use_id=tool_id):
                    pending = table.get(tool_id)
                    if pending is None:
                        orphans.append(_OrphanResult(tool_id, position, entry.line_number))
                    elif pending.position == position:
                        orphans.append(_OrphanResult(tool_id, position, entry.line_number, same_record=True))
                    elif pending.result_position is not None:
                        irreparable.append(_irreparable(tool_id, position, entry, 'duplicate_result'))
                    else:
                        pending.result_position = position
                        pending.result_line = entry.line_number
                case TextBlock() | OpaqueBlock():
                    pass
                case _:
                    assert_never(block)

    for orphan in orphans:
        reason: IrreparableReason
        if orphan.same_record:
            reason = 'same_record_result'
        elif orphan.tool_id in table:
            reason = 'forward_reference'
        else:
            reason = 'dangling_result'
        irreparable.append(
            IrreparableEntry(
                tool_id=orphan.tool_id, position=orphan.position, line_number=orphan.line_number, reason=reason
            )
        )

    pairings = [
        ToolPairing(
            tool_id=tool_id,
            invocation_position=pending.position,
            invocation_line=pending.line_number,
            result_position=pending.result_position,
            result_line=pending.result_line,
            gap_kind=_classify(pending),
        )
        for tool_id, pending in table.items()
    ]

    poison_hits = _scan_poisoned(entries, poisoned_tool_ids)

    findings = Findings(
        path=str(path) if path is not None else None,
        total_entries=len(entries),
        unparsed_lines=unparsed_lines,
        pairings=pairings,
        poison_hits=poison_hits,
        irreparable=sorted(irreparable, key=lambda e: e.position),
    )
    logger.debug(
        'Scanned %d entries: %d tool pairs, %d missing, %d non-adjacent, %d poison hits, %d irreparable',
        findings.total_entries,
        len(pairings),
        findings.missing_count,
        findings.non_adjacent_count,
        len(poison_hits),
        len(findings.irreparable),
    )
    return findings


def scan_log(path: Path, poisoned_tool_ids: Collection[str] = ()) -> Findings:
    """
    Read and scan a session log without locking it.

    Raises:
        IrreparableLog: If the file has lines but none of them parse
        FileNotFoundError: If the file does not exist
    """
    entries = list(read_log(path))
    ensure_recoverable(entries, path)
    return scan_entries(entries, poisoned_tool_ids, path=path)


def ensure_recoverable(entries: Sequence[LogEntry], path: Path | None = None) -> None:
    """Reject logs whose every line is unparseable (nothing to anchor a repair on)."""
    if entries and all(entry.record is None for entry in entries):
        raise IrreparableLog(path, len(entries))


def _classify(pending: _PendingInvocation) -> GapKind:
    if pending.result_position is None:
        return 'missing'
    if pending.result_position == pending.position + 1:
        return 'none'
    return 'non_adjacent'


def _irreparable(tool_id: str, position: int, entry: LogEntry, reason: IrreparableReason) -> IrreparableEntry:
    return IrreparableEntry(tool_id=tool_id, position=position, line_number=entry.line_number, reason=reason)


# ==============================================================================
# Text-level poisoned id scan
# ==============================================================================


def _scan_poisoned(entries: Sequence[LogEntry], poisoned_tool_ids: Collection[str]) -> list[PoisonHit]:
    hits: list[PoisonHit] = []
    patterns = {tool_id: poison_pattern(tool_id) for tool_id in sorted(poisoned_tool_ids)}
    for position, entry in enumerate(entries):
        for tool_id, pattern in patterns.items():
            if not mentions(entry, pattern):
                continue
            hits.append(
                PoisonHit(
                    tool_id=tool_id,
                    position=position,
                    line_number=entry.line_number,
                    location=_locate(entry.record, tool_id, pattern),
                )
            )
    return hits


def iter_strings(value: Any) -> Iterator[str]:
    """Yield every string (keys included) inside a decoded JSON value."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for key, item in value.items():
            if isinstance(key, str):
                yield key
            yield from iter_strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_strings(item)


def mentions(entry: LogEntry, pattern: re.Pattern[str]) -> bool:
    """True when an entry textually contains the pattern.

    Parsed records are searched on decoded strings rather than the raw line so
    that JSON escapes (\\n before an id) cannot hide or fake a word boundary.
    """
    record = entry.record
    if record is None:
        return pattern.search(entry.raw) is not None
    return any(pattern.search(s) for s in iter_strings(record.data))


def _locate(record: Record | None, tool_id: str, pattern: re.Pattern[str]) -> PoisonLocation:
    """Classify where a poisoned id sits inside an entry, structural matches first."""
    if record is None:
        return 'unparsed'
    if tool_id in record.tool_use_ids:
        return 'tool_use'
    if tool_id in record.tool_result_ids:
        return 'tool_result'
    if record.summary is not None and pattern.search(record.summary):
        return 'summary'
    text = record.text_content
    if text is not None and pattern.search(text):
        return 'text'
    if any(isinstance(b, TextBlock) and pattern.search(b.text) for b in record.blocks):
        return 'text'
    return 'embedded'
