"""
Scan findings schemas.

Models for the Invariant Scanner's report: one ToolPairing per tool_use id,
text-level hits for poisoned ids, and entries the planner will not touch.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Literal

from claude_session_repair.schemas.base import StrictModel
from claude_session_repair.schemas.types import PathStr

GapKind = Literal[
    'none',  # result immediately follows the invocation
    'non_adjacent',  # result exists but something else sits at invocation_position + 1
    'missing',  # no result anywhere in the log
]

PoisonLocation = Literal[
    'tool_use',  # id of a tool_use block
    'tool_result',  # tool_use_id of a tool_result block
    'text',  # free text of a message (text block or string content)
    'summary',  # conversation summary record
    'embedded',  # anywhere else inside the record (tool output, metadata)
    'unparsed',  # line that failed to parse
]

IrreparableReason = Literal[
    'dangling_result',  # tool_result whose tool_use never appears
    'forward_reference',  # tool_result appears before its tool_use
    'duplicate_invocation',  # tool_use id already seen earlier
    'duplicate_result',  # second tool_result for an already answered tool_use
    'same_record_result',  # tool_result inside the same record as its tool_use
]


class ToolPairing(StrictModel):
    """Position pairing of one tool_use with its tool_result.

    Positions are 0-based indexes into the entry sequence; line numbers are
    1-based lines of the source file.
    """

    tool_id: str
    invocation_position: int
    invocation_line: int | None
    result_position: int | None  # None: no result anywhere in the log
    result_line: int | None
    gap_kind: GapKind


class PoisonHit(StrictModel):
    """A log entry that textually contains a poisoned tool id."""

    tool_id: str
    position: int
    line_number: int | None
    location: PoisonLocation


class IrreparableEntry(StrictModel):
    """Structural damage reported but never repaired automatically."""

    tool_id: str
    position: int
    line_number: int | None
    reason: IrreparableReason


class Findings(StrictModel):
    """Result of one scan pass over a session log."""

    path: PathStr | None
    total_entries: int
    unparsed_lines: Sequence[int]
    pairings: Sequence[ToolPairing]
    poison_hits: Sequence[PoisonHit]
    irreparable: Sequence[IrreparableEntry]

    @property
    def violations(self) -> list[ToolPairing]:
        """Pairings that break the adjacency invariant."""
        return [p for p in self.pairings if p.gap_kind != 'none']

    @property
    def missing_count(self) -> int:
        return sum(1 for p in self.pairings if p.gap_kind == 'missing')

    @property
    def non_adjacent_count(self) -> int:
        return sum(1 for p in self.pairings if p.gap_kind == 'non_adjacent')

    @property
    def needs_repair(self) -> bool:
        """True when the planner has something to do.

        Irreparable entries are deliberately excluded: they are reported, not fixed.
        """
        return bool(self.violations or self.poison_hits)
