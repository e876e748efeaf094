"""
Repair operation schemas.

Models describing what a repair run planned and applied.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Literal

from claude_session_repair.schemas.base import StrictModel
from claude_session_repair.schemas.findings import Findings, IrreparableEntry
from claude_session_repair.schemas.types import PathStr

RepairMode = Literal['interactive', 'auto']

RepairStatus = Literal[
    'clean',  # nothing to repair
    'planned',  # shown for confirmation, not applied yet
    'repaired',  # applied and committed
    'declined',  # plan rejected, log untouched
]

ActionKind = Literal[
    'move_result',  # result record moved verbatim behind its invocation
    'merge_results',  # result blocks gathered from other records into the partner record
    'synthesize_result',  # synthetic is_error tool_result added for a missing result
    'drop_record',  # whole record removed (poisoned tool block, or left without content)
    'strip_text_lines',  # error lines mentioning a poisoned id removed from a text block
    'drop_text_block',  # text block removed after stripping left it empty
    'drop_orphaned_result',  # tool_result whose tool_use went with a dropped poisoned record
    'redact_text',  # poisoned id replaced by placeholder in free text
    'redact_summary',  # poisoned id removed from a conversation summary
    'redact_embedded',  # poisoned id replaced anywhere else in the record
]


class RepairAction(StrictModel):
    """One edit made (or planned) by the planner."""

    kind: ActionKind
    tool_id: str | None
    line_number: int | None  # Source line the edit applies to (None for synthesized records)
    detail: str


class RepairReport(StrictModel):
    """Outcome of repairing one session log."""

    path: PathStr
    mode: RepairMode
    status: RepairStatus
    findings: Findings  # Pre-repair scan
    actions: Sequence[RepairAction]
    entries_before: int
    entries_after: int
    backup_path: PathStr | None  # Retained pre-repair copy (None if not kept or nothing changed)
    irreparable: Sequence[IrreparableEntry]  # Left untouched, after poison cleanup

    @property
    def action_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for action in self.actions:
            counts[action.kind] = counts.get(action.kind, 0) + 1
        return counts


class ChainFailure(StrictModel):
    """A log in a chain that could not be repaired."""

    path: PathStr
    error: str


class ChainRepairResult(StrictModel):
    """Outcome of repairing every log in a project directory."""

    directory: PathStr
    reports: Sequence[RepairReport]
    failures: Sequence[ChainFailure]

    @property
    def repaired_count(self) -> int:
        return sum(1 for r in self.reports if r.status == 'repaired')


class ChainScanResult(StrictModel):
    """Scan of every log in a project directory, newest first."""

    directory: PathStr
    findings: Sequence[Findings]
    failures: Sequence[ChainFailure]

    @property
    def needs_repair_count(self) -> int:
        return sum(1 for f in self.findings if f.needs_repair)
