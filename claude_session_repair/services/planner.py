"""
Repair planner - rewrites a session log so every tool_use is answered next.

Two passes, each producing a brand-new entry sequence (input is never mutated):

1. Poison cleanup. Tool ids on the injected deny-list are known to make the
   API reject the conversation wherever they appear. Records carrying such an
   id in a tool_use/tool_result block are dropped; free-text mentions are
   stripped (error chatter) or redacted (ordinary prose).

2. Adjacency restore. The cleaned sequence is scanned once and all positions
   are taken from that snapshot. Invocation records are handled in ascending
   position order; edits only ever attach records behind an invocation or take
   blocks out of later records, so earlier decisions stay valid.

   - result record answering only this invocation: moved verbatim behind it
   - results split over several records, shared with other invocations, or
     partly missing: one partner record is built behind the invocation from the
     earliest result record, gathering this invocation's tool_result blocks in
     invocation order plus synthetic error results for missing ids
   - no result at all: a synthetic user record with is_error results

Irreparable entries (dangling or duplicate results) are left exactly as found.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Collection, Mapping, Sequence
from typing import Any

import attrs

from claude_session_repair.schemas.findings import Findings, IrreparableEntry, ToolPairing
from claude_session_repair.schemas.records import (
    ContentBlock,
    Record,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    dump_block,
)
from claude_session_repair.schemas.report import ActionKind, RepairAction
from claude_session_repair.services.reader import LogEntry
from claude_session_repair.services.scanner import mentions, poison_pattern, scan_entries

__all__ = [
    'REDACTED_PLACEHOLDER',
    'SUMMARY_PLACEHOLDER',
    'SYNTHETIC_RESULT_TEXT',
    'RepairPlan',
    'plan_repair',
    'remove_poisoned',
    'restore_adjacency',
    'synthetic_record',
    'synthetic_result_block',
]

logger = logging.getLogger(__name__)

REDACTED_PLACEHOLDER = '[REDACTED_TOOL_ID]'
SUMMARY_PLACEHOLDER = '[Line about tool error removed]'
SYNTHETIC_RESULT_TEXT = (
    'Error: Tool execution was interrupted or failed. This is a synthetic error added during session repair.'
)

# A text block mentioning a poisoned id is treated as error chatter about the tool
# when it contains any of these (case-insensitive)
_ERROR_MARKERS = ('error', 'tool_use', 'tool_result')

# Envelope fields copied from the invocation record onto a synthetic result record
_ENVELOPE_KEYS = ('isSidechain', 'userType', 'cwd', 'sessionId', 'version', 'gitBranch')


@attrs.define(frozen=True)
class RepairPlan:
    """Corrected entry sequence plus everything that was changed to get there."""

    entries: tuple[LogEntry, ...]
    actions: tuple[RepairAction, ...]
    findings: Findings  # Scan of the input sequence
    irreparable: tuple[IrreparableEntry, ...]  # Left untouched (scan of the poison-cleaned sequence)

    @property
    def changed(self) -> bool:
        return bool(self.actions)


def plan_repair(
    entries: Sequence[LogEntry],
    poisoned_tool_ids: Collection[str] = (),
    findings: Findings | None = None,
) -> RepairPlan:
    """
    Plan the repair of one session log.

    Args:
        entries: Original entries in file order
        poisoned_tool_ids: Deny-list of tool ids to remove/redact
        findings: Pre-computed scan of entries (scanned here when omitted)

    Returns:
        RepairPlan with the corrected sequence
    """
    original = tuple(entries)
    if findings is None:
        findings = scan_entries(original, poisoned_tool_ids)

    cleaned, actions = remove_poisoned(original, poisoned_tool_ids)
    snapshot = scan_entries(cleaned)
    repaired, structural_actions = restore_adjacency(cleaned, snapshot)
    actions.extend(structural_actions)

    logger.debug('Planned %d actions: %d -> %d entries', len(actions), len(original), len(repaired))
    return RepairPlan(
        entries=tuple(repaired),
        actions=tuple(actions),
        findings=findings,
        irreparable=tuple(snapshot.irreparable),
    )


# ==============================================================================
# Pass 1: poisoned tool ids
# ==============================================================================


def remove_poisoned(
    entries: Sequence[LogEntry],
    poisoned_tool_ids: Collection[str],
) -> tuple[list[LogEntry], list[RepairAction]]:
    """
    Drop or clean every entry that mentions a poisoned tool id.

    Dropping an invocation record for a poisoned tool_use also drops any other
    invocation it carried; their later tool_result blocks are removed too so
    no result is left without an invocation.
    """
    actions: list[RepairAction] = []
    if not poisoned_tool_ids:
        return list(entries), actions

    patterns = {tool_id: poison_pattern(tool_id) for tool_id in sorted(set(poisoned_tool_ids))}
    orphaned: set[str] = set()
    out: list[LogEntry] = []
    for entry in entries:
        if orphaned and entry.record is not None:
            kept = _drop_orphaned_results(entry, orphaned, actions)
            if kept is None:
                continue
            entry = kept

        hit_ids = [tool_id for tool_id, pattern in patterns.items() if mentions(entry, pattern)]
        if not hit_ids:
            out.append(entry)
            continue

        record = entry.record
        if record is None:
            # Unparsed line: plain-text substitution is all we can do
            raw = entry.raw
            for tool_id in hit_ids:
                raw = patterns[tool_id].sub(REDACTED_PLACEHOLDER, raw)
                actions.append(_action('redact_embedded', tool_id, entry, 'redacted id in unparsed line'))
            out.append(attrs.evolve(entry, raw=raw))
            continue

        cleaned = _clean_record(record, hit_ids, patterns, entry, actions)
        if cleaned is None:
            if any(tool_id in record.tool_use_ids for tool_id in hit_ids):
                orphaned.update(tool_id for tool_id in record.tool_use_ids if tool_id not in patterns)
            continue
        out.append(entry if cleaned is record else entry.replace_record(cleaned))
    return out, actions


def _drop_orphaned_results(entry: LogEntry, orphaned: set[str], actions: list[RepairAction]) -> LogEntry | None:
    """Remove results answering invocations that were dropped; None when nothing is left."""
    record = entry.record
    assert record is not None
    # A later invocation reusing the id gets its results back
    orphaned.difference_update(record.tool_use_ids)
    if not orphaned.intersection(record.tool_result_ids):
        return entry

    blocks: list[ContentBlock] = []
    for block in record.blocks:
        if isinstance(block, ToolResultBlock) and block.tool_use_id in orphaned:
            actions.append(
                _action('drop_orphaned_result', block.tool_use_id, entry, 'its tool_use was in a dropped record')
            )
            continue
        blocks.append(block)
    if not blocks:
        actions.append(_action('drop_record', None, entry, 'no content left after removing orphaned results'))
        return None
    return entry.replace_record(record.with_blocks(blocks))


def _clean_record(
    record: Record,
    tool_ids: list[str],
    patterns: Mapping[str, re.Pattern[str]],
    entry: LogEntry,
    actions: list[RepairAction],
) -> Record | None:
    """Return the cleaned record, or None when the whole record must go."""
    for tool_id in tool_ids:
        if tool_id in record.tool_use_ids:
            actions.append(_action('drop_record', tool_id, entry, 'record carries poisoned tool_use'))
            return None
        if tool_id in record.tool_result_ids:
            actions.append(_action('drop_record', tool_id, entry, 'record carries poisoned tool_result'))
            return None

    current: Record | None = record
    for tool_id in tool_ids:
        pattern = patterns[tool_id]
        current = _clean_message_text(current, tool_id, pattern, entry, actions)
        if current is None:
            return None
        current = _clean_summary(current, tool_id, pattern, entry, actions)
        current = _redact_remaining(current, tool_id, pattern, entry, actions)
    return current


def _clean_text(text: str, pattern: re.Pattern[str]) -> tuple[str, ActionKind]:
    """Strip error lines mentioning the id, or redact it from ordinary prose."""
    lowered = text.lower()
    if any(marker in lowered for marker in _ERROR_MARKERS):
        lines = text.split('\n')
        kept = [line for line in lines if not pattern.search(line)]
        return '\n'.join(kept).strip(), 'strip_text_lines'
    return pattern.sub(REDACTED_PLACEHOLDER, text), 'redact_text'


def _clean_message_text(
    record: Record,
    tool_id: str,
    pattern: re.Pattern[str],
    entry: LogEntry,
    actions: list[RepairAction],
) -> Record | None:
    text_content = record.text_content
    if text_content is not None:
        if not pattern.search(text_content):
            return record
        cleaned, kind = _clean_text(text_content, pattern)
        actions.append(_action(kind, tool_id, entry, 'string message content'))
        if not cleaned:
            actions.append(_action('drop_record', tool_id, entry, 'no content left after removing poisoned text'))
            return None
        return record.with_text_content(cleaned)

    if not record.has_block_content:
        return record

    blocks: list[ContentBlock] = []
    changed = False
    for index, block in enumerate(record.blocks):
        if not (isinstance(block, TextBlock) and pattern.search(block.text)):
            blocks.append(block)
            continue
        changed = True
        cleaned, kind = _clean_text(block.text, pattern)
        actions.append(_action(kind, tool_id, entry, f'text block {index}'))
        if not cleaned:
            actions.append(_action('drop_text_block', tool_id, entry, f'text block {index} left empty'))
            continue
        blocks.append(block.model_copy(update={'text': cleaned}))

    if not changed:
        return record
    if not blocks:
        actions.append(_action('drop_record', tool_id, entry, 'no content left after removing poisoned text'))
        return None
    return record.with_blocks(blocks)


def _clean_summary(
    record: Record,
    tool_id: str,
    pattern: re.Pattern[str],
    entry: LogEntry,
    actions: list[RepairAction],
) -> Record:
    summary = record.summary
    if summary is None or not pattern.search(summary):
        return record
    lines: list[str] = []
    for line in summary.split('\n'):
        if pattern.search(line) and any(marker in line.lower() for marker in _ERROR_MARKERS):
            lines.append(SUMMARY_PLACEHOLDER)
        else:
            lines.append(pattern.sub(REDACTED_PLACEHOLDER, line))
    actions.append(_action('redact_summary', tool_id, entry, 'summary text'))
    return record.with_summary('\n'.join(lines).strip())


def _redact_remaining(
    record: Record,
    tool_id: str,
    pattern: re.Pattern[str],
    entry: LogEntry,
    actions: list[RepairAction],
) -> Record:
    """Replace any mention left in nested tool output or metadata."""
    data, count = _redact_value(record.data, pattern)
    if not count:
        return record
    actions.append(_action('redact_embedded', tool_id, entry, f'{count} embedded occurrence(s)'))
    return record.with_data(data)


def _redact_value(value: Any, pattern: re.Pattern[str]) -> tuple[Any, int]:
    if isinstance(value, str):
        return pattern.subn(REDACTED_PLACEHOLDER, value)
    if isinstance(value, Mapping):
        total = 0
        redacted: dict[Any, Any] = {}
        for key, item in value.items():
            if isinstance(key, str):
                key, key_count = pattern.subn(REDACTED_PLACEHOLDER, key)
                total += key_count
            redacted[key], item_count = _redact_value(item, pattern)
            total += item_count
        return redacted, total
    if isinstance(value, list):
        total = 0
        items = []
        for item in value:
            redacted_item, item_count = _redact_value(item, pattern)
            items.append(redacted_item)
            total += item_count
        return items, total
    return value, 0


# ==============================================================================
# Pass 2: adjacency
# ==============================================================================


@attrs.define
class _Slot:
    """Working state of one snapshot position."""

    entry: LogEntry
    blocks: list[ContentBlock] | None = None  # Edited block list, None while untouched
    moved: bool = False  # Emitted verbatim behind another slot
    followers: list[LogEntry] = attrs.Factory(list)  # Emitted right after this slot

    @property
    def current_blocks(self) -> list[ContentBlock]:
        if self.blocks is not None:
            return list(self.blocks)
        record = self.entry.record
        return list(record.blocks) if record is not None else []

    def emit(self) -> LogEntry | None:
        if self.moved:
            return None
        if self.blocks is None:
            return self.entry
        if not self.blocks:
            return None
        record = self.entry.record
        assert record is not None  # Only parsed records have their blocks edited
        return self.entry.replace_record(record.with_blocks(self.blocks))


def restore_adjacency(
    entries: Sequence[LogEntry],
    findings: Findings,
) -> tuple[list[LogEntry], list[RepairAction]]:
    """
    Rewrite entries so every tool_use is answered by the next entry.

    Args:
        entries: The snapshot the findings were computed against
        findings: Scan of exactly these entries

    Returns:
        New entry sequence and the actions taken
    """
    slots = [_Slot(entry) for entry in entries]
    actions: list[RepairAction] = []

    by_invocation: dict[int, list[ToolPairing]] = {}
    for pairing in findings.pairings:
        by_invocation.setdefault(pairing.invocation_position, []).append(pairing)

    for position in sorted(by_invocation):
        group = by_invocation[position]
        if all(p.gap_kind == 'none' for p in group):
            continue
        _pair_invocation(slots, position, group, actions)

    out: list[LogEntry] = []
    for slot in slots:
        entry = slot.emit()
        if entry is not None:
            out.append(entry)
        out.extend(slot.followers)
    return out, actions


def _pair_invocation(
    slots: list[_Slot],
    position: int,
    group: list[ToolPairing],
    actions: list[RepairAction],
) -> None:
    """Attach one partner record behind the invocation record at position."""
    invocation = slots[position]
    tool_ids = {p.tool_id for p in group}
    result_positions = sorted({p.result_position for p in group if p.result_position is not None})
    has_missing = any(p.result_position is None for p in group)

    # Narrowest edit: one untouched record answering only this invocation moves as-is
    if not has_missing and len(result_positions) == 1:
        host = slots[result_positions[0]]
        host_record = host.entry.record
        if (
            host.blocks is None
            and not host.moved
            and host_record is not None
            and set(host_record.tool_result_ids) <= tool_ids
        ):
            host.moved = True
            invocation.followers.append(host.entry)
            for p in group:
                actions.append(
                    _action(
                        'move_result',
                        p.tool_id,
                        host.entry,
                        f'moved result from line {p.result_line} to follow tool_use at line {p.invocation_line}',
                    )
                )
            return

    gathered: dict[str, ContentBlock] = {}
    carried: list[ContentBlock] = []
    envelope: _Slot | None = None
    for result_position in result_positions:
        slot = slots[result_position]
        wanted = {p.tool_id for p in group if p.result_position == result_position}
        kept: list[ContentBlock] = []
        for block in slot.current_blocks:
            if isinstance(block, ToolResultBlock) and block.tool_use_id in wanted and block.tool_use_id not in gathered:
                gathered[block.tool_use_id] = block
            elif envelope is None and not isinstance(block, (ToolResultBlock, ToolUseBlock)):
                # Non-result content of the first result record travels with it
                carried.append(block)
            else:
                kept.append(block)
        if envelope is None:
            envelope = slot
        slot.blocks = kept

    blocks: list[ContentBlock] = []
    for p in group:
        block = gathered.get(p.tool_id)
        if block is None:
            block = synthetic_result_block(p.tool_id)
            actions.append(
                _action(
                    'synthesize_result',
                    p.tool_id,
                    invocation.entry,
                    f'added synthetic error result after tool_use at line {p.invocation_line}',
                )
            )
        elif p.gap_kind == 'non_adjacent':
            actions.append(
                _action(
                    'merge_results',
                    p.tool_id,
                    invocation.entry,
                    f'moved result block from line {p.result_line} to follow tool_use at line {p.invocation_line}',
                )
            )
        blocks.append(block)
    blocks.extend(carried)

    envelope_record = envelope.entry.record if envelope is not None else None
    if envelope is not None and envelope_record is not None:
        partner_record = envelope_record.with_blocks(blocks)
        if envelope.blocks and 'uuid' in partner_record.data:
            # The rest of the source record stays behind under its own uuid
            partner_record = partner_record.with_data({**partner_record.data, 'uuid': str(uuid.uuid4())})
        partner = envelope.entry.replace_record(partner_record)
    else:
        invocation_record = invocation.entry.record
        assert invocation_record is not None  # Pairings only come from parsed records
        partner = LogEntry.from_record(synthetic_record(invocation_record, blocks))
    invocation.followers.append(partner)


def synthetic_result_block(tool_id: str) -> ToolResultBlock:
    """The is_error tool_result standing in for a result that was never written."""
    return ToolResultBlock(type='tool_result', tool_use_id=tool_id, content=SYNTHETIC_RESULT_TEXT, is_error=True)


def synthetic_record(invocation: Record, blocks: Sequence[ContentBlock]) -> Record:
    """
    Build a user record answering an invocation record.

    Mirrors the invocation's shape: Claude Code envelopes ({"type": ..., "message": ...})
    get a user envelope with the invocation's session metadata, a fresh uuid and
    parentUuid pointing at the invocation; flat messages get a flat user message.
    """
    source = invocation.data
    content = [dump_block(block) for block in blocks]
    data: dict[str, Any] = {}
    if 'uuid' in source:
        data['parentUuid'] = source['uuid']
    for key in _ENVELOPE_KEYS:
        if key in source:
            data[key] = source[key]
    if 'type' in source or isinstance(source.get('message'), Mapping):
        if 'type' in source:
            data['type'] = 'user'
        data['message'] = {'role': 'user', 'content': content}
    else:
        data['role'] = 'user'
        data['content'] = content
    if 'uuid' in source:
        data['uuid'] = str(uuid.uuid4())
    if 'timestamp' in source:
        data['timestamp'] = source['timestamp']
    return Record.from_data(data)


def _action(kind: ActionKind, tool_id: str | None, entry: LogEntry, detail: str) -> RepairAction:
    return RepairAction(kind=kind, tool_id=tool_id, line_number=entry.line_number, detail=detail)
