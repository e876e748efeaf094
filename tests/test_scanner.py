"""Tests for the invariant scanner."""

from __future__ import annotations

from pathlib import Path

import pytest

from claude_session_repair.exceptions import IrreparableLog, ParseError
from claude_session_repair.services.reader import LogEntry
from claude_session_repair.services.scanner import mentions, poison_pattern, scan_entries, scan_log
from tests.builders import (
    assistant,
    entries,
    summary,
    text,
    tool_result,
    tool_use,
    user,
    user_text,
    write_jsonl,
)

POISON = 'toolu_01PoisonedIdXYZ'


def test_adjacent_pair_is_clean() -> None:
    findings = scan_entries(entries([assistant('a1', tool_use('t1')), user('u1', tool_result('t1'))]))

    (pairing,) = findings.pairings
    assert pairing.gap_kind == 'none'
    assert pairing.invocation_position == 0
    assert pairing.result_position == 1
    assert not findings.needs_repair


def test_non_adjacent_result() -> None:
    log = entries(
        [
            assistant('a1', tool_use('t1')),
            user_text('u1', '[Request interrupted by user]'),
            user('u2', tool_result('t1')),
        ]
    )

    findings = scan_entries(log)

    (pairing,) = findings.pairings
    assert pairing.gap_kind == 'non_adjacent'
    assert (pairing.invocation_line, pairing.result_line) == (1, 3)
    assert findings.non_adjacent_count == 1
    assert findings.needs_repair


def test_missing_result() -> None:
    findings = scan_entries(entries([assistant('a1', tool_use('t1')), user_text('u1', 'continue')]))

    (pairing,) = findings.pairings
    assert pairing.gap_kind == 'missing'
    assert pairing.result_position is None
    assert findings.missing_count == 1


def test_tool_use_as_last_entry_is_missing() -> None:
    findings = scan_entries(entries([user_text('u1', 'go'), assistant('a1', tool_use('t1'))]))

    assert [p.gap_kind for p in findings.pairings] == ['missing']


def test_parallel_tool_calls_in_one_record() -> None:
    log = entries([assistant('a1', tool_use('t1'), tool_use('t2')), user('u1', tool_result('t1'), tool_result('t2'))])

    findings = scan_entries(log)

    assert [p.gap_kind for p in findings.pairings] == ['none', 'none']


def test_dangling_result_is_irreparable() -> None:
    findings = scan_entries(entries([user('u1', tool_result('ghost'))]))

    (entry,) = findings.irreparable
    assert entry.reason == 'dangling_result'
    assert entry.tool_id == 'ghost'
    assert not findings.needs_repair


def test_result_before_invocation_is_forward_reference() -> None:
    log = entries([user('u1', tool_result('t1')), assistant('a1', tool_use('t1')), user('u2', tool_result('t1'))])

    findings = scan_entries(log)

    assert [e.reason for e in findings.irreparable] == ['forward_reference']
    (pairing,) = findings.pairings
    assert pairing.gap_kind == 'none'


def test_duplicates_are_irreparable() -> None:
    log = entries(
        [
            assistant('a1', tool_use('t1')),
            user('u1', tool_result('t1')),
            assistant('a2', tool_use('t1')),
            user('u2', tool_result('t1')),
        ]
    )

    findings = scan_entries(log)

    assert sorted(e.reason for e in findings.irreparable) == ['duplicate_invocation', 'duplicate_result']
    assert len(findings.pairings) == 1


def test_unparsed_lines_are_reported_and_skipped() -> None:
    log = [
        *entries([assistant('a1', tool_use('t1'))]),
        LogEntry(line_number=2, raw='{"broken', parsed=ParseError('invalid JSON', line_number=2)),
    ]

    findings = scan_entries(log)

    assert findings.unparsed_lines == [2]
    assert findings.pairings[0].gap_kind == 'missing'


def test_poison_hits_are_located() -> None:
    log = entries(
        [
            assistant('a1', tool_use(POISON)),
            user('u1', tool_result(POISON)),
            assistant('a2', text(f'Error: {POISON} failed')),
            summary(f'Fixed {POISON}'),
            user_text('u2', 'unrelated'),
        ]
    )

    findings = scan_entries(log, [POISON])

    assert [(h.position, h.location) for h in findings.poison_hits] == [
        (0, 'tool_use'),
        (1, 'tool_result'),
        (2, 'text'),
        (3, 'summary'),
    ]


def test_poison_match_is_whole_word() -> None:
    pattern = poison_pattern('toolu_1')
    longer = entries([user_text('u1', 'see toolu_12 and xtoolu_1')])[0]
    exact = entries([user_text('u1', 'see toolu_1.')])[0]

    assert not mentions(longer, pattern)
    assert mentions(exact, pattern)


def test_poison_in_nested_tool_output_is_embedded() -> None:
    log = entries([user('u1', tool_result('t0', content=f'history: {POISON}'))])

    findings = scan_entries(log, [POISON])

    assert [h.location for h in findings.poison_hits] == ['embedded']


def test_scan_log_reads_file(tmp_path: Path) -> None:
    path = write_jsonl(tmp_path / 's.jsonl', [assistant('a1', tool_use('t1'))])

    findings = scan_log(path)

    assert findings.path == str(path)
    assert findings.missing_count == 1


def test_scan_log_rejects_fully_unparseable_file(tmp_path: Path) -> None:
    path = write_jsonl(tmp_path / 's.jsonl', ['not json', '{"also": broken'])

    with pytest.raises(IrreparableLog):
        scan_log(path)


def test_scan_log_accepts_empty_file(tmp_path: Path) -> None:
    path = tmp_path / 's.jsonl'
    path.write_text('')

    assert scan_log(path).total_entries == 0
