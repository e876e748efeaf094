"""
Builders for session log test data.

Records mirror what Claude Code writes: a typed envelope with session metadata
around a role/content message.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from claude_session_repair.schemas.records import Record
from claude_session_repair.services.reader import LogEntry

SESSION_ID = '019b53ff-0000-7000-8000-000000000001'


def text(value: str) -> dict[str, Any]:
    return {'type': 'text', 'text': value}


def tool_use(tool_id: str, name: str = 'Bash', command: str = 'ls') -> dict[str, Any]:
    return {'type': 'tool_use', 'id': tool_id, 'name': name, 'input': {'command': command}}


def tool_result(tool_id: str, content: str = 'ok') -> dict[str, Any]:
    return {'type': 'tool_result', 'tool_use_id': tool_id, 'content': content}


def _envelope(record_type: str, uuid: str, content: Any, parent: str | None) -> dict[str, Any]:
    return {
        'parentUuid': parent,
        'isSidechain': False,
        'userType': 'external',
        'cwd': '/Users/me/project',
        'sessionId': SESSION_ID,
        'version': '2.0.76',
        'gitBranch': 'main',
        'type': record_type,
        'message': {'role': record_type, 'content': content},
        'uuid': uuid,
        'timestamp': '2026-01-05T10:00:00.000Z',
    }


def assistant(uuid: str, *blocks: dict[str, Any], parent: str | None = None) -> dict[str, Any]:
    return _envelope('assistant', uuid, list(blocks), parent)


def user(uuid: str, *blocks: dict[str, Any], parent: str | None = None) -> dict[str, Any]:
    return _envelope('user', uuid, list(blocks), parent)


def user_text(uuid: str, content: str, parent: str | None = None) -> dict[str, Any]:
    return _envelope('user', uuid, content, parent)


def summary(value: str, leaf: str = 'leaf-1') -> dict[str, Any]:
    return {'type': 'summary', 'summary': value, 'leafUuid': leaf}


def dumps(record: dict[str, Any]) -> str:
    return json.dumps(record, separators=(',', ':'), ensure_ascii=False)


def write_jsonl(path: Path, records: Sequence[dict[str, Any] | str]) -> Path:
    """Write records (dicts, or raw strings written verbatim) as a JSONL file."""
    lines = [r if isinstance(r, str) else dumps(r) for r in records]
    path.write_text(''.join(line + '\n' for line in lines), encoding='utf-8')
    return path


def entries(records: Sequence[dict[str, Any]]) -> list[LogEntry]:
    """In-memory entries numbered like lines of a file."""
    return [LogEntry.from_record(Record.parse(dumps(r)), i) for i, r in enumerate(records, start=1)]


def assert_adjacent(log: Sequence[LogEntry]) -> None:
    """Every tool_use must be answered by a tool_result in the very next entry."""
    for position, entry in enumerate(log):
        record = entry.record
        if record is None:
            continue
        for tool_id in record.tool_use_ids:
            assert position + 1 < len(log), f'{tool_id}: tool_use is the last entry'
            following = log[position + 1].record
            assert following is not None, f'{tool_id}: next entry is unparsed'
            assert tool_id in following.tool_result_ids, f'{tool_id}: result is not in the next entry'


def tool_ids(log: Sequence[LogEntry]) -> tuple[list[str], list[str]]:
    """All tool_use ids and tool_result ids, in order."""
    uses: list[str] = []
    results: list[str] = []
    for entry in log:
        if entry.record is not None:
            uses.extend(entry.record.tool_use_ids)
            results.extend(entry.record.tool_result_ids)
    return uses, results
