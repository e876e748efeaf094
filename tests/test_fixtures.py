"""
Tests for scenario fixtures.

These tests run the repair service over every session log in the
fixtures/scenarios/ directory. This serves multiple purposes:

1. Regression testing - planner changes can't silently change what gets repaired
2. Documentation - fixtures show the real-world ways sessions break
3. CI integration - can run in CI without access to user session files
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Any

import pytest

from claude_session_repair.services.reader import read_log
from claude_session_repair.services.repair import SessionRepairService
from tests.builders import assert_adjacent

# Path to fixtures directory (relative to repo root)
FIXTURES_DIR = Path(__file__).parent.parent / 'fixtures'
SCENARIOS_DIR = FIXTURES_DIR / 'scenarios'


def load_manifest() -> dict[str, Any]:
    return json.loads((SCENARIOS_DIR / 'manifest.json').read_text())


def get_scenario_fixtures() -> list[Path]:
    """Get all scenario fixture files."""
    if not SCENARIOS_DIR.exists():
        return []
    return sorted(SCENARIOS_DIR.glob('*.jsonl'))


@pytest.mark.parametrize(
    'fixture_path',
    get_scenario_fixtures(),
    ids=lambda p: p.name,
)
def test_scenario_repairs_as_documented(fixture_path: Path, tmp_path: Path) -> None:
    """Each fixture repairs with exactly the documented actions and ends up adjacent.

    Runs on a copy: fixtures are never modified.
    """
    scenario = load_manifest()['fixtures'][fixture_path.name]
    log = Path(shutil.copy(fixture_path, tmp_path / fixture_path.name))
    original = log.read_bytes()
    service = SessionRepairService(poisoned_tool_ids=scenario['poisoned_tool_ids'])

    report = service.repair(log, 'auto')

    assert report.action_counts == scenario['expected_actions']
    assert_adjacent(list(read_log(log)))
    if not scenario['expected_actions']:
        assert report.status == 'clean'
        assert log.read_bytes() == original
    else:
        assert report.status == 'repaired'
        # A second run finds nothing left to do
        assert service.repair(log, 'auto').status == 'clean'


@pytest.mark.parametrize(
    'fixture_path',
    get_scenario_fixtures(),
    ids=lambda p: p.name,
)
def test_scenario_content_survives(fixture_path: Path, tmp_path: Path) -> None:
    """Every text block without a poisoned id is still present after repair."""
    scenario = load_manifest()['fixtures'][fixture_path.name]
    poisoned = scenario['poisoned_tool_ids']
    log = Path(shutil.copy(fixture_path, tmp_path / fixture_path.name))
    before = _texts(log, poisoned)

    SessionRepairService(poisoned_tool_ids=poisoned).repair(log, 'auto')

    assert before <= _texts(log, poisoned)


def test_fixtures_directory_exists() -> None:
    """Verify fixtures directory structure exists."""
    assert FIXTURES_DIR.exists(), 'fixtures/ directory not found'
    assert SCENARIOS_DIR.exists(), 'fixtures/scenarios/ directory not found'


def test_scenarios_have_manifest() -> None:
    """Verify every scenario is documented in manifest.json."""
    manifest = load_manifest()
    assert 'fixtures' in manifest, 'manifest.json missing "fixtures" key'

    fixture_files = {p.name for p in get_scenario_fixtures()}
    documented_fixtures = set(manifest['fixtures'].keys())

    undocumented = fixture_files - documented_fixtures
    assert not undocumented, f'Fixtures not documented in manifest.json: {undocumented}'
    missing = documented_fixtures - fixture_files
    assert not missing, f'manifest.json documents missing fixtures: {missing}'


def _texts(log: Path, poisoned: list[str]) -> set[str]:
    texts: set[str] = set()
    for entry in read_log(log):
        record = entry.record
        if record is None:
            continue
        candidates = [record.text_content] + [getattr(b, 'text', None) for b in record.blocks]
        texts.update(t for t in candidates if t and not any(p in t for p in poisoned))
    return texts
