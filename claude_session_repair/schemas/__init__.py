"""
Schema definitions for claude-session-repair.

This package contains the typed models of the repair engine:
- records: one session log line and its content blocks
- findings: Invariant Scanner output
- report: Repair Planner / service results
"""

from __future__ import annotations

from claude_session_repair.schemas.base import StrictModel
from claude_session_repair.schemas.findings import Findings, GapKind, IrreparableEntry, PoisonHit, ToolPairing
from claude_session_repair.schemas.records import (
    ContentBlock,
    OpaqueBlock,
    Record,
    RecordKind,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from claude_session_repair.schemas.report import (
    ChainFailure,
    ChainRepairResult,
    ChainScanResult,
    RepairAction,
    RepairMode,
    RepairReport,
    RepairStatus,
)

__all__ = [
    'StrictModel',
    # Records
    'ContentBlock',
    'OpaqueBlock',
    'Record',
    'RecordKind',
    'TextBlock',
    'ToolResultBlock',
    'ToolUseBlock',
    # Findings
    'Findings',
    'GapKind',
    'IrreparableEntry',
    'PoisonHit',
    'ToolPairing',
    # Report
    'ChainFailure',
    'ChainRepairResult',
    'ChainScanResult',
    'RepairAction',
    'RepairMode',
    'RepairReport',
    'RepairStatus',
]
