"""Service layer for session log scanning and repair."""

from claude_session_repair.services.discovery import SessionDiscoveryService, SessionFile
from claude_session_repair.services.planner import RepairPlan, plan_repair
from claude_session_repair.services.reader import LogEntry, read_log, write_log
from claude_session_repair.services.repair import SessionRepairService
from claude_session_repair.services.scanner import scan_entries, scan_log
from claude_session_repair.services.transaction import LogTransaction, SessionFileLock, sweep_backups

__all__ = [
    'LogEntry',
    'LogTransaction',
    'RepairPlan',
    'SessionDiscoveryService',
    'SessionFile',
    'SessionFileLock',
    'SessionRepairService',
    'plan_repair',
    'read_log',
    'scan_entries',
    'scan_log',
    'sweep_backups',
    'write_log',
]
