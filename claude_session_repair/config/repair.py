"""
Repair configuration.

Extends base configuration with lock, backup and deny-list settings. Only the
CLI reads these; the repair services receive plain values.
"""

from __future__ import annotations

import re
from pathlib import Path

import pydantic

from claude_session_repair.config.base import BaseRepairSettings, lazy_settings

_TOOL_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')


class RepairSettings(BaseRepairSettings):
    """Repair engine configuration."""

    # Tool ids that make the API reject a conversation wherever they appear (JSON list)
    POISONED_TOOL_IDS: list[str] = []

    # Session lock
    LOCK_TIMEOUT_SECONDS: float = 5.0
    STALE_LOCK_SECONDS: float = 30.0  # Lock age before a dead holder's lock is broken
    LOCK_POLL_INTERVAL_SECONDS: float = 0.1

    # Backups
    KEEP_BACKUP: bool = True  # Keep <log>.<timestamp>.backup after a successful repair
    BACKUP_RETENTION_DAYS: float = 7.0  # Default age for sweep-backups

    PROJECTS_DIR: Path = pydantic.Field(default_factory=lambda: Path.home() / '.claude' / 'projects')

    @pydantic.field_validator(
        'LOCK_TIMEOUT_SECONDS',
        'STALE_LOCK_SECONDS',
        'LOCK_POLL_INTERVAL_SECONDS',
        'BACKUP_RETENTION_DAYS',
    )
    @classmethod
    def validate_positive(cls, v: float, info: pydantic.ValidationInfo) -> float:
        """Timeouts and ages must be positive."""
        if v <= 0:
            raise ValueError(f'{info.field_name} must be positive')
        return v

    @pydantic.field_validator('POISONED_TOOL_IDS')
    @classmethod
    def validate_tool_ids(cls, v: list[str]) -> list[str]:
        """Tool ids are single tokens like toolu_01AbC..."""
        for tool_id in v:
            if not _TOOL_ID_PATTERN.fullmatch(tool_id):
                raise ValueError(f'Invalid tool id: {tool_id!r}')
        return v


# Module-level singleton (lazy-loaded)
settings = lazy_settings(RepairSettings)
