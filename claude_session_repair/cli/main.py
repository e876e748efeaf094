#!/usr/bin/env python3
"""
Command-line interface for claude-session-repair.

Provides commands to scan, repair and restore Claude Code session logs that
`claude --resume` rejects because a tool_use is not followed by its tool_result.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Literal, TypeGuard

import typer

from claude_session_repair.cli.logger import configure_cli_logging
from claude_session_repair.config.repair import settings
from claude_session_repair.exceptions import SessionRepairError
from claude_session_repair.schemas.findings import Findings
from claude_session_repair.schemas.report import ChainRepairResult, ChainScanResult, RepairMode, RepairReport
from claude_session_repair.services.discovery import SessionDiscoveryService
from claude_session_repair.services.repair import SessionRepairService
from claude_session_repair.services.transaction import sweep_backups

app = typer.Typer(
    name='claude-session-repair',
    help='Scan and repair Claude Code session logs',
    add_completion=False,
)

# Type aliases and validators
OutputFormat = Literal['text', 'json']


def _is_output_format(value: str) -> TypeGuard[OutputFormat]:
    """Type guard for valid output formats."""
    return value in ('text', 'json')


def _validate_output_format(value: str) -> OutputFormat:
    """Validate and narrow output format for typer callback."""
    if _is_output_format(value):
        return value
    raise typer.BadParameter("Must be 'text' or 'json'")


def _resolve_log(target: str) -> Path:
    """Resolve a file path or session ID (prefix) to a session log, exiting if not found."""
    discovery = SessionDiscoveryService(settings.PROJECTS_DIR)
    path = discovery.resolve_log_path(target)
    if path is None:
        typer.secho(f'Error: Session log not found: {target}', fg=typer.colors.RED, err=True)
        typer.echo(f'Searched in: {discovery.claude_sessions_dir}', err=True)
        raise typer.Exit(1)
    return path


def _build_service(
    poisoned_ids: list[str] | None,
    lock_timeout: float | None = None,
    keep_backup: bool | None = None,
) -> SessionRepairService:
    """Combine configured and command-line settings into a repair service."""
    return SessionRepairService(
        poisoned_tool_ids=[*settings.POISONED_TOOL_IDS, *(poisoned_ids or [])],
        lock_timeout=lock_timeout if lock_timeout is not None else settings.LOCK_TIMEOUT_SECONDS,
        stale_lock_after=settings.STALE_LOCK_SECONDS,
        lock_poll_interval=settings.LOCK_POLL_INTERVAL_SECONDS,
        keep_backup=keep_backup if keep_backup is not None else settings.KEEP_BACKUP,
    )


def _fail(error: Exception) -> typer.Exit:
    typer.secho(f'Error: {error}', fg=typer.colors.RED, err=True)
    for note in getattr(error, '__notes__', []):
        typer.echo(f'  {note}', err=True)
    return typer.Exit(1)


@app.command()
def scan(
    target: str | None = typer.Argument(None, help='Session log path or session ID (full UUID or prefix)'),
    chain: Path | None = typer.Option(None, '--chain', help='Scan every session log in this project directory'),
    poisoned_id: list[str] | None = typer.Option(
        None, '--poisoned-id', help='Tool id to report wherever it appears (repeatable)'
    ),
    format: str = typer.Option(
        'text', '--format', '-f', help='Output format: text or json', callback=_validate_output_format
    ),
    verbose: bool = typer.Option(False, '--verbose', '-v', help='Verbose output'),
) -> None:
    """Report adjacency violations and poisoned tool ids without changing the log.

    Examples:

        claude-session-repair scan 019b53ff

        claude-session-repair scan --chain ~/.claude/projects/-Users-me-project --poisoned-id toolu_01AbC
    """
    configure_cli_logging(verbose)
    if (target is None) == (chain is None):
        typer.secho('Error: Provide either a TARGET or --chain DIR (not both).', fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if chain is not None:
        if not chain.is_dir():
            typer.secho(f'Error: Not a directory: {chain}', fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        result = _build_service(poisoned_id).scan_chain(chain)
        if format == 'json':
            typer.echo(result.model_dump_json(indent=2))
        else:
            _print_chain_scan(result)
        if result.failures:
            raise typer.Exit(1)
        return

    assert target is not None
    try:
        path = _resolve_log(target)
        findings = _build_service(poisoned_id).scan(path)
    except (SessionRepairError, OSError) as e:
        raise _fail(e) from e

    if format == 'json':
        typer.echo(findings.model_dump_json(indent=2))
        return
    _print_findings(findings)


@app.command()
def repair(
    target: str | None = typer.Argument(None, help='Session log path or session ID (full UUID or prefix)'),
    chain: Path | None = typer.Option(None, '--chain', help='Repair every session log in this project directory'),
    auto: bool = typer.Option(False, '--auto', '-y', help='Apply without asking for confirmation'),
    poisoned_id: list[str] | None = typer.Option(
        None, '--poisoned-id', help='Tool id to remove/redact wherever it appears (repeatable)'
    ),
    lock_timeout: float | None = typer.Option(None, '--lock-timeout', help='Seconds to wait for the session lock'),
    no_backup: bool = typer.Option(False, '--no-backup', help="Don't keep a backup after a successful repair"),
    verbose: bool = typer.Option(False, '--verbose', '-v', help='Verbose output'),
) -> None:
    """Repair a session log in place (locked, backed up, rolled back on failure).

    Examples:

        claude-session-repair repair 019b53ff

        claude-session-repair repair --chain ~/.claude/projects/-Users-me-project --auto
    """
    configure_cli_logging(verbose)
    if (target is None) == (chain is None):
        typer.secho('Error: Provide either a TARGET or --chain DIR (not both).', fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if lock_timeout is not None and lock_timeout <= 0:
        raise typer.BadParameter('--lock-timeout must be positive')

    service = _build_service(poisoned_id, lock_timeout, False if no_backup else None)
    mode: RepairMode = 'auto' if auto else 'interactive'

    try:
        if chain is not None:
            if not chain.is_dir():
                typer.secho(f'Error: Not a directory: {chain}', fg=typer.colors.RED, err=True)
                raise typer.Exit(1)
            result = service.repair_chain(chain, mode, confirm=_confirm, on_plan=_print_plan)
            _print_chain_result(result)
            if result.failures:
                raise typer.Exit(1)
            return

        assert target is not None
        path = _resolve_log(target)
        report = service.repair(path, mode, confirm=_confirm, on_plan=_print_plan)
    except (SessionRepairError, OSError) as e:
        raise _fail(e) from e

    _print_report(report)


@app.command()
def restore(
    target: str = typer.Argument(..., help='Session log path or session ID (full UUID or prefix)'),
    verbose: bool = typer.Option(False, '--verbose', '-v', help='Verbose output'),
) -> None:
    """Put the newest backup of a session log back in place."""
    configure_cli_logging(verbose)
    try:
        path = _resolve_log(target)
        backup = _build_service(None).restore(path)
    except (SessionRepairError, OSError) as e:
        raise _fail(e) from e

    typer.secho('✓ Session log restored!', fg=typer.colors.GREEN)
    typer.echo(f'  Log: {path}')
    typer.echo(f'  From: {backup.name}')


@app.command('sweep-backups')
def sweep_backups_command(
    directory: Path = typer.Argument(..., help='Project directory holding session logs'),
    max_age_days: float | None = typer.Option(None, '--max-age-days', help='Delete backups older than this'),
    verbose: bool = typer.Option(False, '--verbose', '-v', help='Verbose output'),
) -> None:
    """Delete old repair backups (.backup, .tx-backup, .fixed, .cleaned, .pre-deep-clean)."""
    configure_cli_logging(verbose)
    days = max_age_days if max_age_days is not None else settings.BACKUP_RETENTION_DAYS
    if days <= 0:
        raise typer.BadParameter('--max-age-days must be positive')
    if not directory.is_dir():
        typer.secho(f'Error: Not a directory: {directory}', fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    try:
        deleted = sweep_backups(directory, max_age=timedelta(days=days))
    except OSError as e:
        raise _fail(e) from e

    if not deleted:
        typer.echo(f'No backups older than {days:g} days in {directory}')
        return
    typer.secho(f'✓ Deleted {len(deleted)} old backups', fg=typer.colors.GREEN)
    for path in deleted:
        typer.echo(f'  - {path.name}')


# ==============================================================================
# Output helpers
# ==============================================================================


def _confirm(report: RepairReport) -> bool:
    return typer.confirm(f'Apply {len(report.actions)} repairs to {Path(report.path).name}?', default=False)


def _print_findings(findings: Findings) -> None:
    typer.secho(f'Session log: {findings.path}', bold=True)
    typer.echo(f'  Entries: {findings.total_entries:,}')
    typer.echo(f'  Tool pairs: {len(findings.pairings):,}')
    typer.echo(f'  Non-adjacent results: {findings.non_adjacent_count}')
    typer.echo(f'  Missing results: {findings.missing_count}')
    typer.echo(f'  Poisoned id hits: {len(findings.poison_hits)}')
    if findings.unparsed_lines:
        typer.echo(f'  Unparsed lines: {len(findings.unparsed_lines)}')
    if findings.irreparable:
        typer.echo(f'  Irreparable: {len(findings.irreparable)}')

    if findings.violations:
        typer.echo()
        typer.secho('Violations:', bold=True)
        for pairing in findings.violations:
            where = f'line {pairing.result_line}' if pairing.result_position is not None else 'no result'
            typer.echo(f'  - {pairing.tool_id}: tool_use at line {pairing.invocation_line}, {where}')
    if findings.poison_hits:
        typer.echo()
        typer.secho('Poisoned ids:', bold=True)
        for hit in findings.poison_hits:
            typer.echo(f'  - {hit.tool_id}: line {hit.line_number} ({hit.location})')
    if findings.irreparable:
        typer.echo()
        typer.secho('Irreparable (left untouched):', bold=True)
        for entry in findings.irreparable:
            typer.echo(f'  - {entry.tool_id}: line {entry.line_number} ({entry.reason})')

    typer.echo()
    if findings.needs_repair:
        typer.secho('✗ Repair needed', fg=typer.colors.YELLOW)
    else:
        typer.secho('✓ No repair needed', fg=typer.colors.GREEN)


def _print_chain_scan(result: ChainScanResult) -> None:
    typer.secho(f'Project: {result.directory}', bold=True)
    for findings in result.findings:
        name = Path(findings.path or '').name
        line = (
            f'{name}: {findings.non_adjacent_count} non-adjacent, {findings.missing_count} missing, '
            f'{len(findings.poison_hits)} poisoned id hits'
        )
        if findings.needs_repair:
            typer.secho(f'  ✗ {line}', fg=typer.colors.YELLOW)
        else:
            typer.echo(f'  ✓ {line}')
        for hit in findings.poison_hits:
            typer.echo(f'      {hit.tool_id}: line {hit.line_number} ({hit.location})')
    for failure in result.failures:
        typer.secho(f'  ✗ {Path(failure.path).name}: {failure.error}', fg=typer.colors.RED, err=True)

    typer.echo()
    typer.echo(
        f'{len(result.findings) + len(result.failures)} logs: {result.needs_repair_count} need repair, '
        f'{len(result.failures)} unreadable'
    )


def _print_plan(report: RepairReport) -> None:
    findings = report.findings
    typer.secho(f'Repair plan for {report.path}', bold=True)
    typer.echo(
        f'  Findings: {findings.non_adjacent_count} non-adjacent, {findings.missing_count} missing, '
        f'{len(findings.poison_hits)} poisoned id hits'
    )
    for kind, count in sorted(report.action_counts.items()):
        typer.echo(f'  - {kind}: {count}')
    typer.echo(f'  Entries: {report.entries_before:,} -> {report.entries_after:,}')


def _print_report(report: RepairReport) -> None:
    name = Path(report.path).name
    if report.status == 'clean':
        typer.secho(f'✓ {name}: no repair needed', fg=typer.colors.GREEN)
    elif report.status == 'declined':
        typer.secho(f'{name}: repair declined, log unchanged', fg=typer.colors.YELLOW)
    else:
        typer.secho(f'✓ {name}: applied {len(report.actions)} repairs', fg=typer.colors.GREEN)
        if report.backup_path is not None:
            typer.echo(f'  Backup: {report.backup_path}')
    if report.irreparable:
        typer.secho(f'  {len(report.irreparable)} irreparable entries left untouched', fg=typer.colors.YELLOW)


def _print_chain_result(result: ChainRepairResult) -> None:
    for report in result.reports:
        _print_report(report)
    for failure in result.failures:
        typer.secho(f'✗ {Path(failure.path).name}: {failure.error}', fg=typer.colors.RED, err=True)
    typer.echo()
    typer.echo(
        f'{len(result.reports) + len(result.failures)} logs: {result.repaired_count} repaired, '
        f'{len(result.failures)} failed'
    )


def main() -> None:
    """Entry point for CLI."""
    app()


if __name__ == '__main__':
    main()
