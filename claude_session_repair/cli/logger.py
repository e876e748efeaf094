"""
CLI logging adapter - routes library log records to the terminal.

The services log through the standard logging module; the CLI installs a
handler that prints them the way every command prints progress.
"""

from __future__ import annotations

import logging

import typer

_PACKAGE_LOGGER = 'claude_session_repair'


class CLILogHandler(logging.Handler):
    """
    Log handler for CLI usage.

    Prints [INFO] lines to stdout (verbose mode only) and [WARNING]/[ERROR]
    lines to stderr.
    """

    def __init__(self, verbose: bool = False) -> None:
        """
        Initialize CLI log handler.

        Args:
            verbose: If True, show info messages. If False, only warnings/errors.
        """
        super().__init__(logging.INFO if verbose else logging.WARNING)
        self.verbose = verbose

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            self.handleError(record)
            return
        if record.levelno >= logging.ERROR:
            typer.secho(f'[ERROR] {message}', fg=typer.colors.RED, err=True)
        elif record.levelno >= logging.WARNING:
            typer.secho(f'[WARNING] {message}', fg=typer.colors.YELLOW, err=True)
        else:
            typer.echo(f'[INFO] {message}')


def configure_cli_logging(verbose: bool = False) -> CLILogHandler:
    """Attach a fresh CLILogHandler to the package logger (replacing earlier ones)."""
    package_logger = logging.getLogger(_PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        if isinstance(handler, CLILogHandler):
            package_logger.removeHandler(handler)
    handler = CLILogHandler(verbose)
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.INFO if verbose else logging.WARNING)
    return handler
