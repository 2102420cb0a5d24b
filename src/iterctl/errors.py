"""Errors raised by iterctl and their user-facing formatting.

Feature-level failures (failing tests, type errors, timeouts) are never
raised; they travel as RecoveryResult/ReplanResult values. Only
infrastructure problems raise the exceptions defined here:
- Plan file read/write/parse failures
- Backup creation and restore failures
- Agent execution and agent output parsing failures
- Version-control failures during rollback
- Invalid configuration

The second half of the module renders errors for the CLI with:
- Human-friendly messages
- Suggested fixes
- Hidden stack traces (unless debug mode)
"""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rich.console import Console

# Debug mode enabled by ITERCTL_DEBUG=1 or --debug flag
_debug_mode = os.environ.get("ITERCTL_DEBUG", "0") == "1"


class IterctlError(Exception):
    """Base class for all iterctl errors."""


class ConfigError(IterctlError):
    """Invalid configuration value."""


class PlanFileError(IterctlError):
    """The plan file could not be read, parsed or written."""


class BackupError(IterctlError):
    """A plan backup could not be created or read."""


class InvalidVersionError(IterctlError, ValueError):
    """A restore was requested for a version that does not exist."""

    def __init__(self, version: int, available: int):
        self.version = version
        self.available = available
        super().__init__(f"Invalid version number: {version} (available: 1-{available})")


class PlanParseError(IterctlError):
    """Agent output did not contain a parseable plan array."""


class AgentExecutionError(IterctlError):
    """The external agent command failed to run."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(message)


class RollbackError(IterctlError):
    """The version-control reset used by rollback recovery failed."""


class ErrorCategory(str, Enum):
    """Categories of errors for consistent formatting."""

    CONFIG = "config"  # Configuration errors
    PLAN = "plan"  # Plan file errors
    BACKUP = "backup"  # Plan versioning errors
    AGENT = "agent"  # Agent execution/output errors
    GIT = "git"  # Git operation errors
    FILE = "file"  # File not found, permission errors
    INTERNAL = "internal"  # Internal/unexpected errors


@dataclass
class ErrorInfo:
    """Structured error information for consistent display."""

    message: str
    category: ErrorCategory
    suggestion: str | None = None
    details: str | None = None
    original_error: Exception | None = None


def set_debug_mode(enabled: bool) -> None:
    """Enable or disable debug mode for verbose error output."""
    global _debug_mode
    _debug_mode = enabled


def is_debug_mode() -> bool:
    """Check if debug mode is enabled."""
    return _debug_mode


def format_error(error: ErrorInfo, console: Console) -> None:
    """Format and display an error with consistent styling.

    Args:
        error: Structured error information
        console: Rich console for output
    """
    console.print(f"[bold red]Error:[/bold red] {error.message}")

    if error.details:
        if _debug_mode or len(error.details) < 200:
            console.print(f"[dim]{error.details}[/dim]")

    if error.suggestion:
        console.print()
        console.print(f"[yellow]Suggestion:[/yellow] {error.suggestion}")

    if _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Stack trace (debug mode):[/dim]")
        tb_lines = traceback.format_exception(
            type(error.original_error),
            error.original_error,
            error.original_error.__traceback__,
        )
        for line in tb_lines:
            console.print(f"[dim]{line.rstrip()}[/dim]")

    if not _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Set ITERCTL_DEBUG=1 or use --debug for more details[/dim]")


def classify_exception(exception: Exception, context: str = "operation") -> ErrorInfo:
    """Classify an exception into an ErrorInfo.

    Args:
        exception: The exception to classify
        context: Description of what was being done

    Returns:
        ErrorInfo with appropriate categorization
    """
    if isinstance(exception, ConfigError):
        return ErrorInfo(
            message=f"Configuration error: {exception}",
            category=ErrorCategory.CONFIG,
            suggestion="Run 'iterctl config show' to view the effective configuration",
            original_error=exception,
        )

    if isinstance(exception, InvalidVersionError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.BACKUP,
            suggestion="Run 'iterctl versions' to see available plan versions",
            original_error=exception,
        )

    if isinstance(exception, BackupError):
        return ErrorInfo(
            message=f"Plan backup failed: {exception}",
            category=ErrorCategory.BACKUP,
            suggestion="Check that the plan directory is writable",
            original_error=exception,
        )

    if isinstance(exception, PlanFileError):
        return ErrorInfo(
            message=f"Plan file error: {exception}",
            category=ErrorCategory.PLAN,
            suggestion="Check that the plan file exists and contains a JSON array",
            original_error=exception,
        )

    if isinstance(exception, (AgentExecutionError, PlanParseError)):
        return ErrorInfo(
            message=f"Agent error during {context}: {exception}",
            category=ErrorCategory.AGENT,
            suggestion="Check core.agent_cmd or use --strategy incremental",
            details=getattr(exception, "output", None) or None,
            original_error=exception,
        )

    if isinstance(exception, RollbackError):
        return ErrorInfo(
            message=f"Git rollback failed: {exception}",
            category=ErrorCategory.GIT,
            suggestion="Check git status and resolve the working tree manually",
            original_error=exception,
        )

    if isinstance(exception, FileNotFoundError):
        path = exception.filename or str(exception)
        return ErrorInfo(
            message=f"{context.capitalize()} not found: {path}",
            category=ErrorCategory.FILE,
            suggestion="Check the path and ensure the file exists",
            original_error=exception,
        )

    if isinstance(exception, PermissionError):
        return ErrorInfo(
            message=f"Permission denied: {exception}",
            category=ErrorCategory.FILE,
            suggestion="Check file permissions or run with appropriate access",
            original_error=exception,
        )

    return ErrorInfo(
        message=f"Internal error: {context}: {exception}",
        category=ErrorCategory.INTERNAL,
        suggestion="This may be a bug. Re-run with --debug and report the stack trace",
        original_error=exception,
    )


def handle_exception(
    console: Console,
    exception: Exception,
    context: str = "operation",
    exit_code: int = 1,
    exit_on_error: bool = True,
) -> ErrorInfo:
    """Handle an exception and display a formatted error.

    Args:
        console: Rich console for output
        exception: The exception to handle
        context: Description of what was being done
        exit_code: Exit code to use if exit_on_error is True
        exit_on_error: Whether to exit after displaying the error

    Returns:
        ErrorInfo for the error (useful if not exiting)
    """
    error = classify_exception(exception, context)
    format_error(error, console)

    if exit_on_error:
        sys.exit(exit_code)

    return error
