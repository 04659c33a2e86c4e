"""
Standardized error handling and exit codes for the steward CLI.

Every command reports failures the same way: a one-line problem, an
optional reason, and an optional next step.
"""

from enum import IntEnum
from pathlib import Path

from rich.console import Console

from steward.core.sync import (
    BundleValidationError,
    IntegrityError,
    MappingError,
    StorageError,
    SyncError,
)

console = Console(stderr=True)


class ExitCode(IntEnum):
    """Standard exit codes for steward CLI operations."""

    SUCCESS = 0
    """Operation completed successfully."""

    GENERAL_ERROR = 1
    """Generic or storage error."""

    USER_ERROR = 2
    """Bad input, bad bundle, or missing repo mapping (actionable by user)."""

    SIGINT = 130
    """Terminated by SIGINT (Ctrl+C) - Unix standard."""


def print_error(
    problem: str,
    *,
    reason: str | None = None,
    solution: str | None = None,
) -> None:
    """
    Print a standardized error message with actionable guidance.

    Args:
        problem: Brief description of what went wrong
        reason: Optional explanation of why it happened
        solution: Optional command or action to fix it

    Example:
        >>> print_error(
        ...     "Bundle not found: laptop.json",
        ...     solution="steward sync export laptop.json  # on the other device",
        ... )
    """
    console.print(f"[red]Error:[/red] {problem}")

    if reason:
        console.print(f"[dim]{reason}[/dim]")

    if solution:
        console.print(f"[cyan]→ Try:[/cyan] {solution}")


def print_bundle_invalid_error(error: BundleValidationError) -> None:
    """Print error when a bundle fails validation."""
    print_error(
        "Invalid sync bundle",
        reason=error.message,
        solution="steward sync export <path>  # re-export on the source device",
    )


def print_unresolved_mappings_error(error: MappingError) -> None:
    """Print error when apply stops on unmapped repositories."""
    keys = ", ".join(error.unresolved_keys)
    print_error(
        "Bundle repositories could not be matched to local ones",
        reason=f"Unresolved repoSyncKeys: {keys}",
        solution="steward sync merge <path> --apply --map <repoSyncKey>=<repo id or path>",
    )


def print_sync_failure_error(error: SyncError) -> None:
    """Print error when apply failed and was rolled back."""
    if isinstance(error, IntegrityError):
        reason = "The database failed its integrity check; no changes were committed"
    elif isinstance(error, StorageError):
        reason = "The database could not be written; no changes were committed"
    else:
        reason = None
    print_error(error.message, reason=reason)


def exit_code_for(error: SyncError) -> ExitCode:
    """Map a sync error to the CLI exit code."""
    if isinstance(error, (BundleValidationError, MappingError)):
        return ExitCode.USER_ERROR
    return ExitCode.GENERAL_ERROR


def report_sync_error(error: SyncError) -> ExitCode:
    """Print a sync error and return the exit code to use."""
    if isinstance(error, BundleValidationError):
        print_bundle_invalid_error(error)
    elif isinstance(error, MappingError):
        print_unresolved_mappings_error(error)
    else:
        print_sync_failure_error(error)
    return exit_code_for(error)


def print_database_error(db_path: Path, error: Exception) -> None:
    """Print error when the local state database cannot be opened or read."""
    print_error(
        f"Could not use state database {db_path}",
        reason=str(error),
        solution="steward --db <path> ...  # or set PRD_STATE_DB_PATH",
    )
