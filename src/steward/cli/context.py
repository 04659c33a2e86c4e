"""
Shared setup for CLI commands: logging, configuration, and the local store.
"""

import logging
import sqlite3
import sys
from pathlib import Path
from typing import Any

import typer

from steward.cli.errors import ExitCode, print_database_error
from steward.core.config import StewardConfig, load_config, resolve_db_path
from steward.core.store import LocalStore

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(debug: bool = False) -> None:
    """
    Configure logging for CLI commands.

    Args:
        debug: If True, enable DEBUG level logging
    """
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


def _options(ctx: typer.Context) -> dict[str, Any]:
    obj = ctx.find_root().obj
    return obj if isinstance(obj, dict) else {}


def get_config(ctx: typer.Context) -> StewardConfig:
    """Config loaded by the root callback, or a fresh load."""
    config = _options(ctx).get("config")
    if isinstance(config, StewardConfig):
        return config
    return load_config()


def get_db_path(ctx: typer.Context) -> Path:
    """Database path from --db, env, or config."""
    db_path = _options(ctx).get("db_path")
    if db_path:
        return Path(db_path).expanduser()
    return resolve_db_path(get_config(ctx))


def open_store(ctx: typer.Context) -> LocalStore:
    """
    Open the local state database for a command.

    Raises:
        typer.Exit: With GENERAL_ERROR if the database cannot be opened
    """
    db_path = get_db_path(ctx)
    try:
        return LocalStore.open(db_path)
    except (sqlite3.Error, OSError) as e:
        print_database_error(db_path, e)
        raise typer.Exit(ExitCode.GENERAL_ERROR) from e
