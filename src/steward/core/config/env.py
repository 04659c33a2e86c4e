"""
.env support for steward settings.

Steward reads its settings from the environment: ``PRD_STATE_DB_PATH`` and
``PRD_STATE_HOME`` pick the database, ``STEWARD_*`` variables override the
sync section of the config file. Those variables can also live in .env
files, which are folded into ``os.environ`` before the config is loaded:

    ~/.config/steward/.env          per-user defaults
    <cwd>/.env, <cwd>/.env.local    per-project overrides

Only steward's own variables are taken from these files; a project's .env
usually holds settings for other tools too. A variable already exported in
the shell always wins.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

from dotenv import dotenv_values

from .loader import get_xdg_config_home

logger = logging.getLogger(__name__)

ENV_PREFIXES = ("STEWARD_", "PRD_STATE_")


def get_user_env_path() -> Path:
    """Path to the per-user .env file (~/.config/steward/.env or XDG equivalent)."""
    return get_xdg_config_home() / "steward" / ".env"


def read_steward_env(path: Path) -> dict[str, str]:
    """
    Steward variables defined in one .env file.

    Missing files give an empty dict; unset values (``KEY`` with no ``=``)
    are skipped.
    """
    if not path.is_file():
        return {}
    return {
        key: value
        for key, value in dotenv_values(path).items()
        if value is not None and key.startswith(ENV_PREFIXES)
    }


def load_layered_env(
    *,
    project_dir: Path | None = None,
    user_env_paths: Iterable[Path] | None = None,
    project_env_paths: Iterable[Path] | None = None,
) -> dict[str, str]:
    """
    Fold steward variables from user and project .env files into os.environ.

    Args:
        project_dir: Directory holding the project .env files (defaults to cwd)
        user_env_paths: User .env files (defaults to get_user_env_path())
        project_env_paths: Project .env files (defaults to .env and .env.local)

    Returns:
        The variables that were set, by name
    """
    project_dir = project_dir or Path.cwd()
    if user_env_paths is None:
        user_env_paths = [get_user_env_path()]
    if project_env_paths is None:
        project_env_paths = [project_dir / ".env", project_dir / ".env.local"]

    # Later files override earlier ones; the shell overrides them all
    from_files: dict[str, str] = {}
    for path in [*user_env_paths, *project_env_paths]:
        from_files.update(read_steward_env(Path(path)))

    applied = {key: value for key, value in from_files.items() if key not in os.environ}
    os.environ.update(applied)
    if applied:
        logger.debug("Loaded %s from .env files", ", ".join(sorted(applied)))
    return applied
