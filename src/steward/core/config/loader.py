"""
Configuration loading with multi-layer merging.

Implements the configuration precedence chain:
    defaults < user config < env vars

The state database path has its own resolution chain, shared with the
rest of the PRD tooling:
    PRD_STATE_DB_PATH > PRD_STATE_HOME/state.db > config > XDG data home
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from .models import StewardConfig

logger = logging.getLogger(__name__)

# Global cache to avoid reloading config multiple times per session
_config_cache: StewardConfig | None = None

# Integer env overrides: env var -> (section, key)
_INT_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "STEWARD_BACKUP_RETENTION_DAYS": ("sync", "backup_retention_days"),
    "STEWARD_MAX_BACKUPS": ("sync", "max_backups"),
    "STEWARD_LOG_RETENTION_DAYS": ("sync", "log_retention_days"),
    "STEWARD_MAX_LOG_ENTRIES": ("sync", "max_log_entries"),
}


def get_xdg_config_home() -> Path:
    """
    Get XDG config home directory.

    Returns:
        Path to config directory (defaults to ~/.config)
    """
    if xdg_home := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_home)
    return Path.home() / ".config"


def get_xdg_data_home() -> Path:
    """
    Get XDG data home directory.

    Returns:
        Path to data directory (defaults to ~/.local/share)
    """
    if xdg_home := os.environ.get("XDG_DATA_HOME"):
        return Path(xdg_home)
    return Path.home() / ".local" / "share"


def get_user_config_path() -> Path:
    """
    Get path to user configuration file.

    Returns:
        Path to ~/.config/steward/config.json (or XDG equivalent)
    """
    return get_xdg_config_home() / "steward" / "config.json"


def get_default_db_path() -> Path:
    """Default location of the state database (~/.local/share/prd/state.db)."""
    return get_xdg_data_home() / "prd" / "state.db"


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in `override` take precedence over values in `base`.
    Nested dicts are merged, not replaced.

    Example:
        >>> deep_merge({"a": 1, "b": {"x": 10}}, {"b": {"y": 2}})
        {'a': 1, 'b': {'x': 10, 'y': 2}}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any] | None:
    """
    Load a JSON file, returning None if it doesn't exist or is invalid.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON as dict, or None if file doesn't exist or can't be parsed
    """
    if not path.exists():
        return None

    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            return None
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to parse config at %s: %s", path, e)
        return None


def apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Env vars have the highest precedence and override the config file.

    Supported env vars:
        STEWARD_SYNC_PATH_HINTS - overrides sync.path_hints
        STEWARD_BACKUP_RETENTION_DAYS - overrides sync.backup_retention_days
        STEWARD_MAX_BACKUPS - overrides sync.max_backups
        STEWARD_LOG_RETENTION_DAYS - overrides sync.log_retention_days
        STEWARD_MAX_LOG_ENTRIES - overrides sync.max_log_entries

    Invalid values are logged and ignored.
    """
    result = config_dict.copy()

    if path_hints := os.environ.get("STEWARD_SYNC_PATH_HINTS"):
        if path_hints in ("basename", "none", "absolute"):
            result.setdefault("sync", {})["path_hints"] = path_hints
        else:
            logger.warning("Invalid STEWARD_SYNC_PATH_HINTS value '%s', ignoring", path_hints)

    for env_name, (section, key) in _INT_ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if not raw:
            continue
        try:
            value = int(raw)
        except ValueError:
            logger.warning("Invalid %s value '%s', ignoring", env_name, raw)
            continue
        if value < 0:
            logger.warning("%s must be >= 0, got %s, ignoring", env_name, value)
            continue
        result.setdefault(section, {})[key] = value

    return result


def load_config(use_cache: bool = True) -> StewardConfig:
    """
    Load configuration with multi-layer merging.

    Configuration precedence (highest to lowest):
        1. Environment variables (STEWARD_*)
        2. User config (~/.config/steward/config.json)
        3. Model defaults

    Args:
        use_cache: If True, return cached config from previous load

    Returns:
        Validated StewardConfig instance

    Raises:
        ValidationError: If the merged config fails Pydantic validation
    """
    global _config_cache

    if use_cache and _config_cache is not None:
        return _config_cache

    merged: dict[str, Any] = {}

    if user_config := load_json_file(get_user_config_path()):
        merged = deep_merge(merged, user_config)

    merged = apply_env_overrides(merged)

    config = StewardConfig(**merged)
    _config_cache = config

    return config


def resolve_db_path(config: StewardConfig | None = None) -> Path:
    """
    Resolve the state database path.

    Resolution order:
    1. PRD_STATE_DB_PATH
    2. PRD_STATE_HOME/state.db
    3. storage.db_path from config
    4. ~/.local/share/prd/state.db
    """
    custom_path = os.environ.get("PRD_STATE_DB_PATH", "").strip()
    if custom_path:
        return Path(custom_path)

    custom_home = os.environ.get("PRD_STATE_HOME", "").strip()
    if custom_home:
        return Path(custom_home) / "state.db"

    if config is not None and config.storage.db_path:
        return Path(config.storage.db_path).expanduser()

    return get_default_db_path()


def clear_cache() -> None:
    """
    Clear the cached configuration.

    Useful for testing or when config files change during execution.
    """
    global _config_cache
    _config_cache = None
