"""
Configuration models and loading.

This module provides Pydantic models for steward configuration
with multi-layer merging: defaults < user config < env vars.
"""

from .loader import (
    clear_cache,
    get_default_db_path,
    get_user_config_path,
    get_xdg_config_home,
    get_xdg_data_home,
    load_config,
    resolve_db_path,
)
from .models import StewardConfig, StorageConfig, SyncConfig

__all__ = [
    # Models
    "StewardConfig",
    "StorageConfig",
    "SyncConfig",
    # Loader functions
    "clear_cache",
    "get_default_db_path",
    "get_user_config_path",
    "get_xdg_config_home",
    "get_xdg_data_home",
    "load_config",
    "resolve_db_path",
]
