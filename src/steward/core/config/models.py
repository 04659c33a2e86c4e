"""
Configuration data models for steward.

These models define the structure of ~/.config/steward/config.json,
with validation and type safety via Pydantic.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PathHintsMode(str, Enum):
    """How repository paths are described in exported bundles."""

    BASENAME = "basename"
    NONE = "none"
    ABSOLUTE = "absolute"


class StorageConfig(BaseModel):
    """
    Location of the local state database.

    When db_path is unset the database lives under the XDG data home
    (~/.local/share/prd/state.db).
    """
    db_path: Optional[str] = Field(
        default=None,
        description="Explicit path to the SQLite state database"
    )


class SyncConfig(BaseModel):
    """
    Defaults for bundle export and merge apply.

    Retention applies after every successful apply: backups and bundle log
    rows are pruned independently by age and by count (newest kept).
    """
    path_hints: PathHintsMode = Field(
        default=PathHintsMode.BASENAME,
        description="Path hint mode used when exporting bundles"
    )
    backup_retention_days: int = Field(
        default=30,
        ge=0,
        description="Delete pre-merge database backups older than this many days"
    )
    max_backups: int = Field(
        default=20,
        ge=1,
        description="Keep at most this many pre-merge database backups"
    )
    log_retention_days: int = Field(
        default=180,
        ge=0,
        description="Delete applied-bundle log rows older than this many days"
    )
    max_log_entries: int = Field(
        default=10_000,
        ge=1,
        description="Keep at most this many applied-bundle log rows"
    )


class StewardConfig(BaseModel):
    """
    Top-level steward configuration.

    Loaded from defaults, the user config file, and env vars.

    Example:
        >>> config = StewardConfig(sync=SyncConfig(max_backups=5))
        >>> config.sync.max_backups
        5
    """
    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="Local database location"
    )
    sync: SyncConfig = Field(
        default_factory=SyncConfig,
        description="Bundle export and merge settings"
    )

    model_config = ConfigDict(
        extra="allow",  # Allow extra fields for forward compatibility
        validate_assignment=True,
    )
