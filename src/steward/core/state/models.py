"""
Data models for stored PRD state.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# PRD slugs are file stems under docs/prd/
SLUG_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]*$")


def is_valid_slug(slug: str) -> bool:
    """
    Check a PRD slug against the allowed pattern.

    Example:
        >>> is_valid_slug("auth-rework")
        True
        >>> is_valid_slug("-draft")
        False
    """
    return bool(SLUG_PATTERN.match(slug))


class StoredPrdState(BaseModel):
    """
    One PRD's state row, with per-field clocks already normalized.

    Rows written before per-field clocks existed only carry ``updated_at``;
    when read, each field that has a value but no clock of its own inherits
    ``updated_at``. Empty fields keep a null clock.
    """

    model_config = ConfigDict(frozen=True)

    repo_id: str
    slug: str
    tasks: Any = None
    progress: Any = None
    notes: str | None = None
    updated_at: str = Field(description="Row-level last write timestamp")
    tasks_updated_at: str | None = None
    progress_updated_at: str | None = None
    notes_updated_at: str | None = None


class PrdArchive(BaseModel):
    """An archived PRD."""

    model_config = ConfigDict(frozen=True)

    repo_id: str
    slug: str
    archived_at: str
