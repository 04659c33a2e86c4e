"""
PRD state and archive storage.
"""

from steward.core.state.models import SLUG_PATTERN, PrdArchive, StoredPrdState, is_valid_slug
from steward.core.state.store import UNSET, PrdStateStore, kept_clock_sql, row_to_state

__all__ = [
    "PrdArchive",
    "PrdStateStore",
    "SLUG_PATTERN",
    "StoredPrdState",
    "UNSET",
    "is_valid_slug",
    "kept_clock_sql",
    "row_to_state",
]
