"""
SQLite-backed PRD state and archive storage.

Each PRD's ``tasks``, ``progress`` and ``notes`` are written independently:
updating one field touches only that field's value and clock. Reads
normalize legacy rows so callers always see three field clocks.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable
from typing import Any

from steward.core.db import execute_one, execute_query
from steward.core.state.models import PrdArchive, StoredPrdState, is_valid_slug
from steward.utils.timestamps import compare_timestamps, now_iso

logger = logging.getLogger(__name__)


class _Unset:
    """Marker for "leave this field alone" in partial updates."""

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()

_STATE_COLUMNS = (
    "repo_id, slug, tasks_json, progress_json, notes_md, updated_at, "
    "tasks_updated_at, progress_updated_at, notes_updated_at"
)

# Stored column holding each field's value
_VALUE_COLUMNS = {"tasks": "tasks_json", "progress": "progress_json", "notes": "notes_md"}


def kept_clock_sql(field: str) -> str:
    """
    SQL for the clock a field keeps when a write leaves it untouched.

    Legacy rows have a value but no field clock and inherit the row's
    ``updated_at`` when read. Since the write is about to move ``updated_at``,
    that inherited clock is pinned into the field's own column first.
    """
    value_column = _VALUE_COLUMNS[field]
    clock_column = f"{field}_updated_at"
    has_value = f"{value_column} IS NOT NULL"
    if field != "notes":
        has_value += f" AND {value_column} != ''"
    return f"COALESCE({clock_column}, CASE WHEN {has_value} THEN updated_at END)"


def encode_json_field(value: Any) -> str | None:
    """Serialize a JSON field for storage; None stays NULL."""
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def decode_json_field(raw: str | None, *, column: str, repo_id: str, slug: str) -> Any:
    """
    Parse a stored JSON column.

    Unparseable content is returned as the raw string so it still hashes
    and merges as an opaque value.
    """
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON in %s for %s/%s, using raw text", column, repo_id, slug)
        return raw


def _field_clock(value: Any, clock: str | None, row_updated_at: str | None) -> str | None:
    if clock:
        return clock
    if value is None:
        return None
    return row_updated_at or None


def row_to_state(row: dict[str, Any]) -> StoredPrdState:
    """Build a normalized state from a prd_states row."""
    repo_id = row["repo_id"]
    slug = row["slug"]
    tasks = decode_json_field(row["tasks_json"], column="tasks_json", repo_id=repo_id, slug=slug)
    progress = decode_json_field(
        row["progress_json"], column="progress_json", repo_id=repo_id, slug=slug
    )
    notes = row["notes_md"]
    updated_at = row["updated_at"]

    return StoredPrdState(
        repo_id=repo_id,
        slug=slug,
        tasks=tasks,
        progress=progress,
        notes=notes,
        updated_at=updated_at,
        tasks_updated_at=_field_clock(tasks, row.get("tasks_updated_at"), updated_at),
        progress_updated_at=_field_clock(progress, row.get("progress_updated_at"), updated_at),
        notes_updated_at=_field_clock(notes, row.get("notes_updated_at"), updated_at),
    )


def _in_clause(values: list[str]) -> str:
    return ", ".join("?" for _ in values)


class PrdStateStore:
    """
    Read and write PRD state and archives for local repositories.

    Example:
        >>> store = PrdStateStore(conn)
        >>> store.upsert_state(repo.id, "auth", notes="Pending review")
        >>> store.get_state(repo.id, "auth").notes
        'Pending review'
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def upsert_state(
        self,
        repo_id: str,
        slug: str,
        *,
        tasks: Any = UNSET,
        progress: Any = UNSET,
        notes: Any = UNSET,
        updated_at: str | None = None,
    ) -> StoredPrdState:
        """
        Write any subset of a PRD's fields.

        Fields left as UNSET keep their stored value and clock. Fields passed
        (including None, which clears them) get ``updated_at`` as their clock.

        Raises:
            ValueError: If the slug is invalid
        """
        if not is_valid_slug(slug):
            raise ValueError(f"Invalid PRD slug: {slug!r}")

        timestamp = updated_at or now_iso()
        set_tasks = tasks is not UNSET
        set_progress = progress is not UNSET
        set_notes = notes is not UNSET
        keep_tasks = kept_clock_sql("tasks")
        keep_progress = kept_clock_sql("progress")
        keep_notes = kept_clock_sql("notes")

        self.conn.execute(
            f"""
            INSERT INTO prd_states (
                repo_id, slug, tasks_json, progress_json, notes_md, updated_at,
                tasks_updated_at, progress_updated_at, notes_updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(repo_id, slug) DO UPDATE SET
                tasks_json = CASE WHEN ? THEN excluded.tasks_json ELSE prd_states.tasks_json END,
                tasks_updated_at = CASE WHEN ? THEN excluded.tasks_updated_at
                    ELSE {keep_tasks} END,
                progress_json = CASE WHEN ? THEN excluded.progress_json
                    ELSE prd_states.progress_json END,
                progress_updated_at = CASE WHEN ? THEN excluded.progress_updated_at
                    ELSE {keep_progress} END,
                notes_md = CASE WHEN ? THEN excluded.notes_md ELSE prd_states.notes_md END,
                notes_updated_at = CASE WHEN ? THEN excluded.notes_updated_at
                    ELSE {keep_notes} END,
                updated_at = excluded.updated_at
            """,
            (
                repo_id,
                slug,
                encode_json_field(tasks) if set_tasks else None,
                encode_json_field(progress) if set_progress else None,
                notes if set_notes else None,
                timestamp,
                timestamp if set_tasks else None,
                timestamp if set_progress else None,
                timestamp if set_notes else None,
                set_tasks,
                set_tasks,
                set_progress,
                set_progress,
                set_notes,
                set_notes,
            ),
        )

        state = self.get_state(repo_id, slug)
        assert state is not None
        return state

    def get_state(self, repo_id: str, slug: str) -> StoredPrdState | None:
        row = execute_one(
            self.conn,
            f"SELECT {_STATE_COLUMNS} FROM prd_states WHERE repo_id = ? AND slug = ?",
            (repo_id, slug),
        )
        return row_to_state(row) if row else None

    def list_states(self, repo_ids: Iterable[str] | None = None) -> list[StoredPrdState]:
        """
        List normalized state rows, ordered by (repo_id, slug).

        Args:
            repo_ids: Restrict to these repositories (None means all)
        """
        query = f"SELECT {_STATE_COLUMNS} FROM prd_states"
        params: list[str] = []
        if repo_ids is not None:
            params = list(repo_ids)
            if not params:
                return []
            query += f" WHERE repo_id IN ({_in_clause(params)})"
        query += " ORDER BY repo_id, slug"

        return [row_to_state(row) for row in execute_query(self.conn, query, params)]

    def archive(self, repo_id: str, slug: str, archived_at: str | None = None) -> PrdArchive:
        """Archive a PRD. Re-archiving keeps the later timestamp."""
        if not is_valid_slug(slug):
            raise ValueError(f"Invalid PRD slug: {slug!r}")

        timestamp = archived_at or now_iso()
        query = "SELECT repo_id, slug, archived_at FROM prd_archives WHERE repo_id = ? AND slug = ?"
        current = execute_one(self.conn, query, (repo_id, slug))
        if current is not None and compare_timestamps(timestamp, current["archived_at"]) <= 0:
            return PrdArchive(**current)

        self.conn.execute(
            """
            INSERT INTO prd_archives (repo_id, slug, archived_at)
            VALUES (?, ?, ?)
            ON CONFLICT(repo_id, slug) DO UPDATE SET archived_at = excluded.archived_at
            """,
            (repo_id, slug, timestamp),
        )
        return PrdArchive(repo_id=repo_id, slug=slug, archived_at=timestamp)

    def unarchive(self, repo_id: str, slug: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM prd_archives WHERE repo_id = ? AND slug = ?", (repo_id, slug)
        )
        return cursor.rowcount > 0

    def list_archives(self, repo_ids: Iterable[str] | None = None) -> list[PrdArchive]:
        """List archives ordered by (repo_id, slug)."""
        query = "SELECT repo_id, slug, archived_at FROM prd_archives"
        params: list[str] = []
        if repo_ids is not None:
            params = list(repo_ids)
            if not params:
                return []
            query += f" WHERE repo_id IN ({_in_clause(params)})"
        query += " ORDER BY repo_id, slug"

        return [PrdArchive(**row) for row in execute_query(self.conn, query, params)]
