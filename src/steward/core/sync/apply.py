"""
Transactional, idempotent application of sync bundles.

MergeExecutor always re-plans against current local state instead of
trusting an earlier preview. An apply then goes:

    already in sync_bundle_log?  -> return alreadyApplied, touch nothing
    any unresolved repo mapping? -> MappingError, touch nothing
    VACUUM INTO a backup next to the database
    BEGIN IMMEDIATE
        state inserts / field-restricted updates, archive max-wins
        PRAGMA integrity_check
        append to sync_bundle_log
        prune old log rows (best effort, inside a savepoint)
    COMMIT
    prune old backups (best effort)

Any failure between BEGIN and COMMIT rolls everything back.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import uuid
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from steward.core.db import backup_database, execute_one, immediate_transaction, integrity_check
from steward.core.state.store import encode_json_field, kept_clock_sql
from steward.core.sync.exceptions import IntegrityError, MappingError, StorageError
from steward.core.sync.merge import MergePlanner, collapse_archive_rows, collapse_state_rows
from steward.core.sync.models import (
    MergeOptions,
    MergePlan,
    MergeResult,
    RetentionOutcome,
    RetentionPolicy,
    StatePlanRow,
)
from steward.core.sync.schema import SyncArchiveRecord, SyncBundle, SyncStateRecord, parse_bundle
from steward.utils.timestamps import normalize_iso_or_now, parse_iso, to_iso

if TYPE_CHECKING:
    from steward.core.store import LocalStore

logger = logging.getLogger(__name__)

BACKUP_MARKER = ".sync-backup."


def backup_file_prefix(db_path: Path) -> str:
    """Filename prefix shared by every backup of ``db_path``."""
    return f"{db_path.name}{BACKUP_MARKER}"


def _backup_timestamp(now: str) -> str:
    return now.replace("-", "").replace(":", "").replace(".", "")


def _safe_file_segment(value: str) -> str:
    sanitized = re.sub(r"[^A-Za-z0-9._-]", "_", value)
    return sanitized or "bundle"


def backup_path_for(db_path: Path, bundle_id: str, now: str) -> Path:
    """
    Path of a new pre-merge backup.

    Example:
        >>> backup_path_for(Path("/d/state.db"), "b/1", "2026-02-27T00:00:00.000Z").name[:40]
        'state.db.sync-backup.20260227T000000000Z'
    """
    name = (
        f"{backup_file_prefix(db_path)}{_backup_timestamp(now)}"
        f"-{_safe_file_segment(bundle_id)}-{uuid.uuid4().hex[:8]}.db"
    )
    return db_path.parent / name


def list_backups(db_path: Path) -> list[Path]:
    """Existing backups of ``db_path``, newest first by modification time."""
    prefix = backup_file_prefix(db_path)
    try:
        candidates = [
            entry
            for entry in db_path.parent.iterdir()
            if entry.is_file() and entry.name.startswith(prefix) and entry.name.endswith(".db")
        ]
    except OSError as e:
        logger.warning("Could not list backups in %s: %s", db_path.parent, e)
        return []

    with_mtime: list[tuple[float, Path]] = []
    for entry in candidates:
        try:
            with_mtime.append((entry.stat().st_mtime, entry))
        except OSError:
            continue
    with_mtime.sort(key=lambda item: item[0], reverse=True)
    return [entry for _, entry in with_mtime]


def prune_backups(db_path: Path, now: str, policy: RetentionPolicy) -> int:
    """
    Delete backups that are too old or beyond ``max_backups`` (newest kept).

    Failures are logged and skipped.

    Returns:
        Number of files deleted
    """
    now_time = parse_iso(now)
    cutoff = None
    if now_time is not None:
        cutoff = (now_time - timedelta(days=policy.backup_retention_days)).timestamp()

    deleted = 0
    for index, entry in enumerate(list_backups(db_path)):
        try:
            too_old = cutoff is not None and entry.stat().st_mtime < cutoff
        except OSError:
            continue
        if not too_old and index < policy.max_backups:
            continue
        try:
            entry.unlink()
            deleted += 1
        except OSError as e:
            logger.warning("Could not delete old backup %s: %s", entry, e)
    return deleted


def prune_bundle_log(conn: sqlite3.Connection, now: str, policy: RetentionPolicy) -> int:
    """
    Delete log rows older than the retention window, then the oldest rows
    beyond ``max_log_entries``.

    Returns:
        Number of rows deleted
    """
    now_time = parse_iso(now)
    deleted = 0

    if now_time is not None:
        cutoff = to_iso(now_time - timedelta(days=policy.log_retention_days))
        cursor = conn.execute("DELETE FROM sync_bundle_log WHERE applied_at < ?", (cutoff,))
        deleted += max(cursor.rowcount, 0)

    row = execute_one(conn, "SELECT COUNT(*) AS count FROM sync_bundle_log")
    overflow = (row["count"] if row else 0) - policy.max_log_entries
    if overflow > 0:
        cursor = conn.execute(
            """
            DELETE FROM sync_bundle_log
            WHERE bundle_id IN (
                SELECT bundle_id
                FROM sync_bundle_log
                ORDER BY applied_at ASC, bundle_id ASC
                LIMIT ?
            )
            """,
            (overflow,),
        )
        deleted += max(cursor.rowcount, 0)

    return deleted


def _insert_state(
    conn: sqlite3.Connection, repo_id: str, row: SyncStateRecord, applied_at: str
) -> None:
    conn.execute(
        """
        INSERT INTO prd_states (
            repo_id, slug, tasks_json, progress_json, notes_md,
            tasks_updated_at, progress_updated_at, notes_updated_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(repo_id, slug) DO UPDATE SET
            tasks_json = excluded.tasks_json,
            progress_json = excluded.progress_json,
            notes_md = excluded.notes_md,
            tasks_updated_at = excluded.tasks_updated_at,
            progress_updated_at = excluded.progress_updated_at,
            notes_updated_at = excluded.notes_updated_at,
            updated_at = excluded.updated_at
        """,
        (
            repo_id,
            row.slug,
            encode_json_field(row.tasks),
            encode_json_field(row.progress),
            row.notes,
            row.clocks.tasks_updated_at,
            row.clocks.progress_updated_at,
            row.clocks.notes_updated_at,
            applied_at,
        ),
    )


def _update_state(
    conn: sqlite3.Connection,
    repo_id: str,
    plan_row: StatePlanRow,
    row: SyncStateRecord,
    applied_at: str,
) -> None:
    """Write only the fields the plan marked as changed."""
    fields = set(plan_row.update_fields)
    if not fields:
        return

    set_tasks = "tasks" in fields
    set_progress = "progress" in fields
    set_notes = "notes" in fields
    keep_tasks = kept_clock_sql("tasks")
    keep_progress = kept_clock_sql("progress")
    keep_notes = kept_clock_sql("notes")

    cursor = conn.execute(
        f"""
        UPDATE prd_states
        SET
            tasks_json = CASE WHEN ? THEN ? ELSE tasks_json END,
            tasks_updated_at = CASE WHEN ? THEN ? ELSE {keep_tasks} END,
            progress_json = CASE WHEN ? THEN ? ELSE progress_json END,
            progress_updated_at = CASE WHEN ? THEN ? ELSE {keep_progress} END,
            notes_md = CASE WHEN ? THEN ? ELSE notes_md END,
            notes_updated_at = CASE WHEN ? THEN ? ELSE {keep_notes} END,
            updated_at = ?
        WHERE repo_id = ? AND slug = ?
        """,
        (
            set_tasks,
            encode_json_field(row.tasks),
            set_tasks,
            row.clocks.tasks_updated_at,
            set_progress,
            encode_json_field(row.progress),
            set_progress,
            row.clocks.progress_updated_at,
            set_notes,
            row.notes,
            set_notes,
            row.clocks.notes_updated_at,
            applied_at,
            repo_id,
            row.slug,
        ),
    )
    if cursor.rowcount == 0:
        # Row vanished between planning and apply
        _insert_state(conn, repo_id, row, applied_at)


def _apply_archive(conn: sqlite3.Connection, repo_id: str, row: SyncArchiveRecord) -> None:
    # Unconditional: the planner already ordered the timestamps chronologically
    conn.execute(
        """
        INSERT INTO prd_archives (repo_id, slug, archived_at)
        VALUES (?, ?, ?)
        ON CONFLICT(repo_id, slug) DO UPDATE SET archived_at = excluded.archived_at
        """,
        (repo_id, row.slug, row.archived_at),
    )


def _incoming_states(bundle: SyncBundle) -> dict[tuple[str, str], SyncStateRecord]:
    return {(row.repo_sync_key, row.slug): row for row in collapse_state_rows(bundle.states)}


def _incoming_archives(bundle: SyncBundle) -> dict[tuple[str, str], SyncArchiveRecord]:
    return {
        (row.repo_sync_key, row.slug): row for row in collapse_archive_rows(bundle.archives)
    }


class MergeExecutor:
    """
    Applies bundles to one local database.

    Example:
        >>> executor = MergeExecutor.from_store(store)
        >>> preview = executor.execute(bundle)
        >>> result = executor.execute(bundle, MergeOptions(apply=True))
        >>> result.backup_path
        '/home/me/.local/share/prd/state.db.sync-backup.20260227T101500123Z-...db'
    """

    def __init__(self, conn: sqlite3.Connection, db_path: Path, planner: MergePlanner) -> None:
        self.conn = conn
        self.db_path = db_path
        self.planner = planner

    @classmethod
    def from_store(cls, store: LocalStore) -> MergeExecutor:
        planner = MergePlanner(store.repos, store.identity, store.states)
        return cls(store.conn, store.db_path, planner)

    def is_applied(self, bundle_id: str) -> bool:
        row = execute_one(
            self.conn,
            "SELECT bundle_id FROM sync_bundle_log WHERE bundle_id = ?",
            (bundle_id,),
        )
        return row is not None

    def execute(self, bundle: SyncBundle | Any, options: MergeOptions | None = None) -> MergeResult:
        """
        Dry-run or apply a bundle.

        Args:
            bundle: A SyncBundle or decoded bundle JSON
            options: Apply flag, repo map, timestamp override, retention

        Returns:
            MergeResult; an already-applied bundle is a successful result

        Raises:
            BundleValidationError: Invalid bundle (before any local read)
            MappingError: Apply with unresolved repositories (before any write)
            IntegrityError: Integrity check failed; rolled back
            StorageError: Database or backup failure; rolled back
        """
        parsed = parse_bundle(bundle)
        options = options or MergeOptions()
        now = normalize_iso_or_now(options.now)

        plan = self.planner.plan(parsed, repo_map=options.repo_map)

        if not options.apply:
            return MergeResult(
                mode="dry_run",
                applied=False,
                already_applied=False,
                bundle_id=parsed.bundle_id,
                plan=plan,
            )

        if self.is_applied(parsed.bundle_id):
            logger.info("Bundle %s already applied, nothing to do", parsed.bundle_id)
            return MergeResult(
                mode="apply",
                applied=False,
                already_applied=True,
                bundle_id=parsed.bundle_id,
                plan=plan,
            )

        unresolved = plan.unresolved_keys
        if unresolved:
            raise MappingError(unresolved, bundle_id=parsed.bundle_id)

        backup_path = self._backup(parsed.bundle_id, now)
        logs_deleted = self._apply_plan(parsed, plan, now, options.retention)
        logger.info(
            "Applied bundle %s from device %s (backup %s)",
            parsed.bundle_id,
            parsed.source_device_id,
            backup_path,
        )

        backups_deleted = prune_backups(self.db_path, now, options.retention)

        return MergeResult(
            mode="apply",
            applied=True,
            already_applied=False,
            bundle_id=parsed.bundle_id,
            plan=plan,
            backup_path=str(backup_path),
            retention=RetentionOutcome(backups_deleted=backups_deleted, logs_deleted=logs_deleted),
        )

    def _backup(self, bundle_id: str, now: str) -> Path:
        path = backup_path_for(self.db_path, bundle_id, now)
        try:
            return backup_database(self.conn, path)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to back up database to {path}: {e}", path=str(path)) from e

    def _apply_plan(
        self, bundle: SyncBundle, plan: MergePlan, now: str, policy: RetentionPolicy
    ) -> int:
        """Write the plan and the log entry in one transaction. Returns log rows pruned."""
        states = _incoming_states(bundle)
        archives = _incoming_archives(bundle)

        try:
            with immediate_transaction(self.conn) as conn:
                self._write_states(conn, plan, states, now)
                self._write_archives(conn, plan, archives)

                result = integrity_check(conn)
                if result != "ok":
                    raise IntegrityError(result, bundle_id=bundle.bundle_id)

                conn.execute(
                    """
                    INSERT INTO sync_bundle_log (
                        bundle_id, source_device_id, applied_at, summary_json
                    )
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        bundle.bundle_id,
                        bundle.source_device_id,
                        now,
                        json.dumps(plan.summary.to_wire(), separators=(",", ":")),
                    ),
                )
                return self._prune_log(conn, now, policy)
        except sqlite3.Error as e:
            raise StorageError(
                f"Failed to apply bundle {bundle.bundle_id}: {e}", bundle_id=bundle.bundle_id
            ) from e

    @staticmethod
    def _prune_log(conn: sqlite3.Connection, now: str, policy: RetentionPolicy) -> int:
        """
        Prune the bundle log inside a savepoint of the open transaction.

        A pruning failure rolls back only the savepoint and is logged; the
        merge itself still commits.
        """
        conn.execute("SAVEPOINT prune_bundle_log")
        try:
            deleted = prune_bundle_log(conn, now, policy)
        except sqlite3.Error as e:
            conn.execute("ROLLBACK TO SAVEPOINT prune_bundle_log")
            conn.execute("RELEASE SAVEPOINT prune_bundle_log")
            logger.warning("Could not prune sync bundle log: %s", e)
            return 0
        conn.execute("RELEASE SAVEPOINT prune_bundle_log")
        return deleted

    @staticmethod
    def _write_states(
        conn: sqlite3.Connection,
        plan: MergePlan,
        incoming: Mapping[tuple[str, str], SyncStateRecord],
        now: str,
    ) -> None:
        for plan_row in plan.states:
            if plan_row.action not in ("insert", "update"):
                continue
            assert plan_row.local_repo_id is not None
            row = incoming[(plan_row.repo_sync_key, plan_row.slug)]
            if plan_row.action == "insert":
                _insert_state(conn, plan_row.local_repo_id, row, now)
            else:
                _update_state(conn, plan_row.local_repo_id, plan_row, row, now)

    @staticmethod
    def _write_archives(
        conn: sqlite3.Connection,
        plan: MergePlan,
        incoming: Mapping[tuple[str, str], SyncArchiveRecord],
    ) -> None:
        for plan_row in plan.archives:
            if plan_row.action not in ("insert", "update"):
                continue
            assert plan_row.local_repo_id is not None
            row = incoming[(plan_row.repo_sync_key, plan_row.slug)]
            _apply_archive(conn, plan_row.local_repo_id, row)


def execute_merge(
    store: LocalStore, bundle: SyncBundle | Any, options: MergeOptions | None = None
) -> MergeResult:
    """Dry-run or apply a bundle against an open LocalStore."""
    return MergeExecutor.from_store(store).execute(bundle, options)
