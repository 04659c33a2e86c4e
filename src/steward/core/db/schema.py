"""
SQLite schema for the steward state database.

Schema Design:
- repos: Locally registered repositories
- prd_states: Per-repository PRD state (tasks, progress, notes), each field
  with its own last-modified clock
- prd_archives: Archived PRDs per repository
- app_meta: Key-value store for device-level metadata (sync device id, ...)
- repo_sync_meta: Durable cross-device sync key and fingerprint per repo
- sync_bundle_log: Append-only ledger of applied sync bundles
- schema_info: Version tracking for migrations

Version history:
- 1: repos, prd_states (single updated_at), prd_archives, app_meta
- 2: per-field clocks on prd_states, repo_sync_meta, sync_bundle_log
"""

import sqlite3

# Schema version for migrations
SCHEMA_VERSION = 2

# Per-field clock columns added to prd_states in version 2
FIELD_CLOCK_COLUMNS = [
    "tasks_updated_at",
    "progress_updated_at",
    "notes_updated_at",
]


# SQLite schema DDL
SCHEMA_DDL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_info (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    description TEXT
);

-- Registered repositories
CREATE TABLE IF NOT EXISTS repos (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    path TEXT NOT NULL UNIQUE,
    added_at TEXT NOT NULL,
    git_repos_json TEXT
);

-- PRD state, one row per (repo, slug)
CREATE TABLE IF NOT EXISTS prd_states (
    repo_id TEXT NOT NULL,
    slug TEXT NOT NULL,
    tasks_json TEXT,
    progress_json TEXT,
    notes_md TEXT,
    updated_at TEXT NOT NULL,
    tasks_updated_at TEXT,
    progress_updated_at TEXT,
    notes_updated_at TEXT,
    PRIMARY KEY (repo_id, slug),
    FOREIGN KEY (repo_id) REFERENCES repos(id) ON DELETE CASCADE
);

-- Archived PRDs
CREATE TABLE IF NOT EXISTS prd_archives (
    repo_id TEXT NOT NULL,
    slug TEXT NOT NULL,
    archived_at TEXT NOT NULL,
    PRIMARY KEY (repo_id, slug),
    FOREIGN KEY (repo_id) REFERENCES repos(id) ON DELETE CASCADE
);

-- Device-level metadata
CREATE TABLE IF NOT EXISTS app_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Cross-device repository identity
CREATE TABLE IF NOT EXISTS repo_sync_meta (
    repo_id TEXT PRIMARY KEY,
    sync_key TEXT NOT NULL UNIQUE,
    fingerprint TEXT,
    fingerprint_kind TEXT,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (repo_id) REFERENCES repos(id) ON DELETE CASCADE
);

-- Applied bundle ledger
CREATE TABLE IF NOT EXISTS sync_bundle_log (
    bundle_id TEXT PRIMARY KEY,
    source_device_id TEXT NOT NULL,
    applied_at TEXT NOT NULL,
    summary_json TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_prd_states_repo_id ON prd_states(repo_id);
CREATE INDEX IF NOT EXISTS idx_prd_archives_repo_id ON prd_archives(repo_id);
CREATE INDEX IF NOT EXISTS idx_sync_bundle_log_applied_at ON sync_bundle_log(applied_at);
"""


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    cursor = conn.execute(f"PRAGMA table_info({table})")
    columns: set[str] = set()
    for row in cursor.fetchall():
        # Rows are dicts when dict_factory is configured, tuples otherwise
        columns.add(row["name"] if isinstance(row, dict) else row[1])
    return columns


def _add_missing_clock_columns(conn: sqlite3.Connection) -> None:
    """Add per-field clock columns to a version 1 prd_states table."""
    existing = _table_columns(conn, "prd_states")
    for column in FIELD_CLOCK_COLUMNS:
        if column not in existing:
            conn.execute(f"ALTER TABLE prd_states ADD COLUMN {column} TEXT")


def create_schema(conn: sqlite3.Connection) -> None:
    """
    Create or upgrade the database schema.

    Executes all DDL statements to create tables and indexes, then adds any
    columns missing from tables created by an older version. Existing rows
    are left untouched: legacy rows keep NULL field clocks and are
    normalized when read.

    This is idempotent - safe to call multiple times.

    Args:
        conn: SQLite database connection

    Example:
        >>> import sqlite3
        >>> conn = sqlite3.connect(":memory:")
        >>> create_schema(conn)
        >>> get_schema_version(conn) == SCHEMA_VERSION
        True
    """
    conn.executescript(SCHEMA_DDL)
    _add_missing_clock_columns(conn)

    conn.execute(
        """
        INSERT OR REPLACE INTO schema_info (version, description)
        VALUES (?, ?)
        """,
        (SCHEMA_VERSION, "Per-field clocks, repo sync metadata, and bundle log"),
    )

    if conn.in_transaction:
        conn.commit()


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    """
    Get the current schema version from the database.

    Args:
        conn: SQLite database connection

    Returns:
        Current schema version, or None if schema_info table doesn't exist
    """
    try:
        cursor = conn.execute("SELECT MAX(version) AS version FROM schema_info")
        row = cursor.fetchone()
    except sqlite3.OperationalError:
        # schema_info table doesn't exist
        return None

    if row is None:
        return None
    value = row["version"] if isinstance(row, dict) else row[0]
    return int(value) if value is not None else None


def needs_migration(conn: sqlite3.Connection) -> bool:
    """
    Check if database needs migration to current schema version.

    Example:
        >>> import sqlite3
        >>> conn = sqlite3.connect(":memory:")
        >>> needs_migration(conn)
        True
        >>> create_schema(conn)
        >>> needs_migration(conn)
        False
    """
    current_version = get_schema_version(conn)
    if current_version is None:
        return True
    return current_version < SCHEMA_VERSION
