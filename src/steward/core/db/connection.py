"""
Database connection management for the steward state database.

Provides connection setup, explicit transaction handling, and query
helpers for the SQLite state database.

The connection module follows SQLite best practices:
- WAL mode for better concurrency
- Foreign key enforcement
- busy_timeout so concurrent readers/writers wait instead of failing
- Row factory for dict-like access
- Autocommit mode: every multi-statement write goes through
  immediate_transaction() so the write lock is taken up front

Usage:
    from steward.core.db import get_connection, immediate_transaction

    with get_connection(db_path) as conn:
        rows = execute_query(conn, "SELECT * FROM repos")

    with get_connection(db_path) as conn:
        with immediate_transaction(conn):
            conn.execute("INSERT INTO ...")
            conn.execute("UPDATE ...")
"""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from steward.core.db.schema import create_schema, needs_migration

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """
    Row factory that returns rows as dictionaries.

    Enables dict-like access to query results: row["column_name"]
    instead of positional access: row[0].

    Example:
        >>> conn = sqlite3.connect(":memory:")
        >>> conn.row_factory = dict_factory
        >>> conn.execute("SELECT 1 AS one").fetchone()
        {'one': 1}
    """
    fields = [column[0] for column in cursor.description]
    return dict(zip(fields, row))


def configure_connection(conn: sqlite3.Connection) -> None:
    """
    Configure a SQLite connection with steward's settings.

    Settings applied:
    - WAL mode: Better concurrency for reads/writes
    - Foreign keys: Enforce referential integrity
    - busy_timeout: Wait up to 5s for locks held by other connections
    - dict_factory: Enable dict-like row access

    Args:
        conn: SQLite connection to configure
    """
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    conn.row_factory = dict_factory


def connect(db_path: Path | str) -> sqlite3.Connection:
    """
    Open a configured connection in autocommit mode, creating the schema if needed.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        Configured SQLite connection; the caller owns closing it
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path), isolation_level=None)
    configure_connection(conn)

    if needs_migration(conn):
        logger.info("Applying state database schema at %s", db_path)
        create_schema(conn)

    return conn


def init_db(db_path: Path | str, *, force_recreate: bool = False) -> sqlite3.Connection:
    """
    Initialize the state database.

    Creates the database file if it doesn't exist, applies the schema,
    and returns a configured connection.

    Args:
        db_path: Path to the SQLite database file
        force_recreate: If True, delete existing database and recreate

    Returns:
        Configured SQLite connection
    """
    db_path = Path(db_path)

    if force_recreate and db_path.exists():
        db_path.unlink()

    return connect(db_path)


@contextmanager
def get_connection(db_path: Path | str) -> Iterator[sqlite3.Connection]:
    """
    Get a database connection as a context manager.

    The connection is closed when the context exits. If an exception
    escapes while a transaction is open, it is rolled back.

    Args:
        db_path: Path to the SQLite database file

    Yields:
        Configured SQLite connection
    """
    conn = connect(db_path)

    try:
        yield conn
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Run a block inside a BEGIN IMMEDIATE transaction.

    The write lock is acquired when the block starts, so no other writer can
    interleave. Commits on normal exit, rolls back on any exception.

    Args:
        conn: Connection opened in autocommit mode (see connect())

    Yields:
        The same connection
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as rollback_error:
                logger.error("Rollback failed: %s", rollback_error)
        raise
    else:
        conn.execute("COMMIT")


def execute_query(
    conn: sqlite3.Connection,
    query: str,
    params: tuple[Any, ...] | list[Any] | dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """
    Execute a query and return all results as a list of dicts.

    Args:
        conn: SQLite connection
        query: SQL query string
        params: Query parameters (sequence or dict)

    Returns:
        List of row dictionaries
    """
    if params is None:
        params = ()

    cursor = conn.execute(query, params)
    return cursor.fetchall()


def execute_one(
    conn: sqlite3.Connection,
    query: str,
    params: tuple[Any, ...] | list[Any] | dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """
    Execute a query and return the first result as a dict.

    Returns:
        First row as dictionary, or None if no results
    """
    if params is None:
        params = ()

    cursor = conn.execute(query, params)
    result = cursor.fetchone()
    # fetchone() returns dict[str, Any] or None when dict_factory is configured
    return result  # type: ignore[no-any-return]


def integrity_check(conn: sqlite3.Connection) -> str:
    """
    Run SQLite's integrity check.

    Returns:
        "ok" when the database is healthy, otherwise the first problem reported
    """
    row = execute_one(conn, "PRAGMA integrity_check")
    if not row:
        return "integrity check returned no results"
    return str(next(iter(row.values())))


def backup_database(conn: sqlite3.Connection, backup_path: Path) -> Path:
    """
    Write a consistent copy of the database to backup_path.

    Uses VACUUM INTO, which produces a compacted, transactionally
    consistent snapshot. Must be called outside a transaction.

    Args:
        conn: Connection to the database to back up
        backup_path: Destination file (must not exist)

    Returns:
        The backup path
    """
    backup_path.parent.mkdir(parents=True, exist_ok=True)
    conn.execute("VACUUM INTO ?", (str(backup_path),))
    return backup_path
