"""
Database layer for steward.

Provides the SQLite schema and connection management for the local state
database that holds repositories, PRD state, archives, and sync metadata.

Main components:
- schema.py: SQL schema definitions and migrations
- connection.py: Connection setup, transactions, and query helpers

Usage:
    from steward.core.db import get_connection

    with get_connection(db_path) as conn:
        repos = conn.execute("SELECT * FROM repos").fetchall()
"""

from steward.core.db.connection import (
    backup_database,
    connect,
    execute_one,
    execute_query,
    get_connection,
    immediate_transaction,
    init_db,
    integrity_check,
)
from steward.core.db.schema import SCHEMA_VERSION, create_schema

__all__ = [
    "backup_database",
    "connect",
    "create_schema",
    "execute_one",
    "execute_query",
    "get_connection",
    "immediate_transaction",
    "init_db",
    "integrity_check",
    "SCHEMA_VERSION",
]
