"""
Handle on one local state database.

Bundles the connection with the repo registry, PRD state store, and
identity store that sit on top of it. Several LocalStores over different
database files can be open at once (e.g. two simulated devices in tests).
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from types import TracebackType

from steward.core.db import connect
from steward.core.repos import RepoConfig, RepoRegistry
from steward.core.state import PrdStateStore
from steward.core.sync.identity import IdentityStore, RemoteReader

logger = logging.getLogger(__name__)


class LocalStore:
    """
    Open local database plus its collaborators.

    Example:
        >>> with LocalStore.open(Path("~/.local/share/prd/state.db").expanduser()) as store:
        ...     repo = store.add_repo(Path.cwd())
        ...     store.states.upsert_state(repo.id, "onboarding", notes="Draft")
    """

    def __init__(
        self,
        db_path: Path,
        conn: sqlite3.Connection,
        remote_reader: RemoteReader | None = None,
    ) -> None:
        self.db_path = db_path
        self.conn = conn
        self.repos = RepoRegistry(conn)
        self.states = PrdStateStore(conn)
        self.identity = IdentityStore(conn, remote_reader=remote_reader)

    @classmethod
    def open(cls, db_path: Path | str, remote_reader: RemoteReader | None = None) -> LocalStore:
        """Open (creating if needed) the database at db_path."""
        path = Path(db_path).expanduser()
        logger.debug("Opening state database %s", path)
        return cls(path, connect(path), remote_reader=remote_reader)

    def add_repo(self, path: Path | str, name: str | None = None) -> RepoConfig:
        """Register a repository and mint its sync identity."""
        repo = self.repos.add_repo(path, name=name)
        self.identity.ensure_repo_sync_meta(repo)
        return repo

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> LocalStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
