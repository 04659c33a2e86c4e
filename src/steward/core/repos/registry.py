"""
SQLite-backed registry of repositories known to this device.

Rows live in the ``repos`` table. Nested git repositories (for workspaces
that are not themselves a git checkout) are discovered once at registration
time and stored as JSON alongside the row.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Protocol

from steward.core.db import execute_one, execute_query
from steward.core.repos.models import GitRepoInfo, RepoConfig
from steward.utils.timestamps import now_iso

logger = logging.getLogger(__name__)

# Directories never descended into while looking for nested git repos
IGNORED_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        "vendor",
        "dist",
        "build",
        ".next",
        ".nuxt",
        "__pycache__",
        ".venv",
        "venv",
        "target",
        "Pods",
    }
)

DEFAULT_DISCOVERY_DEPTH = 4


class RepoRegistryError(Exception):
    """Raised when a repository cannot be registered or found."""


class RepoSource(Protocol):
    """Anything that can list the locally known repositories."""

    def list_repos(self) -> list[RepoConfig]:
        ...


def normalize_repo_ref(relative_path: str) -> str:
    """
    Normalize a nested repository path for use as a stable reference.

    Example:
        >>> normalize_repo_ref("./services\\\\api/")
        'services/api'
    """
    ref = relative_path.replace("\\", "/")
    if ref.startswith("./"):
        ref = ref[2:]
    return ref.rstrip("/")


def is_git_repo(path: Path) -> bool:
    """Check if a directory has a .git directory or file (worktrees, submodules)."""
    git_path = path / ".git"
    return git_path.is_dir() or git_path.is_file()


def discover_git_repos(
    base_path: Path, max_depth: int = DEFAULT_DISCOVERY_DEPTH
) -> list[GitRepoInfo]:
    """
    Find git repositories below ``base_path``.

    Returns an empty list when ``base_path`` is itself a git repository,
    which is the common case. Does not descend into discovered repos or
    into IGNORED_DIRS. Unreadable directories are skipped.

    Args:
        base_path: Directory to scan
        max_depth: Maximum directory depth to scan (1 = direct children)

    Returns:
        Discovered repositories, sorted by relative path
    """
    base = base_path.resolve()
    if is_git_repo(base):
        return []

    discovered: list[GitRepoInfo] = []

    def scan(directory: Path, depth: int) -> None:
        if depth > max_depth:
            return
        try:
            entries = sorted(directory.iterdir())
        except OSError as e:
            logger.debug("Skipping unreadable directory %s: %s", directory, e)
            return

        for entry in entries:
            if not entry.is_dir() or entry.name in IGNORED_DIRS:
                continue
            if is_git_repo(entry):
                discovered.append(
                    GitRepoInfo(
                        relative_path=entry.relative_to(base).as_posix(),
                        absolute_path=str(entry),
                        name=entry.name,
                    )
                )
                continue
            scan(entry, depth + 1)

    scan(base, 1)
    return sorted(discovered, key=lambda info: info.relative_path)


def _serialize_git_repos(git_repos: list[GitRepoInfo]) -> str | None:
    if not git_repos:
        return None
    return json.dumps([info.model_dump() for info in git_repos])


def _parse_git_repos(repo_path: str, raw: str | None) -> list[GitRepoInfo]:
    """Parse stored nested repos, dropping entries that escape the repo root."""
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed git_repos_json for %s", repo_path)
        return []
    if not isinstance(parsed, list):
        return []

    root = Path(repo_path).resolve()
    valid: dict[str, GitRepoInfo] = {}
    for item in parsed:
        if not isinstance(item, dict):
            continue
        relative_path = item.get("relative_path") or item.get("relativePath")
        name = item.get("name")
        if not relative_path or not name:
            continue

        ref = normalize_repo_ref(str(relative_path))
        if not ref or ref == ".":
            continue
        absolute = (root / ref).resolve()
        if absolute != root and root not in absolute.parents:
            continue

        valid[ref] = GitRepoInfo(relative_path=ref, absolute_path=str(absolute), name=str(name))

    return list(valid.values())


def _row_to_repo(row: dict[str, Any]) -> RepoConfig:
    return RepoConfig(
        id=row["id"],
        name=row["name"],
        path=row["path"],
        added_at=row["added_at"],
        git_repos=_parse_git_repos(row["path"], row["git_repos_json"]),
    )


class RepoRegistry:
    """
    Registry of local repositories backed by the ``repos`` table.

    Example:
        >>> registry = RepoRegistry(conn)
        >>> repo = registry.add_repo(Path("~/src/api").expanduser())
        >>> [r.name for r in registry.list_repos()]
        ['api']
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def add_repo(self, path: Path | str, name: str | None = None) -> RepoConfig:
        """
        Register a repository.

        Raises:
            RepoRegistryError: If the path is not a directory or is already registered
        """
        resolved = Path(path).expanduser().resolve()
        if not resolved.is_dir():
            raise RepoRegistryError(f"Not a directory: {resolved}")

        if self.get_repo_by_path(resolved) is not None:
            raise RepoRegistryError(f"Repository already added: {resolved}")

        repo = RepoConfig(
            id=str(uuid.uuid4()),
            name=name or resolved.name,
            path=str(resolved),
            added_at=now_iso(),
            git_repos=discover_git_repos(resolved),
        )
        self.conn.execute(
            "INSERT INTO repos (id, name, path, added_at, git_repos_json) VALUES (?, ?, ?, ?, ?)",
            (repo.id, repo.name, repo.path, repo.added_at, _serialize_git_repos(repo.git_repos)),
        )
        logger.info("Registered repository %s at %s", repo.id, repo.path)
        return repo

    def list_repos(self) -> list[RepoConfig]:
        rows = execute_query(
            self.conn,
            "SELECT id, name, path, added_at, git_repos_json FROM repos ORDER BY added_at, id",
        )
        return [_row_to_repo(row) for row in rows]

    def get_repo(self, repo_id: str) -> RepoConfig | None:
        row = execute_one(
            self.conn,
            "SELECT id, name, path, added_at, git_repos_json FROM repos WHERE id = ?",
            (repo_id,),
        )
        return _row_to_repo(row) if row else None

    def get_repo_by_path(self, path: Path | str) -> RepoConfig | None:
        row = execute_one(
            self.conn,
            "SELECT id, name, path, added_at, git_repos_json FROM repos WHERE path = ?",
            (str(Path(path).resolve()),),
        )
        return _row_to_repo(row) if row else None

    def remove_repo(self, repo_id: str) -> bool:
        """Remove a repository and (via cascade) its state, archives, and sync metadata."""
        cursor = self.conn.execute("DELETE FROM repos WHERE id = ?", (repo_id,))
        return cursor.rowcount > 0
