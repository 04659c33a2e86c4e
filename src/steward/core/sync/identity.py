"""
Repository and device identity for cross-device sync.

Each local repository gets a durable, random sync key (``rsk_<32 hex>``)
the first time it takes part in an export or merge. The key is never
regenerated. A fingerprint is stored alongside it so that a device which
has never seen the key can still recognize "the same repository":

- ``git-remotes-v1``: hash of the sorted ``<nested-ref>:<normalized-url>``
  pairs of every configured git remote (root repo ref is "")
- ``repo-shape-v1``: fallback when there are no remotes; hash of the repo
  name, its PRD slugs under docs/prd, and its nested repo paths

Fingerprints may drift (adding a PRD changes the shape). Drift refreshes
the stored fingerprint but never the key.

The device id is a random UUID kept in ``app_meta`` and is only used to
attribute bundles in the apply log.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import sqlite3
import subprocess
import uuid
from pathlib import Path
from typing import Protocol
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict

from steward.core.db import execute_one
from steward.core.repos import RepoConfig, is_git_repo, normalize_repo_ref
from steward.utils.timestamps import now_iso

logger = logging.getLogger(__name__)

SYNC_DEVICE_ID_KEY = "sync:device-id"
SYNC_KEY_PREFIX = "rsk_"
GIT_REMOTE_FINGERPRINT_KIND = "git-remotes-v1"
REPO_SHAPE_FINGERPRINT_KIND = "repo-shape-v1"

_SCP_LIKE = re.compile(r"^([^@/\s]+)@([^:/\s]+):(.+)$")


class RepoSyncMeta(BaseModel):
    """Local mapping from a repository id to its durable sync key."""

    model_config = ConfigDict(frozen=True)

    repo_id: str
    sync_key: str
    fingerprint: str
    fingerprint_kind: str
    updated_at: str


class RepoFingerprint(BaseModel):
    """A computed fingerprint and the scheme that produced it."""

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    fingerprint_kind: str


class RemoteReader(Protocol):
    """Reads configured remote URLs of the git repository at a path."""

    def read_remote_urls(self, path: Path) -> list[str]:
        ...


class GitRemoteReader:
    """
    Reads remote URLs with ``git config``.

    Any failure (not a repo, git missing, timeout) yields no URLs so the
    fingerprint falls back to the repository shape.
    """

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout

    def read_remote_urls(self, path: Path) -> list[str]:
        if not is_git_repo(path):
            return []

        cmd = ["git", "config", "--get-regexp", r"^remote\..*\.url$"]
        logger.debug("Running git command in %s: %s", path, " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                cwd=path,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("Could not read git remotes for %s: %s", path, e)
            return []

        if result.returncode != 0:
            # Exit code 1 just means no remotes are configured
            return []

        urls: list[str] = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            _, _, url = line.partition(" ")
            urls.append(url.strip() if url else line)
        return urls


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _compact_json(value: object) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def create_sync_key() -> str:
    """Mint a new repository sync key."""
    return f"{SYNC_KEY_PREFIX}{uuid.uuid4().hex}"


def normalize_remote_url(url: str) -> str:
    """
    Normalize a git remote URL so equivalent spellings compare equal.

    SCP-like ``user@host:path`` becomes ``ssh://user@host/path``. Scheme and
    host are lower-cased, user and port are kept, repeated slashes are
    collapsed, and a ``.git`` suffix and trailing slash are removed. The
    path is lower-cased as well.

    Example:
        >>> normalize_remote_url("git@GitHub.com:Acme/API.git")
        'ssh://git@github.com/acme/api'
        >>> normalize_remote_url("https://github.com/acme/api/")
        'https://github.com/acme/api'
    """
    trimmed = url.strip()
    if not trimmed:
        return ""

    match = _SCP_LIKE.match(trimmed)
    candidate = f"ssh://{match.group(1)}@{match.group(2)}/{match.group(3)}" if match else trimmed

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        parts = None
        port = None

    if parts is None or not parts.scheme or not parts.netloc:
        # Local paths and other non-URL remotes
        return re.sub(r"\.git$", "", candidate, flags=re.IGNORECASE).lower()

    username = f"{parts.username}@" if parts.username else ""
    hostname = (parts.hostname or "").lower()
    port_part = f":{port}" if port is not None else ""

    path = re.sub(r"/+", "/", parts.path)
    path = re.sub(r"\.git$", "", path, flags=re.IGNORECASE)
    path = path.rstrip("/").lower()

    return f"{parts.scheme.lower()}://{username}{hostname}{port_part}{path}"


def _git_roots(repo: RepoConfig) -> list[tuple[str, Path]]:
    """(ref, path) for the repo root and each nested repo, deduplicated by path."""
    roots: dict[Path, tuple[str, Path]] = {}
    root_path = Path(repo.path)
    roots[root_path.resolve()] = ("", root_path)

    for nested in repo.git_repos:
        ref = normalize_repo_ref(nested.relative_path)
        if not ref:
            continue
        nested_path = Path(nested.absolute_path)
        roots[nested_path.resolve()] = (ref, nested_path)

    return list(roots.values())


def read_remote_signatures(repo: RepoConfig, remote_reader: RemoteReader) -> list[str]:
    """Sorted unique ``<ref>:<normalized-url>`` strings for a repository."""
    signatures: set[str] = set()
    for ref, path in _git_roots(repo):
        for raw_url in remote_reader.read_remote_urls(path):
            normalized = normalize_remote_url(raw_url)
            if normalized:
                signatures.add(f"{ref}:{normalized}")
    return sorted(signatures)


def read_prd_slugs(repo_path: Path) -> list[str]:
    """Sorted stems of the markdown files in ``docs/prd``."""
    prd_dir = repo_path / "docs" / "prd"
    try:
        return sorted(entry.stem for entry in prd_dir.iterdir() if entry.name.endswith(".md"))
    except OSError:
        return []


def calculate_repo_fingerprint(repo: RepoConfig, remote_reader: RemoteReader) -> RepoFingerprint:
    """
    Compute a repository's fingerprint.

    Prefers ``git-remotes-v1`` and falls back to ``repo-shape-v1`` when no
    remotes are configured anywhere in the repository.
    """
    signatures = read_remote_signatures(repo, remote_reader)
    if signatures:
        return RepoFingerprint(
            fingerprint=sha256_hex(_compact_json(signatures)),
            fingerprint_kind=GIT_REMOTE_FINGERPRINT_KIND,
        )

    nested_repos = sorted(
        ref for ref in (normalize_repo_ref(info.relative_path) for info in repo.git_repos) if ref
    )
    shape = {
        "name": repo.name.strip().lower(),
        "prdSlugs": read_prd_slugs(Path(repo.path)),
        "nestedRepos": nested_repos,
    }
    return RepoFingerprint(
        fingerprint=sha256_hex(_compact_json(shape)),
        fingerprint_kind=REPO_SHAPE_FINGERPRINT_KIND,
    )


def _row_to_meta(row: dict[str, str | None]) -> RepoSyncMeta:
    return RepoSyncMeta(
        repo_id=row["repo_id"] or "",
        sync_key=row["sync_key"] or "",
        fingerprint=row["fingerprint"] or "",
        fingerprint_kind=row["fingerprint_kind"] or "",
        updated_at=row["updated_at"] or "",
    )


class IdentityStore:
    """
    Device id and repository sync metadata for one local database.

    Holds no process-wide state: two stores over two databases are fully
    independent.

    Example:
        >>> identity = IdentityStore(conn)
        >>> meta = identity.ensure_repo_sync_meta(repo)
        >>> identity.ensure_repo_sync_meta(repo).sync_key == meta.sync_key
        True
    """

    def __init__(self, conn: sqlite3.Connection, remote_reader: RemoteReader | None = None) -> None:
        self.conn = conn
        self.remote_reader: RemoteReader = remote_reader or GitRemoteReader()

    def get_or_create_device_id(self) -> str:
        """
        Return this device's sync id, creating it on first use.

        Raises:
            RuntimeError: If the id could not be persisted
        """
        existing = execute_one(
            self.conn, "SELECT value FROM app_meta WHERE key = ?", (SYNC_DEVICE_ID_KEY,)
        )
        if existing and existing["value"]:
            return str(existing["value"])

        self.conn.execute(
            """
            INSERT INTO app_meta (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO NOTHING
            """,
            (SYNC_DEVICE_ID_KEY, str(uuid.uuid4()), now_iso()),
        )

        resolved = execute_one(
            self.conn, "SELECT value FROM app_meta WHERE key = ?", (SYNC_DEVICE_ID_KEY,)
        )
        if not resolved or not resolved["value"]:
            raise RuntimeError("Failed to initialize sync device identifier")
        return str(resolved["value"])

    def get_repo_sync_meta(self, repo_id: str) -> RepoSyncMeta | None:
        row = execute_one(
            self.conn,
            """
            SELECT repo_id, sync_key, fingerprint, fingerprint_kind, updated_at
            FROM repo_sync_meta
            WHERE repo_id = ?
            """,
            (repo_id,),
        )
        return _row_to_meta(row) if row else None

    def calculate_fingerprint(self, repo: RepoConfig) -> RepoFingerprint:
        return calculate_repo_fingerprint(repo, self.remote_reader)

    def ensure_repo_sync_meta(self, repo: RepoConfig) -> RepoSyncMeta:
        """
        Return the repo's sync metadata, creating or refreshing it.

        A missing row gets a fresh sync key. An existing row keeps its key;
        only a changed fingerprint is written back.
        """
        self.get_or_create_device_id()

        computed = self.calculate_fingerprint(repo)
        existing = self.get_repo_sync_meta(repo.id)
        updated_at = now_iso()

        if existing is None:
            created = RepoSyncMeta(
                repo_id=repo.id,
                sync_key=create_sync_key(),
                fingerprint=computed.fingerprint,
                fingerprint_kind=computed.fingerprint_kind,
                updated_at=updated_at,
            )
            self.conn.execute(
                """
                INSERT INTO repo_sync_meta
                    (repo_id, sync_key, fingerprint, fingerprint_kind, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    created.repo_id,
                    created.sync_key,
                    created.fingerprint,
                    created.fingerprint_kind,
                    created.updated_at,
                ),
            )
            logger.info("Minted sync key %s for repo %s", created.sync_key, repo.id)
            return created

        if (
            existing.fingerprint == computed.fingerprint
            and existing.fingerprint_kind == computed.fingerprint_kind
        ):
            return existing

        self.conn.execute(
            """
            UPDATE repo_sync_meta
            SET fingerprint = ?, fingerprint_kind = ?, updated_at = ?
            WHERE repo_id = ?
            """,
            (computed.fingerprint, computed.fingerprint_kind, updated_at, repo.id),
        )
        logger.debug("Refreshed fingerprint for repo %s (%s)", repo.id, computed.fingerprint_kind)
        return existing.model_copy(
            update={
                "fingerprint": computed.fingerprint,
                "fingerprint_kind": computed.fingerprint_kind,
                "updated_at": updated_at,
            }
        )

    def ensure_repo_sync_meta_for_repos(self, repos: list[RepoConfig]) -> dict[str, RepoSyncMeta]:
        """ensure_repo_sync_meta for each repo, keyed by repo id."""
        return {repo.id: self.ensure_repo_sync_meta(repo) for repo in repos}
