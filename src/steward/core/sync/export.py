"""
Build sync bundles from the local state database.

Export reads repositories, PRD state and archives, and produces a validated
SyncBundle. Its only write is lazily creating or refreshing repository sync
metadata (and the device id) through the identity store.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from steward import __version__
from steward.core.config.models import PathHintsMode
from steward.core.repos import RepoConfig, RepoSource
from steward.core.state import PrdStateStore
from steward.core.sync.identity import IdentityStore
from steward.core.sync.schema import (
    SYNC_BUNDLE_FORMAT_VERSION,
    SYNC_BUNDLE_TYPE,
    SyncBundle,
    create_field_hashes,
    parse_bundle,
    serialize_bundle,
)
from steward.utils.timestamps import now_iso

if TYPE_CHECKING:
    from steward.core.store import LocalStore

logger = logging.getLogger(__name__)


class ExportOptions(BaseModel):
    """Options for building a bundle."""

    path_hints: PathHintsMode = Field(
        default=PathHintsMode.BASENAME,
        description="How repository paths are described in the bundle",
    )
    repo_ids: list[str] = Field(
        default_factory=list,
        description="Only export these repositories (empty means all)",
    )
    created_at: str | None = Field(default=None, description="Override the bundle timestamp")
    bundle_id: str | None = Field(default=None, description="Override the random bundle id")
    steward_version: str | None = Field(default=None, description="Override the recorded version")


def resolve_path_hint(path: str, mode: PathHintsMode) -> str | None:
    """
    Describe a repository path for a bundle.

    Example:
        >>> resolve_path_hint("/home/me/src/api", PathHintsMode.BASENAME)
        'api'
    """
    if mode == PathHintsMode.NONE:
        return None
    resolved = Path(path).resolve()
    if mode == PathHintsMode.ABSOLUTE:
        return str(resolved)
    return resolved.name or None


class BundleExporter:
    """
    Produces bundles from one local database.

    Example:
        >>> exporter = BundleExporter(store.repos, store.identity, store.states)
        >>> bundle = exporter.export(ExportOptions(path_hints=PathHintsMode.NONE))
    """

    def __init__(self, repos: RepoSource, identity: IdentityStore, states: PrdStateStore) -> None:
        self.repos = repos
        self.identity = identity
        self.states = states

    def _select_repos(self, repo_ids: list[str]) -> list[RepoConfig]:
        all_repos = self.repos.list_repos()
        wanted = {repo_id.strip() for repo_id in repo_ids if repo_id.strip()}
        if not wanted:
            return all_repos

        selected = [repo for repo in all_repos if repo.id in wanted]
        missing = wanted - {repo.id for repo in selected}
        if missing:
            logger.warning("Ignoring unknown repository ids: %s", ", ".join(sorted(missing)))
        return selected

    def export(self, options: ExportOptions | None = None) -> SyncBundle:
        """
        Build and validate a bundle.

        Raises:
            BundleValidationError: If the assembled bundle fails validation
        """
        options = options or ExportOptions()

        repos = self._select_repos(options.repo_ids)
        source_device_id = self.identity.get_or_create_device_id()
        meta_by_repo = self.identity.ensure_repo_sync_meta_for_repos(repos)
        repo_ids = [repo.id for repo in repos]

        repo_records = []
        for repo in repos:
            meta = meta_by_repo[repo.id]
            record = {
                "repoSyncKey": meta.sync_key,
                "name": repo.name,
                "fingerprint": meta.fingerprint,
                "fingerprintKind": meta.fingerprint_kind,
            }
            path_hint = resolve_path_hint(repo.path, options.path_hints)
            if path_hint:
                record["pathHint"] = path_hint
            repo_records.append(record)

        state_records = []
        for state in self.states.list_states(repo_ids):
            hashes = create_field_hashes(state.tasks, state.progress, state.notes)
            state_records.append(
                {
                    "repoSyncKey": meta_by_repo[state.repo_id].sync_key,
                    "slug": state.slug,
                    "tasks": state.tasks,
                    "progress": state.progress,
                    "notes": state.notes,
                    "clocks": {
                        "tasksUpdatedAt": state.tasks_updated_at,
                        "progressUpdatedAt": state.progress_updated_at,
                        "notesUpdatedAt": state.notes_updated_at,
                    },
                    "hashes": hashes.model_dump(by_alias=True),
                }
            )

        archive_records = [
            {
                "repoSyncKey": meta_by_repo[archive.repo_id].sync_key,
                "slug": archive.slug,
                "archivedAt": archive.archived_at,
            }
            for archive in self.states.list_archives(repo_ids)
        ]

        bundle = parse_bundle(
            {
                "type": SYNC_BUNDLE_TYPE,
                "formatVersion": SYNC_BUNDLE_FORMAT_VERSION,
                "bundleId": options.bundle_id or str(uuid.uuid4()),
                "createdAt": options.created_at or now_iso(),
                "sourceDeviceId": source_device_id,
                "stewardVersion": options.steward_version or __version__,
                "repos": repo_records,
                "states": state_records,
                "archives": archive_records,
            }
        )
        logger.info(
            "Exported bundle %s: %d repos, %d states, %d archives",
            bundle.bundle_id,
            len(bundle.repos),
            len(bundle.states),
            len(bundle.archives),
        )
        return bundle


def export_bundle(store: LocalStore, options: ExportOptions | None = None) -> SyncBundle:
    """Export a bundle from an open LocalStore."""
    return BundleExporter(store.repos, store.identity, store.states).export(options)


def write_bundle(path: Path, bundle: SyncBundle) -> Path:
    """
    Write a bundle to disk atomically.

    Writes to a temp file in the same directory, then renames.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    temp_path.write_text(serialize_bundle(bundle), encoding="utf-8")
    temp_path.replace(path)
    return path
