"""
Read-only bundle summaries for operator review.

Output is fully sorted, so two bundles that differ only in the order of
their repos, states or archives inspect identically.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from steward.core.sync.schema import (
    SyncBundle,
    parse_bundle,
    parse_bundle_json,
    select_repo_records,
)


class _InspectionModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class RepoInspection(_InspectionModel):
    """One bundle repository and the PRDs it carries."""

    repo_sync_key: str
    name: str
    path_hint: str | None = None
    fingerprint: str
    fingerprint_kind: str
    state_count: int
    archive_count: int
    state_slugs: list[str]
    archive_slugs: list[str]


class OrphanGroup(_InspectionModel):
    """Rows whose repoSyncKey matches no repository listed in the bundle."""

    repo_sync_key: str
    slugs: list[str]


class InspectionTotals(_InspectionModel):
    repos: int
    states: int
    archives: int
    unknown_repo_states: int
    unknown_repo_archives: int


class BundleInspection(_InspectionModel):
    """Summary of a bundle."""

    type: str
    format_version: int
    bundle_id: str
    created_at: str
    source_device_id: str
    steward_version: str
    totals: InspectionTotals
    repos: list[RepoInspection] = Field(default_factory=list)
    unknown_repo_states: list[OrphanGroup] = Field(default_factory=list)
    unknown_repo_archives: list[OrphanGroup] = Field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _unique_sorted(values: Iterable[str]) -> list[str]:
    return sorted(set(values))


def _collect_orphans(rows: Iterable[Any], known_keys: set[str]) -> list[OrphanGroup]:
    slugs_by_key: dict[str, list[str]] = {}
    for row in rows:
        if row.repo_sync_key in known_keys:
            continue
        slugs_by_key.setdefault(row.repo_sync_key, []).append(row.slug)

    return [
        OrphanGroup(repo_sync_key=key, slugs=_unique_sorted(slugs))
        for key, slugs in sorted(slugs_by_key.items())
    ]


def inspect_bundle(value: Any) -> BundleInspection:
    """
    Validate and summarize a bundle.

    Args:
        value: Decoded bundle JSON or a SyncBundle

    Raises:
        BundleValidationError: If the bundle is invalid
    """
    bundle: SyncBundle = parse_bundle(value)

    repos_by_key = select_repo_records(bundle.repos)
    state_slugs: dict[str, list[str]] = {key: [] for key in repos_by_key}
    archive_slugs: dict[str, list[str]] = {key: [] for key in repos_by_key}

    for state in bundle.states:
        if state.repo_sync_key in state_slugs:
            state_slugs[state.repo_sync_key].append(state.slug)
    for archive in bundle.archives:
        if archive.repo_sync_key in archive_slugs:
            archive_slugs[archive.repo_sync_key].append(archive.slug)

    repos = []
    for key in sorted(repos_by_key):
        repo = repos_by_key[key]
        states = _unique_sorted(state_slugs[key])
        archives = _unique_sorted(archive_slugs[key])
        repos.append(
            RepoInspection(
                repo_sync_key=key,
                name=repo.name,
                path_hint=repo.path_hint,
                fingerprint=repo.fingerprint,
                fingerprint_kind=repo.fingerprint_kind,
                state_count=len(states),
                archive_count=len(archives),
                state_slugs=states,
                archive_slugs=archives,
            )
        )

    known_keys = set(repos_by_key)
    unknown_states = _collect_orphans(bundle.states, known_keys)
    unknown_archives = _collect_orphans(bundle.archives, known_keys)

    return BundleInspection(
        type=bundle.type,
        format_version=bundle.format_version,
        bundle_id=bundle.bundle_id,
        created_at=bundle.created_at,
        source_device_id=bundle.source_device_id,
        steward_version=bundle.steward_version,
        totals=InspectionTotals(
            repos=len(bundle.repos),
            states=len(bundle.states),
            archives=len(bundle.archives),
            unknown_repo_states=sum(len(group.slugs) for group in unknown_states),
            unknown_repo_archives=sum(len(group.slugs) for group in unknown_archives),
        ),
        repos=repos,
        unknown_repo_states=unknown_states,
        unknown_repo_archives=unknown_archives,
    )


def inspect_bundle_json(text: str | bytes) -> BundleInspection:
    """Decode bundle JSON and inspect it."""
    return inspect_bundle(parse_bundle_json(text))
