"""
Merge planning for sync bundles.

``plan_merge`` is a pure function of (bundle, local snapshot, repo map): it
reads nothing and writes nothing, so a dry run is always safe. Local state
is gathered beforehand by ``load_local_snapshot``.

Planning happens in three steps:

1. Map every repoSyncKey the bundle mentions to a local repository, in
   priority order: explicit repo map, exact sync key, unique fingerprint.
   Ambiguous or missing matches stay unresolved with a typed reason.
2. Decide each state row. Absent locally means insert. Otherwise tasks,
   progress and notes are decided independently:
     a. same hash and same clock: nothing to do (equal_value)
     b. both sides clocked: later clock wins; exact ties fall to (d)
     c. one side clocked: that side wins
     d. larger hash string wins (null counts as ""); equal means equal_value
   A field conflicts when both sides have different non-null hashes; that
   is reported, never blocking.
3. Archives merge by max(archivedAt).

Rows repeating a (repoSyncKey, slug) pair are folded into one before
planning. Rows in the plan are sorted, so two bundles that differ only in
array order produce identical plans.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from steward.core.repos import RepoSource
from steward.core.state import PrdArchive, PrdStateStore, StoredPrdState
from steward.core.sync.identity import IdentityStore
from steward.core.sync.models import (
    STATE_FIELDS,
    ArchivePlanRow,
    ArchiveSummary,
    FieldDecision,
    FieldDecisions,
    MergePlan,
    PlanBundleHeader,
    PlanSummary,
    RepoMapping,
    RepoMappingSummary,
    StateField,
    StatePlanRow,
    StateSummary,
)
from steward.core.sync.schema import (
    FieldClocks,
    SyncArchiveRecord,
    SyncBundle,
    SyncRepoRecord,
    SyncStateRecord,
    create_field_hashes,
    parse_bundle,
    select_repo_records,
    to_canonical_json,
)
from steward.utils.timestamps import compare_timestamps

logger = logging.getLogger(__name__)


class LocalRepoIdentity(BaseModel):
    """A local repository as the planner sees it."""

    model_config = ConfigDict(frozen=True)

    repo_id: str
    repo_path: str
    sync_key: str
    fingerprint: str
    fingerprint_kind: str


class LocalSnapshot(BaseModel):
    """Everything the planner needs to know about local state."""

    model_config = ConfigDict(frozen=True)

    repos: list[LocalRepoIdentity] = Field(default_factory=list)
    states: list[StoredPrdState] = Field(default_factory=list)
    archives: list[PrdArchive] = Field(default_factory=list)


def load_local_snapshot(
    repos: RepoSource, identity: IdentityStore, states: PrdStateStore
) -> LocalSnapshot:
    """
    Read local repositories, their identities, state rows and archives.

    Creates or refreshes repository sync metadata as a side effect; this is
    the only write on the planning path.
    """
    local_repos = repos.list_repos()
    meta_by_repo = identity.ensure_repo_sync_meta_for_repos(local_repos)

    identities = [
        LocalRepoIdentity(
            repo_id=repo.id,
            repo_path=repo.path,
            sync_key=meta_by_repo[repo.id].sync_key,
            fingerprint=meta_by_repo[repo.id].fingerprint,
            fingerprint_kind=meta_by_repo[repo.id].fingerprint_kind,
        )
        for repo in local_repos
    ]
    repo_ids = [repo.id for repo in local_repos]

    return LocalSnapshot(
        repos=identities,
        states=states.list_states(repo_ids),
        archives=states.list_archives(repo_ids),
    )


def _normalize_path(path: str) -> str:
    return os.path.abspath(os.path.expanduser(path))


class _RepoIndex:
    def __init__(self, repos: list[LocalRepoIdentity]) -> None:
        self.by_id: dict[str, LocalRepoIdentity] = {}
        self.by_path: dict[str, LocalRepoIdentity] = {}
        self.by_sync_key: dict[str, LocalRepoIdentity] = {}
        self.by_fingerprint: dict[tuple[str, str], list[LocalRepoIdentity]] = {}

        for repo in repos:
            self.by_id[repo.repo_id] = repo
            self.by_path[_normalize_path(repo.repo_path)] = repo
            self.by_sync_key[repo.sync_key] = repo
            key = (repo.fingerprint_kind, repo.fingerprint)
            self.by_fingerprint.setdefault(key, []).append(repo)

    def lookup_target(self, target: str) -> LocalRepoIdentity | None:
        return (
            self.by_id.get(target)
            or self.by_path.get(_normalize_path(target))
            or self.by_sync_key.get(target)
        )


def _mapped(
    key: str, incoming: SyncRepoRecord | None, local: LocalRepoIdentity, source: str
) -> RepoMapping:
    return RepoMapping(
        incoming_repo_sync_key=key,
        incoming_repo_name=incoming.name if incoming else None,
        local_repo_id=local.repo_id,
        local_repo_path=local.repo_path,
        local_repo_sync_key=local.sync_key,
        source=source,  # type: ignore[arg-type]
    )


def _unresolved(key: str, incoming: SyncRepoRecord | None, reason: str) -> RepoMapping:
    return RepoMapping(
        incoming_repo_sync_key=key,
        incoming_repo_name=incoming.name if incoming else None,
        source="unresolved",
        reason=reason,  # type: ignore[arg-type]
    )


def resolve_repo_mapping(
    key: str,
    incoming: SyncRepoRecord | None,
    index: _RepoIndex,
    repo_map: Mapping[str, str],
) -> RepoMapping:
    """Resolve one incoming repoSyncKey to a local repository."""
    target = (repo_map.get(key) or "").strip()
    if target:
        local = index.lookup_target(target)
        if local is None:
            return _unresolved(key, incoming, "map_target_not_found")
        return _mapped(key, incoming, local, "map")

    local = index.by_sync_key.get(key)
    if local is not None:
        return _mapped(key, incoming, local, "sync_key")

    if incoming is None:
        return _unresolved(key, incoming, "unknown_repo_metadata")

    matches = index.by_fingerprint.get((incoming.fingerprint_kind, incoming.fingerprint), [])
    if len(matches) == 1:
        return _mapped(key, incoming, matches[0], "fingerprint")
    if len(matches) > 1:
        return _unresolved(key, incoming, "fingerprint_ambiguous")
    return _unresolved(key, incoming, "no_match")


def decide_field(
    local_clock: str | None,
    incoming_clock: str | None,
    local_hash: str | None,
    incoming_hash: str | None,
) -> FieldDecision:
    """
    Decide one field of one PRD.

    The outcome depends only on the two (clock, hash) pairs, never on which
    side is called local: swapping the sides swaps the winner label but
    keeps the same winning value.
    """
    value_changed = (local_hash or "") != (incoming_hash or "")
    clock_changed = local_clock != incoming_clock
    conflict = value_changed and local_hash is not None and incoming_hash is not None

    def decision(winner: str, reason: str) -> FieldDecision:
        return FieldDecision(
            winner=winner,  # type: ignore[arg-type]
            reason=reason,  # type: ignore[arg-type]
            local_clock=local_clock,
            incoming_clock=incoming_clock,
            local_hash=local_hash,
            incoming_hash=incoming_hash,
            changed=winner == "incoming" and (value_changed or clock_changed),
            value_changed=value_changed,
            clock_changed=clock_changed,
            conflict=conflict,
        )

    if not value_changed and not clock_changed:
        return decision("local", "equal_value")

    if incoming_clock and local_clock:
        comparison = compare_timestamps(incoming_clock, local_clock)
        if comparison > 0:
            return decision("incoming", "incoming_newer_clock")
        if comparison < 0:
            return decision("local", "local_newer_clock")
    elif incoming_clock:
        return decision("incoming", "incoming_has_clock")
    elif local_clock:
        return decision("local", "local_has_clock")

    incoming_key = incoming_hash or ""
    local_key = local_hash or ""
    if incoming_key > local_key:
        return decision("incoming", "incoming_hash_tiebreak")
    if incoming_key < local_key:
        return decision("local", "local_hash_tiebreak")
    return decision("local", "equal_value")


def _local_clock(state: StoredPrdState, field: StateField) -> str | None:
    clock: str | None = getattr(state, f"{field}_updated_at")
    return clock


def _incoming_clock(row: SyncStateRecord, field: StateField) -> str | None:
    clock: str | None = getattr(row.clocks, f"{field}_updated_at")
    return clock


def plan_state_row(
    row: SyncStateRecord,
    mapping: RepoMapping,
    local_states: Mapping[tuple[str, str], StoredPrdState],
) -> StatePlanRow:
    """Plan the merge of one incoming state row."""
    if not mapping.resolved:
        return StatePlanRow(
            repo_sync_key=row.repo_sync_key,
            slug=row.slug,
            action="unresolved",
            mapping_source=mapping.source,
            reason=mapping.reason,
        )

    assert mapping.local_repo_id is not None
    local = local_states.get((mapping.local_repo_id, row.slug))
    if local is None:
        return StatePlanRow(
            repo_sync_key=row.repo_sync_key,
            slug=row.slug,
            action="insert",
            local_repo_id=mapping.local_repo_id,
            local_repo_path=mapping.local_repo_path,
            mapping_source=mapping.source,
            update_fields=list(STATE_FIELDS),
        )

    local_hashes = create_field_hashes(local.tasks, local.progress, local.notes)
    # Incoming hashes are recomputed rather than trusted from the bundle
    incoming_hashes = create_field_hashes(row.tasks, row.progress, row.notes)

    decisions: dict[str, FieldDecision] = {}
    for field in STATE_FIELDS:
        decisions[field] = decide_field(
            local_clock=_local_clock(local, field),
            incoming_clock=_incoming_clock(row, field),
            local_hash=getattr(local_hashes, f"{field}_hash"),
            incoming_hash=getattr(incoming_hashes, f"{field}_hash"),
        )

    update_fields = [field for field in STATE_FIELDS if decisions[field].changed]
    conflict_fields = [field for field in STATE_FIELDS if decisions[field].conflict]

    return StatePlanRow(
        repo_sync_key=row.repo_sync_key,
        slug=row.slug,
        action="update" if update_fields else "skip",
        local_repo_id=mapping.local_repo_id,
        local_repo_path=mapping.local_repo_path,
        mapping_source=mapping.source,
        update_fields=update_fields,
        conflict_fields=conflict_fields,
        field_decisions=FieldDecisions(**decisions),
    )


def plan_archive_row(
    row: SyncArchiveRecord,
    mapping: RepoMapping,
    local_archives: Mapping[tuple[str, str], PrdArchive],
) -> ArchivePlanRow:
    """Plan the merge of one incoming archive row."""
    if not mapping.resolved:
        return ArchivePlanRow(
            repo_sync_key=row.repo_sync_key,
            slug=row.slug,
            action="unresolved",
            mapping_source=mapping.source,
            reason=mapping.reason,
        )

    assert mapping.local_repo_id is not None
    local = local_archives.get((mapping.local_repo_id, row.slug))
    if local is None:
        action = "insert"
    elif compare_timestamps(row.archived_at, local.archived_at) > 0:
        action = "update"
    else:
        action = "skip"

    return ArchivePlanRow(
        repo_sync_key=row.repo_sync_key,
        slug=row.slug,
        action=action,  # type: ignore[arg-type]
        local_repo_id=mapping.local_repo_id,
        local_repo_path=mapping.local_repo_path,
        mapping_source=mapping.source,
    )


def state_sort_key(row: SyncStateRecord) -> tuple[str, str, str]:
    # Full content breaks ties between duplicate (key, slug) rows
    return (row.repo_sync_key, row.slug, to_canonical_json(row.model_dump(mode="json")))


def archive_sort_key(row: SyncArchiveRecord) -> tuple[str, str, str]:
    return (row.repo_sync_key, row.slug, row.archived_at)


def _fold_state_rows(current: SyncStateRecord, other: SyncStateRecord) -> SyncStateRecord:
    current_hashes = create_field_hashes(current.tasks, current.progress, current.notes)
    other_hashes = create_field_hashes(other.tasks, other.progress, other.notes)

    values: dict[str, Any] = {}
    clocks: dict[str, str | None] = {}
    for field in STATE_FIELDS:
        decision = decide_field(
            local_clock=_incoming_clock(current, field),
            incoming_clock=_incoming_clock(other, field),
            local_hash=getattr(current_hashes, f"{field}_hash"),
            incoming_hash=getattr(other_hashes, f"{field}_hash"),
        )
        source = other if decision.winner == "incoming" else current
        values[field] = getattr(source, field)
        clocks[f"{field}_updated_at"] = _incoming_clock(source, field)

    return SyncStateRecord(
        repo_sync_key=current.repo_sync_key,
        slug=current.slug,
        tasks=values["tasks"],
        progress=values["progress"],
        notes=values["notes"],
        clocks=FieldClocks(**clocks),
        hashes=create_field_hashes(values["tasks"], values["progress"], values["notes"]),
    )


def collapse_state_rows(rows: Iterable[SyncStateRecord]) -> list[SyncStateRecord]:
    """
    One state row per (repoSyncKey, slug), sorted by state_sort_key.

    Rows sharing a key are folded field by field with decide_field, so each
    field keeps the value and clock that merging the rows one after another
    would leave behind. The planner and the executor both work from this
    list, which keeps the planned and the written values identical.
    """
    merged: dict[tuple[str, str], SyncStateRecord] = {}
    for row in sorted(rows, key=state_sort_key):
        key = (row.repo_sync_key, row.slug)
        current = merged.get(key)
        merged[key] = row if current is None else _fold_state_rows(current, row)
    return sorted(merged.values(), key=state_sort_key)


def collapse_archive_rows(rows: Iterable[SyncArchiveRecord]) -> list[SyncArchiveRecord]:
    """One archive row per (repoSyncKey, slug): the latest archivedAt."""
    latest: dict[tuple[str, str], SyncArchiveRecord] = {}
    for row in sorted(rows, key=archive_sort_key):
        key = (row.repo_sync_key, row.slug)
        current = latest.get(key)
        if current is None or compare_timestamps(row.archived_at, current.archived_at) > 0:
            latest[key] = row
    return sorted(latest.values(), key=archive_sort_key)


def _summarize(
    mappings: list[RepoMapping], states: list[StatePlanRow], archives: list[ArchivePlanRow]
) -> PlanSummary:
    def count(rows: list[Any], action: str) -> int:
        return sum(1 for row in rows if row.action == action)

    return PlanSummary(
        repos=RepoMappingSummary(
            mapped=sum(1 for m in mappings if m.resolved),
            unresolved=sum(1 for m in mappings if not m.resolved),
        ),
        states=StateSummary(
            insert=count(states, "insert"),
            update=count(states, "update"),
            skip=count(states, "skip"),
            unresolved=count(states, "unresolved"),
            conflicts=sum(len(row.conflict_fields) for row in states),
        ),
        archives=ArchiveSummary(
            insert=count(archives, "insert"),
            update=count(archives, "update"),
            skip=count(archives, "skip"),
            unresolved=count(archives, "unresolved"),
        ),
    )


def plan_merge(
    bundle: SyncBundle | Any,
    local: LocalSnapshot,
    repo_map: Mapping[str, str] | None = None,
) -> MergePlan:
    """
    Plan merging a bundle into local state. Performs no I/O.

    Args:
        bundle: A SyncBundle or decoded bundle JSON
        local: Local repositories, state rows and archives
        repo_map: Incoming repoSyncKey -> local repo id, absolute path, or
            local sync key; takes priority over automatic matching

    Returns:
        Immutable merge plan

    Raises:
        BundleValidationError: If the bundle is invalid
    """
    bundle = parse_bundle(bundle)
    repo_map = repo_map or {}
    index = _RepoIndex(local.repos)

    incoming_repos = select_repo_records(bundle.repos)

    keys = set(incoming_repos)
    keys.update(row.repo_sync_key for row in bundle.states)
    keys.update(row.repo_sync_key for row in bundle.archives)

    mappings = [
        resolve_repo_mapping(key, incoming_repos.get(key), index, repo_map) for key in sorted(keys)
    ]
    mapping_by_key = {mapping.incoming_repo_sync_key: mapping for mapping in mappings}

    local_states = {(state.repo_id, state.slug): state for state in local.states}
    local_archives = {(archive.repo_id, archive.slug): archive for archive in local.archives}

    states = [
        plan_state_row(row, mapping_by_key[row.repo_sync_key], local_states)
        for row in collapse_state_rows(bundle.states)
    ]
    archives = [
        plan_archive_row(row, mapping_by_key[row.repo_sync_key], local_archives)
        for row in collapse_archive_rows(bundle.archives)
    ]

    summary = _summarize(mappings, states, archives)
    logger.debug(
        "Planned bundle %s: %d mapped, %d unresolved repos",
        bundle.bundle_id,
        summary.repos.mapped,
        summary.repos.unresolved,
    )

    return MergePlan(
        bundle=PlanBundleHeader(
            bundle_id=bundle.bundle_id,
            format_version=bundle.format_version,
            source_device_id=bundle.source_device_id,
            created_at=bundle.created_at,
        ),
        mappings=mappings,
        states=states,
        archives=archives,
        summary=summary,
    )


class MergePlanner:
    """
    Plans merges against one local database.

    Example:
        >>> planner = MergePlanner(store.repos, store.identity, store.states)
        >>> plan = planner.plan(bundle, repo_map={"rsk_abc": "/src/api"})
        >>> plan.summary.states.conflicts
        0
    """

    def __init__(self, repos: RepoSource, identity: IdentityStore, states: PrdStateStore) -> None:
        self.repos = repos
        self.identity = identity
        self.states = states

    def snapshot(self) -> LocalSnapshot:
        return load_local_snapshot(self.repos, self.identity, self.states)

    def plan(
        self, bundle: SyncBundle | Any, repo_map: Mapping[str, str] | None = None
    ) -> MergePlan:
        """Validate the bundle, load local state, and plan."""
        parsed = parse_bundle(bundle)
        return plan_merge(parsed, self.snapshot(), repo_map)
