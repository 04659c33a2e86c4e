"""
Data models for merge plans and merge results.

Plans are immutable: the planner builds them once and nothing downstream
mutates them. All models serialize to camelCase JSON via ``to_wire()``;
optional identifiers that are unset are omitted rather than written as null,
while clocks and hashes keep explicit nulls (null means "no data").
"""

from __future__ import annotations

import math
from typing import Any, ClassVar, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializerFunctionWrapHandler,
    field_validator,
    model_serializer,
)
from pydantic.alias_generators import to_camel

MappingSource = Literal["map", "sync_key", "fingerprint", "unresolved"]
UnresolvedReason = Literal[
    "map_target_not_found",
    "fingerprint_ambiguous",
    "unknown_repo_metadata",
    "no_match",
]
DecisionReason = Literal[
    "incoming_newer_clock",
    "local_newer_clock",
    "incoming_has_clock",
    "local_has_clock",
    "incoming_hash_tiebreak",
    "local_hash_tiebreak",
    "equal_value",
]
RowAction = Literal["insert", "update", "skip", "unresolved"]
StateField = Literal["tasks", "progress", "notes"]

STATE_FIELDS: tuple[StateField, ...] = ("tasks", "progress", "notes")


class _PlanModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    # Fields dropped from serialized output when None
    _omit_when_none: ClassVar[frozenset[str]] = frozenset()

    @model_serializer(mode="wrap")
    def _drop_absent_fields(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        data: dict[str, Any] = handler(self)
        for name in self._omit_when_none:
            if getattr(self, name) is None:
                data.pop(name, None)
                data.pop(to_camel(name), None)
        return data

    def to_wire(self) -> dict[str, Any]:
        """Dump to camelCase JSON-compatible data."""
        return self.model_dump(mode="json", by_alias=True)


class RepoMapping(_PlanModel):
    """How one incoming repoSyncKey resolved to a local repository."""

    _omit_when_none: ClassVar[frozenset[str]] = frozenset(
        {"incoming_repo_name", "local_repo_id", "local_repo_path", "local_repo_sync_key", "reason"}
    )

    incoming_repo_sync_key: str
    incoming_repo_name: str | None = None
    local_repo_id: str | None = None
    local_repo_path: str | None = None
    local_repo_sync_key: str | None = None
    source: MappingSource
    reason: UnresolvedReason | None = None

    @property
    def resolved(self) -> bool:
        return self.source != "unresolved" and self.local_repo_id is not None


class FieldDecision(_PlanModel):
    """
    Outcome of merging one field of one PRD.

    ``changed`` is true only when the incoming side wins and its value or
    clock differs from local. ``conflict`` is true whenever both sides have
    data and it differs, regardless of the winner.
    """

    winner: Literal["local", "incoming"]
    reason: DecisionReason
    local_clock: str | None
    incoming_clock: str | None
    local_hash: str | None
    incoming_hash: str | None
    changed: bool
    value_changed: bool
    clock_changed: bool
    conflict: bool


class FieldDecisions(_PlanModel):
    tasks: FieldDecision
    progress: FieldDecision
    notes: FieldDecision

    def get(self, field: StateField) -> FieldDecision:
        decision: FieldDecision = getattr(self, field)
        return decision


class StatePlanRow(_PlanModel):
    """Planned action for one incoming state row."""

    _omit_when_none: ClassVar[frozenset[str]] = frozenset(
        {"local_repo_id", "local_repo_path", "reason", "field_decisions"}
    )

    repo_sync_key: str
    slug: str
    action: RowAction
    local_repo_id: str | None = None
    local_repo_path: str | None = None
    mapping_source: MappingSource
    reason: UnresolvedReason | None = None
    update_fields: list[StateField] = Field(default_factory=list)
    conflict_fields: list[StateField] = Field(default_factory=list)
    field_decisions: FieldDecisions | None = None


class ArchivePlanRow(_PlanModel):
    """Planned action for one incoming archive row."""

    _omit_when_none: ClassVar[frozenset[str]] = frozenset(
        {"local_repo_id", "local_repo_path", "reason"}
    )

    repo_sync_key: str
    slug: str
    action: RowAction
    local_repo_id: str | None = None
    local_repo_path: str | None = None
    mapping_source: MappingSource
    reason: UnresolvedReason | None = None


class PlanBundleHeader(_PlanModel):
    bundle_id: str
    format_version: int
    source_device_id: str
    created_at: str


class RepoMappingSummary(_PlanModel):
    mapped: int = 0
    unresolved: int = 0


class StateSummary(_PlanModel):
    insert: int = 0
    update: int = 0
    skip: int = 0
    unresolved: int = 0
    conflicts: int = 0


class ArchiveSummary(_PlanModel):
    insert: int = 0
    update: int = 0
    skip: int = 0
    unresolved: int = 0


class PlanSummary(_PlanModel):
    repos: RepoMappingSummary
    states: StateSummary
    archives: ArchiveSummary


class MergePlan(_PlanModel):
    """
    Complete, side-effect-free description of what a merge would do.

    Example:
        >>> plan = plan_merge(bundle, snapshot)
        >>> plan.summary.states.insert
        3
        >>> plan.unresolved_keys
        []
    """

    bundle: PlanBundleHeader
    mappings: list[RepoMapping]
    states: list[StatePlanRow]
    archives: list[ArchivePlanRow]
    summary: PlanSummary

    @property
    def unresolved_keys(self) -> list[str]:
        """Incoming repoSyncKeys that did not resolve to a local repository."""
        return sorted(m.incoming_repo_sync_key for m in self.mappings if not m.resolved)


class RetentionPolicy(BaseModel):
    """
    Pruning limits applied after a successful apply.

    Backups and bundle-log rows are each pruned by age and by count, newest
    kept. Fractional values are floored; day limits are at least 0 and count
    limits at least 1.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    backup_retention_days: int = 30
    max_backups: int = 20
    log_retention_days: int = 180
    max_log_entries: int = 10_000

    @field_validator("backup_retention_days", "log_retention_days", mode="before")
    @classmethod
    def _floor_days(cls, value: Any) -> int:
        return max(0, math.floor(float(value)))

    @field_validator("max_backups", "max_log_entries", mode="before")
    @classmethod
    def _floor_counts(cls, value: Any) -> int:
        return max(1, math.floor(float(value)))


class MergeOptions(BaseModel):
    """Options for MergeExecutor.execute."""

    apply: bool = Field(default=False, description="Write changes (default is a dry run)")
    repo_map: dict[str, str] = Field(
        default_factory=dict,
        description="Incoming repoSyncKey -> local repo id, absolute path, or sync key",
    )
    now: str | None = Field(default=None, description="Override the apply timestamp")
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)


class RetentionOutcome(_PlanModel):
    backups_deleted: int = 0
    logs_deleted: int = 0


class MergeResult(_PlanModel):
    """Result of a dry run or apply."""

    _omit_when_none: ClassVar[frozenset[str]] = frozenset({"backup_path"})

    mode: Literal["dry_run", "apply"]
    applied: bool
    already_applied: bool
    bundle_id: str
    plan: MergePlan
    backup_path: str | None = None
    retention: RetentionOutcome = Field(default_factory=RetentionOutcome)
