"""
Cross-device sync for PRD state.

A device exports its repositories, PRD state and archives as a versioned
bundle. Another device inspects the bundle, plans a merge against its own
database, and applies the plan in one transaction. Fields merge
independently by clock, with a content-hash tiebreak, so replaying or
reordering bundles converges to the same state.

Example:
    >>> with LocalStore.open(db_path) as store:
    ...     bundle = export_bundle(store)
    >>> with LocalStore.open(other_db_path) as store:
    ...     result = execute_merge(store, bundle, MergeOptions(apply=True))
"""

from steward.core.sync.apply import (
    MergeExecutor,
    execute_merge,
    list_backups,
    prune_backups,
    prune_bundle_log,
)
from steward.core.sync.exceptions import (
    BundleValidationError,
    IntegrityError,
    MappingError,
    StorageError,
    SyncError,
)
from steward.core.sync.export import BundleExporter, ExportOptions, export_bundle, write_bundle
from steward.core.sync.identity import (
    GitRemoteReader,
    IdentityStore,
    RemoteReader,
    RepoSyncMeta,
    normalize_remote_url,
)
from steward.core.sync.inspect import BundleInspection, inspect_bundle, inspect_bundle_json
from steward.core.sync.merge import LocalSnapshot, MergePlanner, plan_merge
from steward.core.sync.models import (
    MergeOptions,
    MergePlan,
    MergeResult,
    RetentionOutcome,
    RetentionPolicy,
)
from steward.core.sync.schema import (
    SYNC_BUNDLE_FORMAT_VERSION,
    SYNC_BUNDLE_TYPE,
    SyncBundle,
    hash_canonical_value,
    parse_bundle,
    parse_bundle_json,
    serialize_bundle,
    to_canonical_json,
    validate_bundle,
)

__all__ = [
    "BundleExporter",
    "BundleInspection",
    "BundleValidationError",
    "ExportOptions",
    "GitRemoteReader",
    "IdentityStore",
    "IntegrityError",
    "LocalSnapshot",
    "MappingError",
    "MergeExecutor",
    "MergeOptions",
    "MergePlan",
    "MergePlanner",
    "MergeResult",
    "RemoteReader",
    "RepoSyncMeta",
    "RetentionOutcome",
    "RetentionPolicy",
    "SYNC_BUNDLE_FORMAT_VERSION",
    "SYNC_BUNDLE_TYPE",
    "StorageError",
    "SyncBundle",
    "SyncError",
    "execute_merge",
    "export_bundle",
    "hash_canonical_value",
    "inspect_bundle",
    "inspect_bundle_json",
    "list_backups",
    "normalize_remote_url",
    "parse_bundle",
    "parse_bundle_json",
    "plan_merge",
    "prune_backups",
    "prune_bundle_log",
    "serialize_bundle",
    "to_canonical_json",
    "validate_bundle",
    "write_bundle",
]
