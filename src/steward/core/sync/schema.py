"""
Sync bundle wire format and canonical hashing.

A bundle is a self-contained JSON snapshot of one device's PRD state:

    {
      "type": "steward-sync-bundle",
      "formatVersion": 1,
      "bundleId": "...",
      "createdAt": "2026-02-27T00:00:00.000Z",
      "sourceDeviceId": "...",
      "stewardVersion": "0.9.0",
      "repos": [{"repoSyncKey", "name", "pathHint"?, "fingerprint", "fingerprintKind"}],
      "states": [{"repoSyncKey", "slug", "tasks", "progress", "notes",
                  "clocks": {...}, "hashes": {...}}],
      "archives": [{"repoSyncKey", "slug", "archivedAt"}]
    }

Wire keys are camelCase; the models expose snake_case attributes and accept
either form on input.

Field hashes are SHA-256 over canonical JSON (object keys sorted at every
depth, arrays in order), so structurally equal values hash identically
regardless of key order. A missing value hashes to None, never to the hash
of an empty value.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializerFunctionWrapHandler,
    StringConstraints,
    ValidationError,
    model_serializer,
)
from pydantic.alias_generators import to_camel

from steward.core.state.models import SLUG_PATTERN
from steward.core.sync.exceptions import BundleValidationError

SYNC_BUNDLE_TYPE = "steward-sync-bundle"
SYNC_BUNDLE_FORMAT_VERSION = 1

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
SlugStr = Annotated[str, StringConstraints(strip_whitespace=True, pattern=SLUG_PATTERN.pattern)]


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class FieldClocks(_WireModel):
    """Per-field last-modified timestamps. None means the field has no data."""

    tasks_updated_at: str | None
    progress_updated_at: str | None
    notes_updated_at: str | None


class FieldHashes(_WireModel):
    """Per-field canonical hashes. None means the field has no data."""

    tasks_hash: str | None
    progress_hash: str | None
    notes_hash: str | None


class SyncRepoRecord(_WireModel):
    """A repository as described in a bundle."""

    repo_sync_key: NonEmptyStr
    name: NonEmptyStr
    path_hint: NonEmptyStr | None = Field(
        default=None,
        description="Informational only, never used for matching",
    )
    fingerprint: NonEmptyStr
    fingerprint_kind: NonEmptyStr

    @model_serializer(mode="wrap")
    def _omit_missing_path_hint(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        data: dict[str, Any] = handler(self)
        if self.path_hint is None:
            data.pop("pathHint", None)
            data.pop("path_hint", None)
        return data


class SyncStateRecord(_WireModel):
    """One PRD's state, with independently clocked and hashed fields."""

    repo_sync_key: NonEmptyStr
    slug: SlugStr
    tasks: Any = None
    progress: Any = None
    notes: str | None = None
    clocks: FieldClocks
    hashes: FieldHashes


class SyncArchiveRecord(_WireModel):
    """An archived PRD."""

    repo_sync_key: NonEmptyStr
    slug: SlugStr
    archived_at: NonEmptyStr


class SyncBundle(_WireModel):
    """
    A versioned export of one device's PRD state.

    Example:
        >>> bundle = parse_bundle(json.loads(Path("steward.bundle.json").read_text()))
        >>> bundle.format_version
        1
    """

    type: Literal["steward-sync-bundle"]
    format_version: Literal[1]
    bundle_id: NonEmptyStr
    created_at: NonEmptyStr
    source_device_id: NonEmptyStr
    steward_version: NonEmptyStr
    repos: list[SyncRepoRecord]
    states: list[SyncStateRecord]
    archives: list[SyncArchiveRecord]

    def to_wire(self) -> dict[str, Any]:
        """Dump to the camelCase JSON-compatible wire form."""
        return self.model_dump(mode="json", by_alias=True)


def canonicalize(value: Any) -> Any:
    """
    Recursively sort object keys. Arrays keep their order.

    Example:
        >>> canonicalize({"b": 1, "a": [{"d": 2, "c": 3}]})
        {'a': [{'c': 3, 'd': 2}], 'b': 1}
    """
    if isinstance(value, dict):
        return {key: canonicalize(value[key]) for key in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [canonicalize(item) for item in value]
    return value


def to_canonical_json(value: Any) -> str:
    """Compact JSON of the canonical form of ``value``."""
    return json.dumps(
        canonicalize(value),
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def hash_canonical_value(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON of ``value``."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()


def hash_nullable_canonical_value(value: Any) -> str | None:
    """Like hash_canonical_value, but None (no data) hashes to None."""
    if value is None:
        return None
    return hash_canonical_value(value)


def create_field_hashes(tasks: Any, progress: Any, notes: str | None) -> FieldHashes:
    """Hash each PRD state field independently."""
    return FieldHashes(
        tasks_hash=hash_nullable_canonical_value(tasks),
        progress_hash=hash_nullable_canonical_value(progress),
        notes_hash=hash_nullable_canonical_value(notes),
    )


def select_repo_records(repos: Iterable[SyncRepoRecord]) -> dict[str, SyncRepoRecord]:
    """
    One record per repoSyncKey.

    A repeated key keeps the record with the smallest canonical JSON, so the
    choice does not depend on where the records sit in the bundle.
    """
    selected: dict[str, tuple[str, SyncRepoRecord]] = {}
    for repo in repos:
        text = to_canonical_json(repo.model_dump(mode="json"))
        current = selected.get(repo.repo_sync_key)
        if current is None or text < current[0]:
            selected[repo.repo_sync_key] = (text, repo)
    return {key: repo for key, (_, repo) in selected.items()}


def _format_validation_error(error: ValidationError) -> tuple[str, str]:
    """Return (path, message) for the first validation issue."""
    issues = error.errors()
    if not issues:
        return "", "Invalid sync bundle payload"

    issue = issues[0]
    path = ".".join(str(part) for part in issue["loc"])
    message = f"{path}: {issue['msg']}" if path else issue["msg"]
    return path, message


def parse_bundle(value: Any) -> SyncBundle:
    """
    Validate a decoded bundle payload.

    Args:
        value: Decoded JSON (usually a dict) or an existing SyncBundle

    Returns:
        The validated bundle

    Raises:
        BundleValidationError: With a field-path-qualified message such as
            "repos.0.repoSyncKey: Field required"
    """
    if isinstance(value, SyncBundle):
        return value

    try:
        return SyncBundle.model_validate(value)
    except ValidationError as e:
        path, message = _format_validation_error(e)
        raise BundleValidationError(message, path=path) from e


def validate_bundle(value: Any) -> tuple[bool, str | None]:
    """
    Non-raising form of parse_bundle.

    Returns:
        (True, None) for a valid bundle, otherwise (False, error message)
    """
    try:
        parse_bundle(value)
    except BundleValidationError as e:
        return False, e.message
    return True, None


def parse_bundle_json(text: str | bytes) -> SyncBundle:
    """
    Decode and validate bundle JSON.

    Raises:
        BundleValidationError: If the text is not JSON or not a valid bundle
    """
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise BundleValidationError(f"Invalid bundle JSON: {e}") from e
    return parse_bundle(payload)


def serialize_bundle(bundle: SyncBundle) -> str:
    """Pretty-printed wire JSON for a bundle, with a trailing newline."""
    return json.dumps(bundle.to_wire(), indent=2, ensure_ascii=False) + "\n"
