"""
Tests for the sync bundle wire format and canonical hashing.
"""

import json

import pytest

from steward.core.sync import (
    BundleValidationError,
    hash_canonical_value,
    parse_bundle,
    parse_bundle_json,
    serialize_bundle,
    to_canonical_json,
    validate_bundle,
)
from steward.core.sync.schema import (
    canonicalize,
    create_field_hashes,
    hash_nullable_canonical_value,
)


class TestCanonicalJson:
    """Canonical form and hashing."""

    def test_sorts_keys_at_every_depth(self):
        value = {"b": 1, "a": {"z": [3, {"y": 1, "x": 2}], "m": None}}
        assert to_canonical_json(value) == '{"a":{"m":null,"z":[3,{"x":2,"y":1}]},"b":1}'

    def test_arrays_keep_their_order(self):
        assert canonicalize([3, 1, 2]) == [3, 1, 2]
        assert hash_canonical_value([1, 2]) != hash_canonical_value([2, 1])

    def test_hash_is_stable_under_key_permutation(self):
        first = {"tasks": [{"id": 1, "done": True, "title": "Ship"}], "meta": {"a": 1, "b": 2}}
        second = {"meta": {"b": 2, "a": 1}, "tasks": [{"title": "Ship", "id": 1, "done": True}]}
        assert hash_canonical_value(first) == hash_canonical_value(second)

    def test_hash_is_sha256_hex(self):
        digest = hash_canonical_value({"a": 1})
        assert len(digest) == 64
        assert all(c in "0123456789abcdef" for c in digest)

    def test_non_ascii_is_kept_verbatim(self):
        assert to_canonical_json({"note": "café"}) == '{"note":"café"}'

    def test_missing_value_hashes_to_none(self):
        assert hash_nullable_canonical_value(None) is None

    def test_empty_values_are_data(self):
        assert hash_nullable_canonical_value("") is not None
        assert hash_nullable_canonical_value([]) is not None
        assert hash_nullable_canonical_value("") != hash_nullable_canonical_value([])

    def test_field_hashes_are_independent(self):
        hashes = create_field_hashes({"t": 1}, None, "notes")
        assert hashes.tasks_hash == hash_canonical_value({"t": 1})
        assert hashes.progress_hash is None
        assert hashes.notes_hash == hash_canonical_value("notes")


class TestParseBundle:
    """Bundle validation."""

    def test_valid_bundle(self, make_bundle, make_repo_record, make_state, make_archive):
        payload = make_bundle(
            repos=[make_repo_record("rsk_a", path_hint="api")],
            states=[make_state("rsk_a", "auth", notes="hi", notes_at="2026-01-01T00:00:00.000Z")],
            archives=[make_archive("rsk_a", "old", "2026-01-01T00:00:00.000Z")],
        )

        bundle = parse_bundle(payload)

        assert bundle.format_version == 1
        assert bundle.repos[0].path_hint == "api"
        assert bundle.states[0].notes == "hi"
        assert bundle.states[0].clocks.tasks_updated_at is None
        assert bundle.archives[0].slug == "old"

    def test_accepts_existing_bundle(self, make_bundle):
        bundle = parse_bundle(make_bundle())
        assert parse_bundle(bundle) is bundle

    def test_missing_repo_field_reports_path(self, make_bundle):
        payload = make_bundle(repos=[{"name": "api", "fingerprint": "f", "fingerprintKind": "k"}])

        with pytest.raises(BundleValidationError) as exc_info:
            parse_bundle(payload)

        assert exc_info.value.path == "repos.0.repoSyncKey"
        assert str(exc_info.value).startswith("repos.0.repoSyncKey:")

    def test_unsupported_format_version(self, make_bundle):
        payload = make_bundle()
        payload["formatVersion"] = 2

        with pytest.raises(BundleValidationError) as exc_info:
            parse_bundle(payload)

        assert exc_info.value.path == "formatVersion"

    def test_wrong_type(self, make_bundle):
        payload = make_bundle()
        payload["type"] = "something-else"

        with pytest.raises(BundleValidationError):
            parse_bundle(payload)

    @pytest.mark.parametrize("slug", ["", "-draft", "../etc/passwd", "has space"])
    def test_invalid_slug(self, make_bundle, make_state, slug):
        payload = make_bundle(states=[make_state("rsk_a", "auth")])
        payload["states"][0]["slug"] = slug

        with pytest.raises(BundleValidationError) as exc_info:
            parse_bundle(payload)

        assert exc_info.value.path == "states.0.slug"

    def test_blank_strings_rejected(self, make_bundle):
        payload = make_bundle()
        payload["bundleId"] = "   "

        with pytest.raises(BundleValidationError):
            parse_bundle(payload)

    def test_clocks_required(self, make_bundle, make_state):
        payload = make_bundle(states=[make_state("rsk_a", "auth")])
        del payload["states"][0]["clocks"]

        with pytest.raises(BundleValidationError) as exc_info:
            parse_bundle(payload)

        assert exc_info.value.path == "states.0.clocks"

    def test_not_an_object(self):
        with pytest.raises(BundleValidationError):
            parse_bundle(["not", "a", "bundle"])

    def test_validate_bundle_does_not_raise(self, make_bundle):
        assert validate_bundle(make_bundle()) == (True, None)

        ok, message = validate_bundle({"type": "steward-sync-bundle"})
        assert ok is False
        assert message


class TestBundleJson:
    """Reading and writing bundle files."""

    def test_invalid_json(self):
        with pytest.raises(BundleValidationError) as exc_info:
            parse_bundle_json("{not json")

        assert exc_info.value.message.startswith("Invalid bundle JSON")

    def test_serialized_form(self, make_bundle, make_repo_record, make_state):
        bundle = parse_bundle(
            make_bundle(
                repos=[make_repo_record("rsk_a")],
                states=[make_state("rsk_a", "auth", tasks=[{"id": 1}])],
            )
        )

        text = serialize_bundle(bundle)
        data = json.loads(text)

        assert text.endswith("\n")
        assert "pathHint" not in data["repos"][0]
        assert data["repos"][0]["repoSyncKey"] == "rsk_a"
        assert data["states"][0]["clocks"] == {
            "tasksUpdatedAt": None,
            "progressUpdatedAt": None,
            "notesUpdatedAt": None,
        }
        assert data["states"][0]["hashes"]["progressHash"] is None

    def test_serialized_bundle_parses_back_equal(self, make_bundle, make_repo_record):
        bundle = parse_bundle(make_bundle(repos=[make_repo_record("rsk_a", path_hint="api")]))
        assert parse_bundle_json(serialize_bundle(bundle)) == bundle
