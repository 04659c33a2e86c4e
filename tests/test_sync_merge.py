"""
Tests for merge planning.

Most tests call plan_merge with a hand-built LocalSnapshot, which keeps
them free of any database.
"""

import json

import pytest

from steward.core.state import PrdArchive, StoredPrdState
from steward.core.sync import MergePlanner, plan_merge
from steward.core.sync.merge import (
    LocalRepoIdentity,
    LocalSnapshot,
    collapse_archive_rows,
    collapse_state_rows,
    decide_field,
)
from steward.core.sync.schema import (
    SyncArchiveRecord,
    SyncStateRecord,
    create_field_hashes,
    hash_canonical_value,
)

T0 = "2026-01-01T00:00:00.000Z"
T1 = "2026-01-02T00:00:00.000Z"
T2 = "2026-01-03T00:00:00.000Z"

H_LOW = "1" * 64
H_HIGH = "f" * 64


def local_repo(
    repo_id: str = "local-api",
    sync_key: str = "rsk_api",
    *,
    path: str = "/src/api",
    fingerprint: str = "fp-api",
    kind: str = "repo-shape-v1",
) -> LocalRepoIdentity:
    return LocalRepoIdentity(
        repo_id=repo_id,
        repo_path=path,
        sync_key=sync_key,
        fingerprint=fingerprint,
        fingerprint_kind=kind,
    )


def local_state(repo_id: str, slug: str, **fields) -> StoredPrdState:
    return StoredPrdState(repo_id=repo_id, slug=slug, updated_at=T0, **fields)


class TestDecideField:
    """Per-field conflict resolution."""

    def test_identical_sides(self):
        decision = decide_field(T0, T0, H_LOW, H_LOW)

        assert decision.winner == "local"
        assert decision.reason == "equal_value"
        assert decision.changed is False
        assert decision.conflict is False

    def test_both_missing(self):
        decision = decide_field(None, None, None, None)
        assert decision.reason == "equal_value"
        assert decision.changed is False

    def test_incoming_newer_clock(self):
        decision = decide_field(T0, T1, H_LOW, H_HIGH)

        assert decision.winner == "incoming"
        assert decision.reason == "incoming_newer_clock"
        assert decision.changed is True
        assert decision.value_changed is True
        assert decision.conflict is True

    def test_local_newer_clock(self):
        decision = decide_field(T1, T0, H_LOW, H_HIGH)

        assert decision.winner == "local"
        assert decision.reason == "local_newer_clock"
        assert decision.changed is False
        assert decision.conflict is True

    def test_only_incoming_has_clock(self):
        decision = decide_field(None, T0, None, H_LOW)

        assert decision.winner == "incoming"
        assert decision.reason == "incoming_has_clock"
        assert decision.conflict is False

    def test_only_local_has_clock(self):
        decision = decide_field(T0, None, H_LOW, None)

        assert decision.winner == "local"
        assert decision.reason == "local_has_clock"

    def test_exact_clock_tie_uses_larger_hash(self):
        assert decide_field(T0, T0, H_LOW, H_HIGH).reason == "incoming_hash_tiebreak"
        assert decide_field(T0, T0, H_HIGH, H_LOW).reason == "local_hash_tiebreak"

    def test_missing_hash_loses_tiebreak(self):
        decision = decide_field(None, None, None, H_LOW)
        assert decision.winner == "incoming"
        assert decision.reason == "incoming_hash_tiebreak"

    def test_newer_clock_same_value_updates_clock_only(self):
        decision = decide_field(T0, T1, H_LOW, H_LOW)

        assert decision.winner == "incoming"
        assert decision.changed is True
        assert decision.value_changed is False
        assert decision.clock_changed is True
        assert decision.conflict is False

    def test_offsets_compare_chronologically(self):
        # Later as a string, earlier as an instant (2025-12-31T22:00Z)
        decision = decide_field(T0, "2026-01-01T06:00:00+08:00", H_LOW, H_HIGH)
        assert decision.winner == "local"
        assert decision.reason == "local_newer_clock"

    @pytest.mark.parametrize(
        ("a", "b"),
        [
            ((T0, H_LOW), (T1, H_HIGH)),
            ((T1, H_LOW), (T0, H_HIGH)),
            ((T0, H_LOW), (T0, H_HIGH)),
            ((None, H_LOW), (T0, H_HIGH)),
            ((None, H_LOW), (None, H_HIGH)),
            ((T0, None), (T0, H_HIGH)),
        ],
    )
    def test_winner_is_symmetric(self, a, b):
        forward = decide_field(a[0], b[0], a[1], b[1])
        backward = decide_field(b[0], a[0], b[1], a[1])

        winner_forward = b if forward.winner == "incoming" else a
        winner_backward = a if backward.winner == "incoming" else b
        assert winner_forward == winner_backward


class TestRepoMapping:
    """Matching incoming repositories to local ones."""

    def test_exact_sync_key(self, make_bundle, make_repo_record):
        plan = plan_merge(
            make_bundle(repos=[make_repo_record("rsk_api", fingerprint="other")]),
            LocalSnapshot(repos=[local_repo()]),
        )

        [mapping] = plan.mappings
        assert mapping.source == "sync_key"
        assert mapping.local_repo_id == "local-api"
        assert mapping.resolved

    def test_unique_fingerprint(self, make_bundle, make_repo_record):
        plan = plan_merge(
            make_bundle(repos=[make_repo_record("rsk_remote", fingerprint="fp-api")]),
            LocalSnapshot(repos=[local_repo()]),
        )

        [mapping] = plan.mappings
        assert mapping.source == "fingerprint"
        assert mapping.local_repo_sync_key == "rsk_api"

    def test_fingerprint_kind_must_match(self, make_bundle, make_repo_record):
        plan = plan_merge(
            make_bundle(
                repos=[
                    make_repo_record(
                        "rsk_remote", fingerprint="fp-api", fingerprint_kind="git-remotes-v1"
                    )
                ]
            ),
            LocalSnapshot(repos=[local_repo()]),
        )

        assert plan.mappings[0].reason == "no_match"

    def test_ambiguous_fingerprint(self, make_bundle, make_repo_record):
        plan = plan_merge(
            make_bundle(repos=[make_repo_record("rsk_remote", fingerprint="fp-api")]),
            LocalSnapshot(
                repos=[
                    local_repo("one", "rsk_one", path="/src/one"),
                    local_repo("two", "rsk_two", path="/src/two"),
                ]
            ),
        )

        [mapping] = plan.mappings
        assert mapping.source == "unresolved"
        assert mapping.reason == "fingerprint_ambiguous"
        assert plan.unresolved_keys == ["rsk_remote"]

    def test_no_match(self, make_bundle, make_repo_record):
        plan = plan_merge(
            make_bundle(repos=[make_repo_record("rsk_remote", fingerprint="unknown")]),
            LocalSnapshot(repos=[local_repo()]),
        )

        assert plan.mappings[0].reason == "no_match"
        assert plan.summary.repos.unresolved == 1

    @pytest.mark.parametrize("target", ["local-api", "/src/api", "/src/api/", "rsk_api"])
    def test_repo_map_targets(self, make_bundle, make_repo_record, target):
        plan = plan_merge(
            make_bundle(repos=[make_repo_record("rsk_remote", fingerprint="unknown")]),
            LocalSnapshot(repos=[local_repo()]),
            repo_map={"rsk_remote": target},
        )

        [mapping] = plan.mappings
        assert mapping.source == "map"
        assert mapping.local_repo_id == "local-api"

    def test_repo_map_takes_priority(self, make_bundle, make_repo_record):
        plan = plan_merge(
            make_bundle(repos=[make_repo_record("rsk_api")]),
            LocalSnapshot(repos=[local_repo(), local_repo("web", "rsk_web", path="/src/web")]),
            repo_map={"rsk_api": "web"},
        )

        assert plan.mappings[0].source == "map"
        assert plan.mappings[0].local_repo_id == "web"

    def test_repo_map_target_missing(self, make_bundle, make_repo_record):
        plan = plan_merge(
            make_bundle(repos=[make_repo_record("rsk_api")]),
            LocalSnapshot(repos=[local_repo()]),
            repo_map={"rsk_api": "/nowhere"},
        )

        assert plan.mappings[0].reason == "map_target_not_found"

    def test_rows_without_repo_record(self, make_bundle, make_state):
        plan = plan_merge(
            make_bundle(states=[make_state("rsk_orphan", "auth")]),
            LocalSnapshot(repos=[local_repo()]),
        )

        [mapping] = plan.mappings
        assert mapping.reason == "unknown_repo_metadata"
        assert "incoming_repo_name" not in mapping.model_dump(exclude_none=True)
        assert plan.states[0].action == "unresolved"
        assert plan.states[0].reason == "unknown_repo_metadata"

    def test_rows_without_repo_record_can_match_sync_key(self, make_bundle, make_state):
        plan = plan_merge(
            make_bundle(states=[make_state("rsk_api", "auth")]),
            LocalSnapshot(repos=[local_repo()]),
        )

        assert plan.mappings[0].source == "sync_key"
        assert plan.states[0].action == "insert"

    def test_duplicate_repo_record_chosen_by_content(self, make_bundle, make_repo_record):
        records = [
            make_repo_record("rsk_remote", "first", fingerprint="fp-api"),
            make_repo_record("rsk_remote", "second", fingerprint="unknown"),
        ]

        plans = [
            plan_merge(make_bundle(repos=order), LocalSnapshot(repos=[local_repo()]))
            for order in (records, records[::-1])
        ]

        assert plans[0] == plans[1]
        [mapping] = plans[0].mappings
        assert mapping.incoming_repo_name == "first"
        assert mapping.source == "fingerprint"


class TestStatePlanning:
    """Row-level decisions for incoming state."""

    def test_insert_when_absent_locally(self, make_bundle, make_repo_record, make_state):
        plan = plan_merge(
            make_bundle(
                repos=[make_repo_record("rsk_api")],
                states=[make_state("rsk_api", "auth", notes="hi", notes_at=T0)],
            ),
            LocalSnapshot(repos=[local_repo()]),
        )

        [row] = plan.states
        assert row.action == "insert"
        assert row.update_fields == ["tasks", "progress", "notes"]
        assert row.field_decisions is None
        assert plan.summary.states.insert == 1

    def test_skip_when_identical(self, make_bundle, make_repo_record, make_state):
        plan = plan_merge(
            make_bundle(
                repos=[make_repo_record("rsk_api")],
                states=[make_state("rsk_api", "auth", notes="hi", notes_at=T0)],
            ),
            LocalSnapshot(
                repos=[local_repo()],
                states=[local_state("local-api", "auth", notes="hi", notes_updated_at=T0)],
            ),
        )

        [row] = plan.states
        assert row.action == "skip"
        assert row.update_fields == []
        assert row.field_decisions.notes.reason == "equal_value"

    def test_fields_decided_independently(self, make_bundle, make_repo_record, make_state):
        incoming = make_state(
            "rsk_api",
            "auth",
            tasks=[{"id": 1, "done": False}],
            notes="incoming notes",
            tasks_at=T0,
            notes_at=T2,
        )
        local = local_state(
            "local-api",
            "auth",
            tasks=[{"id": 1, "done": True}],
            notes="local notes",
            tasks_updated_at=T1,
            notes_updated_at=T1,
        )

        plan = plan_merge(
            make_bundle(repos=[make_repo_record("rsk_api")], states=[incoming]),
            LocalSnapshot(repos=[local_repo()], states=[local]),
        )

        [row] = plan.states
        assert row.action == "update"
        assert row.update_fields == ["notes"]
        assert row.conflict_fields == ["tasks", "notes"]
        assert row.field_decisions.tasks.winner == "local"
        assert row.field_decisions.notes.winner == "incoming"
        assert row.field_decisions.progress.reason == "equal_value"
        assert plan.summary.states.conflicts == 2

    def test_key_order_does_not_create_a_change(self, make_bundle, make_repo_record, make_state):
        plan = plan_merge(
            make_bundle(
                repos=[make_repo_record("rsk_api")],
                states=[make_state("rsk_api", "auth", progress={"b": 2, "a": 1}, progress_at=T0)],
            ),
            LocalSnapshot(
                repos=[local_repo()],
                states=[
                    local_state(
                        "local-api", "auth", progress={"a": 1, "b": 2}, progress_updated_at=T0
                    )
                ],
            ),
        )

        assert plan.states[0].action == "skip"

    def test_incoming_hashes_are_recomputed(self, make_bundle, make_repo_record, make_state):
        incoming = make_state("rsk_api", "auth", notes="same", notes_at=T0)
        incoming["hashes"]["notesHash"] = "0" * 64

        plan = plan_merge(
            make_bundle(repos=[make_repo_record("rsk_api")], states=[incoming]),
            LocalSnapshot(
                repos=[local_repo()],
                states=[local_state("local-api", "auth", notes="same", notes_updated_at=T0)],
            ),
        )

        decision = plan.states[0].field_decisions.notes
        assert decision.incoming_hash == hash_canonical_value("same")
        assert plan.states[0].action == "skip"

    def test_cleared_field_with_newer_clock_wins(self, make_bundle, make_repo_record, make_state):
        plan = plan_merge(
            make_bundle(
                repos=[make_repo_record("rsk_api")],
                states=[make_state("rsk_api", "auth", notes=None, notes_at=T1)],
            ),
            LocalSnapshot(
                repos=[local_repo()],
                states=[local_state("local-api", "auth", notes="old", notes_updated_at=T0)],
            ),
        )

        [row] = plan.states
        assert row.update_fields == ["notes"]
        assert row.conflict_fields == []

    def test_unresolved_rows_carry_reason(self, make_bundle, make_repo_record, make_state):
        plan = plan_merge(
            make_bundle(
                repos=[make_repo_record("rsk_remote", fingerprint="unknown")],
                states=[make_state("rsk_remote", "auth")],
            ),
            LocalSnapshot(repos=[local_repo()]),
        )

        [row] = plan.states
        assert row.action == "unresolved"
        assert row.reason == "no_match"
        assert "localRepoId" not in row.to_wire()
        assert plan.summary.states.unresolved == 1


class TestArchivePlanning:
    """Archives merge by the later timestamp."""

    @pytest.mark.parametrize(
        ("local_at", "incoming_at", "action"),
        [
            (None, T1, "insert"),
            (T0, T1, "update"),
            (T1, T1, "skip"),
            (T1, T0, "skip"),
        ],
    )
    def test_actions(
        self, make_bundle, make_repo_record, make_archive, local_at, incoming_at, action
    ):
        archives = []
        if local_at:
            archives.append(PrdArchive(repo_id="local-api", slug="old", archived_at=local_at))

        plan = plan_merge(
            make_bundle(
                repos=[make_repo_record("rsk_api")],
                archives=[make_archive("rsk_api", "old", incoming_at)],
            ),
            LocalSnapshot(repos=[local_repo()], archives=archives),
        )

        assert plan.archives[0].action == action


class TestDeterminism:
    """Plans do not depend on bundle array order."""

    def test_shuffled_bundle_gives_identical_plan(
        self, make_bundle, make_repo_record, make_state, make_archive
    ):
        payload = make_bundle(
            repos=[
                make_repo_record("rsk_api"),
                make_repo_record("rsk_web", "web", fingerprint="unknown"),
            ],
            states=[
                make_state("rsk_api", "b-prd", notes="b", notes_at=T1),
                make_state("rsk_api", "a-prd", tasks=[1], tasks_at=T0),
                make_state("rsk_web", "home"),
            ],
            archives=[make_archive("rsk_web", "x", T0), make_archive("rsk_api", "y", T1)],
        )
        shuffled = json.loads(json.dumps(payload))
        for key in ("repos", "states", "archives"):
            shuffled[key].reverse()

        snapshot = LocalSnapshot(
            repos=[local_repo()],
            states=[local_state("local-api", "b-prd", notes="old", notes_updated_at=T0)],
        )

        first = plan_merge(payload, snapshot)
        second = plan_merge(shuffled, snapshot)

        assert first == second
        assert first.to_wire() == second.to_wire()
        assert [(r.repo_sync_key, r.slug) for r in first.states] == [
            ("rsk_api", "a-prd"),
            ("rsk_api", "b-prd"),
            ("rsk_web", "home"),
        ]

    def test_plan_is_pure(self, make_bundle, make_repo_record, make_state):
        payload = make_bundle(
            repos=[make_repo_record("rsk_api")],
            states=[make_state("rsk_api", "auth", notes="hi", notes_at=T0)],
        )
        snapshot = LocalSnapshot(repos=[local_repo()])
        before = snapshot.model_dump()

        plan_merge(payload, snapshot)

        assert snapshot.model_dump() == before


class TestDuplicateRows:
    """Rows repeating a (repoSyncKey, slug) pair fold into one."""

    def test_fields_fold_independently(self, make_state):
        rows = [
            SyncStateRecord.model_validate(make_state("rsk_api", "auth", **fields))
            for fields in (
                {"tasks": ["newer"], "tasks_at": T2, "notes": "old", "notes_at": T0},
                {"tasks": ["older"], "tasks_at": T0, "notes": "new", "notes_at": T1},
            )
        ]

        [folded] = collapse_state_rows(rows)

        assert folded.tasks == ["newer"]
        assert folded.clocks.tasks_updated_at == T2
        assert folded.notes == "new"
        assert folded.clocks.notes_updated_at == T1
        assert folded.hashes == create_field_hashes(["newer"], None, "new")

    def test_fold_ignores_row_order(self, make_state):
        rows = [
            SyncStateRecord.model_validate(make_state("rsk_api", "auth", notes=note, notes_at=T1))
            for note in ("left", "right")
        ]

        assert collapse_state_rows(rows) == collapse_state_rows(rows[::-1])

    def test_distinct_rows_untouched(self, make_state):
        rows = [
            SyncStateRecord.model_validate(make_state("rsk_api", slug)) for slug in ("b", "a")
        ]

        assert [row.slug for row in collapse_state_rows(rows)] == ["a", "b"]

    def test_archives_keep_latest_instant(self, make_archive):
        rows = [
            SyncArchiveRecord.model_validate(make_archive("rsk_api", "old", archived_at))
            for archived_at in (T1, "2026-01-02T06:00:00+08:00")
        ]

        [latest] = collapse_archive_rows(rows)

        assert latest.archived_at == T1

    def test_plan_has_one_row_per_prd(self, make_bundle, make_repo_record, make_state):
        plan = plan_merge(
            make_bundle(
                repos=[make_repo_record("rsk_api")],
                states=[
                    make_state("rsk_api", "auth", tasks=["a"], tasks_at=T2),
                    make_state("rsk_api", "auth", tasks=["b"], tasks_at=T0),
                ],
            ),
            LocalSnapshot(
                repos=[local_repo()],
                states=[local_state("local-api", "auth", tasks=["local"], tasks_updated_at=T1)],
            ),
        )

        [row] = plan.states
        assert row.action == "update"
        assert row.field_decisions.tasks.reason == "incoming_newer_clock"
        assert row.field_decisions.tasks.incoming_clock == T2


class TestMergePlanner:
    """Planning against a real local database."""

    def test_plans_against_store(self, device, make_bundle, make_repo_record, make_state):
        repo = device.add_repo("api")
        device.store.states.upsert_state(repo.id, "auth", notes="local", updated_at=T0)
        key = device.sync_key("api")

        planner = MergePlanner(device.store.repos, device.store.identity, device.store.states)
        plan = planner.plan(
            make_bundle(
                repos=[make_repo_record(key)],
                states=[
                    make_state(key, "auth", notes="remote", notes_at=T1),
                    make_state(key, "new-prd", tasks=[], tasks_at=T1),
                ],
            )
        )

        assert plan.summary.states.update == 1
        assert plan.summary.states.insert == 1
        assert device.store.states.get_state(repo.id, "auth").notes == "local"
        assert device.store.states.get_state(repo.id, "new-prd") is None

    def test_snapshot_normalizes_legacy_clocks(self, device):
        repo = device.add_repo("api")
        device.store.conn.execute(
            "INSERT INTO prd_states (repo_id, slug, notes_md, updated_at) VALUES (?, ?, ?, ?)",
            (repo.id, "legacy", "old notes", T0),
        )

        planner = MergePlanner(device.store.repos, device.store.identity, device.store.states)
        [state] = planner.snapshot().states

        assert state.notes_updated_at == T0
        assert state.tasks_updated_at is None
