"""
Tests for the local repository registry.
"""

import json

import pytest

from steward.core.repos import (
    RepoRegistryError,
    discover_git_repos,
    is_git_repo,
    normalize_repo_ref,
)

T0 = "2026-01-01T00:00:00.000Z"


def _git_dir(path):
    (path / ".git").mkdir(parents=True)
    return path


class TestNormalizeRepoRef:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("services/api", "services/api"),
            ("./services/api/", "services/api"),
            ("services\\api", "services/api"),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_repo_ref(raw) == expected


class TestDiscovery:
    """Finding nested git repositories."""

    def test_git_root_has_no_nested_repos(self, tmp_path):
        _git_dir(tmp_path)
        _git_dir(tmp_path / "vendor-copy")
        assert discover_git_repos(tmp_path) == []

    def test_finds_nested_repos_sorted(self, tmp_path):
        _git_dir(tmp_path / "web")
        _git_dir(tmp_path / "services" / "api")
        (tmp_path / "docs").mkdir()

        found = discover_git_repos(tmp_path)

        assert [r.relative_path for r in found] == ["services/api", "web"]
        assert found[0].name == "api"
        assert found[0].absolute_path == str((tmp_path / "services" / "api").resolve())

    def test_skips_ignored_dirs(self, tmp_path):
        _git_dir(tmp_path / "node_modules" / "pkg")
        assert discover_git_repos(tmp_path) == []

    def test_does_not_descend_into_repos(self, tmp_path):
        _git_dir(tmp_path / "outer")
        _git_dir(tmp_path / "outer" / "inner")
        assert [r.relative_path for r in discover_git_repos(tmp_path)] == ["outer"]

    def test_respects_max_depth(self, tmp_path):
        _git_dir(tmp_path / "a" / "b" / "c")
        assert discover_git_repos(tmp_path, max_depth=2) == []
        assert len(discover_git_repos(tmp_path, max_depth=3)) == 1

    def test_git_file_counts(self, tmp_path):
        (tmp_path / ".git").write_text("gitdir: /elsewhere\n")
        assert is_git_repo(tmp_path)


class TestRegistry:
    """Adding, listing, and removing repositories."""

    def test_add_and_get(self, store, tmp_path):
        path = tmp_path / "api"
        path.mkdir()

        repo = store.repos.add_repo(path)

        assert repo.name == "api"
        assert repo.path == str(path.resolve())
        assert store.repos.get_repo(repo.id) == repo
        assert store.repos.get_repo_by_path(path) == repo

    def test_custom_name(self, store, tmp_path):
        (tmp_path / "api").mkdir()
        assert store.repos.add_repo(tmp_path / "api", name="Backend").name == "Backend"

    def test_rejects_missing_directory(self, store, tmp_path):
        with pytest.raises(RepoRegistryError, match="Not a directory"):
            store.repos.add_repo(tmp_path / "missing")

    def test_rejects_duplicates(self, store, tmp_path):
        (tmp_path / "api").mkdir()
        store.repos.add_repo(tmp_path / "api")

        with pytest.raises(RepoRegistryError, match="already added"):
            store.repos.add_repo(tmp_path / "api" / ".." / "api")

    def test_stores_nested_repos(self, store, tmp_path):
        _git_dir(tmp_path / "mono" / "services" / "api")

        repo = store.repos.add_repo(tmp_path / "mono")

        assert [g.relative_path for g in store.repos.get_repo(repo.id).git_repos] == [
            "services/api"
        ]

    def test_nested_entries_outside_root_are_dropped(self, store, tmp_path):
        (tmp_path / "mono").mkdir()
        repo = store.repos.add_repo(tmp_path / "mono")
        store.conn.execute(
            "UPDATE repos SET git_repos_json = ? WHERE id = ?",
            (
                json.dumps(
                    [
                        {"relative_path": "../escape", "name": "escape"},
                        {"relativePath": "./ok/", "name": "ok"},
                        {"name": "missing-path"},
                    ]
                ),
                repo.id,
            ),
        )

        [nested] = store.repos.get_repo(repo.id).git_repos

        assert nested.relative_path == "ok"

    def test_malformed_nested_json_is_ignored(self, store, tmp_path):
        (tmp_path / "mono").mkdir()
        repo = store.repos.add_repo(tmp_path / "mono")
        store.conn.execute("UPDATE repos SET git_repos_json = '{oops' WHERE id = ?", (repo.id,))

        assert store.repos.get_repo(repo.id).git_repos == []

    def test_list_in_registration_order(self, store, tmp_path):
        for name in ("b", "a"):
            (tmp_path / name).mkdir()
        store.conn.execute(
            "INSERT INTO repos (id, name, path, added_at) VALUES ('z', 'b', ?, ?)",
            (str(tmp_path / "b"), T0),
        )
        store.conn.execute(
            "INSERT INTO repos (id, name, path, added_at) VALUES ('y', 'a', ?, ?)",
            (str(tmp_path / "a"), "2026-01-02T00:00:00.000Z"),
        )

        assert [r.id for r in store.repos.list_repos()] == ["z", "y"]

    def test_remove_cascades(self, device):
        repo = device.add_repo("api")
        device.store.states.upsert_state(repo.id, "auth", notes="x")
        device.store.states.archive(repo.id, "old")

        assert device.store.repos.remove_repo(repo.id) is True

        assert device.store.states.list_states() == []
        assert device.store.states.list_archives() == []
        assert device.store.identity.get_repo_sync_meta(repo.id) is None
        assert device.store.repos.remove_repo(repo.id) is False
