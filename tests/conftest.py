"""
Pytest configuration and shared fixtures.

Provides isolated config/env, a fake git remote reader, local stores that
stand in for separate devices, and builders for hand-written bundles.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from steward.core.config import clear_cache
from steward.core.repos import RepoConfig
from steward.core.store import LocalStore
from steward.core.sync.schema import (
    SYNC_BUNDLE_FORMAT_VERSION,
    SYNC_BUNDLE_TYPE,
    create_field_hashes,
)

T0 = "2026-01-01T00:00:00.000Z"
T1 = "2026-01-02T00:00:00.000Z"
T2 = "2026-01-03T00:00:00.000Z"
T3 = "2026-01-04T00:00:00.000Z"


# ==============================================================================
# Environment Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """
    Keep tests away from the user's real config and database.

    Removes STEWARD_* and PRD_STATE_* variables and points the XDG homes
    at temporary directories.
    """
    for key in list(os.environ.keys()):
        if key.startswith(("STEWARD_", "PRD_STATE_")):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg-data"))

    clear_cache()
    yield monkeypatch
    clear_cache()


# ==============================================================================
# Device Fixtures
# ==============================================================================


class FakeRemoteReader:
    """Serves git remote URLs from a dict instead of running git."""

    def __init__(self) -> None:
        self.remotes: dict[Path, list[str]] = {}
        self.calls: list[Path] = []

    def set_remotes(self, path: Path, urls: list[str]) -> None:
        self.remotes[Path(path).resolve()] = list(urls)

    def read_remote_urls(self, path: Path) -> list[str]:
        self.calls.append(Path(path))
        return list(self.remotes.get(Path(path).resolve(), []))


@dataclass
class Device:
    """One simulated machine: its own database and its own checkout directory."""

    name: str
    root: Path
    store: LocalStore
    remote_reader: FakeRemoteReader
    repos: dict[str, RepoConfig] = field(default_factory=dict)

    @property
    def db_path(self) -> Path:
        return self.store.db_path

    def add_repo(
        self,
        dirname: str,
        *,
        remotes: list[str] | None = None,
        name: str | None = None,
        prd_slugs: tuple[str, ...] = (),
    ) -> RepoConfig:
        path = make_repo_dir(self.root, dirname, prd_slugs=prd_slugs)
        if remotes:
            self.remote_reader.set_remotes(path, remotes)
        repo = self.store.add_repo(path, name=name)
        self.repos[dirname] = repo
        return repo

    def sync_key(self, dirname: str) -> str:
        meta = self.store.identity.get_repo_sync_meta(self.repos[dirname].id)
        assert meta is not None
        return meta.sync_key


def make_repo_dir(root: Path, dirname: str, prd_slugs: tuple[str, ...] = ()) -> Path:
    """Create a repository directory, optionally with docs/prd/<slug>.md files."""
    path = root / dirname
    path.mkdir(parents=True, exist_ok=True)
    if prd_slugs:
        prd_dir = path / "docs" / "prd"
        prd_dir.mkdir(parents=True, exist_ok=True)
        for slug in prd_slugs:
            (prd_dir / f"{slug}.md").write_text(f"# {slug}\n")
    return path


@pytest.fixture
def make_device(tmp_path):
    """
    Factory for simulated devices.

    Usage:
        def test_something(make_device):
            laptop = make_device("laptop")
            desktop = make_device("desktop")
    """
    devices: list[Device] = []

    def factory(name: str) -> Device:
        root = tmp_path / name
        reader = FakeRemoteReader()
        store = LocalStore.open(root / "data" / "state.db", remote_reader=reader)
        device = Device(name=name, root=root / "src", store=store, remote_reader=reader)
        devices.append(device)
        return device

    yield factory

    for device in devices:
        device.store.close()


@pytest.fixture
def device(make_device):
    """A single simulated device."""
    return make_device("local")


@pytest.fixture
def store(device):
    """The LocalStore of the default device."""
    return device.store


# ==============================================================================
# Bundle Builders
# ==============================================================================


def repo_record(
    repo_sync_key: str,
    name: str = "api",
    *,
    fingerprint: str = "f" * 64,
    fingerprint_kind: str = "repo-shape-v1",
    path_hint: str | None = None,
) -> dict[str, Any]:
    record: dict[str, Any] = {
        "repoSyncKey": repo_sync_key,
        "name": name,
        "fingerprint": fingerprint,
        "fingerprintKind": fingerprint_kind,
    }
    if path_hint is not None:
        record["pathHint"] = path_hint
    return record


def state_record(
    repo_sync_key: str,
    slug: str,
    *,
    tasks: Any = None,
    progress: Any = None,
    notes: str | None = None,
    tasks_at: str | None = None,
    progress_at: str | None = None,
    notes_at: str | None = None,
) -> dict[str, Any]:
    hashes = create_field_hashes(tasks, progress, notes)
    return {
        "repoSyncKey": repo_sync_key,
        "slug": slug,
        "tasks": tasks,
        "progress": progress,
        "notes": notes,
        "clocks": {
            "tasksUpdatedAt": tasks_at,
            "progressUpdatedAt": progress_at,
            "notesUpdatedAt": notes_at,
        },
        "hashes": hashes.model_dump(by_alias=True),
    }


def archive_record(repo_sync_key: str, slug: str, archived_at: str) -> dict[str, Any]:
    return {"repoSyncKey": repo_sync_key, "slug": slug, "archivedAt": archived_at}


def bundle_payload(
    *,
    repos: list[dict[str, Any]] | None = None,
    states: list[dict[str, Any]] | None = None,
    archives: list[dict[str, Any]] | None = None,
    bundle_id: str = "bundle-1",
    source_device_id: str = "device-remote",
    created_at: str = T1,
) -> dict[str, Any]:
    return {
        "type": SYNC_BUNDLE_TYPE,
        "formatVersion": SYNC_BUNDLE_FORMAT_VERSION,
        "bundleId": bundle_id,
        "createdAt": created_at,
        "sourceDeviceId": source_device_id,
        "stewardVersion": "0.9.0",
        "repos": repos or [],
        "states": states or [],
        "archives": archives or [],
    }


@pytest.fixture
def make_bundle():
    """Builder for bundle payload dicts (see bundle_payload)."""
    return bundle_payload


@pytest.fixture
def make_state():
    """Builder for state records with matching hashes (see state_record)."""
    return state_record


@pytest.fixture
def make_repo_record():
    return repo_record


@pytest.fixture
def make_archive():
    return archive_record
