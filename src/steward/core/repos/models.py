"""
Data models for locally registered repositories.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class GitRepoInfo(BaseModel):
    """A git repository nested inside a registered (non-git) directory."""

    relative_path: str = Field(description="Path relative to the registered root, forward slashes")
    absolute_path: str = Field(description="Resolved absolute path on this machine")
    name: str = Field(description="Directory name of the nested repository")


class RepoConfig(BaseModel):
    """
    A repository known to this device.

    ``id`` and ``path`` are local-only; the cross-device identity lives in
    the sync metadata table (see steward.core.sync.identity).

    Example:
        >>> repo = RepoConfig(id="r1", name="api", path="/src/api", added_at="2026-01-01")
        >>> repo.git_repos
        []
    """

    id: str = Field(description="Local repository identifier")
    name: str = Field(description="Display name")
    path: str = Field(description="Absolute path of the repository root")
    added_at: str = Field(description="ISO timestamp of registration")
    git_repos: list[GitRepoInfo] = Field(
        default_factory=list,
        description="Nested git repositories when the root itself is not a git repo",
    )
