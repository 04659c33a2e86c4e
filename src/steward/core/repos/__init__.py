"""
Local repository registry.
"""

from steward.core.repos.models import GitRepoInfo, RepoConfig
from steward.core.repos.registry import (
    RepoRegistry,
    RepoRegistryError,
    RepoSource,
    discover_git_repos,
    is_git_repo,
    normalize_repo_ref,
)

__all__ = [
    "GitRepoInfo",
    "RepoConfig",
    "RepoRegistry",
    "RepoRegistryError",
    "RepoSource",
    "discover_git_repos",
    "is_git_repo",
    "normalize_repo_ref",
]
