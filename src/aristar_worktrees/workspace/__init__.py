"""Worktree management: git inventory, lifecycle and the repository store."""

from .paths import WorkspaceLayout, get_repository_name, repo_hash
from .repository_store import RepositoryService, RepositoryStore
from .worktree_manager import WorktreeManager

__all__ = [
    "RepositoryService",
    "RepositoryStore",
    "WorkspaceLayout",
    "WorktreeManager",
    "get_repository_name",
    "repo_hash",
]
