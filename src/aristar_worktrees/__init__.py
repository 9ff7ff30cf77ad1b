"""Git worktree lifecycle manager with isolated multi-agent task workspaces."""

__version__ = "0.1.0"
