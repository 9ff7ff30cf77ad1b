"""Shared utilities: subprocess, path security, validation, I/O, logging."""

from .atomic_io import atomic_write_text
from .error_handling import best_effort, log_and_ignore
from .path_security import (
    get_allowed_worktree_bases,
    validate_executable_command,
    validate_path,
)
from .subprocess_utils import (
    SubprocessError,
    get_git_output,
    run_command,
    run_git_command,
    run_git_command_async,
    spawn_detached,
)
from .validators import (
    slugify,
    validate_git_ref,
    validate_identifier,
    validate_worktree_name,
)

__all__ = [
    # Atomic I/O
    "atomic_write_text",
    # Error handling
    "best_effort",
    "log_and_ignore",
    # Path security
    "get_allowed_worktree_bases",
    "validate_executable_command",
    "validate_path",
    # Subprocess utilities
    "SubprocessError",
    "get_git_output",
    "run_command",
    "run_git_command",
    "run_git_command_async",
    "spawn_detached",
    # Validators
    "slugify",
    "validate_git_ref",
    "validate_identifier",
    "validate_worktree_name",
]
