"""Validation utilities for worktree names, git refs and identifiers."""

import re

from ..core.errors import InputValidationError


def validate_worktree_name(name: str) -> str:
    """
    Validate a worktree directory name.

    The name becomes a single path component under the managed root, so it
    must not contain separators or be a relative-path token.

    Args:
        name: Worktree name to validate

    Returns:
        Validated name

    Raises:
        InputValidationError: If name is invalid
    """
    if not name or not name.strip():
        raise InputValidationError("Worktree name cannot be empty")

    if name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
        raise InputValidationError(f"Invalid worktree name: {name}")

    if name.startswith("-"):
        raise InputValidationError(f"Worktree name cannot start with '-': {name}")

    if len(name) > 255:
        raise InputValidationError("Worktree name too long")

    return name


def validate_git_ref(ref: str) -> str:
    """
    Validate a branch name or commit-ish before handing it to git.

    Refs are passed as argv entries, so the main concern is option injection
    ("-b", "--upload-pack=...") and control characters.

    Raises:
        InputValidationError: If ref is invalid
    """
    if not ref:
        raise InputValidationError("Git ref cannot be empty")

    if ref.startswith("-"):
        raise InputValidationError(f"Git ref cannot start with '-': {ref}")

    if re.search(r"[\s\x00-\x1f\x7f~^:?*\[\\]", ref):
        raise InputValidationError(f"Invalid git ref: {ref}")

    if ".." in ref or "@{" in ref:
        raise InputValidationError(f"Git ref contains invalid sequence: {ref}")

    if len(ref) > 255:
        raise InputValidationError("Git ref too long")

    return ref


def validate_identifier(value: str, name: str = "identifier") -> str:
    """
    Validate a task or agent id to prevent path traversal.

    Args:
        value: Identifier value to validate
        name: Name of the identifier (for error messages)

    Returns:
        Validated identifier

    Raises:
        InputValidationError: If identifier is invalid
    """
    if not value:
        raise InputValidationError(f"{name} cannot be empty")

    # Only allow alphanumeric, dash, underscore
    if not re.match(r'^[a-zA-Z0-9_-]+$', value):
        raise InputValidationError(f"Invalid {name}: {value}")

    if len(value) > 128:
        raise InputValidationError(f"{name} too long")

    return value


def slugify(value: str) -> str:
    """Lower-case, collapse runs of non-alphanumerics to one hyphen, trim hyphens.

    "Refactor Auth" -> "refactor-auth", "claude-sonnet-4" -> "claude-sonnet-4"
    """
    return "-".join(part for part in re.split(r"[\W_]+", value.lower()) if part)
