"""Path and command validation for user-supplied strings.

Worktree destinations, repository paths and custom terminal/editor commands
all arrive as free text. Paths are confined to a fixed set of allowed base
directories after symlink and ``..`` resolution; commands are confined to an
allow-list of install locations and never reach a shell.
"""

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ..core.config import DEFAULT_ALLOWED_COMMAND_PREFIXES, AppConfig
from ..core.errors import CommandValidationError, PathTraversalError

logger = logging.getLogger(__name__)

# Shell metacharacters that must never appear in a custom command
FORBIDDEN_COMMAND_CHARS = frozenset("|;&$`(){}\n\r<>")


def _canonical_bases(allowed_bases: Iterable[Path]) -> List[Path]:
    canonical = []
    for base in allowed_bases:
        try:
            canonical.append(Path(base).expanduser().resolve(strict=True))
        except (OSError, RuntimeError):
            # A base that doesn't exist can't contain anything
            continue
    return canonical


def _is_within(path: Path, bases: Sequence[Path]) -> bool:
    return any(path == base or path.is_relative_to(base) for base in bases)


def _traversal_error(candidate: Path) -> PathTraversalError:
    return PathTraversalError(
        f"Path traversal detected: {candidate} is not within allowed directories",
        path=str(candidate),
    )


def validate_path(candidate, allowed_bases: Iterable[Path]) -> Path:
    """Confirm ``candidate`` resolves inside one of ``allowed_bases``.

    Existing paths are canonicalized directly. For a path that doesn't exist
    yet, the nearest existing ancestor is canonicalized and checked, then the
    missing suffix is rejoined onto it, so a symlink higher up the tree can't
    smuggle a textually safe path outside the sandbox.

    Args:
        candidate: Path to validate (absolute or relative to the cwd)
        allowed_bases: Directories the path must resolve into

    Returns:
        The canonical form of ``candidate``

    Raises:
        PathTraversalError: If resolution fails or the path escapes every base
    """
    raw = Path(candidate).expanduser()
    if not raw.is_absolute():
        raw = Path.cwd() / raw

    bases = _canonical_bases(allowed_bases)

    if raw.exists():
        try:
            resolved = raw.resolve(strict=True)
        except (OSError, RuntimeError) as e:
            raise PathTraversalError(f"Failed to resolve path {raw}: {e}", path=str(raw))
    else:
        # Walk up to the nearest ancestor that is on disk (dangling links count)
        ancestor = raw
        missing: List[str] = []
        while not os.path.lexists(ancestor):
            if ancestor.parent == ancestor:
                raise PathTraversalError(
                    f"Cannot find existing ancestor directory for {raw}", path=str(raw)
                )
            missing.append(ancestor.name)
            ancestor = ancestor.parent

        try:
            canonical_ancestor = ancestor.resolve()
        except (OSError, RuntimeError) as e:
            raise PathTraversalError(
                f"Failed to resolve ancestor of {raw}: {e}", path=str(raw)
            )

        if not _is_within(canonical_ancestor, bases):
            raise _traversal_error(raw)

        # Missing components can't be symlinks, so collapsing '..' lexically is exact
        resolved = Path(os.path.normpath(canonical_ancestor.joinpath(*reversed(missing))))

    if not _is_within(resolved, bases):
        raise _traversal_error(raw)

    return resolved


def get_allowed_worktree_bases(config: Optional[AppConfig] = None) -> List[Path]:
    """Directories worktree paths may resolve into.

    Always the managed worktree root and the user's home directory (repositories
    may live anywhere under home), plus any configured extras.
    """
    config = config or AppConfig()
    bases = [config.root, Path.home()]
    bases.extend(config.security.extra_allowed_bases)
    return bases


def validate_executable_command(
    cmd: str,
    allowed_prefixes: Optional[Sequence[str]] = None,
) -> str:
    """Validate a user-supplied custom terminal/editor executable.

    The command is later handed to a process-spawn API without a shell; the
    defense is allow-list + denylist + existence check, not escaping.

    Returns:
        The validated command, unchanged

    Raises:
        CommandValidationError: If any check fails
    """
    prefixes = list(allowed_prefixes or DEFAULT_ALLOWED_COMMAND_PREFIXES)

    if not cmd or not os.path.isabs(cmd):
        raise CommandValidationError(
            f"Custom command must be an absolute path: {cmd!r}", path=cmd
        )

    if not any(cmd.startswith(prefix) for prefix in prefixes):
        raise CommandValidationError(
            f"Custom command must be in one of: {', '.join(prefixes)}", path=cmd
        )

    bad = sorted({c for c in cmd if c in FORBIDDEN_COMMAND_CHARS})
    if bad:
        raise CommandValidationError(
            f"Custom command contains forbidden characters: {''.join(bad)!r}", path=cmd
        )

    if ".." in Path(cmd).parts:
        raise CommandValidationError(
            f"Custom command must not contain '..' segments: {cmd}", path=cmd
        )

    if not Path(cmd).exists():
        raise CommandValidationError(f"Custom command not found: {cmd}", path=cmd)

    return cmd
