"""Read-only git queries: worktree inventory, branches, commits."""

import logging
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from ..core.errors import GitCommandError
from ..core.models import BranchInfo, CommitInfo, WorktreeInfo
from ..utils.subprocess_utils import get_git_output, run_git_command

logger = logging.getLogger(__name__)

MAIN_WORKTREE_NAME = "main"
BRANCH_REF_PREFIX = "refs/heads/"


def is_git_repository(path: str) -> bool:
    """True if ``path`` has a ``.git`` directory or gitfile."""
    return (Path(path) / ".git").exists()


def _finalize_block(block: Dict[str, object], main_path: str) -> Optional[WorktreeInfo]:
    """Turn one porcelain block into a WorktreeInfo, or None if it should be hidden."""
    raw_path = block.get("worktree")
    if not raw_path:
        return None

    worktree_path = Path(str(raw_path))
    # Stale entries whose directory is gone are dropped, not reported
    if not worktree_path.exists():
        logger.debug(f"Skipping stale worktree entry: {worktree_path}")
        return None

    if block.get("bare"):
        return None

    path = str(worktree_path.resolve())
    is_main = path == main_path

    branch = block.get("branch")
    if isinstance(branch, str) and branch.startswith(BRANCH_REF_PREFIX):
        branch = branch[len(BRANCH_REF_PREFIX):]

    return WorktreeInfo(
        id=str(uuid.uuid4()),
        name=MAIN_WORKTREE_NAME if is_main else (worktree_path.name or "worktree"),
        path=path,
        branch=branch,
        commit=block.get("HEAD"),
        is_main=is_main,
        is_locked=bool(block.get("locked")),
        lock_reason=block.get("lock_reason"),
    )


def parse_worktree_porcelain(output: str, repo_path: str) -> List[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output.

    Blocks are separated by blank lines. Each record gets a freshly generated
    id, so ids are not stable across calls; key on ``path`` instead.

    Args:
        output: Raw porcelain output
        repo_path: Repository the listing was taken from; the entry that
            canonically equals it is the main worktree

    Returns:
        One WorktreeInfo per live, non-bare worktree
    """
    main_path = str(Path(repo_path).resolve())
    worktrees: List[WorktreeInfo] = []
    block: Dict[str, object] = {}

    for line in output.splitlines():
        if not line.strip():
            info = _finalize_block(block, main_path)
            if info is not None:
                worktrees.append(info)
            block = {}
            continue

        if line.startswith("worktree "):
            block["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            block["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            block["branch"] = line[len("branch "):]
        elif line == "locked":
            block["locked"] = True
        elif line.startswith("locked "):
            block["locked"] = True
            block["lock_reason"] = line[len("locked "):]
        elif line == "bare":
            block["bare"] = True
        # "detached" and "prunable" carry nothing we surface

    # Output may not end with a blank line
    info = _finalize_block(block, main_path)
    if info is not None:
        worktrees.append(info)

    return worktrees


def list_worktrees(
    repo_path: str,
    *,
    timeout: Optional[int] = None,
    executable: str = "git",
) -> List[WorktreeInfo]:
    """List live worktrees of ``repo_path``, the main one named "main"."""
    result = run_git_command(
        ["worktree", "list", "--porcelain"],
        cwd=Path(repo_path),
        timeout=timeout,
        executable=executable,
    )
    return parse_worktree_porcelain(result.stdout, repo_path)


def get_current_branch(
    repo_path: str,
    *,
    timeout: Optional[int] = None,
    executable: str = "git",
) -> str:
    """Short name of the checked-out branch. Raises GitCommandError when detached."""
    return get_git_output(
        ["symbolic-ref", "--short", "HEAD"],
        cwd=Path(repo_path),
        timeout=timeout,
        executable=executable,
    )


def parse_branches(output: str, current_branch: Optional[str]) -> List[BranchInfo]:
    branches = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        is_remote = line.startswith("remotes/")
        name = line[len("remotes/"):] if is_remote else line
        branches.append(
            BranchInfo(name=name, is_current=name == current_branch, is_remote=is_remote)
        )
    return branches


def get_branches(
    repo_path: str,
    *,
    timeout: Optional[int] = None,
    executable: str = "git",
) -> List[BranchInfo]:
    """All local and remote branches, flagging the checked-out one."""
    result = run_git_command(
        ["branch", "-a", "--format=%(refname:short)"],
        cwd=Path(repo_path),
        timeout=timeout,
        executable=executable,
    )
    try:
        current = get_current_branch(repo_path, timeout=timeout, executable=executable)
    except GitCommandError:
        current = None  # detached HEAD
    return parse_branches(result.stdout, current)


def parse_commits(output: str) -> List[CommitInfo]:
    commits = []
    for line in output.splitlines():
        head = line.split("|", 2)
        if len(head) < 3:
            continue
        # Subjects may contain '|', so peel author and date off the right
        tail = head[2].rsplit("|", 2)
        if len(tail) < 3:
            continue
        full_hash, short_hash = head[0], head[1]
        message, author, date = tail
        try:
            timestamp = int(date)
        except ValueError:
            timestamp = 0
        commits.append(
            CommitInfo(
                hash=full_hash,
                short_hash=short_hash,
                message=message,
                author=author,
                date=timestamp,
            )
        )
    return commits


def get_commits(
    repo_path: str,
    limit: int = 50,
    *,
    timeout: Optional[int] = None,
    executable: str = "git",
) -> List[CommitInfo]:
    """Most recent ``limit`` commits reachable from HEAD."""
    result = run_git_command(
        ["log", "--format=%H|%h|%s|%an|%at", "-n", str(limit)],
        cwd=Path(repo_path),
        timeout=timeout,
        executable=executable,
    )
    return parse_commits(result.stdout)
