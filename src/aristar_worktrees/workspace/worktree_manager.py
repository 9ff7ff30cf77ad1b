"""Git worktree lifecycle: create, remove, rename, lock, unlock.

Git's own on-disk refs are the source of truth; the manager keeps no
worktree state of its own. Each operation is a short sequence of git
subprocess calls, and any git failure surfaces git's stderr unchanged.
"""

import asyncio
import logging
import os
import stat
from pathlib import Path
from typing import List, Optional

from ..core.config import AppConfig
from ..core.errors import (
    GitCommandError,
    NotFoundError,
    ScriptExecutionError,
    StorageError,
)
from ..core.models import BranchInfo, CommitInfo, SourceRef, WorktreeInfo, now_ms
from ..utils.error_handling import log_and_ignore
from ..utils.path_security import get_allowed_worktree_bases, validate_path
from ..utils.subprocess_utils import run_command, run_git_command
from ..utils.validators import validate_git_ref, validate_worktree_name
from . import inventory
from .paths import WorkspaceLayout

logger = logging.getLogger(__name__)

# Marker separating the main repository from a linked worktree's git dir
LINKED_GIT_DIR_MARKER = "/.git/worktrees/"


class WorktreeManager:
    """Manages git worktrees rooted in the application's managed directory."""

    def __init__(self, config: Optional[AppConfig] = None):
        """
        Initialize worktree manager.

        Args:
            config: Application configuration (defaults to AppConfig())
        """
        self.config = config or AppConfig()
        self.layout = WorkspaceLayout(self.config)

        # Ensure worktree root exists
        try:
            self.config.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create worktree root {self.config.root}: {e}") from e

    @property
    def allowed_bases(self) -> List[Path]:
        return get_allowed_worktree_bases(self.config)

    @property
    def protected_branches(self) -> List[str]:
        return self.config.worktrees.protected_branches

    def _run_git(self, args: List[str], cwd: Path):
        """Run git with the configured binary and timeout."""
        return run_git_command(
            args,
            cwd=cwd,
            timeout=self.config.git.timeout,
            executable=self.config.git.executable,
        )

    def _git_kwargs(self) -> dict:
        return {"timeout": self.config.git.timeout, "executable": self.config.git.executable}

    @staticmethod
    def _canonical(path: str, kind: str = "Worktree") -> Path:
        """Resolve an existing path, or raise NotFoundError."""
        try:
            return Path(path).expanduser().resolve(strict=True)
        except FileNotFoundError:
            raise NotFoundError(kind, str(path))
        except (OSError, RuntimeError) as e:
            raise StorageError(f"Failed to resolve path {path}: {e}") from e

    # --- Queries ---

    def list_worktrees(self, repo_path: str) -> List[WorktreeInfo]:
        """List live worktrees of a repository (ids are fresh on every call)."""
        return inventory.list_worktrees(repo_path, **self._git_kwargs())

    def get_branches(self, repo_path: str) -> List[BranchInfo]:
        return inventory.get_branches(repo_path, **self._git_kwargs())

    def get_commits(self, repo_path: str, limit: int = 50) -> List[CommitInfo]:
        return inventory.get_commits(repo_path, limit, **self._git_kwargs())

    def find_repo_root(self, path: str) -> str:
        """Working directory of the main repository owning ``path``.

        Works for the main checkout, any subdirectory of it, and linked
        worktrees, whose git dir lives at ``<main>/.git/worktrees/<name>``.
        """
        cwd = self._canonical(path)
        git_dir = self._run_git(["rev-parse", "--git-dir"], cwd=cwd).stdout.strip()

        if git_dir == ".git":
            root = cwd
        elif os.path.isabs(git_dir):
            if LINKED_GIT_DIR_MARKER in git_dir:
                root = Path(git_dir.split(LINKED_GIT_DIR_MARKER, 1)[0])
            else:
                root = Path(git_dir).parent
        else:
            root = (cwd / git_dir).resolve().parent

        return str(root.resolve())

    def _find_entry(self, repo_root: str, path: Path) -> Optional[WorktreeInfo]:
        wanted = str(path)
        return next((w for w in self.list_worktrees(repo_root) if w.path == wanted), None)

    # --- Lifecycle ---

    def create_worktree(
        self,
        repo_path: str,
        name: str,
        source: Optional[SourceRef] = None,
        startup_script: Optional[str] = None,
        execute_script: bool = False,
    ) -> WorktreeInfo:
        """
        Create a worktree at ``<root>/<repo_hash>/<name>``.

        Args:
            repo_path: Repository to branch the worktree off
            name: Worktree directory name
            source: Branch or commit to check out (None checks out HEAD)
            startup_script: Script body written into the new worktree
            execute_script: Run the script with the worktree as cwd

        Returns:
            The new worktree as reported by git

        Raises:
            GitCommandError: If git refuses the worktree
            ScriptExecutionError: If the startup script exits non-zero. The
                worktree is kept; the caller sees the partial success.
        """
        name = validate_worktree_name(name)
        repo = str(self._canonical(repo_path, kind="Repository"))

        base = self.layout.ensure_repo_info(repo)
        worktree_path = validate_path(base / name, self.allowed_bases)

        args = ["worktree", "add", str(worktree_path)]
        if source is not None:
            args.append(validate_git_ref(source.ref))

        self._run_git(args, cwd=Path(repo))
        logger.info(f"Created worktree: {worktree_path}")

        info = self._find_entry(repo, worktree_path.resolve())
        if info is None:
            raise NotFoundError("Worktree", str(worktree_path))
        info.created_at = now_ms()

        if startup_script:
            script_path = self._write_startup_script(worktree_path, startup_script)
            info.startup_script = startup_script
            if execute_script:
                try:
                    self._run_startup_script(worktree_path, script_path)
                except ScriptExecutionError as e:
                    e.worktree = info
                    raise
                info.script_executed = True

        return info

    def _write_startup_script(self, worktree_path: Path, script: str) -> Path:
        script_path = worktree_path / self.config.worktrees.startup_script_name
        try:
            script_path.write_text(script)
            mode = script_path.stat().st_mode
            script_path.chmod(mode | stat.S_IXUSR)
        except OSError as e:
            raise StorageError(f"Failed to write startup script {script_path}: {e}") from e
        return script_path

    def _run_startup_script(self, worktree_path: Path, script_path: Path) -> None:
        logger.info(f"Running startup script in {worktree_path}")
        try:
            result = run_command(["bash", str(script_path)], cwd=worktree_path, check=False)
        except OSError as e:
            raise StorageError(f"Failed to run startup script {script_path}: {e}") from e
        if result.returncode != 0:
            logger.warning(
                f"Startup script exited {result.returncode} in {worktree_path}"
            )
            raise ScriptExecutionError(script_path, result.returncode, result.stderr)

    def create_worktree_at_path(
        self,
        repo_path: str,
        destination_path: str,
        branch_or_commit: Optional[str] = None,
    ) -> str:
        """
        Create a detached worktree at a caller-chosen path.

        This is the entry point reachable from less-trusted callers, so the
        destination is validated before anything touches the filesystem.
        ``--detach`` is always passed so several worktrees can start from the
        same branch without git's "already checked out" conflict.

        Returns:
            Canonical path of the created worktree

        Raises:
            PathTraversalError: If the destination escapes the allowed bases
            GitCommandError: If git refuses the worktree
        """
        destination = validate_path(destination_path, self.allowed_bases)
        repo = self._canonical(repo_path, kind="Repository")

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create parent directory: {e}") from e

        args = ["worktree", "add", "--detach", str(destination)]
        if branch_or_commit:
            args.append(validate_git_ref(branch_or_commit))

        self._run_git(args, cwd=repo)
        created = str(destination.resolve())
        logger.info(f"Created detached worktree: {created}")
        return created

    def remove_worktree(
        self,
        path: str,
        force: bool = False,
        delete_branch: bool = False,
    ) -> None:
        """
        Remove a worktree.

        Args:
            path: Worktree path
            force: Discard local changes and override a lock
            delete_branch: Also delete the worktree's branch unless protected.
                Branch deletion is best-effort: its failure is logged only.
        """
        target = self._canonical(path)
        repo_root = self.find_repo_root(str(target))

        branch = None
        if delete_branch:
            entry = self._find_entry(repo_root, target)
            branch = entry.branch if entry else None

        args = ["worktree", "remove"]
        if force:
            # Git requires --force twice to remove a locked worktree
            args += ["--force", "--force"]
        args.append(str(target))

        self._run_git(args, cwd=Path(repo_root))
        logger.info(f"Removed worktree: {target}")

        if branch and branch not in self.protected_branches:
            flag = "-D" if force else "-d"
            try:
                self._run_git(["branch", flag, branch], cwd=Path(repo_root))
                logger.info(f"Deleted branch {branch}")
            except GitCommandError as e:
                # Unmerged commits or already gone; the worktree is what mattered
                log_and_ignore(e, f"Could not delete branch {branch}", logger_instance=logger)
        elif branch:
            logger.info(f"Keeping protected branch {branch}")

    def rename_worktree(self, old_path: str, new_name: str) -> WorktreeInfo:
        """Move a worktree to a sibling directory called ``new_name``."""
        new_name = validate_worktree_name(new_name)
        old = self._canonical(old_path)
        repo_root = self.find_repo_root(str(old))

        new_path = validate_path(old.parent / new_name, self.allowed_bases)
        self._run_git(["worktree", "move", str(old), str(new_path)], cwd=Path(repo_root))
        logger.info(f"Renamed worktree {old} -> {new_path}")

        info = self._find_entry(repo_root, new_path)
        if info is None:
            raise NotFoundError("Worktree", str(new_path))
        return info

    def lock_worktree(self, path: str, reason: Optional[str] = None) -> None:
        target = self._canonical(path)
        repo_root = self.find_repo_root(str(target))
        args = ["worktree", "lock"]
        if reason:
            args += ["--reason", reason]
        args.append(str(target))
        self._run_git(args, cwd=Path(repo_root))
        logger.info(f"Locked worktree: {target}")

    def unlock_worktree(self, path: str) -> None:
        target = self._canonical(path)
        repo_root = self.find_repo_root(str(target))
        self._run_git(["worktree", "unlock", str(target)], cwd=Path(repo_root))
        logger.info(f"Unlocked worktree: {target}")

    def prune_worktrees(self, repo_path: str) -> None:
        """Drop git's records of worktrees whose directories are gone."""
        repo = self._canonical(repo_path, kind="Repository")
        self._run_git(["worktree", "prune"], cwd=repo)
        logger.debug(f"Pruned stale worktree records in {repo}")

    # --- Async facade: same operations, offloaded to a worker thread ---

    async def list_worktrees_async(self, repo_path: str) -> List[WorktreeInfo]:
        return await asyncio.to_thread(self.list_worktrees, repo_path)

    async def get_branches_async(self, repo_path: str) -> List[BranchInfo]:
        return await asyncio.to_thread(self.get_branches, repo_path)

    async def get_commits_async(self, repo_path: str, limit: int = 50) -> List[CommitInfo]:
        return await asyncio.to_thread(self.get_commits, repo_path, limit)

    async def create_worktree_async(
        self,
        repo_path: str,
        name: str,
        source: Optional[SourceRef] = None,
        startup_script: Optional[str] = None,
        execute_script: bool = False,
    ) -> WorktreeInfo:
        return await asyncio.to_thread(
            self.create_worktree, repo_path, name, source, startup_script, execute_script
        )

    async def create_worktree_at_path_async(
        self,
        repo_path: str,
        destination_path: str,
        branch_or_commit: Optional[str] = None,
    ) -> str:
        return await asyncio.to_thread(
            self.create_worktree_at_path, repo_path, destination_path, branch_or_commit
        )

    async def remove_worktree_async(
        self, path: str, force: bool = False, delete_branch: bool = False
    ) -> None:
        await asyncio.to_thread(self.remove_worktree, path, force, delete_branch)

    async def rename_worktree_async(self, old_path: str, new_name: str) -> WorktreeInfo:
        return await asyncio.to_thread(self.rename_worktree, old_path, new_name)

    async def lock_worktree_async(self, path: str, reason: Optional[str] = None) -> None:
        await asyncio.to_thread(self.lock_worktree, path, reason)

    async def unlock_worktree_async(self, path: str) -> None:
        await asyncio.to_thread(self.unlock_worktree, path)
