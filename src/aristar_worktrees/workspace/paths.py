"""On-disk layout of the managed worktree root.

    <root>/<repo_hash>/.aristar-repo-info.json
    <root>/<repo_hash>/<worktree-name>/
    <root>/tasks/<task_id>/<slug(task)>-<slug(model)>/
    <root>/store.json
    <root>/tasks.json
"""

import hashlib
import json
import logging
from pathlib import Path

from ..core.config import AppConfig
from ..core.errors import StorageError

logger = logging.getLogger(__name__)

STORE_FILENAME = "store.json"
TASKS_FILENAME = "tasks.json"
TASKS_DIRNAME = "tasks"


def repo_hash(repo_path: str) -> str:
    """First 4 bytes of SHA-256 over the canonical path string, as 8 hex chars."""
    return hashlib.sha256(str(repo_path).encode("utf-8")).digest()[:4].hex()


def get_repository_name(path: str) -> str:
    """Display name of a repository: its final path component."""
    name = Path(str(path)).name
    return name or "Unknown"


class WorkspaceLayout:
    """Resolves every managed path from the configured root."""

    def __init__(self, config: AppConfig):
        self.config = config

    @property
    def root(self) -> Path:
        return self.config.root

    @property
    def store_path(self) -> Path:
        return self.root / STORE_FILENAME

    @property
    def tasks_store_path(self) -> Path:
        return self.root / TASKS_FILENAME

    @property
    def tasks_base(self) -> Path:
        return self.root / TASKS_DIRNAME

    def task_folder(self, task_id: str) -> Path:
        return self.tasks_base / task_id

    def worktree_base_for_repo(self, repo_path: str) -> Path:
        return self.root / repo_hash(repo_path)

    def ensure_repo_info(self, repo_path: str) -> Path:
        """Create the per-repository container and its marker file once.

        The marker records the original repository path. If it already names
        a different repository, the 8-hex-char directory name has collided and
        creation is refused rather than mixing two repositories' worktrees.

        Returns:
            The per-repository container directory

        Raises:
            StorageError: On filesystem failure or a hash collision
        """
        base = self.worktree_base_for_repo(repo_path)
        info_file = base / self.config.worktrees.repo_info_filename
        try:
            base.mkdir(parents=True, exist_ok=True)
            if not info_file.exists():
                info_file.write_text(json.dumps({"originalPath": repo_path}))
                logger.debug(f"Wrote repo info marker {info_file}")
                return base
            recorded = json.loads(info_file.read_text()).get("originalPath")
        except OSError as e:
            raise StorageError(f"Failed to prepare worktree directory {base}: {e}") from e
        except json.JSONDecodeError as e:
            logger.warning(f"Unreadable repo info marker {info_file}: {e}")
            return base

        if recorded and recorded != repo_path:
            raise StorageError(
                f"Worktree directory {base} already belongs to {recorded}; "
                f"refusing to reuse it for {repo_path}"
            )
        return base
