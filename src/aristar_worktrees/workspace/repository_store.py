"""Registered repositories and settings, persisted to ``store.json``.

The in-memory ``StoreData`` is guarded by a reader/writer lock. The lock only
covers in-memory edits; git is always invoked with the lock released.
"""

import json
import logging
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from ..core.config import AppConfig
from ..core.errors import InputValidationError, NotFoundError, ScriptExecutionError, StorageError
from ..core.models import AppSettings, Repository, SourceRef, StoreData, WorktreeInfo, now_ms
from ..utils.atomic_io import atomic_write_text
from ..utils.path_security import validate_executable_command
from .inventory import is_git_repository
from .paths import get_repository_name
from .worktree_manager import WorktreeManager

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read_lock(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class RepositoryStore:
    """Explicit handle on the repository/settings store file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = ReadWriteLock()
        # Held across snapshot and write so saves reach disk in order
        self._save_lock = threading.Lock()
        self._data = StoreData()

    def load(self) -> StoreData:
        """Load ``store.json``; a missing or malformed file yields an empty store."""
        data = StoreData()
        if self.path.exists():
            try:
                data = StoreData.model_validate(json.loads(self.path.read_text()))
            except (OSError, json.JSONDecodeError, ValueError) as e:
                logger.warning(f"Could not read {self.path}, starting empty: {e}")
        with self._lock.write_lock():
            self._data = data
        logger.info(f"Loaded {len(data.repositories)} repositories from {self.path}")
        return data

    def save(self) -> None:
        """Overwrite ``store.json`` with the current in-memory state."""
        with self._save_lock:
            with self._lock.read_lock():
                content = self._data.model_dump_json(indent=2, by_alias=True)
                count = len(self._data.repositories)
            try:
                atomic_write_text(self.path, content)
            except OSError as e:
                raise StorageError(f"Failed to save {self.path}: {e}") from e
        logger.debug(f"Saved {count} repositories to {self.path}")

    @contextmanager
    def reading(self) -> Iterator[StoreData]:
        with self._lock.read_lock():
            yield self._data

    @contextmanager
    def writing(self) -> Iterator[StoreData]:
        with self._lock.write_lock():
            yield self._data


def _canonical_str(path: str) -> str:
    return str(Path(path).expanduser().resolve())


class RepositoryService:
    """Repository registration plus worktree commands that keep the store in sync."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        manager: Optional[WorktreeManager] = None,
        store: Optional[RepositoryStore] = None,
    ):
        self.config = config or AppConfig()
        self.manager = manager or WorktreeManager(self.config)
        if store is None:
            store = RepositoryStore(self.manager.layout.store_path)
            store.load()
        self.store = store

    # --- Repositories ---

    def get_repositories(self) -> List[Repository]:
        with self.store.reading() as data:
            return [r.model_copy(deep=True) for r in data.repositories]

    def get_repository(self, repo_id: str) -> Repository:
        with self.store.reading() as data:
            repo = next((r for r in data.repositories if r.id == repo_id), None)
            if repo is None:
                raise NotFoundError("Repository", repo_id)
            return repo.model_copy(deep=True)

    def add_repository(self, path: str) -> Repository:
        """Register a git repository by path.

        Raises:
            NotFoundError: If the path does not exist
            InputValidationError: If it is not a git working directory or is
                already registered
        """
        candidate = Path(path).expanduser()
        if not candidate.exists():
            raise NotFoundError("Path", path)
        if not candidate.is_dir():
            raise InputValidationError(f"Path is not a directory: {path}")

        abs_path = str(candidate.resolve())
        if not is_git_repository(abs_path):
            raise InputValidationError(f"Not a valid git repository: {abs_path}")

        worktrees = self.manager.list_worktrees(abs_path)
        repo = Repository(
            id=str(uuid.uuid4()),
            path=abs_path,
            name=get_repository_name(abs_path),
            worktrees=worktrees,
            last_scanned=now_ms(),
        )

        with self.store.writing() as data:
            if any(r.path == abs_path for r in data.repositories):
                raise InputValidationError(f"Repository already added: {abs_path}")
            data.repositories.append(repo)

        self.store.save()
        logger.info(f"Added repository {repo.name} ({abs_path})")
        return repo.model_copy(deep=True)

    def remove_repository(self, repo_id: str) -> None:
        """Forget a repository. Worktrees on disk are left alone."""
        with self.store.writing() as data:
            before = len(data.repositories)
            data.repositories = [r for r in data.repositories if r.id != repo_id]
            if len(data.repositories) == before:
                raise NotFoundError("Repository", repo_id)
        self.store.save()
        logger.info(f"Removed repository {repo_id}")

    def refresh_repository(self, repo_id: str) -> Repository:
        """Re-list a repository's worktrees from git."""
        repo_path = self.get_repository(repo_id).path
        worktrees = self.manager.list_worktrees(repo_path)

        with self.store.writing() as data:
            repo = next((r for r in data.repositories if r.id == repo_id), None)
            if repo is None:
                raise NotFoundError("Repository", repo_id)
            repo.worktrees = worktrees
            repo.last_scanned = now_ms()
            refreshed = repo.model_copy(deep=True)

        self.store.save()
        return refreshed

    # --- Worktrees ---

    def create_worktree(
        self,
        repo_path: str,
        name: str,
        source: Optional[SourceRef] = None,
        startup_script: Optional[str] = None,
        execute_script: bool = False,
    ) -> WorktreeInfo:
        try:
            worktree = self.manager.create_worktree(
                repo_path, name, source, startup_script, execute_script
            )
        except ScriptExecutionError as e:
            # The worktree exists even though its script failed
            if e.worktree is not None:
                self._record_worktree(repo_path, e.worktree)
            raise
        self._record_worktree(repo_path, worktree)
        return worktree

    def _record_worktree(self, repo_path: str, worktree: WorktreeInfo) -> None:
        repo_key = _canonical_str(repo_path)
        with self.store.writing() as data:
            repo = next((r for r in data.repositories if r.path == repo_key), None)
            if repo is not None and repo.find_worktree(worktree.path) is None:
                repo.worktrees.append(worktree.model_copy(deep=True))
        self.store.save()

    def remove_worktree(self, path: str, force: bool = False, delete_branch: bool = False) -> None:
        key = _canonical_str(path)
        self.manager.remove_worktree(path, force, delete_branch)

        with self.store.writing() as data:
            for repo in data.repositories:
                repo.worktrees = [w for w in repo.worktrees if w.path != key]

        self.store.save()

    def rename_worktree(self, old_path: str, new_name: str) -> WorktreeInfo:
        key = _canonical_str(old_path)
        renamed = self.manager.rename_worktree(old_path, new_name)

        with self.store.writing() as data:
            for repo in data.repositories:
                for idx, worktree in enumerate(repo.worktrees):
                    if worktree.path == key:
                        repo.worktrees[idx] = renamed.model_copy(deep=True)
                        break

        self.store.save()
        return renamed

    def lock_worktree(self, path: str, reason: Optional[str] = None) -> None:
        self.manager.lock_worktree(path, reason)
        self._set_locked(_canonical_str(path), True, reason)

    def unlock_worktree(self, path: str) -> None:
        self.manager.unlock_worktree(path)
        self._set_locked(_canonical_str(path), False, None)

    def _set_locked(self, key: str, locked: bool, reason: Optional[str]) -> None:
        with self.store.writing() as data:
            for repo in data.repositories:
                worktree = repo.find_worktree(key)
                if worktree is not None:
                    worktree.is_locked = locked
                    worktree.lock_reason = reason
                    break
        self.store.save()

    # --- Settings ---

    def get_settings(self) -> AppSettings:
        with self.store.reading() as data:
            return data.settings.model_copy()

    def update_settings(self, settings: AppSettings) -> AppSettings:
        """Replace settings after validating any custom launcher commands."""
        prefixes = self.config.security.allowed_command_prefixes
        for command in (settings.custom_terminal_command, settings.custom_editor_command):
            if command:
                validate_executable_command(command, prefixes)

        with self.store.writing() as data:
            data.settings = settings.model_copy()
        self.store.save()
        return settings
