"""Tests for the repository store and the worktree commands that sync it."""

import json
import threading
from pathlib import Path

import pytest

from aristar_worktrees.core.errors import (
    CommandValidationError,
    InputValidationError,
    NotFoundError,
    ScriptExecutionError,
)
from aristar_worktrees.core.models import AppSettings, Repository, TerminalApp, Theme
from aristar_worktrees.workspace.repository_store import (
    ReadWriteLock,
    RepositoryService,
    RepositoryStore,
)

from conftest import git


@pytest.fixture
def service(app_config):
    return RepositoryService(app_config)


class TestRepositories:
    def test_add_repository_scans_worktrees(self, service, git_repo):
        repo = service.add_repository(str(git_repo))

        assert repo.path == str(git_repo)
        assert repo.name == "repo"
        assert repo.last_scanned > 0
        assert [w.is_main for w in repo.worktrees] == [True]
        assert service.get_repositories() == [repo]

    def test_add_is_persisted_in_camel_case(self, service, git_repo, app_config):
        repo = service.add_repository(str(git_repo))

        raw = json.loads((app_config.root / "store.json").read_text())
        assert raw["repositories"][0]["lastScanned"] == repo.last_scanned
        assert raw["repositories"][0]["worktrees"][0]["isMain"] is True

        reloaded = RepositoryService(app_config)
        assert reloaded.get_repository(repo.id) == repo

    def test_duplicate_rejected(self, service, git_repo):
        service.add_repository(str(git_repo))
        with pytest.raises(InputValidationError, match="already added"):
            service.add_repository(str(git_repo))

    def test_missing_path(self, service, tmp_path):
        with pytest.raises(NotFoundError):
            service.add_repository(str(tmp_path / "missing"))

    def test_not_a_git_repository(self, service, tmp_path):
        plain = tmp_path / "plain"
        plain.mkdir()
        with pytest.raises(InputValidationError, match="Not a valid git repository"):
            service.add_repository(str(plain))

    def test_file_is_not_a_repository(self, service, tmp_path):
        f = tmp_path / "file.txt"
        f.write_text("x")
        with pytest.raises(InputValidationError):
            service.add_repository(str(f))

    def test_remove_repository(self, service, git_repo):
        repo = service.add_repository(str(git_repo))

        service.remove_repository(repo.id)

        assert service.get_repositories() == []
        assert git_repo.exists()

    def test_remove_unknown_repository(self, service):
        with pytest.raises(NotFoundError):
            service.remove_repository("nope")

    def test_refresh_picks_up_external_worktrees(self, service, git_repo, app_config):
        repo = service.add_repository(str(git_repo))
        outside_tool = app_config.root / "made-by-hand"
        git(git_repo, "worktree", "add", "-q", str(outside_tool))

        refreshed = service.refresh_repository(repo.id)

        assert len(refreshed.worktrees) == 2
        assert refreshed.last_scanned >= repo.last_scanned


class TestWorktreeSync:
    def test_create_and_remove_update_the_store(self, service, git_repo):
        repo = service.add_repository(str(git_repo))

        created = service.create_worktree(str(git_repo), "synced")
        assert service.get_repository(repo.id).find_worktree(created.path) is not None

        service.remove_worktree(created.path)
        assert service.get_repository(repo.id).find_worktree(created.path) is None

    def test_rename_replaces_entry(self, service, git_repo):
        repo = service.add_repository(str(git_repo))
        created = service.create_worktree(str(git_repo), "before")

        renamed = service.rename_worktree(created.path, "after")

        paths = [w.path for w in service.get_repository(repo.id).worktrees]
        assert renamed.path in paths
        assert created.path not in paths

    def test_lock_and_unlock_update_the_store(self, service, git_repo):
        repo = service.add_repository(str(git_repo))
        created = service.create_worktree(str(git_repo), "lockable")

        service.lock_worktree(created.path, "in review")
        stored = service.get_repository(repo.id).find_worktree(created.path)
        assert stored.is_locked and stored.lock_reason == "in review"

        service.unlock_worktree(created.path)
        stored = service.get_repository(repo.id).find_worktree(created.path)
        assert not stored.is_locked and stored.lock_reason is None

    def test_failed_startup_script_still_records_worktree(self, service, git_repo):
        repo = service.add_repository(str(git_repo))

        with pytest.raises(ScriptExecutionError) as exc_info:
            service.create_worktree(
                str(git_repo), "broken", startup_script="exit 3\n", execute_script=True
            )

        created = exc_info.value.worktree
        assert Path(created.path).is_dir()
        stored = RepositoryService(service.config).get_repository(repo.id)
        assert stored.find_worktree(created.path) is not None

    def test_unregistered_repository_still_gets_worktree(self, service, git_repo):
        created = service.create_worktree(str(git_repo), "loose")
        assert Path(created.path).is_dir()
        assert service.get_repositories() == []


class TestSettings:
    def test_defaults(self, service):
        settings = service.get_settings()
        assert settings.theme == Theme.SYSTEM
        assert settings.terminal_app == TerminalApp.TERMINAL

    def test_update_is_persisted(self, service, app_config):
        service.update_settings(AppSettings(theme=Theme.DARK, auto_refresh=False))

        reloaded = RepositoryService(app_config).get_settings()
        assert reloaded.theme == Theme.DARK
        assert reloaded.auto_refresh is False

    def test_bad_custom_command_rejected(self, service):
        with pytest.raises(CommandValidationError):
            service.update_settings(
                AppSettings(terminal_app=TerminalApp.CUSTOM, custom_terminal_command="/tmp/evil")
            )
        assert service.get_settings().terminal_app == TerminalApp.TERMINAL


class TestRepositoryStore:
    def test_malformed_file_starts_empty(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("[1, 2")

        data = RepositoryStore(path).load()

        assert data.repositories == []

    def test_missing_file_starts_empty(self, tmp_path):
        assert RepositoryStore(tmp_path / "none.json").load().repositories == []

    def test_save_creates_parent_directories(self, tmp_path):
        store = RepositoryStore(tmp_path / "nested" / "store.json")
        store.save()
        assert json.loads(store.path.read_text())["repositories"] == []

    def test_parallel_mutations_and_saves(self, tmp_path):
        store = RepositoryStore(tmp_path / "store.json")
        store.load()
        errors = []

        def writer(n):
            try:
                for i in range(40):
                    with store.writing() as data:
                        data.repositories.append(
                            Repository(id=f"{n}-{i}", path=f"/r/{n}/{i}", name="r")
                        )
                    store.save()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert len(RepositoryStore(store.path).load().repositories) == 8 * 40
        assert [p.name for p in tmp_path.iterdir()] == ["store.json"]


class TestReadWriteLock:
    def test_readers_share_the_lock(self):
        lock = ReadWriteLock()
        barrier = threading.Barrier(2, timeout=5)
        errors = []

        def reader():
            with lock.read_lock():
                try:
                    barrier.wait()
                except threading.BrokenBarrierError as e:
                    errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        acquired = threading.Event()

        def reader():
            with lock.read_lock():
                acquired.set()

        with lock.write_lock():
            t = threading.Thread(target=reader)
            t.start()
            assert not acquired.wait(timeout=0.2)

        t.join(timeout=5)
        assert acquired.is_set()
