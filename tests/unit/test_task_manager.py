"""Tests for TaskManager: task creation, agents, cleanup and recovery."""

import shutil
import threading
from pathlib import Path

import pytest

from aristar_worktrees.agents import task_manager as task_manager_module
from aristar_worktrees.agents.server_process import AgentServerManager
from aristar_worktrees.agents.task_manager import (
    TaskManager,
    agent_worktree_name,
    generate_task_id,
)
from aristar_worktrees.agents.task_store import TaskStore
from aristar_worktrees.core.config import TaskConfig
from aristar_worktrees.core.errors import (
    AristarError,
    InputValidationError,
    NotFoundError,
    PathTraversalError,
    TaskCreationError,
)
from aristar_worktrees.core.models import (
    AgentStatus,
    BranchSource,
    CommitSource,
    ModelSelection,
    Task,
    TaskStatus,
)
from aristar_worktrees.workspace.worktree_manager import WorktreeManager

from conftest import git


class FakeServerManager:
    """Records start/stop calls instead of spawning processes."""

    def __init__(self):
        self.running = {}

    def start(self, worktree_path):
        self.running[worktree_path] = 4100 + len(self.running)
        return self.running[worktree_path]

    def stop(self, worktree_path):
        self.running.pop(worktree_path, None)

    def is_running(self, worktree_path):
        return worktree_path in self.running


@pytest.fixture
def manager(app_config):
    return TaskManager(app_config)


def _models(*model_ids):
    return [ModelSelection(model_id=m, provider_id="test") for m in model_ids]


@pytest.fixture
def task(manager, git_repo):
    return manager.create_task(
        "Refactor Auth", str(git_repo), _models("claude-sonnet-4", "gpt-4")
    )


def test_generate_task_id_is_stable_and_salted():
    first = generate_task_id("Refactor Auth", 1700000000000)
    assert first == generate_task_id("Refactor Auth", 1700000000000)
    assert len(first) == 8
    assert generate_task_id("Refactor Auth", 1700000000000, salt=1) != first


def test_agent_worktree_name():
    assert agent_worktree_name("Refactor Auth", "claude-sonnet-4") == (
        "refactor-auth-claude-sonnet-4"
    )


def test_agent_worktree_name_needs_some_slug():
    with pytest.raises(InputValidationError):
        agent_worktree_name("!!!", "???")


class TestCreateTask:
    def test_creates_one_worktree_per_model(self, task, app_config, git_repo):
        folder = app_config.root / "tasks" / task.id

        assert [a.id for a in task.agents] == ["agent-1", "agent-2"]
        assert [a.worktree_path for a in task.agents] == [
            str(folder / "refactor-auth-claude-sonnet-4"),
            str(folder / "refactor-auth-gpt-4"),
        ]
        for agent in task.agents:
            assert (Path(agent.worktree_path) / "README.md").exists()
            assert agent.status == AgentStatus.IDLE
            assert agent.accepted is False
            assert agent.provider_id == "test"
        assert task.status == TaskStatus.IDLE
        assert task.agent_type == "build"
        assert task.source_repo_path == str(git_repo)

    def test_agents_are_detached_from_the_same_branch(self, manager, git_repo):
        created = manager.create_task(
            "Same Branch", str(git_repo), _models("a", "b"), source=BranchSource(name="main")
        )

        listed = {w.path: w for w in WorktreeManager(manager.config).list_worktrees(str(git_repo))}
        for agent in created.agents:
            assert listed[agent.worktree_path].branch is None
        assert created.source_ref == "main"

    def test_task_is_persisted(self, task, app_config):
        reloaded = TaskManager(app_config)

        assert reloaded.get_task(task.id) == task
        assert (app_config.root / "tasks.json").exists()

    def test_empty_name_rejected(self, manager, git_repo):
        with pytest.raises(InputValidationError):
            manager.create_task("  ", str(git_repo), _models("a"))

    def test_no_models_rejected(self, manager, git_repo):
        with pytest.raises(InputValidationError):
            manager.create_task("Task", str(git_repo), [])
        assert manager.get_tasks() == []

    def test_partial_failure_rolls_back(self, manager, git_repo, app_config):
        # The duplicate model maps onto an existing directory, so git refuses it
        with pytest.raises(TaskCreationError) as exc_info:
            manager.create_task("Dup", str(git_repo), _models("same", "same"))

        error = exc_info.value
        assert error.rolled_back is True
        assert [a.id for a in error.created_agents] == ["agent-1"]
        assert not (app_config.root / "tasks" / error.task_id).exists()
        assert manager.get_tasks() == []
        assert len(WorktreeManager(app_config).list_worktrees(str(git_repo))) == 1

    def test_partial_failure_without_rollback_keeps_worktrees(self, git_repo, app_config):
        app_config.tasks = TaskConfig(rollback_on_partial_failure=False)
        manager = TaskManager(app_config)

        with pytest.raises(TaskCreationError) as exc_info:
            manager.create_task("Dup", str(git_repo), _models("same", "same"))

        error = exc_info.value
        assert error.rolled_back is False
        assert Path(error.created_agents[0].worktree_path).is_dir()
        assert manager.get_tasks() == []

    def test_symbol_only_names_rejected(self, manager, git_repo, app_config):
        with pytest.raises(InputValidationError, match="worktree name"):
            manager.create_task("!!!", str(git_repo), _models("???"))

        assert manager.get_tasks() == []
        tasks_dir = app_config.root / "tasks"
        assert not tasks_dir.exists() or list(tasks_dir.iterdir()) == []

    def test_task_id_collision_is_retried(self, manager, git_repo, app_config, monkeypatch):
        monkeypatch.setattr(task_manager_module, "now_ms", lambda: 1700000000000)
        taken = generate_task_id("Collide", 1700000000000)
        (app_config.root / "tasks" / taken).mkdir(parents=True)

        created = manager.create_task("Collide", str(git_repo), _models("m"))

        assert created.id == generate_task_id("Collide", 1700000000000, salt=1)

    def test_missing_source_repository(self, manager, tmp_path):
        with pytest.raises(TaskCreationError) as exc_info:
            manager.create_task("Missing", str(tmp_path / "no-repo"), _models("m"))
        assert isinstance(exc_info.value.cause, NotFoundError)

    @pytest.mark.asyncio
    async def test_create_task_async(self, manager, git_repo):
        created = await manager.create_task_async("Async", str(git_repo), _models("m"))
        assert manager.get_task(created.id).name == "Async"


class TestUpdateAndDelete:
    def test_update_name_and_status(self, manager, task):
        updated = manager.update_task(task.id, name="Renamed", status=TaskStatus.RUNNING)

        assert updated.name == "Renamed"
        assert updated.status == TaskStatus.RUNNING
        assert updated.updated_at >= task.updated_at

    def test_update_rejects_blank_name(self, manager, task):
        with pytest.raises(InputValidationError):
            manager.update_task(task.id, name="")

    def test_delete_keeps_worktrees_by_default(self, manager, task):
        manager.delete_task(task.id)

        assert manager.get_tasks() == []
        assert all(Path(a.worktree_path).exists() for a in task.agents)

    def test_delete_with_worktrees(self, manager, task, app_config, git_repo):
        manager.delete_task(task.id, delete_worktrees=True)

        assert not (app_config.root / "tasks" / task.id).exists()
        assert len(WorktreeManager(app_config).list_worktrees(str(git_repo))) == 1

    def test_unknown_task(self, manager):
        with pytest.raises(NotFoundError, match="Task not found: nope"):
            manager.get_task("nope")
        with pytest.raises(NotFoundError):
            manager.delete_task("nope")


class TestAgents:
    def test_accept_flips_the_winner(self, manager, task):
        manager.accept_agent(task.id, "agent-1")
        manager.accept_agent(task.id, "agent-2")

        accepted = {a.id: a.accepted for a in manager.get_task(task.id).agents}
        assert accepted == {"agent-1": False, "agent-2": True}

    def test_accept_unknown_agent_leaves_flags(self, manager, task):
        manager.accept_agent(task.id, "agent-1")

        with pytest.raises(NotFoundError):
            manager.accept_agent(task.id, "agent-9")

        assert manager.get_task(task.id).find_agent("agent-1").accepted

    def test_cleanup_removes_unaccepted(self, manager, git_repo, app_config):
        created = manager.create_task("Three Way", str(git_repo), _models("a", "b", "c"))
        manager.accept_agent(created.id, "agent-2")

        removed = manager.cleanup_unaccepted_agents(created.id)

        assert removed == ["agent-1", "agent-3"]
        remaining = manager.get_task(created.id).agents
        assert [a.id for a in remaining] == ["agent-2"]
        assert not Path(created.agents[0].worktree_path).exists()
        assert not Path(created.agents[2].worktree_path).exists()
        assert Path(created.agents[1].worktree_path).exists()

    def test_cleanup_tolerates_missing_worktrees(self, manager, task):
        shutil.rmtree(task.agents[0].worktree_path)

        removed = manager.cleanup_unaccepted_agents(task.id)

        assert removed == ["agent-1", "agent-2"]
        assert manager.get_task(task.id).agents == []

    def test_add_agent_after_removal_never_reuses_ids(self, manager, task):
        manager.remove_agent_from_task(task.id, "agent-1")

        updated = manager.add_agent_to_task(task.id, "gemini-pro", "google", agent_type="plan")

        new_agent = updated.agents[-1]
        assert [a.id for a in updated.agents] == ["agent-2", "agent-3"]
        assert new_agent.agent_type == "plan"
        assert new_agent.worktree_path.endswith("refactor-auth-gemini-pro")
        assert Path(new_agent.worktree_path).is_dir()

    def test_add_agent_with_symbol_only_names_rejected(self, manager, task):
        manager.update_task(task.id, name="!!!")

        with pytest.raises(InputValidationError):
            manager.add_agent_to_task(task.id, "???")

        assert [a.id for a in manager.get_task(task.id).agents] == ["agent-1", "agent-2"]

    def test_add_agent_to_unknown_task(self, manager):
        with pytest.raises(NotFoundError):
            manager.add_agent_to_task("nope", "m")

    def test_remove_agent_keeps_worktree_unless_asked(self, manager, task):
        manager.remove_agent_from_task(task.id, "agent-1")
        assert Path(task.agents[0].worktree_path).exists()

        manager.remove_agent_from_task(task.id, "agent-2", delete_worktree=True)
        assert not Path(task.agents[1].worktree_path).exists()
        assert manager.get_task(task.id).agents == []

    def test_status_and_session_are_persisted(self, manager, task, app_config):
        manager.update_agent_status(task.id, "agent-1", AgentStatus.RUNNING)
        manager.update_agent_session(task.id, "agent-1", "session-42")

        agent = TaskManager(app_config).get_task(task.id).find_agent("agent-1")
        assert agent.status == AgentStatus.RUNNING
        assert agent.session_id == "session-42"

    def test_unknown_agent(self, manager, task):
        with pytest.raises(NotFoundError, match="Agent not found"):
            manager.update_agent_status(task.id, "agent-7", AgentStatus.FAILED)

    @pytest.mark.asyncio
    async def test_async_agent_operations(self, manager, task):
        updated = await manager.add_agent_to_task_async(task.id, "extra")
        assert updated.agents[-1].id == "agent-3"

        removed = await manager.cleanup_unaccepted_agents_async(task.id)
        assert removed == ["agent-1", "agent-2", "agent-3"]


class TestRecovery:
    def test_validate_reports_missing_worktrees(self, manager, task):
        assert manager.validate_task_worktrees(task.id) == []

        shutil.rmtree(task.agents[1].worktree_path)

        assert manager.validate_task_worktrees(task.id) == ["agent-2"]

    def test_recreate_restores_missing_worktree(self, manager, task):
        shutil.rmtree(task.agents[0].worktree_path)

        path = manager.recreate_agent_worktree(task.id, "agent-1")

        assert path == task.agents[0].worktree_path
        assert (Path(path) / "README.md").exists()
        assert manager.validate_task_worktrees(task.id) == []

    def test_recreate_refuses_existing_worktree(self, manager, task):
        with pytest.raises(InputValidationError, match="Worktree already exists"):
            manager.recreate_agent_worktree(task.id, "agent-1")

    def test_recreate_uses_task_source(self, manager, git_repo):
        first_sha = git(git_repo, "rev-parse", "HEAD").strip()
        git(git_repo, "commit", "-q", "--allow-empty", "-m", "Later")
        created = manager.create_task(
            "Pinned",
            str(git_repo),
            _models("m"),
            source=CommitSource(sha=first_sha),
        )
        shutil.rmtree(created.agents[0].worktree_path)

        path = manager.recreate_agent_worktree(created.id, "agent-1")

        assert git(Path(path), "rev-parse", "HEAD").strip() == first_sha


class TestAgentServer:
    def test_start_and_stop(self, app_config, git_repo):
        server = FakeServerManager()
        manager = TaskManager(app_config, server_manager=server)
        created = manager.create_task("Served", str(git_repo), _models("m"))
        path = created.agents[0].worktree_path

        assert isinstance(server, AgentServerManager)
        assert manager.start_agent_server(created.id, "agent-1") == 4100
        assert server.is_running(path)

        manager.stop_agent_server(created.id, "agent-1")
        assert not server.is_running(path)

    def test_without_server_manager(self, manager, task):
        with pytest.raises(AristarError, match="No agent server manager"):
            manager.start_agent_server(task.id, "agent-1")


def test_malformed_tasks_file_starts_empty(tmp_path):
    path = tmp_path / "tasks.json"
    path.write_text("{not json")

    store = TaskStore(path)

    assert store.load().tasks == []


def test_task_destination_must_stay_in_allowed_bases(manager, git_repo, monkeypatch, tmp_path):
    # Agent destinations are validated like any caller-supplied path
    monkeypatch.setattr(
        manager.layout, "task_folder", lambda task_id: tmp_path / "elsewhere" / task_id
    )

    with pytest.raises(TaskCreationError) as exc_info:
        manager.create_task("Escapee", str(git_repo), _models("m"))

    assert isinstance(exc_info.value.cause, PathTraversalError)


class TestConcurrentSaves:
    def test_parallel_appends_all_reach_disk(self, tmp_path):
        store = TaskStore(tmp_path / "tasks.json")
        store.load()
        errors = []

        def writer(n):
            try:
                for i in range(40):
                    with store.locked() as data:
                        data.tasks.append(
                            Task(id=f"{n}-{i}", name=f"t{n}-{i}", source_repo_path="/r")
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
        assert len(TaskStore(store.path).load().tasks) == 8 * 40
        assert [p.name for p in tmp_path.iterdir()] == ["tasks.json"]

    def test_parallel_agent_updates_are_persisted(self, manager, task, app_config):
        errors = []

        def update(agent_id, status):
            try:
                for i in range(25):
                    manager.update_agent_session(task.id, agent_id, f"{agent_id}-{i}")
                manager.update_agent_status(task.id, agent_id, status)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=update, args=("agent-1", AgentStatus.RUNNING)),
            threading.Thread(target=update, args=("agent-2", AgentStatus.FAILED)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        reloaded = TaskManager(app_config).get_task(task.id)
        assert reloaded.find_agent("agent-1").status == AgentStatus.RUNNING
        assert reloaded.find_agent("agent-1").session_id == "agent-1-24"
        assert reloaded.find_agent("agent-2").status == AgentStatus.FAILED
        assert reloaded.find_agent("agent-2").session_id == "agent-2-24"
