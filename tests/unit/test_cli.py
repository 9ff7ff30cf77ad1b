"""Tests for the aristar CLI."""

import logging
from pathlib import Path

import pytest
from click.testing import CliRunner

from aristar_worktrees.agents.task_manager import TaskManager
from aristar_worktrees.cli.main import cli
from aristar_worktrees.utils.rich_logging import ROOT_LOGGER_NAME
from aristar_worktrees.workspace import external_apps
from aristar_worktrees.workspace.paths import repo_hash
from aristar_worktrees.workspace.repository_store import RepositoryService


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = True


@pytest.fixture
def run(app_config):
    runner = CliRunner()

    def invoke(*args):
        return runner.invoke(cli, ["--root", str(app_config.root), *args])

    return invoke


def test_repo_add_and_list(run, git_repo, app_config):
    result = run("repo", "add", str(git_repo))
    assert result.exit_code == 0, result.output
    assert "Added" in result.output

    repos = RepositoryService(app_config).get_repositories()
    assert [r.path for r in repos] == [str(git_repo)]

    result = run("repo", "list")
    assert result.exit_code == 0
    assert "repo" in result.output


def test_repo_remove_unknown_exits_1(run):
    result = run("repo", "remove", "nope")

    assert result.exit_code == 1
    assert "Not found" in result.output


def test_worktree_create_list_remove(run, git_repo, app_config):
    result = run("worktree", "create", str(git_repo), "feat")
    assert result.exit_code == 0, result.output
    path = app_config.root / repo_hash(str(git_repo)) / "feat"
    assert path.is_dir()

    result = run("worktree", "list", str(git_repo))
    assert result.exit_code == 0
    assert "feat" in result.output

    result = run("worktree", "remove", str(path), "--delete-branch")
    assert result.exit_code == 0, result.output
    assert not path.exists()


def test_worktree_create_with_script(run, git_repo, app_config, tmp_path):
    script = tmp_path / "setup.sh"
    script.write_text("touch installed.txt\n")

    result = run("worktree", "create", str(git_repo), "scripted", "--script", str(script), "--execute")

    assert result.exit_code == 0, result.output
    assert (app_config.root / repo_hash(str(git_repo)) / "scripted" / "installed.txt").exists()


def test_branch_and_commit_are_exclusive(run, git_repo):
    result = run("worktree", "create", str(git_repo), "x", "--branch", "main", "--commit", "abc")
    assert result.exit_code == 2


def test_task_lifecycle(run, git_repo, app_config):
    result = run(
        "task", "create", "Refactor Auth",
        "--repo", str(git_repo),
        "-m", "anthropic/claude-sonnet-4",
        "-m", "openai/gpt-4",
    )
    assert result.exit_code == 0, result.output

    (task,) = TaskManager(app_config).get_tasks()
    assert [(a.provider_id, a.model_id) for a in task.agents] == [
        ("anthropic", "claude-sonnet-4"),
        ("openai", "gpt-4"),
    ]
    assert task.id in result.output

    assert run("task", "list").exit_code == 0
    assert run("task", "show", task.id).exit_code == 0

    assert run("task", "accept", task.id, "agent-2").exit_code == 0
    result = run("task", "cleanup", task.id)
    assert result.exit_code == 0
    assert "Removed 1 agents" in result.output

    remaining = TaskManager(app_config).get_task(task.id).agents
    assert [a.id for a in remaining] == ["agent-2"]
    assert not Path(task.agents[0].worktree_path).exists()


def test_task_validate_and_recreate(run, git_repo, app_config):
    run("task", "create", "Fix Bug", "--repo", str(git_repo), "-m", "m1")
    (task,) = TaskManager(app_config).get_tasks()
    worktree = Path(task.agents[0].worktree_path)
    run("worktree", "remove", str(worktree), "--force")

    result = run("task", "validate", task.id)
    assert "agent-1" in result.output

    result = run("task", "recreate", task.id, "agent-1")
    assert result.exit_code == 0, result.output
    assert worktree.is_dir()


def test_task_add_and_remove_agent(run, git_repo, app_config):
    run("task", "create", "Extend", "--repo", str(git_repo), "-m", "m1")
    (task,) = TaskManager(app_config).get_tasks()

    result = run("task", "add-agent", task.id, "google/gemini-pro", "--agent-type", "plan")
    assert result.exit_code == 0, result.output

    result = run("task", "remove-agent", task.id, "agent-1", "--delete-worktree")
    assert result.exit_code == 0, result.output

    agents = TaskManager(app_config).get_task(task.id).agents
    assert [(a.id, a.provider_id, a.agent_type) for a in agents] == [("agent-2", "google", "plan")]


def test_task_show_unknown_exits_1(run, home_dir):
    result = run("task", "show", "deadbeef")

    assert result.exit_code == 1
    assert "Not found" in result.output


def test_task_requires_a_model(run, git_repo):
    result = run("task", "create", "No Models", "--repo", str(git_repo))
    assert result.exit_code == 2


def test_open_terminal_outside_allowed_dirs(run, tmp_path):
    result = run("open", "terminal", str(tmp_path), "--app", "ghostty")

    assert result.exit_code == 1
    assert "Path outside allowed directories" in result.output


def test_copy_path_uses_clipboard(run, home_dir, monkeypatch):
    copied = []
    monkeypatch.setattr(external_apps, "copy_to_clipboard", copied.append)

    result = run("open", "copy-path", str(home_dir))

    assert result.exit_code == 0, result.output
    assert copied == [str(home_dir)]


def test_reveal_outside_allowed_dirs(run, tmp_path):
    result = run("open", "reveal", str(tmp_path))
    assert result.exit_code == 1


def test_open_editor_custom_command_rejected(run, home_dir):
    result = run("open", "editor", str(home_dir), "--app", "custom", "--command", "/tmp/evil")

    assert result.exit_code == 1
    assert "Custom command rejected" in result.output
