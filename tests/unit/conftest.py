"""Shared test fixtures for unit tests."""

from pathlib import Path

import pytest

from aristar_worktrees.core.config import AppConfig, WorktreeConfig, clear_config_cache
from aristar_worktrees.utils.subprocess_utils import run_command


def git(cwd: Path, *args: str) -> str:
    """Run git in ``cwd`` and return stdout; fails the test on error."""
    return run_command(["git", *args], cwd=cwd, check=True).stdout


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def home_dir(tmp_path, monkeypatch):
    """Point $HOME at a scratch directory so it can't widen the allowed bases."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home.resolve()


@pytest.fixture
def app_config(tmp_path, home_dir):
    """Config whose managed root lives in the test's tmp dir."""
    return AppConfig(worktrees=WorktreeConfig(root=tmp_path / "root"))


@pytest.fixture
def git_repo(tmp_path, home_dir):
    """A git repository on branch ``main`` with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("hello\n")
    git(repo, "add", "README.md")
    git(repo, "commit", "-q", "-m", "Initial commit")
    return repo.resolve()
