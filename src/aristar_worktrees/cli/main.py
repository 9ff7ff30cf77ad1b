"""Main CLI for aristar worktrees."""

import functools
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from ..agents.task_manager import TaskManager
from ..core.config import AppConfig, load_config
from ..core.errors import AristarError
from ..core.models import (
    BranchSource,
    CommitSource,
    EditorApp,
    ModelSelection,
    TerminalApp,
)
from ..errors.translator import explain
from ..utils.rich_logging import setup_logging
from ..workspace import external_apps
from ..workspace.repository_store import RepositoryService
from ..workspace.worktree_manager import WorktreeManager


console = Console()


class CliState:
    """Services shared by every command, built on first use."""

    def __init__(self, config: AppConfig):
        self.config = config
        self._manager: Optional[WorktreeManager] = None
        self._repos: Optional[RepositoryService] = None
        self._tasks: Optional[TaskManager] = None

    @property
    def manager(self) -> WorktreeManager:
        if self._manager is None:
            self._manager = WorktreeManager(self.config)
        return self._manager

    @property
    def repos(self) -> RepositoryService:
        if self._repos is None:
            self._repos = RepositoryService(self.config, manager=self.manager)
        return self._repos

    @property
    def tasks(self) -> TaskManager:
        if self._tasks is None:
            self._tasks = TaskManager(self.config, worktree_manager=self.manager)
        return self._tasks


def handle_errors(func):
    """Print package errors through the translator and exit with status 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except AristarError as e:
            console.print(explain(e))
            sys.exit(1)

    return wrapper


def _format_ms(timestamp: int) -> str:
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(timestamp / 1000).strftime("%Y-%m-%d %H:%M")


def _source(branch: Optional[str], commit: Optional[str]):
    if branch and commit:
        raise click.UsageError("Use either --branch or --commit, not both")
    if branch:
        return BranchSource(name=branch)
    if commit:
        return CommitSource(sha=commit)
    return None


def _parse_model(value: str) -> ModelSelection:
    """``provider/model`` or bare ``model``."""
    provider, sep, model = value.partition("/")
    if sep and provider and model:
        return ModelSelection(model_id=model, provider_id=provider)
    return ModelSelection(model_id=value)


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(path_type=Path), help="Config file")
@click.option("--root", type=click.Path(path_type=Path), help="Override the managed worktree root")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_path, root, verbose):
    """Aristar - manage git worktrees and multi-agent tasks."""
    config = load_config(config_path).model_copy(deep=True)
    if root is not None:
        config.worktrees = config.worktrees.model_copy(
            update={"root": root.expanduser().resolve()}
        )

    setup_logging(
        log_level="DEBUG" if verbose else config.logging.level,
        log_dir=config.log_dir if config.logging.log_to_file else None,
    )
    ctx.obj = CliState(config)


# --- repositories ---


@cli.group()
def repo():
    """Registered repositories."""
    pass


@repo.command("add")
@click.argument("path", type=click.Path())
@click.pass_obj
@handle_errors
def repo_add(state: CliState, path):
    """Register a git repository."""
    added = state.repos.add_repository(path)
    console.print(f"[green]✓[/] Added [bold]{added.name}[/] ({added.id})")


@repo.command("list")
@click.pass_obj
@handle_errors
def repo_list(state: CliState):
    """List registered repositories."""
    repositories = state.repos.get_repositories()
    if not repositories:
        console.print("[dim]No repositories registered. Use 'aristar repo add <path>'.[/]")
        return

    table = Table()
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Path")
    table.add_column("Worktrees", justify="right")
    table.add_column("Scanned")
    for r in repositories:
        table.add_row(r.id, r.name, r.path, str(len(r.worktrees)), _format_ms(r.last_scanned))
    console.print(table)


@repo.command("remove")
@click.argument("repo_id")
@click.pass_obj
@handle_errors
def repo_remove(state: CliState, repo_id):
    """Forget a repository (worktrees on disk are kept)."""
    state.repos.remove_repository(repo_id)
    console.print(f"[green]✓[/] Removed repository {repo_id}")


@repo.command("refresh")
@click.argument("repo_id")
@click.pass_obj
@handle_errors
def repo_refresh(state: CliState, repo_id):
    """Re-scan a repository's worktrees."""
    refreshed = state.repos.refresh_repository(repo_id)
    console.print(f"[green]✓[/] {refreshed.name}: {len(refreshed.worktrees)} worktrees")


# --- worktrees ---


@cli.group()
def worktree():
    """Git worktrees."""
    pass


@worktree.command("list")
@click.argument("repo_path", type=click.Path())
@click.pass_obj
@handle_errors
def worktree_list(state: CliState, repo_path):
    """List worktrees of a repository."""
    table = Table()
    table.add_column("Name")
    table.add_column("Branch")
    table.add_column("Commit")
    table.add_column("Path")
    table.add_column("Locked")
    for w in state.manager.list_worktrees(repo_path):
        name = f"[bold]{w.name}[/]" if w.is_main else w.name
        locked = (w.lock_reason or "yes") if w.is_locked else ""
        table.add_row(name, w.branch or "[dim]detached[/]", (w.commit or "")[:8], w.path, locked)
    console.print(table)


@worktree.command("create")
@click.argument("repo_path", type=click.Path())
@click.argument("name")
@click.option("--branch", "-b", help="Branch to check out")
@click.option("--commit", help="Commit to check out")
@click.option("--script", "script_file", type=click.File("r"), help="Startup script to install")
@click.option("--execute", is_flag=True, help="Run the startup script after creation")
@click.pass_obj
@handle_errors
def worktree_create(state: CliState, repo_path, name, branch, commit, script_file, execute):
    """Create a worktree under the managed root."""
    script = script_file.read() if script_file else None
    created = state.repos.create_worktree(
        repo_path, name, _source(branch, commit), script, execute
    )
    console.print(f"[green]✓[/] Created [bold]{created.name}[/] at {created.path}")


@worktree.command("remove")
@click.argument("path", type=click.Path())
@click.option("--force", is_flag=True, help="Discard changes and override locks")
@click.option("--delete-branch", is_flag=True, help="Also delete the branch (unless protected)")
@click.pass_obj
@handle_errors
def worktree_remove(state: CliState, path, force, delete_branch):
    """Remove a worktree."""
    state.repos.remove_worktree(path, force=force, delete_branch=delete_branch)
    console.print(f"[green]✓[/] Removed {path}")


@worktree.command("rename")
@click.argument("path", type=click.Path())
@click.argument("new_name")
@click.pass_obj
@handle_errors
def worktree_rename(state: CliState, path, new_name):
    """Rename a worktree directory."""
    renamed = state.repos.rename_worktree(path, new_name)
    console.print(f"[green]✓[/] Renamed to {renamed.path}")


@worktree.command("lock")
@click.argument("path", type=click.Path())
@click.option("--reason", "-r", help="Why the worktree is locked")
@click.pass_obj
@handle_errors
def worktree_lock(state: CliState, path, reason):
    """Lock a worktree against removal."""
    state.repos.lock_worktree(path, reason)
    console.print(f"[green]✓[/] Locked {path}")


@worktree.command("unlock")
@click.argument("path", type=click.Path())
@click.pass_obj
@handle_errors
def worktree_unlock(state: CliState, path):
    """Unlock a worktree."""
    state.repos.unlock_worktree(path)
    console.print(f"[green]✓[/] Unlocked {path}")


# --- tasks ---


@cli.group()
def task():
    """Multi-agent tasks."""
    pass


@task.command("create")
@click.argument("name")
@click.option("--repo", "-r", "repo_path", required=True, type=click.Path(), help="Source repository")
@click.option("--model", "-m", "models", multiple=True, required=True, help="[provider/]model, repeatable")
@click.option("--branch", "-b", help="Source branch")
@click.option("--commit", help="Source commit")
@click.option("--agent-type", default="build", help="Default agent type")
@click.pass_obj
@handle_errors
def task_create(state: CliState, name, repo_path, models, branch, commit, agent_type):
    """Create a task with one agent worktree per model."""
    created = state.tasks.create_task(
        name,
        str(Path(repo_path).expanduser().resolve()),
        [_parse_model(m) for m in models],
        source=_source(branch, commit),
        agent_type=agent_type,
    )
    console.print(f"[green]✓[/] Created task [bold]{created.id}[/] with {len(created.agents)} agents")
    for agent in created.agents:
        console.print(f"  {agent.id}: {agent.model_id} → {agent.worktree_path}")


@task.command("list")
@click.pass_obj
@handle_errors
def task_list(state: CliState):
    """List tasks."""
    tasks = state.tasks.get_tasks()
    if not tasks:
        console.print("[dim]No tasks yet.[/]")
        return

    table = Table()
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Agents", justify="right")
    table.add_column("Source")
    table.add_column("Updated")
    for t in tasks:
        table.add_row(
            t.id, t.name, t.status.value, str(len(t.agents)),
            t.source_ref or "HEAD", _format_ms(t.updated_at),
        )
    console.print(table)


@task.command("show")
@click.argument("task_id")
@click.pass_obj
@handle_errors
def task_show(state: CliState, task_id):
    """Show a task and its agents."""
    t = state.tasks.get_task(task_id)
    console.print(f"[bold]{t.name}[/] ({t.id}) - {t.status.value}")
    console.print(f"Repository: {t.source_repo_path}  Source: {t.source_ref or 'HEAD'}")

    table = Table()
    table.add_column("Agent")
    table.add_column("Model")
    table.add_column("Status")
    table.add_column("Accepted")
    table.add_column("Worktree")
    for a in t.agents:
        table.add_row(
            a.id,
            f"{a.provider_id}/{a.model_id}" if a.provider_id else a.model_id,
            a.status.value,
            "✓" if a.accepted else "",
            a.worktree_path,
        )
    console.print(table)


@task.command("delete")
@click.argument("task_id")
@click.option("--delete-worktrees", is_flag=True, help="Also remove agent worktrees")
@click.pass_obj
@handle_errors
def task_delete(state: CliState, task_id, delete_worktrees):
    """Delete a task."""
    state.tasks.delete_task(task_id, delete_worktrees=delete_worktrees)
    console.print(f"[green]✓[/] Deleted task {task_id}")


@task.command("add-agent")
@click.argument("task_id")
@click.argument("model")
@click.option("--agent-type", help="Override the task's agent type")
@click.pass_obj
@handle_errors
def task_add_agent(state: CliState, task_id, model, agent_type):
    """Add an agent for MODEL ([provider/]model)."""
    selection = _parse_model(model)
    updated = state.tasks.add_agent_to_task(
        task_id, selection.model_id, selection.provider_id, agent_type
    )
    agent = updated.agents[-1]
    console.print(f"[green]✓[/] Added {agent.id} at {agent.worktree_path}")


@task.command("remove-agent")
@click.argument("task_id")
@click.argument("agent_id")
@click.option("--delete-worktree", is_flag=True, help="Also remove the agent's worktree")
@click.pass_obj
@handle_errors
def task_remove_agent(state: CliState, task_id, agent_id, delete_worktree):
    """Remove an agent from a task."""
    state.tasks.remove_agent_from_task(task_id, agent_id, delete_worktree=delete_worktree)
    console.print(f"[green]✓[/] Removed {agent_id}")


@task.command("accept")
@click.argument("task_id")
@click.argument("agent_id")
@click.pass_obj
@handle_errors
def task_accept(state: CliState, task_id, agent_id):
    """Mark an agent as the task's winner."""
    state.tasks.accept_agent(task_id, agent_id)
    console.print(f"[green]✓[/] Accepted {agent_id}")


@task.command("cleanup")
@click.argument("task_id")
@click.pass_obj
@handle_errors
def task_cleanup(state: CliState, task_id):
    """Remove every agent that was not accepted."""
    removed = state.tasks.cleanup_unaccepted_agents(task_id)
    console.print(f"[green]✓[/] Removed {len(removed)} agents")


@task.command("validate")
@click.argument("task_id")
@click.pass_obj
@handle_errors
def task_validate(state: CliState, task_id):
    """Report agents whose worktree is missing."""
    orphaned = state.tasks.validate_task_worktrees(task_id)
    if not orphaned:
        console.print("[green]✓[/] All agent worktrees present")
        return
    console.print(f"[yellow]Missing worktrees:[/] {', '.join(orphaned)}")
    console.print("[dim]Recreate with: aristar task recreate <task> <agent>[/]")


@task.command("recreate")
@click.argument("task_id")
@click.argument("agent_id")
@click.pass_obj
@handle_errors
def task_recreate(state: CliState, task_id, agent_id):
    """Recreate a missing agent worktree."""
    path = state.tasks.recreate_agent_worktree(task_id, agent_id)
    console.print(f"[green]✓[/] Recreated {path}")


# --- external apps ---


@cli.group("open")
def open_group():
    """Open a worktree in another application."""
    pass


@open_group.command("terminal")
@click.argument("path", type=click.Path())
@click.option("--app", type=click.Choice([a.value for a in TerminalApp]), help="Defaults to settings")
@click.option("--command", "custom_command", help="Executable for --app custom")
@click.pass_obj
@handle_errors
def open_terminal(state: CliState, path, app, custom_command):
    """Open PATH in a terminal."""
    settings = state.repos.get_settings()
    app = app or settings.terminal_app.value
    custom_command = custom_command or settings.custom_terminal_command
    external_apps.open_in_terminal(path, app, custom_command, config=state.config)


@open_group.command("editor")
@click.argument("path", type=click.Path())
@click.option("--app", type=click.Choice([a.value for a in EditorApp]), help="Defaults to settings")
@click.option("--command", "custom_command", help="Executable for --app custom")
@click.pass_obj
@handle_errors
def open_editor(state: CliState, path, app, custom_command):
    """Open PATH in an editor."""
    settings = state.repos.get_settings()
    app = app or settings.editor_app.value
    custom_command = custom_command or settings.custom_editor_command
    external_apps.open_in_editor(path, app, custom_command, config=state.config)


@open_group.command("reveal")
@click.argument("path", type=click.Path())
@click.pass_obj
@handle_errors
def open_reveal(state: CliState, path):
    """Show PATH in the file manager."""
    external_apps.reveal_in_finder(path, config=state.config)


@open_group.command("copy-path")
@click.argument("path", type=click.Path())
@click.pass_obj
@handle_errors
def open_copy_path(state: CliState, path):
    """Copy the canonical PATH to the clipboard."""
    resolved = str(Path(path).expanduser().resolve())
    external_apps.copy_to_clipboard(resolved)
    console.print(f"[green]✓[/] Copied {resolved}")


if __name__ == "__main__":
    cli()
