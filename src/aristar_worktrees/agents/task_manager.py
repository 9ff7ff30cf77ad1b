"""Task/agent orchestration.

A task fans one piece of work out to several models. Every agent gets its
own detached worktree under ``<root>/tasks/<task_id>/`` so the agents can
start from the same branch without git's "already checked out" conflict.

Agent status transitions are driven from outside; this module persists
whatever state it is told and never validates the transition.
"""

import asyncio
import hashlib
import itertools
import logging
import shutil
from pathlib import Path
from typing import List, Optional, Sequence

from ..core.config import AppConfig
from ..core.errors import (
    AristarError,
    InputValidationError,
    NotFoundError,
    StorageError,
    TaskCreationError,
)
from ..core.models import (
    AgentStatus,
    ModelSelection,
    SourceRef,
    Task,
    TaskAgent,
    TaskStatus,
    TaskStoreData,
    now_ms,
)
from ..utils.error_handling import best_effort
from ..utils.rich_logging import task_logger
from ..utils.validators import slugify, validate_identifier
from ..workspace.worktree_manager import WorktreeManager
from .server_process import AgentServerManager
from .task_store import TaskStore

logger = logging.getLogger(__name__)


def generate_task_id(name: str, created_at: int, salt: int = 0) -> str:
    """8 hex chars of SHA-256 over the task name and creation time (ms).

    ``salt`` is mixed in only when retrying after a collision.
    """
    material = f"{name}{created_at}"
    if salt:
        material += f":{salt}"
    return hashlib.sha256(material.encode("utf-8")).digest()[:4].hex()


def agent_worktree_name(task_name: str, model_id: str) -> str:
    """Directory name of an agent's worktree: ``<slug(task)>-<slug(model)>``.

    Raises:
        InputValidationError: If nothing of either name survives slugging
    """
    name = slugify(f"{task_name}-{model_id}")
    if not name:
        raise InputValidationError(
            f"Cannot derive a worktree name from task {task_name!r} and model {model_id!r}"
        )
    return name


def _find_task(data: TaskStoreData, task_id: str) -> Task:
    task = next((t for t in data.tasks if t.id == task_id), None)
    if task is None:
        raise NotFoundError("Task", task_id)
    return task


def _find_agent(task: Task, agent_id: str) -> TaskAgent:
    agent = task.find_agent(agent_id)
    if agent is None:
        raise NotFoundError("Agent", agent_id)
    return agent


class TaskManager:
    """Creates tasks and manages their agents' worktrees."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        worktree_manager: Optional[WorktreeManager] = None,
        store: Optional[TaskStore] = None,
        server_manager: Optional[AgentServerManager] = None,
    ):
        """
        Initialize task manager.

        Args:
            config: Application configuration
            worktree_manager: Worktree operations (built from config if omitted)
            store: Task store (loaded from ``<root>/tasks.json`` if omitted)
            server_manager: Optional dev-server collaborator
        """
        self.config = config or AppConfig()
        self.worktrees = worktree_manager or WorktreeManager(self.config)
        self.layout = self.worktrees.layout
        if store is None:
            store = TaskStore(self.layout.tasks_store_path)
            store.load()
        self.store = store
        self.server_manager = server_manager

    # --- Queries ---

    def get_tasks(self) -> List[Task]:
        with self.store.locked() as data:
            return [t.model_copy(deep=True) for t in data.tasks]

    def get_task(self, task_id: str) -> Task:
        with self.store.locked() as data:
            return _find_task(data, task_id).model_copy(deep=True)

    def validate_task_worktrees(self, task_id: str) -> List[str]:
        """Ids of agents whose worktree directory no longer exists. Read-only."""
        task = self.get_task(task_id)
        orphaned = [a.id for a in task.agents if not Path(a.worktree_path).exists()]
        if orphaned:
            task_logger(__name__, task_id).warning(
                f"Found {len(orphaned)} orphaned agents: {', '.join(orphaned)}"
            )
        return orphaned

    # --- Task lifecycle ---

    def _unique_task_id(self, name: str) -> str:
        created_at = now_ms()
        with self.store.locked() as data:
            existing = {t.id for t in data.tasks}
        for salt in itertools.count():
            task_id = generate_task_id(name, created_at, salt)
            if task_id not in existing and not self.layout.task_folder(task_id).exists():
                return task_id
            logger.debug(f"Task id {task_id} already taken, retrying")

    def create_task(
        self,
        name: str,
        source_repo_path: str,
        models: Sequence[ModelSelection],
        source: Optional[SourceRef] = None,
        agent_type: str = "build",
    ) -> Task:
        """
        Create a task with one agent worktree per selected model.

        Args:
            name: Task name (non-empty)
            source_repo_path: Repository the agent worktrees branch off
            models: Models to fan out to (at least one)
            source: Branch or commit to start from (None uses HEAD)
            agent_type: Default agent type for the task's agents

        Returns:
            The persisted task

        Raises:
            InputValidationError: Empty name or empty model list
            TaskCreationError: An agent worktree could not be created. Agents
                created before the failure are rolled back when
                ``tasks.rollback_on_partial_failure`` is set.
        """
        if not name or not name.strip():
            raise InputValidationError("Task name cannot be empty")
        if not models:
            raise InputValidationError("At least one model must be selected")

        worktree_names = [agent_worktree_name(name, model.model_id) for model in models]
        task_id = self._unique_task_id(name)
        log = task_logger(__name__, task_id)
        task_folder = self.layout.task_folder(task_id)
        try:
            task_folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create task folder {task_folder}: {e}") from e

        source_ref = source.ref if source is not None else None
        now = now_ms()
        agents: List[TaskAgent] = []

        for idx, (model, worktree_name) in enumerate(zip(models, worktree_names), start=1):
            agent_id = f"agent-{idx}"
            destination = task_folder / worktree_name
            try:
                created_path = self.worktrees.create_worktree_at_path(
                    source_repo_path, str(destination), source_ref
                )
            except AristarError as e:
                log.for_agent(agent_id).error(f"Worktree creation failed: {e}")
                raise self._creation_failed(task_id, task_folder, agents, e) from e

            agents.append(
                TaskAgent(
                    id=agent_id,
                    model_id=model.model_id,
                    provider_id=model.provider_id,
                    worktree_path=created_path,
                    created_at=now,
                )
            )

        task = Task(
            id=task_id,
            name=name,
            source=source,
            source_repo_path=source_repo_path,
            agent_type=agent_type,
            status=TaskStatus.IDLE,
            created_at=now,
            updated_at=now,
            agents=agents,
        )

        with self.store.locked() as data:
            data.tasks.append(task)
        self.store.save()

        log.info(f"Created task '{name}' with {len(agents)} agents")
        return task.model_copy(deep=True)

    def _creation_failed(
        self,
        task_id: str,
        task_folder: Path,
        created: List[TaskAgent],
        error: AristarError,
    ) -> TaskCreationError:
        """Build the TaskCreationError, first undoing created worktrees if configured."""
        rollback = self.config.tasks.rollback_on_partial_failure
        if rollback:
            log = task_logger(__name__, task_id)
            for agent in created:
                log.for_agent(agent.id).info(f"Rolling back worktree {agent.worktree_path}")
                best_effort(
                    self.worktrees.remove_worktree,
                    agent.worktree_path,
                    True,
                    False,
                    error_message=f"Rollback of {agent.worktree_path} failed",
                    logger_instance=logger,
                )
            if task_folder.exists():
                best_effort(
                    shutil.rmtree,
                    task_folder,
                    error_message=f"Failed to remove task folder {task_folder}",
                    logger_instance=logger,
                )

        return TaskCreationError(
            f"Failed to create agent worktree {len(created) + 1} for task {task_id}: {error}",
            task_id=task_id,
            created_agents=list(created),
            rolled_back=rollback,
            cause=error,
        )

    def update_task(
        self,
        task_id: str,
        name: Optional[str] = None,
        status: Optional[TaskStatus] = None,
    ) -> Task:
        if name is not None and not name.strip():
            raise InputValidationError("Task name cannot be empty")

        with self.store.locked() as data:
            task = _find_task(data, task_id)
            if name is not None:
                task.name = name
            if status is not None:
                task.status = TaskStatus(status)
            task.touch()
            updated = task.model_copy(deep=True)

        self.store.save()
        return updated

    def delete_task(self, task_id: str, delete_worktrees: bool = False) -> None:
        """Drop a task; optionally remove its worktrees and folder (best-effort)."""
        task = self.get_task(task_id)
        log = task_logger(__name__, task_id)

        if delete_worktrees:
            for agent in task.agents:
                if Path(agent.worktree_path).exists():
                    best_effort(
                        self.worktrees.remove_worktree,
                        agent.worktree_path,
                        True,
                        False,
                        error_message=f"Failed to remove worktree {agent.worktree_path}",
                        logger_instance=logger,
                    )
            task_folder = self.layout.task_folder(validate_identifier(task_id, "task id"))
            if task_folder.exists():
                best_effort(
                    shutil.rmtree,
                    task_folder,
                    error_message=f"Failed to remove task folder {task_folder}",
                    logger_instance=logger,
                )

        with self.store.locked() as data:
            data.tasks = [t for t in data.tasks if t.id != task_id]
        self.store.save()
        log.info("Deleted task")

    # --- Agents ---

    def add_agent_to_task(
        self,
        task_id: str,
        model_id: str,
        provider_id: str = "",
        agent_type: Optional[str] = None,
    ) -> Task:
        """Add one agent, creating its worktree from the task's source."""
        if not model_id:
            raise InputValidationError("Model id cannot be empty")

        task = self.get_task(task_id)
        destination = self.layout.task_folder(task_id) / agent_worktree_name(task.name, model_id)
        created_path = self.worktrees.create_worktree_at_path(
            task.source_repo_path, str(destination), task.source_ref
        )

        try:
            with self.store.locked() as data:
                current = _find_task(data, task_id)
                agent = TaskAgent(
                    id=current.next_agent_id(),
                    model_id=model_id,
                    provider_id=provider_id,
                    agent_type=agent_type,
                    worktree_path=created_path,
                )
                current.agents.append(agent)
                current.touch()
                updated = current.model_copy(deep=True)
        except NotFoundError:
            # Task deleted while the worktree was being created
            best_effort(
                self.worktrees.remove_worktree,
                created_path,
                True,
                False,
                error_message=f"Failed to remove orphaned worktree {created_path}",
                logger_instance=logger,
            )
            raise

        self.store.save()
        task_logger(__name__, task_id).for_agent(agent.id).info(f"Added agent ({model_id})")
        return updated

    def remove_agent_from_task(
        self,
        task_id: str,
        agent_id: str,
        delete_worktree: bool = False,
    ) -> None:
        """Remove an agent; its worktree is force-removed only if requested."""
        agent = _find_agent(self.get_task(task_id), agent_id)

        if delete_worktree and Path(agent.worktree_path).exists():
            self.worktrees.remove_worktree(agent.worktree_path, force=True, delete_branch=False)

        with self.store.locked() as data:
            task = _find_task(data, task_id)
            task.agents = [a for a in task.agents if a.id != agent_id]
            task.touch()
        self.store.save()
        task_logger(__name__, task_id).for_agent(agent_id).info("Removed agent")

    def accept_agent(self, task_id: str, agent_id: str) -> None:
        """Mark ``agent_id`` as the task's winner, clearing any previous winner."""
        with self.store.locked() as data:
            task = _find_task(data, task_id)
            target = _find_agent(task, agent_id)
            for agent in task.agents:
                agent.accepted = False
            target.accepted = True
            task.touch()
        self.store.save()
        task_logger(__name__, task_id).for_agent(agent_id).info("Accepted agent")

    def cleanup_unaccepted_agents(self, task_id: str) -> List[str]:
        """
        Remove every unaccepted agent and its worktree.

        Worktree removal is best-effort: failures are logged and the agent is
        dropped anyway.

        Returns:
            Ids of the removed agents
        """
        task = self.get_task(task_id)
        doomed = [a for a in task.agents if not a.accepted]

        for agent in doomed:
            if Path(agent.worktree_path).exists():
                best_effort(
                    self.worktrees.remove_worktree,
                    agent.worktree_path,
                    True,
                    False,
                    error_message=f"Failed to remove worktree {agent.worktree_path}",
                    logger_instance=logger,
                )

        with self.store.locked() as data:
            current = _find_task(data, task_id)
            current.agents = [a for a in current.agents if a.accepted]
            current.touch()
        self.store.save()

        removed = [a.id for a in doomed]
        task_logger(__name__, task_id).info(f"Cleaned up {len(removed)} unaccepted agents")
        return removed

    def recreate_agent_worktree(self, task_id: str, agent_id: str) -> str:
        """Recreate a missing agent worktree from the task's original source.

        Raises:
            InputValidationError: If the worktree path still exists
        """
        task = self.get_task(task_id)
        agent = _find_agent(task, agent_id)
        if Path(agent.worktree_path).exists():
            raise InputValidationError(f"Worktree already exists: {agent.worktree_path}")

        # git refuses to add over a missing but still registered worktree
        self.worktrees.prune_worktrees(task.source_repo_path)
        created_path = self.worktrees.create_worktree_at_path(
            task.source_repo_path, agent.worktree_path, task.source_ref
        )
        task_logger(__name__, task_id).for_agent(agent_id).info("Recreated worktree")
        return created_path

    def update_agent_status(self, task_id: str, agent_id: str, status: AgentStatus) -> None:
        with self.store.locked() as data:
            task = _find_task(data, task_id)
            _find_agent(task, agent_id).status = AgentStatus(status)
            task.touch()
        self.store.save()

    def update_agent_session(
        self, task_id: str, agent_id: str, session_id: Optional[str]
    ) -> None:
        with self.store.locked() as data:
            task = _find_task(data, task_id)
            _find_agent(task, agent_id).session_id = session_id
            task.touch()
        self.store.save()

    # --- Companion dev server ---

    def _require_server_manager(self) -> AgentServerManager:
        if self.server_manager is None:
            raise AristarError("No agent server manager is configured")
        return self.server_manager

    def start_agent_server(self, task_id: str, agent_id: str) -> int:
        """Start the agent's dev server and return the port it listens on."""
        manager = self._require_server_manager()
        agent = _find_agent(self.get_task(task_id), agent_id)
        port = manager.start(agent.worktree_path)
        task_logger(__name__, task_id).for_agent(agent_id).info(f"Server listening on {port}")
        return port

    def stop_agent_server(self, task_id: str, agent_id: str) -> None:
        manager = self._require_server_manager()
        agent = _find_agent(self.get_task(task_id), agent_id)
        manager.stop(agent.worktree_path)

    # --- Async facade ---

    async def create_task_async(
        self,
        name: str,
        source_repo_path: str,
        models: Sequence[ModelSelection],
        source: Optional[SourceRef] = None,
        agent_type: str = "build",
    ) -> Task:
        return await asyncio.to_thread(
            self.create_task, name, source_repo_path, models, source, agent_type
        )

    async def add_agent_to_task_async(
        self,
        task_id: str,
        model_id: str,
        provider_id: str = "",
        agent_type: Optional[str] = None,
    ) -> Task:
        return await asyncio.to_thread(
            self.add_agent_to_task, task_id, model_id, provider_id, agent_type
        )

    async def cleanup_unaccepted_agents_async(self, task_id: str) -> List[str]:
        return await asyncio.to_thread(self.cleanup_unaccepted_agents, task_id)
