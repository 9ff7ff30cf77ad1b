"""Multi-agent tasks: each agent works in its own worktree."""

from .server_process import AgentServerManager
from .task_manager import TaskManager, agent_worktree_name, generate_task_id
from .task_store import TaskStore

__all__ = [
    "AgentServerManager",
    "TaskManager",
    "TaskStore",
    "agent_worktree_name",
    "generate_task_id",
]
