"""Interface of the companion dev-server process manager.

Each agent worktree can run one dev server. The task manager only asks for
it to be started or stopped by worktree path; how the process is supervised
is up to the implementation injected into ``TaskManager``.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class AgentServerManager(Protocol):
    def start(self, worktree_path: str) -> int:
        """Start (or reuse) the server for ``worktree_path`` and return its port."""
        ...

    def stop(self, worktree_path: str) -> None:
        ...

    def is_running(self, worktree_path: str) -> bool:
        ...
