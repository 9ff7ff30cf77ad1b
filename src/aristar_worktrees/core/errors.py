"""Exception taxonomy for worktree and task operations.

Every exception's message is the human-readable text shown to the user.
Git failures pass git's own stderr through untouched.
"""

from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .models import WorktreeInfo


class AristarError(Exception):
    """Base class for all errors raised by this package."""


class NotFoundError(AristarError):
    """A task, agent, repository or worktree lookup missed."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class PathTraversalError(AristarError):
    """A candidate path resolves outside every allowed base directory."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class CommandValidationError(PathTraversalError):
    """A custom executable command failed allow-list, denylist or existence checks."""


class GitCommandError(AristarError):
    """A git subprocess exited non-zero (or could not be run at all)."""

    def __init__(
        self,
        args: List[str],
        returncode: int,
        stderr: str,
        stdout: str = "",
        cwd: Optional[Path] = None,
        timed_out: bool = False,
    ):
        self.git_args = list(args)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        self.cwd = cwd
        self.timed_out = timed_out
        super().__init__(stderr)

    @property
    def command(self) -> str:
        return "git " + " ".join(self.git_args)


class StorageError(AristarError):
    """A filesystem operation failed (mkdir, script write, JSON read/write)."""


class InputValidationError(AristarError, ValueError):
    """Caller-supplied input violates a precondition."""


class ScriptExecutionError(AristarError):
    """A worktree startup script exited non-zero. Message is the script's stderr.

    ``worktree`` is the worktree the script ran in, which is kept on disk.
    """

    def __init__(self, script_path: Path, returncode: int, stderr: str):
        self.script_path = script_path
        self.returncode = returncode
        self.stderr = stderr
        self.worktree: Optional["WorktreeInfo"] = None
        super().__init__(stderr)


class TaskCreationError(AristarError):
    """Creating agent worktrees for a task failed part way through.

    ``created_agents`` lists the agents whose worktrees existed when the
    failure happened; ``rolled_back`` says whether they were removed again.
    """

    def __init__(
        self,
        message: str,
        task_id: str,
        created_agents: Optional[list] = None,
        rolled_back: bool = False,
        cause: Optional[BaseException] = None,
    ):
        self.task_id = task_id
        self.created_agents = created_agents or []
        self.rolled_back = rolled_back
        self.cause = cause
        super().__init__(message)


class ExternalAppError(AristarError):
    """A terminal, editor, file manager or clipboard helper could not be launched."""

    def __init__(self, app: str, message: str):
        self.app = app
        super().__init__(message)
