"""Data model for repositories, worktrees, tasks and agents.

Persisted as camelCase JSON with integer millisecond timestamps, so the
files stay readable by the desktop front end.
"""

import time
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class _StoreModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )


# --- Worktrees and repositories ---


class WorktreeInfo(_StoreModel):
    """One checkout, as reported by ``git worktree list``.

    ``id`` is generated fresh on every scan; key on ``path`` to follow a
    worktree across scans.
    """

    id: str
    name: str
    path: str
    branch: Optional[str] = None
    commit: Optional[str] = None
    is_main: bool = False
    is_locked: bool = False
    lock_reason: Optional[str] = None
    startup_script: Optional[str] = None
    script_executed: bool = False
    created_at: int = 0


class Repository(_StoreModel):
    """A registered git repository and its last known worktrees."""

    id: str
    path: str
    name: str
    worktrees: List[WorktreeInfo] = Field(default_factory=list)
    last_scanned: int = 0

    def find_worktree(self, path: str) -> Optional[WorktreeInfo]:
        return next((w for w in self.worktrees if w.path == path), None)


class BranchInfo(_StoreModel):
    name: str
    is_current: bool = False
    is_remote: bool = False


class CommitInfo(_StoreModel):
    hash: str
    short_hash: str
    message: str
    author: str
    date: int = 0


# --- Settings ---


class Theme(str, Enum):
    LIGHT = "light"
    DARK = "dark"
    SYSTEM = "system"


class TerminalApp(str, Enum):
    """Supported terminal applications. CUSTOM requires a validated command."""
    TERMINAL = "terminal"
    GHOSTTY = "ghostty"
    ALACRITTY = "alacritty"
    KITTY = "kitty"
    ITERM = "iterm"
    WARP = "warp"
    CUSTOM = "custom"


class EditorApp(str, Enum):
    """Supported editors. CUSTOM requires a validated command."""
    VSCODE = "vscode"
    CURSOR = "cursor"
    ZED = "zed"
    ANTIGRAVITY = "antigravity"
    CUSTOM = "custom"


class AppSettings(_StoreModel):
    theme: Theme = Theme.SYSTEM
    auto_refresh: bool = True
    default_base_path: Optional[str] = None
    terminal_app: TerminalApp = TerminalApp.TERMINAL
    custom_terminal_command: Optional[str] = None
    editor_app: EditorApp = EditorApp.VSCODE
    custom_editor_command: Optional[str] = None


class StoreData(_StoreModel):
    """Contents of ``store.json``."""
    repositories: List[Repository] = Field(default_factory=list)
    settings: AppSettings = Field(default_factory=AppSettings)


# --- Tasks and agents ---


class TaskStatus(str, Enum):
    """Status values shared by tasks and agents."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


AgentStatus = TaskStatus


class BranchSource(_StoreModel):
    kind: Literal["branch"] = "branch"
    name: str

    @property
    def ref(self) -> str:
        return self.name


class CommitSource(_StoreModel):
    kind: Literal["commit"] = "commit"
    sha: str

    @property
    def ref(self) -> str:
        return self.sha


# Where agent worktrees are checked out from
SourceRef = Annotated[Union[BranchSource, CommitSource], Field(discriminator="kind")]


class ModelSelection(_StoreModel):
    """One model picked by the user when creating a task."""
    model_id: str
    provider_id: str = ""


class TaskAgent(_StoreModel):
    """One model's attempt at a task, in its own worktree."""

    id: str  # "agent-N", unique within the task
    model_id: str
    provider_id: str = ""
    agent_type: Optional[str] = None  # overrides the task default
    worktree_path: str
    session_id: Optional[str] = None
    status: AgentStatus = AgentStatus.IDLE
    accepted: bool = False
    created_at: int = Field(default_factory=now_ms)

    @property
    def number(self) -> int:
        """Numeric suffix of the agent id, 0 if it doesn't follow ``agent-N``."""
        prefix, _, suffix = self.id.rpartition("-")
        if prefix == "agent" and suffix.isdigit():
            return int(suffix)
        return 0


class Task(_StoreModel):
    """A unit of work fanned out to one or more agents."""

    id: str
    name: str
    # None checks out the repository's current HEAD
    source: Optional[SourceRef] = None
    source_repo_path: str
    agent_type: str = "build"
    status: TaskStatus = TaskStatus.IDLE
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    agents: List[TaskAgent] = Field(default_factory=list)

    @property
    def source_ref(self) -> Optional[str]:
        return self.source.ref if self.source is not None else None

    def find_agent(self, agent_id: str) -> Optional[TaskAgent]:
        return next((a for a in self.agents if a.id == agent_id), None)

    def next_agent_id(self) -> str:
        highest = max((a.number for a in self.agents), default=0)
        return f"agent-{highest + 1}"

    def touch(self) -> None:
        self.updated_at = now_ms()


class TaskStoreData(_StoreModel):
    """Contents of ``tasks.json``."""
    tasks: List[Task] = Field(default_factory=list)
