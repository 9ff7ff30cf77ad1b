"""Translate technical errors to user-friendly messages."""

import re
from dataclasses import dataclass
from typing import List, Optional

from rich.markup import escape

from ..core.errors import AristarError


@dataclass
class UserFriendlyError:
    """User-friendly error representation."""
    original_error: Exception
    title: str
    explanation: str
    actions: List[str]
    show_technical: bool = False


class ErrorTranslator:
    """Translate technical errors to user-friendly messages.

    Patterns are tried in order against ``"<ExceptionType>: <message>"``;
    the first match wins.
    """

    ERROR_PATTERNS = {
        # Security rejections
        r"CommandValidationError": {
            "title": "Custom command rejected",
            "explanation": "Custom terminal and editor commands must be absolute paths to an existing executable in a trusted install location, with no shell characters.",
            "actions": [
                "Use the full path, e.g. /usr/local/bin/nvim",
                "Check the command exists: ls -l <path>",
                "Pick a built-in application instead of 'custom'"
            ]
        },
        r"Path traversal detected|not within allowed directories": {
            "title": "Path outside allowed directories",
            "explanation": "Worktrees can only be created inside the managed worktree root or your home directory.",
            "actions": [
                "Choose a destination under your home directory",
                "Add the directory to security.extra_allowed_bases in the config file"
            ]
        },

        # Task creation
        r"TaskCreationError": {
            "title": "Task creation failed",
            "explanation": "One of the agent worktrees could not be created, so the task was not saved.",
            "actions": [
                "Check the source branch or commit exists: git branch -a",
                "Make sure the repository path is correct",
                "Retry with fewer models to find the failing one"
            ]
        },

        # Git worktree failures (stderr passed through verbatim)
        r"is a main working tree": {
            "title": "Cannot remove the main worktree",
            "explanation": "The repository's own checkout is not a removable worktree.",
            "actions": [
                "Remove the repository from the list instead: aristar repo remove <id>"
            ]
        },
        r"locked working tree|is locked": {
            "title": "Worktree is locked",
            "explanation": "Git refuses to remove or move a locked worktree.",
            "actions": [
                "Unlock it first: aristar worktree unlock <path>",
                "Or force removal: aristar worktree remove --force <path>"
            ]
        },
        r"contains modified or untracked files|use --force to delete": {
            "title": "Worktree has local changes",
            "explanation": "The worktree contains uncommitted or untracked files.",
            "actions": [
                "Commit or stash the changes in the worktree",
                "Or discard them: aristar worktree remove --force <path>"
            ]
        },
        r"is already checked out|is already used by worktree": {
            "title": "Branch already checked out",
            "explanation": "Git allows a branch to be checked out in only one worktree at a time.",
            "actions": [
                "Create the worktree from a commit instead of the branch",
                "Remove the other worktree using this branch",
                "Task agents are always detached, so this only affects plain worktrees"
            ]
        },
        r"already exists": {
            "title": "Destination already exists",
            "explanation": "A file or directory already exists where the worktree would be created.",
            "actions": [
                "Pick a different worktree name",
                "Remove the stale directory if it is left over from a deleted worktree"
            ]
        },
        r"invalid reference|not a valid object name|unknown revision": {
            "title": "Unknown branch or commit",
            "explanation": "Git could not find the branch or commit to check out.",
            "actions": [
                "List branches: git branch -a",
                "Fetch remote branches: git fetch --all"
            ]
        },
        r"not a git repository": {
            "title": "Not a git repository",
            "explanation": "The path is not inside a git working directory.",
            "actions": [
                "Check the path is correct",
                "Initialize a repository: git init"
            ]
        },
        r"timed out after": {
            "title": "Git command timed out",
            "explanation": "A git command took longer than the configured timeout.",
            "actions": [
                "Check for a stuck git process or index.lock file",
                "Raise git.timeout in the config file"
            ]
        },

        # Lookups
        r"NotFoundError": {
            "title": "Not found",
            "explanation": "The requested item does not exist (it may have been deleted).",
            "actions": [
                "List repositories: aristar repo list",
                "List tasks: aristar task list"
            ]
        },
    }

    def translate(self, error: Exception) -> UserFriendlyError:
        """Convert exception to user-friendly format."""
        error_str = str(error)
        error_type = type(error).__name__
        full_error = f"{error_type}: {error_str}"

        # Try to match error patterns
        for pattern, translation in self.ERROR_PATTERNS.items():
            if re.search(pattern, full_error, re.IGNORECASE):
                return UserFriendlyError(
                    original_error=error,
                    title=translation["title"],
                    explanation=translation["explanation"],
                    actions=translation["actions"],
                    show_technical=isinstance(error, AristarError),
                )

        # Fallback for unknown errors
        return UserFriendlyError(
            original_error=error,
            title="Unexpected error",
            explanation=error_str or error_type,
            actions=[
                "Re-run with --verbose for details",
                "Check the log file if logging.log_to_file is enabled"
            ],
            show_technical=False
        )

    def format_for_cli(self, friendly_error: UserFriendlyError) -> str:
        """Format error for CLI display (rich markup)."""
        output = f"[bold red]{friendly_error.title}[/]\n\n"
        output += f"{escape(friendly_error.explanation)}\n\n"

        output += "[bold]How to fix:[/]\n"
        for i, action in enumerate(friendly_error.actions, 1):
            output += f"  {i}. {action}\n"

        if friendly_error.show_technical:
            output += f"\n[dim]Details:[/]\n[dim]{escape(str(friendly_error.original_error))}[/]"

        return output


def explain(error: Exception, translator: Optional[ErrorTranslator] = None) -> str:
    translator = translator or ErrorTranslator()
    return translator.format_for_cli(translator.translate(error))
