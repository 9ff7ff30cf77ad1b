"""Open worktrees in terminals, editors and the file manager.

Each supported application is a member of a closed enum; ``custom`` carries
a user-supplied executable that must pass ``validate_executable_command``
at launch. Commands are argv lists and never pass through a shell.
"""

import logging
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from ..core.config import AppConfig
from ..core.errors import ExternalAppError, InputValidationError, NotFoundError
from ..core.models import EditorApp, TerminalApp
from ..utils.path_security import (
    get_allowed_worktree_bases,
    validate_executable_command,
    validate_path,
)
from ..utils.subprocess_utils import pipe_to_command, run_command, spawn_detached

logger = logging.getLogger(__name__)

# Applications opened through `open -a <bundle name> <path>`
OPEN_A_TERMINALS = {
    TerminalApp.GHOSTTY: "Ghostty",
    TerminalApp.WARP: "Warp",
}
OPEN_A_EDITORS = {
    EditorApp.VSCODE: "Visual Studio Code",
    EditorApp.CURSOR: "Cursor",
    EditorApp.ZED: "Zed",
    EditorApp.ANTIGRAVITY: "Antigravity",
}

ALACRITTY_CANDIDATES = (
    "/opt/homebrew/bin/alacritty",
    "/usr/local/bin/alacritty",
    "/usr/bin/alacritty",
    "/Applications/Alacritty.app/Contents/MacOS/alacritty",
)
KITTY_CANDIDATES = (
    "/opt/homebrew/bin/kitty",
    "/usr/local/bin/kitty",
    "/usr/bin/kitty",
    "/Applications/kitty.app/Contents/MacOS/kitty",
)


@dataclass
class LaunchPlan:
    """How to start one application.

    ``wait`` runs the command to completion and treats a non-zero exit as a
    failure (AppleScript launchers); otherwise the process is detached.
    ``fallback`` is spawned if a waited command fails.
    """

    app: str
    argv: List[str]
    wait: bool = False
    fallback: Optional[List[str]] = None


def _applescript_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _cd_command(path: str) -> str:
    """Shell ``cd`` for ``path``, escaped for embedding in an AppleScript string."""
    return _applescript_string(f"cd {shlex.quote(path)} && clear")


def _find_binary(app: str, candidates: Sequence[str]) -> str:
    for candidate in candidates:
        if Path(candidate).exists():
            return candidate
    raise NotFoundError(app, "none of " + ", ".join(candidates))


def _custom_argv(
    path: str,
    custom_command: Optional[str],
    allowed_prefixes: Optional[Sequence[str]],
) -> List[str]:
    if not custom_command:
        raise InputValidationError("custom_command is required when app is 'custom'")
    return [validate_executable_command(custom_command, allowed_prefixes), path]


def _parse_app(enum_cls, app, kind: str):
    try:
        return enum_cls(app)
    except ValueError:
        raise InputValidationError(f"Unknown {kind} app: {app}")


def build_terminal_plan(
    path: str,
    app: Union[str, TerminalApp],
    custom_command: Optional[str] = None,
    allowed_prefixes: Optional[Sequence[str]] = None,
) -> LaunchPlan:
    """Argv that opens ``path`` in the given terminal."""
    app = _parse_app(TerminalApp, app, "terminal")

    if app is TerminalApp.TERMINAL:
        script = (
            f'tell application "Terminal" to do script '
            f'"{_cd_command(path)}"'
        )
        return LaunchPlan(app.value, ["osascript", "-e", script], wait=True)

    if app is TerminalApp.ITERM:
        script = (
            f'tell application "iTerm2" to create window with default profile command '
            f'"{_cd_command(path)}"'
        )
        return LaunchPlan(app.value, ["osascript", "-e", script], wait=True)

    if app in OPEN_A_TERMINALS:
        return LaunchPlan(app.value, ["open", "-a", OPEN_A_TERMINALS[app], path])

    if app is TerminalApp.ALACRITTY:
        binary = _find_binary("Alacritty", ALACRITTY_CANDIDATES)
        # Ask a running instance for a new window first
        return LaunchPlan(
            app.value,
            [binary, "msg", "create-window", "--working-directory", path],
            wait=True,
            fallback=[binary, "--working-directory", path],
        )

    if app is TerminalApp.KITTY:
        binary = _find_binary("Kitty", KITTY_CANDIDATES)
        return LaunchPlan(app.value, [binary, "--single-instance", "--directory", path])

    return LaunchPlan(app.value, _custom_argv(path, custom_command, allowed_prefixes))


def build_editor_plan(
    path: str,
    app: Union[str, EditorApp],
    custom_command: Optional[str] = None,
    allowed_prefixes: Optional[Sequence[str]] = None,
) -> LaunchPlan:
    """Argv that opens ``path`` in the given editor."""
    app = _parse_app(EditorApp, app, "editor")

    if app in OPEN_A_EDITORS:
        return LaunchPlan(app.value, ["open", "-a", OPEN_A_EDITORS[app], path])

    return LaunchPlan(app.value, _custom_argv(path, custom_command, allowed_prefixes))


def launch(plan: LaunchPlan) -> None:
    """Run a plan, raising ExternalAppError if the application can't start."""
    logger.info(f"Launching {plan.app}: {plan.argv[0]}")
    if plan.wait:
        try:
            result = run_command(plan.argv, check=False)
            failure = result.stderr.strip() if result.returncode != 0 else None
        except OSError as e:
            failure = str(e)

        if failure is None:
            return
        if plan.fallback is None:
            raise ExternalAppError(plan.app, failure or f"{plan.app} exited with an error")
        logger.debug(f"{plan.app} launch failed ({failure}), trying fallback")
        argv = plan.fallback
    else:
        argv = plan.argv

    try:
        spawn_detached(argv)
    except OSError as e:
        raise ExternalAppError(plan.app, f"Failed to launch {plan.app}: {e}") from e


def _validated(path: str, config: AppConfig) -> str:
    return str(validate_path(path, get_allowed_worktree_bases(config)))


def open_in_terminal(
    path: str,
    app: Union[str, TerminalApp],
    custom_command: Optional[str] = None,
    config: Optional[AppConfig] = None,
) -> None:
    config = config or AppConfig()
    target = _validated(path, config)
    launch(
        build_terminal_plan(
            target, app, custom_command, config.security.allowed_command_prefixes
        )
    )


def open_in_editor(
    path: str,
    app: Union[str, EditorApp],
    custom_command: Optional[str] = None,
    config: Optional[AppConfig] = None,
) -> None:
    config = config or AppConfig()
    target = _validated(path, config)
    launch(
        build_editor_plan(
            target, app, custom_command, config.security.allowed_command_prefixes
        )
    )


def reveal_in_finder(path: str, config: Optional[AppConfig] = None) -> None:
    """Show ``path`` in the platform file manager."""
    target = _validated(path, config or AppConfig())
    if sys.platform == "darwin":
        argv = ["open", "-R", target]
    else:
        # xdg-open can't select a file, so open its directory
        directory = target if Path(target).is_dir() else str(Path(target).parent)
        argv = ["xdg-open", directory]
    launch(LaunchPlan("file manager", argv, wait=True))


def _clipboard_argv() -> List[str]:
    if sys.platform == "darwin":
        return ["pbcopy"]
    if shutil.which("wl-copy"):
        return ["wl-copy"]
    if shutil.which("xclip"):
        return ["xclip", "-selection", "clipboard"]
    raise ExternalAppError("clipboard", "No clipboard helper found (pbcopy, wl-copy, xclip)")


def copy_to_clipboard(text: str) -> None:
    argv = _clipboard_argv()
    try:
        returncode = pipe_to_command(argv, text)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ExternalAppError("clipboard", f"Failed to run {argv[0]}: {e}") from e
    if returncode != 0:
        raise ExternalAppError("clipboard", f"{argv[0]} exited with status {returncode}")
