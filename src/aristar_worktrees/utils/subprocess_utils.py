"""Standardized subprocess utilities for git and script execution."""

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Union

from ..core.errors import GitCommandError

logger = logging.getLogger(__name__)


class SubprocessError(Exception):
    """Exception raised when a non-git subprocess command fails."""

    def __init__(self, cmd: str, returncode: int, stderr: str, stdout: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        super().__init__(
            f"Command failed with exit code {returncode}: {cmd}\nstderr: {stderr}"
        )


def run_command(
    cmd: Union[str, List[str]],
    *,
    cwd: Optional[Path] = None,
    capture_output: bool = True,
    check: bool = True,
    timeout: Optional[int] = None,
    env: Optional[dict] = None,
    input: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """
    Run a command with standardized error handling.

    Commands never go through a shell.

    Args:
        cmd: Command to run (argv list, or a single executable path)
        cwd: Working directory
        capture_output: Capture stdout/stderr
        check: Raise exception on non-zero exit
        timeout: Timeout in seconds
        env: Environment variables
        input: Text fed to the process on stdin

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        SubprocessError: If check=True and command fails
        subprocess.TimeoutExpired: If timeout exceeded
    """
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture_output,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            env=env,
            input=input,
            check=False,  # We handle check ourselves for better error messages
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {cmd}")
        raise

    if check and result.returncode != 0:
        cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
        raise SubprocessError(
            cmd=cmd_str,
            returncode=result.returncode,
            stderr=result.stderr,
            stdout=result.stdout,
        )

    return result


def run_git_command(
    args: List[str],
    *,
    cwd: Optional[Path] = None,
    check: bool = True,
    timeout: Optional[int] = None,
    executable: str = "git",
) -> subprocess.CompletedProcess:
    """
    Run a git command and capture its output.

    Args:
        args: Git command arguments (without 'git' prefix)
        cwd: Working directory (git repo or worktree)
        check: Raise GitCommandError on non-zero exit
        timeout: Timeout in seconds (None waits indefinitely)
        executable: Git binary to invoke

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        GitCommandError: On non-zero exit (when check=True), timeout, or when
            git cannot be started. The message is git's stderr verbatim.
    """
    cmd = [executable] + list(args)

    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Git command timed out after {timeout}s in {cwd}: {' '.join(args)}")
        raise GitCommandError(
            args,
            returncode=-1,
            stderr=f"git {' '.join(args)} timed out after {timeout}s",
            cwd=cwd,
            timed_out=True,
        )
    except OSError as e:
        # Missing git binary or missing cwd
        logger.error(f"Could not run git in {cwd}: {e}")
        raise GitCommandError(args, returncode=-1, stderr=str(e), cwd=cwd)

    if check and result.returncode != 0:
        logger.debug(f"Git command failed in {cwd}: {' '.join(args)}")
        raise GitCommandError(
            args,
            returncode=result.returncode,
            stderr=result.stderr,
            stdout=result.stdout,
            cwd=cwd,
        )

    return result


async def run_git_command_async(
    args: List[str],
    *,
    cwd: Optional[Path] = None,
    check: bool = True,
    timeout: Optional[int] = None,
    executable: str = "git",
) -> subprocess.CompletedProcess:
    """Run :func:`run_git_command` on a worker thread so an event loop isn't blocked."""
    return await asyncio.to_thread(
        run_git_command,
        args,
        cwd=cwd,
        check=check,
        timeout=timeout,
        executable=executable,
    )


def get_git_output(
    args: List[str],
    *,
    cwd: Optional[Path] = None,
    timeout: Optional[int] = None,
    executable: str = "git",
) -> str:
    """Run a git command and return its stripped stdout."""
    result = run_git_command(args, cwd=cwd, timeout=timeout, executable=executable)
    return result.stdout.strip()


def spawn_detached(cmd: List[str], *, cwd: Optional[Path] = None) -> subprocess.Popen:
    """
    Start a GUI application without waiting for it.

    The child gets its own session so it outlives the caller, and its
    stdio is detached from ours.
    """
    logger.debug(f"Spawning: {' '.join(cmd)}")
    return subprocess.Popen(
        cmd,
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


def pipe_to_command(cmd: List[str], text: str, *, timeout: Optional[int] = 10) -> int:
    """
    Feed ``text`` to ``cmd`` on stdin and return its exit status.

    stdout and stderr go to /dev/null: helpers such as xclip fork a child
    that keeps serving the selection, and a captured pipe would stay open
    until that child exits.
    """
    logger.debug(f"Piping {len(text)} chars to: {' '.join(cmd)}")
    result = subprocess.run(
        cmd,
        input=text,
        text=True,
        encoding="utf-8",
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        timeout=timeout,
        check=False,
    )
    return result.returncode
