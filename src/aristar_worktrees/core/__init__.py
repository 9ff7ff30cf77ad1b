"""Configuration, data model and error taxonomy."""

from .config import AppConfig, load_config
from .errors import (
    AristarError,
    CommandValidationError,
    ExternalAppError,
    GitCommandError,
    InputValidationError,
    NotFoundError,
    PathTraversalError,
    ScriptExecutionError,
    StorageError,
    TaskCreationError,
)

__all__ = [
    "AppConfig",
    "load_config",
    "AristarError",
    "CommandValidationError",
    "ExternalAppError",
    "GitCommandError",
    "InputValidationError",
    "NotFoundError",
    "PathTraversalError",
    "ScriptExecutionError",
    "StorageError",
    "TaskCreationError",
]
