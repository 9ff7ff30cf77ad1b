"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

APP_DIR_NAME = ".aristar-worktrees"

DEFAULT_PROTECTED_BRANCHES = ["main", "master", "develop", "development"]

# Custom terminal/editor commands must live under one of these prefixes
DEFAULT_ALLOWED_COMMAND_PREFIXES = [
    "/usr/bin/",
    "/usr/local/bin/",
    "/opt/homebrew/bin/",
    "/Applications/",
    "/System/Applications/",
]


class WorktreeConfig(BaseModel):
    """Managed worktree root and on-disk naming."""
    root: Path = Field(
        default_factory=lambda: Path("~") / APP_DIR_NAME, validate_default=True
    )
    startup_script_name: str = ".worktree-setup.sh"
    repo_info_filename: str = ".aristar-repo-info.json"
    protected_branches: List[str] = Field(
        default_factory=lambda: list(DEFAULT_PROTECTED_BRANCHES)
    )

    @field_validator("root", mode="after")
    @classmethod
    def expand_root(cls, v: Path) -> Path:
        return Path(v).expanduser().resolve()

    @field_validator("startup_script_name", "repo_info_filename")
    @classmethod
    def validate_filename(cls, v: str) -> str:
        if not v or "/" in v or v in (".", ".."):
            raise ValueError(f"must be a plain file name, got '{v}'")
        return v


class SecurityConfig(BaseModel):
    """Path and command allow-lists."""
    allowed_command_prefixes: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_COMMAND_PREFIXES)
    )
    # Appended to the managed root and the home directory, never replacing them
    extra_allowed_bases: List[Path] = Field(default_factory=list)

    @field_validator("allowed_command_prefixes")
    @classmethod
    def validate_prefixes(cls, v: List[str]) -> List[str]:
        for prefix in v:
            if not prefix.startswith("/"):
                raise ValueError(
                    f"allowed_command_prefixes entries must be absolute, got '{prefix}'"
                )
        return v

    @field_validator("extra_allowed_bases", mode="after")
    @classmethod
    def expand_bases(cls, v: List[Path]) -> List[Path]:
        return [Path(p).expanduser() for p in v]


class GitConfig(BaseModel):
    """Git subprocess settings."""
    executable: str = "git"
    timeout: Optional[int] = 120  # seconds; None disables

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError(f"timeout must be positive or null, got {v}")
        return v


class TaskConfig(BaseModel):
    """Agent task settings."""
    # Remove already-created agent worktrees when a later one fails
    rollback_on_partial_failure: bool = True


class LoggingConfig(BaseModel):
    """Logging settings."""
    level: str = "INFO"
    log_to_file: bool = False
    log_dir: Optional[Path] = None

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level '{v}'")
        return v.upper()


class AppConfig(BaseSettings):
    """Top-level application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ARISTAR_",
        env_nested_delimiter="__",
        extra="allow",
    )

    worktrees: WorktreeConfig = Field(default_factory=WorktreeConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    tasks: TaskConfig = Field(default_factory=TaskConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def root(self) -> Path:
        return self.worktrees.root

    @property
    def log_dir(self) -> Path:
        return self.logging.log_dir or self.root / "logs"


DEFAULT_CONFIG_PATH = Path("~") / APP_DIR_NAME / "config.yaml"

# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> AppConfig:
    """Internal loader (no caching)."""
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    data = _expand_env_vars(data)
    return AppConfig(**data)


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from YAML file.

    Uses mtime-based caching: returns cached config if the file hasn't changed.
    A missing file yields the default configuration.
    """
    config_path = Path(config_path or DEFAULT_CONFIG_PATH).expanduser()
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration."
        )
        return AppConfig()

    resolved = config_path.resolve()
    result = _get_cached_or_load(resolved, _load_config_from_file)
    return result if result is not None else AppConfig()


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ``${VAR}`` references in config data.

    Args:
        data: Config data to process
        _path: Internal tracking for error messages (e.g., "worktrees.root")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used, which may cause errors."
            )
            return data
        return value
    return data
