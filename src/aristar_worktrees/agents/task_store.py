"""Persistent task store backed by ``tasks.json``."""

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ..core.errors import StorageError
from ..core.models import TaskStoreData
from ..utils.atomic_io import atomic_write_text

logger = logging.getLogger(__name__)


class TaskStore:
    """In-memory ``TaskStoreData`` guarded by a plain mutex.

    Hold :meth:`locked` only for in-memory edits; never across a git call
    and never around :meth:`save`, which takes the lock itself.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        # Held across snapshot and write so saves reach disk in order
        self._save_lock = threading.Lock()
        self._data = TaskStoreData()

    def load(self) -> TaskStoreData:
        """Load tasks from disk. Missing or malformed files give an empty store."""
        data = TaskStoreData()
        if not self.path.exists():
            logger.info(f"No tasks file at {self.path}, starting empty")
        else:
            try:
                data = TaskStoreData.model_validate(json.loads(self.path.read_text()))
                logger.info(f"Loaded {len(data.tasks)} tasks from {self.path}")
            except (OSError, json.JSONDecodeError, ValueError) as e:
                logger.error(f"Failed to parse tasks file {self.path}: {e}")

        with self._lock:
            self._data = data
        return data

    def save(self) -> None:
        with self._save_lock:
            with self._lock:
                content = self._data.model_dump_json(indent=2, by_alias=True)
                count = len(self._data.tasks)
            try:
                atomic_write_text(self.path, content)
            except OSError as e:
                raise StorageError(f"Failed to write tasks file {self.path}: {e}") from e
        logger.debug(f"Saved {count} tasks to store")

    @contextmanager
    def locked(self) -> Iterator[TaskStoreData]:
        with self._lock:
            yield self._data
