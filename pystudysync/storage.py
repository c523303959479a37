"""Local persistence primitives.

The engine assumes a durable, synchronous key-value store holding
JSON-serializable values. Two implementations are provided: an in-memory
store (tests, ephemeral sessions) and a directory of JSON files, one file
per key.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from .models import DataType

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Durable key-value store for JSON-serializable values."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None if the key is absent."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store a value."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a key; removing a missing key is not an error."""


class MemoryStore(KeyValueStore):
    """Key-value store kept in a dict.

    Values are round-tripped through JSON so callers cannot mutate stored
    state through shared references.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonFileStore(KeyValueStore):
    """Key-value store backed by one JSON file per key."""

    def __init__(self, directory: Path):
        """Initialize the store.

        Args:
            directory: Directory holding the JSON files (created if missing)
        """
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(value, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    def remove(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()


class SafeStore:
    """Wraps a store so that persistence failures never propagate.

    Read failures return the default, write failures return False. Both are
    logged as warnings.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    def get_json(self, key: str, default: Any = None) -> Any:
        try:
            value = self.store.get(key)
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to read '{key}' from local store: {e}")
            return default
        return default if value is None else value

    def set_json(self, key: str, value: Any) -> bool:
        try:
            self.store.set(key, value)
            return True
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to write '{key}' to local store: {e}")
            return False

    def remove(self, key: str) -> bool:
        try:
            self.store.remove(key)
            return True
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to remove '{key}' from local store: {e}")
            return False


class LocalDataStore:
    """Reads and writes the payload of each data type."""

    def __init__(self, store: SafeStore):
        self.store = store

    def get(self, data_type: DataType) -> Any:
        """Return the local payload for a data type, None if absent."""
        return self.store.get_json(data_type.storage_key)

    def save(self, data_type: DataType, data: Any) -> bool:
        """Persist the local payload for a data type."""
        return self.store.set_json(data_type.storage_key, data)
